"""
Exclude and prescan files.

Both hold image references to treat as live: either a JSON array (what the
``scan`` command writes) or one reference per line, with blank lines and
``#`` comments ignored.
"""

import json
from typing import List, Sequence

from ecr_cleaner.errors import ConfigurationError
from ecr_cleaner.images import ImageReference, LiveImageTable
from ecr_cleaner.logging_utils import get_logger

logger = get_logger(__name__)


def read_reference_file(path: str) -> List[str]:
    """Return the raw entries of an exclude/prescan file."""
    try:
        with open(path, "r") as f:
            content = f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read image list {path}: {e}", details={"path": path}) from e

    if content.lstrip().startswith("["):
        try:
            entries = json.loads(content)
        except ValueError as e:
            raise ConfigurationError(f"{path} is not a valid JSON array: {e}", details={"path": path}) from e
        if not isinstance(entries, list) or not all(isinstance(e, str) for e in entries):
            raise ConfigurationError(f"{path} must contain a JSON array of strings", details={"path": path})
        return entries

    entries = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(line)
    return entries


def load_reference_files(paths: Sequence[str], log=None) -> LiveImageTable:
    """Load every file into a fresh table; each reference is attributed to its file."""
    log = log or logger
    table = LiveImageTable()
    for path in paths:
        log.info(f"Reading image list {path}")
        loaded = 0
        for entry in read_reference_file(path):
            ref = ImageReference(entry)
            if not ref.belongs_to_registry():
                log.warning(f"Skipping line {entry} in {path}: not an ECR image reference")
                continue
            loaded += 1
            if table.add(ref, path):
                log.debug(f"{ref} is defined in {path}")
        log.info(f"Loaded {loaded} image references from {path}")
    return table
