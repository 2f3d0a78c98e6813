"""
External-command scanner: runs operator-supplied commands that print a JSON
array of image references in use.
"""

import json
import os
import subprocess
import threading
import time
from typing import List, Optional, Sequence

from ecr_cleaner.config_manager import ExternalCommand
from ecr_cleaner.errors import CommandTimeoutError, ExternalCommandError, OperationCancelled
from ecr_cleaner.images import ImageReference, LiveImageTable
from ecr_cleaner.logging_utils import get_logger
from ecr_cleaner.scanners.base import Scanner

# Grace period between SIGTERM and SIGKILL
KILL_GRACE_SECONDS = 5.0
POLL_INTERVAL = 0.2


def _stop(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.communicate(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()


def run_command(command: ExternalCommand, cancel: Optional[threading.Event] = None, logger=None) -> bytes:
    """Run an external command and return its stdout.

    stderr is passed through to ours. The process is terminated, then
    killed after a grace period, when it outlives its timeout or the run is
    cancelled.

    Raises:
        ExternalCommandError: If the command cannot be started or exits non-zero
        CommandTimeoutError: If the command runs past its timeout
        OperationCancelled: If cancel is set while the command runs
    """
    logger = logger or get_logger(__name__)
    argv = list(command.command)
    logger.info(f"Scanning by external command: {argv}")
    env = dict(os.environ)
    env.update(command.env)
    try:
        proc = subprocess.Popen(argv, stdout=subprocess.PIPE, cwd=command.dir or None, env=env)
    except OSError as e:
        raise ExternalCommandError(
            f"Failed to run external command {argv}: {e}",
            suggestions=["Check the command path and the dir setting of the external command"],
            details={"command": argv, "dir": command.dir},
        ) from e

    deadline = time.monotonic() + command.timeout if command.timeout else None
    while True:
        try:
            stdout, _ = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                _stop(proc)
                raise OperationCancelled(f"external command {argv} cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                _stop(proc)
                raise CommandTimeoutError(
                    f"External command {argv} timed out after {command.timeout:g}s",
                    suggestions=["Increase the timeout of the external command"],
                    details={"command": argv, "timeout": command.timeout},
                )

    if proc.returncode != 0:
        raise ExternalCommandError(
            f"External command {argv} exited with status {proc.returncode}",
            details={"command": argv, "returncode": proc.returncode},
        )
    return stdout


def parse_command_output(output: bytes, label: str) -> List[str]:
    try:
        refs = json.loads(output)
    except ValueError as e:
        raise ExternalCommandError(f"{label}: output is not valid JSON: {e}") from e
    if not isinstance(refs, list) or not all(isinstance(r, str) for r in refs):
        raise ExternalCommandError(f"{label}: output must be a JSON array of image references")
    return refs


class ExternalCommandScanner(Scanner):
    name = "external_commands"

    def __init__(self, commands: Sequence[ExternalCommand], cancel: Optional[threading.Event] = None, logger=None):
        super().__init__(max_workers=1, cancel=cancel, logger=logger)
        self.commands = tuple(commands)

    def scan(self) -> LiveImageTable:
        table = LiveImageTable()
        for command in self.commands:
            self.check_cancelled(command.label)
            output = run_command(command, cancel=self.cancel, logger=self.logger)
            for image in parse_command_output(output, command.label):
                ref = ImageReference(image)
                if not ref.belongs_to_registry():
                    self.logger.warning(f"Skipping non ECR image {image} from {command.label}")
                    continue
                if table.add(ref, command.label):
                    self.logger.info(f"Image {ref} is in use by {command.label}")
        return table
