"""
Image references and the live-image table.

An ImageReference is a full registry reference string such as
``123456789012.dkr.ecr.us-west-2.amazonaws.com/app/api:v1`` or the same
with ``@sha256:...``. The LiveImageTable maps each reference in use to the
set of consumers (task definitions, Lambda versions, pods, files, commands)
that use it.
"""

import json
import re
from typing import Dict, IO, Iterable, Iterator, List, Optional

ECR_REGISTRY_PATTERN = re.compile(r"^[0-9]+\.dkr\.ecr\.[a-z0-9-]+\.amazonaws\.com(\.cn)?/")


class ImageReference(str):
    """A ``host/repository[:tag|@digest]`` image reference."""

    @property
    def base(self) -> str:
        """Reference without its tag or digest."""
        if "@" in self:
            return self.split("@", 1)[0]
        slash = self.rfind("/")
        colon = self.rfind(":")
        if colon > slash:
            return self[:colon]
        return str(self)

    @property
    def tag(self) -> str:
        """Tag part, or an empty string for digest references and untagged names."""
        if self.is_digest:
            return ""
        slash = self.rfind("/")
        colon = self.rfind(":")
        if colon > slash:
            return self[colon + 1:]
        return ""

    @property
    def digest(self) -> str:
        if not self.is_digest:
            return ""
        return self.split("@", 1)[1]

    @property
    def is_digest(self) -> bool:
        return "@" in self

    @property
    def short(self) -> str:
        """Reference without the registry host."""
        parts = self.split("/", 1)
        return parts[1] if len(parts) == 2 else str(self)

    def belongs_to_registry(self) -> bool:
        """True when the reference addresses a private ECR registry."""
        return bool(ECR_REGISTRY_PATTERN.match(self))

    def with_digest(self, digest: str) -> "ImageReference":
        return ImageReference(f"{self.base}@{digest}")


def registry_reference(registry_id: str, region: str, repository: str, digest: str = "", tag: str = "") -> ImageReference:
    """Build the reference ECR uses for an artifact in the given account and region."""
    host = f"{registry_id}.dkr.ecr.{region}.amazonaws.com"
    if region.startswith("cn-"):
        host += ".cn"
    if digest:
        return ImageReference(f"{host}/{repository}@{digest}")
    return ImageReference(f"{host}/{repository}:{tag}")


class UsageSet:
    """Insertion-ordered set of consumer labels."""

    def __init__(self, members: Optional[Iterable[str]] = None):
        self._members: Dict[str, None] = {}
        for m in members or ():
            self._members[m] = None

    def add(self, value: str) -> bool:
        """Add value; return True only if it was not already present."""
        if value in self._members:
            return False
        self._members[value] = None
        return True

    def __contains__(self, value: object) -> bool:
        return value in self._members

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[str]:
        return iter(self._members)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UsageSet):
            return NotImplemented
        return set(self._members) == set(other._members)

    def __repr__(self) -> str:
        return f"UsageSet({list(self._members)!r})"

    def is_empty(self) -> bool:
        return not self._members

    def members(self) -> List[str]:
        return list(self._members)

    def union(self, other: Optional["UsageSet"]) -> "UsageSet":
        result = UsageSet(self._members)
        if other is not None:
            for m in other:
                result.add(m)
        return result


class LiveImageTable:
    """Mapping of image reference to the consumers that keep it alive."""

    def __init__(self):
        self._images: Dict[ImageReference, UsageSet] = {}

    def add(self, reference: str, consumer: str) -> bool:
        """Record that consumer uses reference.

        Returns:
            True if the consumer was not yet recorded for this reference
        """
        ref = ImageReference(reference)
        usage = self._images.get(ref)
        if usage is None:
            usage = self._images[ref] = UsageSet()
        return usage.add(consumer)

    def contains(self, reference: str) -> bool:
        usage = self._images.get(ImageReference(reference))
        return usage is not None and not usage.is_empty()

    __contains__ = contains

    def consumers(self, reference: str) -> List[str]:
        usage = self._images.get(ImageReference(reference))
        return usage.members() if usage else []

    def merge(self, other: "LiveImageTable") -> None:
        for ref, usage in other._images.items():
            self._images[ref] = self._images.get(ref, UsageSet()).union(usage)

    def references(self) -> List[ImageReference]:
        return sorted(self._images)

    def __len__(self) -> int:
        return len(self._images)

    def save(self, stream: IO[str]) -> None:
        """Write the references as a sorted JSON array (the prescan format)."""
        json.dump([str(r) for r in self.references()], stream, indent=2)
        stream.write("\n")

