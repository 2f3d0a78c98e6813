"""
Per-repository summary of artifacts found and artifacts expired.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List

from ecr_cleaner.artifacts import ArtifactClass, ArtifactDetail
from ecr_cleaner.logging_utils import get_logger

SUMMARY_CLASSES = (ArtifactClass.CONTAINER_IMAGE, ArtifactClass.IMAGE_INDEX, ArtifactClass.ATTACHED_INDEX)


@dataclass
class SummaryRow:
    repository: str
    artifact_class: ArtifactClass
    total_count: int = 0
    total_bytes: int = 0
    expired_count: int = 0
    expired_bytes: int = 0

    @property
    def keep_count(self) -> int:
        return self.total_count - self.expired_count

    @property
    def keep_bytes(self) -> int:
        return self.total_bytes - self.expired_bytes

    @property
    def printable(self) -> bool:
        """Index rows are only shown for repositories that have indexes."""
        if self.artifact_class is ArtifactClass.CONTAINER_IMAGE:
            return True
        return self.total_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "type": self.artifact_class.value,
            "expired_images": self.expired_count,
            "total_images": self.total_count,
            "expired_image_size": self.expired_bytes,
            "total_image_size": self.total_bytes,
        }


class RepositorySummary:
    """Counts and bytes per artifact class for one repository"""

    def __init__(self, repository: str, logger=None):
        self.repository = repository
        self.rows = {cls: SummaryRow(repository, cls) for cls in SUMMARY_CLASSES}
        self.logger = logger or get_logger(self.__class__.__name__)

    def _row(self, artifact: ArtifactDetail):
        row = self.rows.get(artifact.artifact_class)
        if row is None:
            self.logger.warning(
                f"Unknown image type: artifact:{artifact.artifact_media_type} "
                f"manifest:{artifact.manifest_media_type} digest:{artifact.digest}"
            )
        return row

    def add(self, artifact: ArtifactDetail) -> None:
        row = self._row(artifact)
        if row is not None:
            row.total_count += 1
            row.total_bytes += artifact.size_bytes

    def expire(self, artifact: ArtifactDetail) -> None:
        row = self._row(artifact)
        if row is not None:
            row.expired_count += 1
            row.expired_bytes += artifact.size_bytes

    def __iter__(self) -> Iterator[SummaryRow]:
        return iter(self.rows[cls] for cls in SUMMARY_CLASSES)


class SummaryTable:
    def __init__(self):
        self.rows: List[SummaryRow] = []

    def extend(self, summary: RepositorySummary) -> None:
        self.rows.extend(summary)
        self.rows.sort(key=lambda r: r.repository)

    def printable_rows(self) -> List[SummaryRow]:
        return [r for r in self.rows if r.printable]

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.printable_rows()]
