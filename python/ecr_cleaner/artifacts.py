"""
ECR artifact details and their classification.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

DOCKER_CONFIG_JSON = "application/vnd.docker.container.image.v1+json"
OCI_CONFIG_JSON = "application/vnd.oci.image.config.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
SOCI_INDEX_MEDIA_TYPE = "application/vnd.amazon.soci.index.v1+json"

# Manifest types accepted when fetching the index manifests of cascade keys
OCI_MANIFEST_SCHEMA1 = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_SCHEMA1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_SCHEMA2 = "application/vnd.docker.distribution.manifest.v2+json"


class ArtifactClass(Enum):
    """What kind of artifact a repository entry is; resolved once at ingestion"""
    CONTAINER_IMAGE = "Image"
    IMAGE_INDEX = "Image index"
    ATTACHED_INDEX = "Soci index"
    UNKNOWN = "Unknown"

    @classmethod
    def classify(cls, artifact_media_type: Optional[str], manifest_media_type: Optional[str]) -> "ArtifactClass":
        artifact_media_type = artifact_media_type or ""
        if artifact_media_type in (DOCKER_CONFIG_JSON, OCI_CONFIG_JSON):
            return cls.CONTAINER_IMAGE
        if not artifact_media_type and manifest_media_type in (OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST):
            return cls.IMAGE_INDEX
        if artifact_media_type == SOCI_INDEX_MEDIA_TYPE:
            return cls.ATTACHED_INDEX
        return cls.UNKNOWN


def cascade_tag(digest: str) -> str:
    """sha256:abc -> sha256-abc, the tag under which an index is attached to an image"""
    return digest.replace("sha256:", "sha256-", 1)


@dataclass
class ArtifactDetail:
    repository_name: str
    registry_id: str
    digest: str
    pushed_at: datetime
    size_bytes: int = 0
    tags: Tuple[str, ...] = field(default_factory=tuple)
    artifact_media_type: str = ""
    manifest_media_type: str = ""
    artifact_class: ArtifactClass = ArtifactClass.UNKNOWN

    @classmethod
    def from_image_detail(cls, detail: Dict[str, Any]) -> "ArtifactDetail":
        """Build from one entry of ecr:DescribeImages imageDetails."""
        artifact_media_type = detail.get("artifactMediaType") or ""
        manifest_media_type = detail.get("imageManifestMediaType") or ""
        return cls(
            repository_name=detail["repositoryName"],
            registry_id=detail["registryId"],
            digest=detail["imageDigest"],
            pushed_at=detail["imagePushedAt"],
            size_bytes=detail.get("imageSizeInBytes") or 0,
            tags=tuple(detail.get("imageTags") or ()),
            artifact_media_type=artifact_media_type,
            manifest_media_type=manifest_media_type,
            artifact_class=ArtifactClass.classify(artifact_media_type, manifest_media_type),
        )

    @property
    def tagged(self) -> bool:
        return bool(self.tags)

    @property
    def display_name(self) -> str:
        if len(self.tags) > 1:
            return f"{self.repository_name}:{{{','.join(self.tags)}}}"
        if self.tags:
            return f"{self.repository_name}:{self.tags[0]}"
        return f"{self.repository_name}:<untagged>"
