"""
Retention Planner.

For each repository with a matching policy the planner lists every artifact,
then decides deletion candidates in three phases:

1. Container images, newest first: kept when live (by digest or tag), when a
   tag matches a keep pattern, when pushed after the cutoff, or while within
   the keep_count buffer of expired tagged images. The rest are candidates,
   and the ``sha256-<hex>`` tag derived from each candidate digest becomes a
   cascade key when some artifact carries it.
2. Image indexes tagged with a cascade key are candidates.
3. Attached (SOCI) indexes referenced from the manifests of the cascade keys
   are candidates.

Nothing is deleted here; the result is a plan per repository plus a summary.
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ecr_cleaner.artifacts import (
    DOCKER_MANIFEST_SCHEMA1,
    DOCKER_MANIFEST_SCHEMA2,
    OCI_IMAGE_INDEX,
    OCI_MANIFEST_SCHEMA1,
    SOCI_INDEX_MEDIA_TYPE,
    ArtifactClass,
    ArtifactDetail,
    cascade_tag,
)
from ecr_cleaner.config_manager import RepositoryPolicy, find_policy
from ecr_cleaner.errors import DecodeError, check_cancelled, provider_errors
from ecr_cleaner.images import LiveImageTable, UsageSet, registry_reference
from ecr_cleaner.logging_utils import get_logger, notice
from ecr_cleaner.scanners.base import chunked, paginate
from ecr_cleaner.summary import RepositorySummary, SummaryTable

BATCH_GET_IMAGE_LIMIT = 100
ACCEPTED_MANIFEST_TYPES = [OCI_IMAGE_INDEX, OCI_MANIFEST_SCHEMA1, DOCKER_MANIFEST_SCHEMA1, DOCKER_MANIFEST_SCHEMA2]


@dataclass
class RepositoryPlan:
    repository: str
    candidates: List[ArtifactDetail] = field(default_factory=list)
    summary: Optional[RepositorySummary] = None

    @property
    def digests(self) -> List[str]:
        return [a.digest for a in self.candidates]


@dataclass
class Plan:
    repositories: List[RepositoryPlan] = field(default_factory=list)
    summary: SummaryTable = field(default_factory=SummaryTable)

    def candidates(self) -> Dict[str, List[str]]:
        """Repository name -> candidate digests, in repository order."""
        return {p.repository: p.digests for p in sorted(self.repositories, key=lambda p: p.repository)}

    @property
    def candidate_count(self) -> int:
        return sum(len(p.candidates) for p in self.repositories)


def decode_attached_digests(manifest: str) -> List[str]:
    """Digests of the SOCI index entries listed in an image index manifest.

    Raises:
        DecodeError: If the manifest is not a JSON image index
    """
    try:
        index = json.loads(manifest)
    except ValueError as e:
        raise DecodeError(f"failed to parse manifest: {e}") from e
    if not isinstance(index, dict):
        raise DecodeError("manifest is not an image index")
    manifests = index.get("manifests") or []
    if not isinstance(manifests, list):
        raise DecodeError("manifest is not an image index")
    digests = []
    for entry in manifests:
        if isinstance(entry, dict) and entry.get("artifactType") == SOCI_INDEX_MEDIA_TYPE and entry.get("digest"):
            digests.append(entry["digest"])
    return digests


class RetentionPlanner:
    """Applies repository policies to ECR artifacts against the live set"""

    def __init__(self, ecr_client, region: str, cancel: Optional[threading.Event] = None, logger=None):
        self.ecr = ecr_client
        self.region = region
        self.cancel = cancel or threading.Event()
        self.logger = logger or get_logger(self.__class__.__name__)

    def plan(self, policies: Sequence[RepositoryPolicy], live: LiveImageTable,
             repository: Optional[str] = None) -> Plan:
        """Plan every repository that a policy matches.

        Args:
            policies: Repository policies, first match wins
            live: Image references in use
            repository: Restrict planning to this repository
        """
        plan = Plan()
        kwargs = {"repositoryNames": [repository]} if repository else {}
        for repo in paginate(self.ecr, "describe_repositories", "repositories", cancel=self.cancel, **kwargs):
            name = repo["repositoryName"]
            policy = find_policy(policies, name)
            if policy is None:
                self.logger.debug(f"Repository {name} does not match any policy, skipping")
                continue
            repo_plan = self.plan_repository(name, policy, live)
            plan.repositories.append(repo_plan)
            plan.summary.extend(repo_plan.summary)
        return plan

    def list_artifacts(self, repository: str) -> Tuple[Dict[ArtifactClass, List[ArtifactDetail]], Set[str]]:
        """Classify every artifact in the repository and index all of their tags.

        Returns:
            Artifacts grouped by class (each group newest first), and the set of tags in use
        """
        groups: Dict[ArtifactClass, List[ArtifactDetail]] = {cls: [] for cls in ArtifactClass}
        tag_index: Set[str] = set()
        for detail in paginate(self.ecr, "describe_images", "imageDetails", cancel=self.cancel,
                               repositoryName=repository):
            artifact = ArtifactDetail.from_image_detail(detail)
            groups[artifact.artifact_class].append(artifact)
            tag_index.update(artifact.tags)
        for cls in groups:
            groups[cls].sort(key=lambda a: a.pushed_at, reverse=True)
        return groups, tag_index

    def plan_repository(self, repository: str, policy: RepositoryPolicy, live: LiveImageTable) -> RepositoryPlan:
        summary = RepositorySummary(repository, logger=self.logger)
        groups, tag_index = self.list_artifacts(repository)
        images = groups[ArtifactClass.CONTAINER_IMAGE]
        indexes = groups[ArtifactClass.IMAGE_INDEX]
        attached = groups[ArtifactClass.ATTACHED_INDEX]
        self.logger.info(
            f"{repository} has {len(images)} images, {len(indexes)} image indexes, {len(attached)} soci indexes"
        )
        for artifact in groups[ArtifactClass.UNKNOWN]:
            summary.add(artifact)

        expired_images, cascade_keys = self.select_expired_images(images, policy, live, tag_index)
        expired_indexes = self.select_expired_indexes(indexes, cascade_keys)
        attached_digests = self.find_attached_digests(repository, cascade_keys.members())
        expired_attached = self.select_expired_attached(attached, attached_digests)

        candidates = expired_images + expired_indexes + expired_attached
        expired = {a.digest for a in candidates}
        for artifact in images + indexes + attached:
            summary.add(artifact)
            if artifact.digest in expired:
                summary.expire(artifact)
        return RepositoryPlan(repository=repository, candidates=candidates, summary=summary)

    def _is_live(self, artifact: ArtifactDetail, live: LiveImageTable) -> bool:
        ref = registry_reference(artifact.registry_id, self.region, artifact.repository_name, digest=artifact.digest)
        self.logger.debug(f"checking {ref}")
        if live.contains(ref):
            self.logger.info(f"{artifact.repository_name}@{artifact.digest} is in use, keep it")
            return True
        return False

    def _is_kept_by_tag(self, artifact: ArtifactDetail, policy: RepositoryPolicy, live: LiveImageTable) -> bool:
        for tag in artifact.tags:
            if policy.matches_tag(tag):
                self.logger.info(f"image {artifact.repository_name}:{tag} is matched by tag condition, keep it")
                return True
            ref = registry_reference(artifact.registry_id, self.region, artifact.repository_name, tag=tag)
            self.logger.debug(f"checking {ref}")
            if live.contains(ref):
                self.logger.info(f"image {artifact.repository_name}:{tag} is in use, keep it")
                return True
        return False

    def select_expired_images(self, images: Sequence[ArtifactDetail], policy: RepositoryPolicy,
                              live: LiveImageTable, tag_index: Iterable[str]) -> Tuple[List[ArtifactDetail], UsageSet]:
        """Container-image phase.

        Args:
            images: Container images sorted newest first
            policy: Repository policy
            live: Image references in use
            tag_index: Every tag present in the repository

        Returns:
            Candidate images, and the cascade keys of candidates whose index exists
        """
        tag_index = set(tag_index)
        candidates: List[ArtifactDetail] = []
        cascade_keys = UsageSet()
        kept_by_count = 0
        for image in images:
            check_cancelled(self.cancel, "planning")
            if self._is_live(image, live):
                continue
            if self._is_kept_by_tag(image, policy, live):
                continue
            if not policy.is_expired(image.pushed_at):
                self.logger.info(f"image {image.display_name} is not expired, keep it")
                continue
            if image.tagged:
                kept_by_count += 1
                if kept_by_count <= policy.keep_count:
                    self.logger.info(
                        f"image {image.display_name} is in keep_count {kept_by_count} <= {policy.keep_count}, keep it"
                    )
                    continue

            notice(self.logger, f"image {image.display_name} is expired {image.digest} {image.pushed_at.isoformat()}")
            candidates.append(image)
            key = cascade_tag(image.digest)
            if key in tag_index:
                cascade_keys.add(key)
        return candidates, cascade_keys

    def select_expired_indexes(self, indexes: Sequence[ArtifactDetail], cascade_keys: UsageSet) -> List[ArtifactDetail]:
        """Image-index phase: indexes tagged with a cascade key."""
        candidates = []
        for index in indexes:
            self.logger.debug(f"is an image index {index.digest}")
            tag = next((t for t in index.tags if t in cascade_keys), None)
            if tag is not None:
                notice(self.logger, f"{index.repository_name}:{tag} is expired (image index)")
                candidates.append(index)
        return candidates

    def find_attached_digests(self, repository: str, cascade_keys: Sequence[str]) -> Set[str]:
        """Fetch the index manifests behind the cascade keys and collect SOCI index digests.

        Malformed manifests are logged and skipped.
        """
        digests: Set[str] = set()
        for chunk in chunked(list(cascade_keys), BATCH_GET_IMAGE_LIMIT):
            check_cancelled(self.cancel, "ecr:BatchGetImage")
            with provider_errors(f"ecr:BatchGetImage {repository}"):
                resp = self.ecr.batch_get_image(
                    repositoryName=repository,
                    imageIds=[{"imageTag": tag} for tag in chunk],
                    acceptedMediaTypes=ACCEPTED_MANIFEST_TYPES,
                )
            for image in resp.get("images", []):
                manifest = image.get("imageManifest")
                if not manifest:
                    continue
                try:
                    digests.update(decode_attached_digests(manifest))
                except DecodeError as e:
                    self.logger.warning(f"{e.message}: {repository} {image.get('imageId')}")
        return digests

    def select_expired_attached(self, attached: Sequence[ArtifactDetail], digests: Set[str]) -> List[ArtifactDetail]:
        """Attached-index phase: SOCI indexes found under an expired image's index."""
        candidates = []
        for index in attached:
            self.logger.debug(f"is soci index {index.digest}")
            if index.digest in digests:
                notice(self.logger, f"{index.repository_name}@{index.digest} is expired (soci index)")
                candidates.append(index)
        return candidates
