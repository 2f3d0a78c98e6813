"""
EKS scanner: images referenced by workloads in matching EKS clusters.

Pods are read from their container statuses so the pulled digest is
recorded, while ReplicaSets, ControllerRevisions and CronJobs contribute the
images of pod templates that can start new pods later (rollbacks, scale-ups,
scheduled runs).
"""

import json
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from ecr_cleaner.aws_clients import KubernetesClients
from ecr_cleaner.config_manager import EKSClusterPolicy
from ecr_cleaner.errors import DecodeError, provider_errors
from ecr_cleaner.images import ImageReference, LiveImageTable, UsageSet
from ecr_cleaner.scanners.base import Scanner, run_bounded

DEFAULT_PAGE_SIZE = 500
DOCKER_PULLABLE_PREFIX = "docker-pullable://"


def normalize_pod_image(image_id: Optional[str], image: Optional[str]) -> str:
    """Turn a container status into a ``base@sha256:...`` reference, or "" if it has no digest."""
    if not image_id:
        return ""
    cleaned = image_id[len(DOCKER_PULLABLE_PREFIX):] if image_id.startswith(DOCKER_PULLABLE_PREFIX) else image_id
    if "@sha256:" in cleaned:
        return cleaned
    if cleaned.startswith("sha256:") and image:
        return f"{ImageReference(image).base}@{cleaned}"
    return ""


def _template_images(pod_spec: Any) -> Iterator[str]:
    """Container then init-container images of a client model V1PodSpec."""
    if pod_spec is None:
        return
    for container in (pod_spec.containers or []) + (pod_spec.init_containers or []):
        if container.image:
            yield container.image


def _raw_template_images(workload: Dict[str, Any]) -> List[str]:
    """Images of the pod template embedded in a raw StatefulSet/DaemonSet object."""
    try:
        pod_spec = workload["spec"]["template"]["spec"]
        containers = (pod_spec.get("containers") or []) + (pod_spec.get("initContainers") or [])
        return [c["image"] for c in containers if c.get("image")]
    except (KeyError, TypeError, AttributeError) as e:
        raise DecodeError(f"pod template not found in revision data: {e}") from e


def decode_stateful_set(data: Dict[str, Any]) -> List[str]:
    return _raw_template_images(data)


def decode_daemon_set(data: Dict[str, Any]) -> List[str]:
    return _raw_template_images(data)


REVISION_DECODERS: Dict[str, Callable[[Dict[str, Any]], List[str]]] = {
    "StatefulSet": decode_stateful_set,
    "DaemonSet": decode_daemon_set,
}


def controller_revision_images(revision: Any) -> List[str]:
    """Decode the pod template images stored in a ControllerRevision.

    Raises:
        DecodeError: If the owner kind is not handled or the payload is malformed
    """
    owners = revision.metadata.owner_references or []
    owner_kind = next((o.kind for o in owners if o.kind in REVISION_DECODERS), None)
    if owner_kind is None:
        kinds = ", ".join(o.kind for o in owners) or "none"
        raise DecodeError(f"unsupported owner kind for ControllerRevision: {kinds}")

    data = revision.data
    if data is None:
        raise DecodeError("no data in ControllerRevision")
    if isinstance(data, (bytes, str)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise DecodeError(f"failed to decode {owner_kind} data: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError(f"failed to decode {owner_kind} data: unexpected type {type(data).__name__}")
    return REVISION_DECODERS[owner_kind](data)


class EKSScanner(Scanner):
    name = "eks"

    def __init__(self, eks_client, clusters: Sequence[EKSClusterPolicy],
                 kube_client_factory: Callable[[str], KubernetesClients], max_workers: int = 4,
                 page_size: int = DEFAULT_PAGE_SIZE, cancel: Optional[threading.Event] = None, logger=None):
        super().__init__(max_workers=max_workers, cancel=cancel, logger=logger)
        self.eks = eks_client
        self.clusters = tuple(clusters)
        self.kube_client_factory = kube_client_factory
        self.page_size = page_size

    def scan(self) -> LiveImageTable:
        table = LiveImageTable()
        if not self.clusters:
            self.logger.warning("eks_clusters are not defined. No EKS clusters will be scanned to find images in use.")
            return table
        matched = [
            name for name in self.paginate(self.eks, "list_clusters", "clusters")
            if any(p.matches(name) for p in self.clusters)
        ]
        for cluster_table in run_bounded(self.scan_cluster, matched, self.max_workers, self.cancel):
            table.merge(cluster_table)
        return table

    def scan_cluster(self, cluster_name: str) -> LiveImageTable:
        self.logger.debug(f"Scanning EKS cluster {cluster_name}")
        kube = self.kube_client_factory(cluster_name)
        table = LiveImageTable()
        self.scan_pods(table, kube, cluster_name)
        self.scan_replica_sets(table, kube, cluster_name)
        self.scan_controller_revisions(table, kube, cluster_name)
        self.scan_cron_jobs(table, kube, cluster_name)
        return table

    def list_all(self, list_fn: Callable, operation: str) -> Iterator[Any]:
        """Iterate a cluster-wide Kubernetes list call page by page."""
        token = None
        while True:
            self.check_cancelled(operation)
            with provider_errors(operation):
                resp = list_fn(limit=self.page_size, _continue=token)
            yield from resp.items or []
            token = resp.metadata._continue if resp.metadata else None
            if not token:
                return

    def _record(self, table: LiveImageTable, image: str, consumer: str, seen: UsageSet, detail: str) -> None:
        ref = ImageReference(image)
        if not ref.belongs_to_registry():
            return
        if seen.add(ref) and table.add(ref, consumer):
            self.logger.info(f"Image {ref} is used by {consumer} ({detail})")

    def scan_pods(self, table: LiveImageTable, kube: KubernetesClients, cluster_name: str) -> None:
        count = 0
        for pod in self.list_all(kube.core.list_pod_for_all_namespaces, f"k8s:ListPods {cluster_name}"):
            count += 1
            consumer = f"eks:{cluster_name}/pod/{pod.metadata.namespace}/{pod.metadata.name}"
            seen = UsageSet()
            status = pod.status
            statuses = []
            if status is not None:
                statuses = [("container", s) for s in status.container_statuses or []]
                statuses += [("initContainer", s) for s in status.init_container_statuses or []]
            for kind, cs in statuses:
                normalized = normalize_pod_image(cs.image_id, cs.image)
                if normalized:
                    self._record(table, normalized, consumer, seen, f"{kind}={cs.name}")
            for image in _template_images(pod.spec):
                self._record(table, image, consumer, seen, "pod spec")
        self.logger.debug(f"EKS cluster {cluster_name}: {count} pods")

    def scan_replica_sets(self, table: LiveImageTable, kube: KubernetesClients, cluster_name: str) -> None:
        for rs in self.list_all(kube.apps.list_replica_set_for_all_namespaces, f"k8s:ListReplicaSets {cluster_name}"):
            consumer = f"eks:{cluster_name}/replicaset/{rs.metadata.namespace}/{rs.metadata.name}"
            template = rs.spec.template if rs.spec else None
            seen = UsageSet()
            for image in _template_images(template.spec if template else None):
                self._record(table, image, consumer, seen, "pod template")

    def scan_controller_revisions(self, table: LiveImageTable, kube: KubernetesClients, cluster_name: str) -> None:
        for rev in self.list_all(kube.apps.list_controller_revision_for_all_namespaces,
                                 f"k8s:ListControllerRevisions {cluster_name}"):
            ns, name = rev.metadata.namespace, rev.metadata.name
            consumer = f"eks:{cluster_name}/controllerrevision/{ns}/{name}"
            try:
                images = controller_revision_images(rev)
            except DecodeError as e:
                self.logger.warning(f"Failed to extract images from ControllerRevision {ns}/{name}: {e.message}")
                continue
            seen = UsageSet()
            for image in images:
                self._record(table, image, consumer, seen, f"revision {rev.revision}")

    def scan_cron_jobs(self, table: LiveImageTable, kube: KubernetesClients, cluster_name: str) -> None:
        for cj in self.list_all(kube.batch.list_cron_job_for_all_namespaces, f"k8s:ListCronJobs {cluster_name}"):
            consumer = f"eks:{cluster_name}/cronjob/{cj.metadata.namespace}/{cj.metadata.name}"
            try:
                pod_spec = cj.spec.job_template.spec.template.spec
            except AttributeError:
                pod_spec = None
            seen = UsageSet()
            for image in _template_images(pod_spec):
                self._record(table, image, consumer, seen, "job template")
