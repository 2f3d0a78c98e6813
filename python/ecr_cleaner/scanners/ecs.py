"""
ECS scanner: images used by tasks and services in matching clusters, and by
the most recent revisions of matching task-definition families.
"""

import threading
from typing import List, Optional, Sequence, Tuple

from ecr_cleaner.config_manager import ClusterPolicy, TaskDefinitionPolicy, cluster_arn_to_name
from ecr_cleaner.errors import ProviderError, provider_errors
from ecr_cleaner.images import ImageReference, LiveImageTable, UsageSet
from ecr_cleaner.scanners.base import Scanner, chunked, run_bounded

DESCRIBE_TASKS_LIMIT = 100
DESCRIBE_SERVICES_LIMIT = 10
LIST_TASK_DEFINITIONS_LIMIT = 100


def parse_task_definition_arn(arn: str) -> str:
    """arn:aws:ecs:<region>:<account>:task-definition/app:12 -> app:12"""
    resource = arn.split(":task-definition/", 1)[-1] if arn.startswith("arn:") else arn
    family, sep, revision = resource.rpartition(":")
    if not sep or not family or not revision.isdigit():
        raise ProviderError(f"Unexpected task definition identifier: {arn}", details={"task_definition": arn})
    return resource


class ECSScanner(Scanner):
    """Collects task definitions from clusters and families, then the images they declare."""

    name = "ecs"

    def __init__(self, ecs_client, clusters: Sequence[ClusterPolicy] = (),
                 task_definitions: Sequence[TaskDefinitionPolicy] = (), max_workers: int = 4,
                 cancel: Optional[threading.Event] = None, logger=None):
        super().__init__(max_workers=max_workers, cancel=cancel, logger=logger)
        self.ecs = ecs_client
        self.clusters = tuple(clusters)
        self.task_definitions = tuple(task_definitions)

    def scan(self) -> LiveImageTable:
        table = LiveImageTable()
        task_definitions = UsageSet()

        if self.clusters:
            for cluster_table, tds in run_bounded(self.scan_cluster, self.matching_clusters(),
                                                  self.max_workers, self.cancel):
                table.merge(cluster_table)
                for td in tds:
                    task_definitions.add(td)
        else:
            self.logger.warning("clusters are not defined. No ECS clusters will be scanned to find images in use.")

        if self.task_definitions:
            for td in self.recent_task_definitions():
                task_definitions.add(td)
        else:
            self.logger.warning(
                "task_definitions are not defined. No task definitions will be scanned to find images in use."
            )

        for td_table in run_bounded(self.task_definition_images, task_definitions.members(),
                                    self.max_workers, self.cancel):
            table.merge(td_table)
        return table

    def matching_clusters(self) -> List[str]:
        matched = []
        for arn in self.paginate(self.ecs, "list_clusters", "clusterArns"):
            if any(p.matches(arn) for p in self.clusters):
                matched.append(arn)
            else:
                self.logger.debug(f"Cluster {cluster_arn_to_name(arn)} does not match any policy")
        return matched

    def scan_cluster(self, cluster_arn: str) -> Tuple[LiveImageTable, List[str]]:
        """Scan running/stopped tasks and service deployments of one cluster.

        Returns:
            Images recorded by digest, and the task definitions ("family:revision") in use
        """
        cluster_name = cluster_arn_to_name(cluster_arn)
        table = LiveImageTable()
        task_definitions = UsageSet()
        self.logger.debug(f"Checking tasks in {cluster_name}")

        task_arns: List[str] = []
        for status in ("RUNNING", "STOPPED"):
            task_arns.extend(self.paginate(self.ecs, "list_tasks", "taskArns", cluster=cluster_arn, desiredStatus=status))

        for chunk in chunked(task_arns, DESCRIBE_TASKS_LIMIT):
            self.check_cancelled("ecs:DescribeTasks")
            with provider_errors("ecs:DescribeTasks"):
                tasks = self.ecs.describe_tasks(cluster=cluster_arn, tasks=chunk).get("tasks", [])
            for task in tasks:
                td = parse_task_definition_arn(task["taskDefinitionArn"])
                task_id = task.get("taskArn", "").split("/")[-1]
                if task_definitions.add(td):
                    self.logger.info(f"Task definition {td} is used by task {task_id} on {cluster_name}")
                for container in task.get("containers", []):
                    self._record_task_container(table, container, td, task_id)

        service_arns = list(self.paginate(self.ecs, "list_services", "serviceArns", cluster=cluster_arn))
        for chunk in chunked(service_arns, DESCRIBE_SERVICES_LIMIT):
            self.check_cancelled("ecs:DescribeServices")
            with provider_errors("ecs:DescribeServices"):
                services = self.ecs.describe_services(cluster=cluster_arn, services=chunk).get("services", [])
            for service in services:
                self.logger.debug(f"Checking service {service.get('serviceName')}")
                for deployment in service.get("deployments", []):
                    td = parse_task_definition_arn(deployment["taskDefinition"])
                    if task_definitions.add(td):
                        self.logger.info(
                            f"Task definition {td} is used by {deployment.get('status')} deployment "
                            f"on service {service.get('serviceName')}/{cluster_name}"
                        )
        return table, task_definitions.members()

    def _record_task_container(self, table: LiveImageTable, container: dict, td: str, task_id: str) -> None:
        image = container.get("image")
        if not image:
            return
        ref = ImageReference(image)
        if not ref.belongs_to_registry():
            return
        if not ref.is_digest:
            digest = container.get("imageDigest")
            if not digest:
                return
            ref = ref.with_digest(digest)
        if table.add(ref, td):
            self.logger.info(f"Image {ref} is used by {container.get('name')} container on task {task_id}")

    def recent_task_definitions(self) -> List[str]:
        """The newest keep_count revisions of every matching family."""
        result = []
        for family in self.paginate(self.ecs, "list_task_definition_families", "families"):
            policy = next((p for p in self.task_definitions if p.matches(family)), None)
            if policy is None:
                continue
            self.logger.debug(f"Checking task definitions {family} latest {policy.keep_count} revisions")
            kept = 0
            # familyPrefix also returns longer family names sharing the prefix
            for arn in self.paginate(self.ecs, "list_task_definitions", "taskDefinitionArns",
                                     familyPrefix=family, sort="DESC",
                                     PaginationConfig={"PageSize": min(policy.keep_count, LIST_TASK_DEFINITIONS_LIMIT)}):
                td = parse_task_definition_arn(arn)
                if td.rpartition(":")[0] != family:
                    continue
                result.append(td)
                kept += 1
                if kept >= policy.keep_count:
                    break
        return result

    def task_definition_images(self, td: str) -> LiveImageTable:
        """Record the registry-hosted images a task definition declares."""
        self.check_cancelled("ecs:DescribeTaskDefinition")
        table = LiveImageTable()
        with provider_errors(f"ecs:DescribeTaskDefinition {td}"):
            definition = self.ecs.describe_task_definition(taskDefinition=td)["taskDefinition"]
        for container in definition.get("containerDefinitions", []):
            ref = ImageReference(container.get("image", ""))
            if not ref.belongs_to_registry():
                self.logger.debug(f"Skipping non ECR image {ref}")
                continue
            if table.add(ref, td):
                self.logger.info(f"Image {ref} is in use by task definition {td}")
        return table
