"""
Live-Set Collector.

Runs every configured platform scan and merges the results into a single
LiveImageTable. Scans run concurrently; each one fills its own table and the
merge into the shared table happens under a lock. The first failing scan
cancels its siblings and the error propagates, so a partial live set is never
returned.
"""

import threading
from typing import Callable, List, Optional, Sequence

from ecr_cleaner.aws_clients import AWSClientProvider, KubernetesClients
from ecr_cleaner.config_manager import ConfigManager
from ecr_cleaner.images import LiveImageTable
from ecr_cleaner.logging_utils import get_logger
from ecr_cleaner.scanners import (
    ECSScanner,
    EKSScanner,
    ExternalCommandScanner,
    LambdaScanner,
    Scanner,
    load_reference_files,
    run_bounded,
)


class LiveSetCollector:
    """Determines which image references are currently in use"""

    def __init__(self, config: ConfigManager, clients: AWSClientProvider,
                 cancel: Optional[threading.Event] = None,
                 kube_client_factory: Optional[Callable[[str], KubernetesClients]] = None,
                 logger=None):
        self.config = config
        self.clients = clients
        self.cancel = cancel or threading.Event()
        self.kube_client_factory = kube_client_factory or clients.kubernetes_clients
        self.logger = logger or get_logger(self.__class__.__name__)
        self._lock = threading.Lock()

    def build_scanners(self) -> List[Scanner]:
        """One scanner per configured platform; platforms without configuration are skipped."""
        max_workers = self.config.get_max_workers()
        scanners: List[Scanner] = []

        clusters = self.config.get_cluster_policies()
        task_definitions = self.config.get_task_definition_policies()
        if clusters or task_definitions:
            scanners.append(ECSScanner(
                self.clients.client("ecs"), clusters, task_definitions,
                max_workers=max_workers, cancel=self.cancel,
            ))
        else:
            self.logger.warning("No ECS clusters or task definitions configured, skipping ECS scan")

        functions = self.config.get_lambda_policies()
        if functions:
            scanners.append(LambdaScanner(
                self.clients.client("lambda"), functions, max_workers=max_workers, cancel=self.cancel,
            ))
        else:
            self.logger.warning("No Lambda functions configured, skipping Lambda scan")

        eks_clusters = self.config.get_eks_cluster_policies()
        if eks_clusters:
            scanners.append(EKSScanner(
                self.clients.client("eks"), eks_clusters, self.kube_client_factory,
                max_workers=max_workers, cancel=self.cancel,
            ))
        else:
            self.logger.warning("No EKS clusters configured, skipping EKS scan")

        commands = self.config.get_external_commands()
        if commands:
            scanners.append(ExternalCommandScanner(commands, cancel=self.cancel))
        else:
            self.logger.debug("No external commands configured")
        return scanners

    def collect(self, scan: bool = True, scanned_files: Sequence[str] = ()) -> LiveImageTable:
        """Build the live table.

        Args:
            scan: Run the platform scans (otherwise only files are read)
            scanned_files: Prescan output files whose references are treated as live

        Returns:
            Every image reference in use, with the consumers using it
        """
        table = LiveImageTable()
        if scanned_files:
            self._merge(table, load_reference_files(scanned_files, log=self.logger))

        if scan:
            self.logger.info("Scanning resources")
            exclude_files = self.config.get_exclude_files()
            if exclude_files:
                self._merge(table, load_reference_files(exclude_files, log=self.logger))

            def run(scanner: Scanner) -> int:
                result = scanner.scan()
                self._merge(table, result)
                self.logger.info(f"{scanner.name} scan found {len(result)} image references")
                return len(result)

            scanners = self.build_scanners()
            run_bounded(run, scanners, max_workers=max(1, len(scanners)), cancel=self.cancel)

        self.logger.info(f"Total {len(table)} image references in use")
        return table

    def _merge(self, table: LiveImageTable, other: LiveImageTable) -> None:
        with self._lock:
            table.merge(other)
