"""
The scan -> plan -> delete pipeline shared by every CLI command.
"""

import threading
from dataclasses import dataclass, field
from typing import List, Optional

from ecr_cleaner.aws_clients import AWSClientProvider
from ecr_cleaner.collector import LiveSetCollector
from ecr_cleaner.config_manager import ConfigManager
from ecr_cleaner.errors import ConfigurationError
from ecr_cleaner.executor import DeletionExecutor, DeletionResult
from ecr_cleaner.images import LiveImageTable
from ecr_cleaner.logging_utils import get_logger
from ecr_cleaner.planner import Plan, RetentionPlanner
from ecr_cleaner.report_utils import open_output, write_summary


@dataclass
class Options:
    scan_only: bool = False
    scan: bool = True
    delete: bool = False
    force: bool = False
    repository: Optional[str] = None
    output_file: str = "-"
    output_format: str = "table"
    scanned_files: List[str] = field(default_factory=list)

    def validate(self) -> None:
        if not self.scanned_files and not self.scan:
            raise ConfigurationError(
                "no --scanned-files and --no-scan provided. specify at least one",
                suggestions=["Drop --no-scan, or pass the output of a previous scan with --scanned-files"],
            )


@dataclass
class RunResult:
    live: LiveImageTable
    plan: Optional[Plan] = None
    deletions: List[DeletionResult] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(len(d.failures) for d in self.deletions)


class App:
    """Wires the collector, planner and executor together for one run"""

    def __init__(self, config: ConfigManager, clients: Optional[AWSClientProvider] = None,
                 cancel: Optional[threading.Event] = None, prompt=None, logger=None):
        self.config = config
        self.clients = clients or AWSClientProvider(region=config.get_region(), profile=config.get_profile())
        self.cancel = cancel or threading.Event()
        self.prompt = prompt
        self.logger = logger or get_logger(self.__class__.__name__)

    def run(self, opts: Options) -> RunResult:
        opts.validate()
        collector = LiveSetCollector(self.config, self.clients, cancel=self.cancel)
        live = collector.collect(scan=opts.scan, scanned_files=opts.scanned_files)
        result = RunResult(live=live)

        if opts.scan_only:
            self.logger.info(f"Saving {len(live)} scanned image references to {opts.output_file}")
            with open_output(opts.output_file) as out:
                live.save(out)
            return result

        self.logger.info("Finding expired images")
        planner = RetentionPlanner(self.clients.client("ecr"), self.clients.region, cancel=self.cancel)
        result.plan = planner.plan(self.config.get_repository_policies(), live, repository=opts.repository)

        self.logger.info(f"Output summary to {opts.output_file} as {opts.output_format}")
        with open_output(opts.output_file) as out:
            write_summary(result.plan.summary, out, opts.output_format)

        executor = DeletionExecutor(
            self.clients.client("ecr"),
            dry_run=not opts.delete,
            force=opts.force,
            prompt=self.prompt,
            cancel=self.cancel,
        )
        for repository, digests in result.plan.candidates().items():
            result.deletions.append(executor.execute(repository, digests))
        return result
