#!/usr/bin/env python3
"""
Configuration Manager for the ECR cleaner

This module loads the YAML configuration, applies environment overrides,
validates it and turns every section into immutable policy objects. Relative
durations (``expires: 30d``) are resolved to absolute instants once, at
validation time, so every decision in a run uses the same cutoff.
"""

import fnmatch
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from ecr_cleaner.errors import ConfigurationError, create_config_error
from ecr_cleaner.logging_utils import get_logger

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_KEEP_COUNT = 5
DEFAULT_KEEP_TAG_PATTERNS = ("latest",)
DEFAULT_MAX_WORKERS = 4

_DURATION_UNITS = {
    "y": timedelta(days=365),
    "mo": timedelta(days=30),
    "w": timedelta(weeks=1),
    "d": timedelta(days=1),
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(mo|y|w|d|h|m|s)")
_UNITLESS = re.compile(r"[+-]?\d+(?:\.\d+)?")


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as ``30d``, ``1y``, ``6mo`` or ``1d12h``.

    Every number needs a unit; ``30`` on its own is rejected.

    Raises:
        ValueError: If the value is not a valid, positive duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        raise ValueError(f"duration {value!r} has no unit (did you mean '{value}d'?)")
    text = str(value).strip().lower()
    if not text:
        raise ValueError("duration is empty")
    if _UNITLESS.fullmatch(text):
        raise ValueError(f"duration {value!r} has no unit (did you mean '{text}d'?)")
    pos = 0
    total = timedelta()
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r} (examples: 30d, 12h, 1y, 6mo, 1d12h)")
    if total <= timedelta():
        raise ValueError(f"duration must be positive, got {value!r}")
    return total


def wildcard_match(pattern: str, value: str) -> bool:
    """Glob match supporting ``*`` and ``?``. An empty pattern matches nothing."""
    if not pattern:
        return False
    return fnmatch.fnmatchcase(value, pattern)


def cluster_arn_to_name(arn: str) -> str:
    """arn:aws:ecs:us-west-2:123456789012:cluster/prod -> prod"""
    if arn.startswith("arn:") and ":cluster/" in arn:
        return arn.split(":cluster/", 1)[1]
    return arn


@dataclass(frozen=True)
class NamedPolicy:
    """Selects resources by exact name or by glob pattern, never both."""
    name: str = ""
    name_pattern: str = ""

    def matches(self, value: str) -> bool:
        if self.name:
            return self.name == value
        return wildcard_match(self.name_pattern, value)

    @property
    def label(self) -> str:
        return self.name or self.name_pattern


@dataclass(frozen=True)
class ClusterPolicy(NamedPolicy):
    def matches(self, value: str) -> bool:
        return super().matches(cluster_arn_to_name(value))


@dataclass(frozen=True)
class TaskDefinitionPolicy(NamedPolicy):
    keep_count: int = DEFAULT_KEEP_COUNT


@dataclass(frozen=True)
class LambdaPolicy(NamedPolicy):
    keep_count: int = DEFAULT_KEEP_COUNT


@dataclass(frozen=True)
class EKSClusterPolicy(NamedPolicy):
    pass


@dataclass(frozen=True)
class ExternalCommand:
    command: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict)
    dir: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def label(self) -> str:
        return "external_command: " + " ".join(self.command)


@dataclass(frozen=True)
class RepositoryPolicy(NamedPolicy):
    expires: str = ""
    expire_before: Optional[datetime] = None
    keep_count: int = 0
    keep_tag_patterns: Tuple[str, ...] = DEFAULT_KEEP_TAG_PATTERNS

    def matches_tag(self, tag: str) -> bool:
        return any(wildcard_match(p, tag) for p in self.keep_tag_patterns)

    def is_expired(self, pushed_at: datetime) -> bool:
        return pushed_at < self.expire_before


def find_policy(policies: Iterable[NamedPolicy], name: str) -> Optional[NamedPolicy]:
    """Return the first policy whose name or pattern matches, or None."""
    return next((p for p in policies if p.matches(name)), None)


class ConfigManager:
    """Loads, validates and exposes the cleaner configuration"""

    def __init__(self, config_file: Optional[str] = None, now: Optional[datetime] = None, logger=None):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to ECR_CLEANER_CONFIG env var or config.yaml)
            now: Reference instant for resolving expiry durations (defaults to the current time)
            logger: Logger to report warnings on
        """
        if config_file is None:
            config_file = os.environ.get("ECR_CLEANER_CONFIG", DEFAULT_CONFIG_FILE)
        self.config_file = config_file
        self.config_dir = os.path.dirname(os.path.abspath(config_file))
        self.now = now or datetime.now(timezone.utc)
        self.logger = logger or get_logger(self.__class__.__name__)
        self.config = self._load_config()

        self._clusters: Tuple[ClusterPolicy, ...] = ()
        self._task_definitions: Tuple[TaskDefinitionPolicy, ...] = ()
        self._lambda_functions: Tuple[LambdaPolicy, ...] = ()
        self._eks_clusters: Tuple[EKSClusterPolicy, ...] = ()
        self._external_commands: Tuple[ExternalCommand, ...] = ()
        self._exclude_files: Tuple[str, ...] = ()
        self._repositories: Tuple[RepositoryPolicy, ...] = ()
        self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "aws": {"region": None, "profile": None},
            "scan": {"max_workers": DEFAULT_MAX_WORKERS},
            "output": {"format": "table", "file": "-"},
            "clusters": None,
            "task_definitions": None,
            "lambda_functions": None,
            "eks_clusters": None,
            "external_commands": None,
            "exclude_files": None,
            "repositories": None,
        }

        if not os.path.exists(self.config_file):
            raise ConfigurationError(
                f"Config file {self.config_file} not found",
                suggestions=[
                    "Pass --config with the path to your configuration file",
                    "Or set ECR_CLEANER_CONFIG",
                    "See config-example.yaml for a starting point",
                ],
            )
        try:
            with open(self.config_file, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing config file {self.config_file}: {e}") from e
        if not isinstance(user_config, dict):
            raise ConfigurationError(f"Config file {self.config_file} must contain a mapping at the top level")
        return self._merge_config(default_config, user_config)

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    # AWS configuration
    def get_region(self) -> Optional[str]:
        """Region priority: ECR_CLEANER_REGION -> aws.region -> AWS_REGION -> AWS_DEFAULT_REGION"""
        return (
            os.environ.get("ECR_CLEANER_REGION")
            or self.config["aws"].get("region")
            or os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
        )

    def get_profile(self) -> Optional[str]:
        return os.environ.get("ECR_CLEANER_PROFILE") or self.config["aws"].get("profile")

    # Scan configuration
    def get_max_workers(self) -> int:
        """Get max workers from env or config, with type coercion"""
        workers = os.environ.get("ECR_CLEANER_MAX_WORKERS") or self.config["scan"].get("max_workers")
        try:
            return int(workers)
        except (ValueError, TypeError):
            raise create_config_error("scan.max_workers", workers, f"must be an integer, got {type(workers).__name__}")

    # Output configuration
    def get_output_format(self) -> str:
        return self.config["output"].get("format") or "table"

    def get_output_file(self) -> str:
        return self.config["output"].get("file") or "-"

    # Policies
    def get_cluster_policies(self) -> Tuple[ClusterPolicy, ...]:
        return self._clusters

    def get_task_definition_policies(self) -> Tuple[TaskDefinitionPolicy, ...]:
        return self._task_definitions

    def get_lambda_policies(self) -> Tuple[LambdaPolicy, ...]:
        return self._lambda_functions

    def get_eks_cluster_policies(self) -> Tuple[EKSClusterPolicy, ...]:
        return self._eks_clusters

    def get_external_commands(self) -> Tuple[ExternalCommand, ...]:
        return self._external_commands

    def get_exclude_files(self) -> Tuple[str, ...]:
        return self._exclude_files

    def get_repository_policies(self) -> Tuple[RepositoryPolicy, ...]:
        return self._repositories

    def find_repository_policy(self, repository_name: str) -> Optional[RepositoryPolicy]:
        """Return the first repository policy matching the name, or None."""
        return find_policy(self._repositories, repository_name)

    def validate_config(self) -> None:
        """Validate configuration values and build the policy objects

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors: List[str] = []
        warnings: List[str] = []

        max_workers = None
        try:
            max_workers = self.get_max_workers()
        except ConfigurationError as e:
            errors.append(e.message)
        if max_workers is not None:
            if max_workers < 1:
                errors.append(f"scan.max_workers must be a positive integer, got: {max_workers}")
            elif max_workers > 64:
                warnings.append(f"scan.max_workers is very high ({max_workers}), API throttling is likely")

        if self.get_output_format() not in ("table", "json"):
            errors.append(f"output.format must be 'table' or 'json', got: {self.get_output_format()}")

        self._clusters = tuple(self._build_named("clusters", ClusterPolicy, errors, warnings))
        self._task_definitions = tuple(self._build_named("task_definitions", TaskDefinitionPolicy, errors, warnings, with_keep_count=True))
        self._lambda_functions = tuple(self._build_named("lambda_functions", LambdaPolicy, errors, warnings, with_keep_count=True))
        self._eks_clusters = tuple(self._build_named("eks_clusters", EKSClusterPolicy, errors, warnings))
        self._external_commands = tuple(self._build_external_commands(errors))
        self._exclude_files = tuple(self._build_exclude_files(errors))
        self._repositories = tuple(self._build_repositories(errors, warnings))

        for warning in warnings:
            self.logger.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            self.logger.error(error_msg)
            raise ConfigurationError(
                error_msg,
                suggestions=["See config-example.yaml for the expected format"],
                details={"config_file": self.config_file},
            )

    def _section(self, key: str, errors: List[str]) -> List[Dict[str, Any]]:
        entries = self.config.get(key)
        if entries is None:
            return []
        if not isinstance(entries, list):
            errors.append(f"{key} must be a list")
            return []
        result = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                errors.append(f"{key}[{i}] must be a mapping")
                continue
            result.append(entry)
        return result

    def _check_name(self, where: str, entry: Dict[str, Any], errors: List[str]) -> bool:
        name = entry.get("name") or ""
        pattern = entry.get("name_pattern") or ""
        if name and pattern:
            errors.append(f"{where}: name and name_pattern are exclusive")
            return False
        if not name and not pattern:
            errors.append(f"{where}: name or name_pattern is required")
            return False
        return True

    def _keep_count(self, where: str, entry: Dict[str, Any], default: Optional[int],
                    errors: List[str], warnings: List[str]) -> Optional[int]:
        value = entry.get("keep_count")
        if value is None or value == 0:
            if default is None:
                return 0
            warnings.append(
                f"keep_count for {where} {entry.get('name') or entry.get('name_pattern')} is not defined. "
                f"Using default keep_count={default}"
            )
            return default
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors.append(f"{where}: keep_count must be a non-negative integer, got: {value!r}")
            return None
        return value

    def _build_named(self, key: str, policy_cls, errors: List[str], warnings: List[str],
                     with_keep_count: bool = False) -> List[NamedPolicy]:
        policies = []
        for i, entry in enumerate(self._section(key, errors)):
            where = f"{key}[{i}]"
            if not self._check_name(where, entry, errors):
                continue
            kwargs: Dict[str, Any] = {"name": entry.get("name") or "", "name_pattern": entry.get("name_pattern") or ""}
            if with_keep_count:
                keep_count = self._keep_count(key, entry, DEFAULT_KEEP_COUNT, errors, warnings)
                if keep_count is None:
                    continue
                kwargs["keep_count"] = keep_count
            policies.append(policy_cls(**kwargs))
        return policies

    def _build_external_commands(self, errors: List[str]) -> List[ExternalCommand]:
        commands = []
        for i, entry in enumerate(self._section("external_commands", errors)):
            where = f"external_commands[{i}]"
            command = entry.get("command")
            if not isinstance(command, list) or not command or not all(isinstance(c, str) for c in command):
                errors.append(f"{where}: command must be a non-empty list of strings")
                continue
            env = entry.get("env") or {}
            if not isinstance(env, dict):
                errors.append(f"{where}: env must be a mapping")
                continue
            work_dir = entry.get("dir")
            if work_dir and not os.path.isabs(work_dir):
                work_dir = os.path.join(self.config_dir, work_dir)
            timeout = None
            if entry.get("timeout") is not None:
                try:
                    timeout = parse_duration(entry["timeout"]).total_seconds()
                except ValueError as e:
                    errors.append(f"{where}: timeout: {e}")
                    continue
            commands.append(ExternalCommand(
                command=tuple(command),
                env={str(k): str(v) for k, v in env.items()},
                dir=work_dir or None,
                timeout=timeout,
            ))
        return commands

    def _build_exclude_files(self, errors: List[str]) -> List[str]:
        files = self.config.get("exclude_files") or []
        if not isinstance(files, list):
            errors.append("exclude_files must be a list")
            return []
        resolved = []
        for path in files:
            path = str(path)
            if not os.path.isabs(path):
                path = os.path.join(self.config_dir, path)
            if not os.path.isfile(path):
                errors.append(f"exclude_files: {path}: file not found")
                continue
            resolved.append(path)
        return resolved

    def _build_repositories(self, errors: List[str], warnings: List[str]) -> List[RepositoryPolicy]:
        policies = []
        for i, entry in enumerate(self._section("repositories", errors)):
            where = f"repositories[{i}]"
            if not self._check_name(where, entry, errors):
                continue
            label = entry.get("name") or entry.get("name_pattern")
            expires = entry.get("expires")
            if expires is None or expires == "":
                errors.append(f"repository {label}: expires is required")
                continue
            try:
                expire_before = self.now - parse_duration(expires)
            except ValueError as e:
                errors.append(f"repository {label}: expires: {e}")
                continue
            keep_count = self._keep_count(where, entry, None, errors, warnings)
            if keep_count is None:
                continue
            patterns = entry.get("keep_tag_patterns")
            if not patterns:
                warnings.append(
                    f"keep_tag_patterns for repository {label} are not defined. "
                    f"Using default keep_tag_patterns={list(DEFAULT_KEEP_TAG_PATTERNS)}"
                )
                patterns = DEFAULT_KEEP_TAG_PATTERNS
            elif not isinstance(patterns, list):
                errors.append(f"{where}: keep_tag_patterns must be a list")
                continue
            policies.append(RepositoryPolicy(
                name=entry.get("name") or "",
                name_pattern=entry.get("name_pattern") or "",
                expires=str(expires),
                expire_before=expire_before,
                keep_count=keep_count,
                keep_tag_patterns=tuple(str(p) for p in patterns),
            ))
        return policies

    def print_config(self):
        """Print current configuration"""
        print("Current Configuration:")
        print(f"  Config File: {self.config_file}")
        print(f"  AWS Region: {self.get_region() or 'SDK default'}")
        print(f"  AWS Profile: {self.get_profile() or 'SDK default'}")
        print(f"  Max Workers: {self.get_max_workers()}")
        print(f"  ECS Clusters: {', '.join(p.label for p in self._clusters) or 'Not configured'}")
        print(f"  Task Definitions: {', '.join(p.label for p in self._task_definitions) or 'Not configured'}")
        print(f"  Lambda Functions: {', '.join(p.label for p in self._lambda_functions) or 'Not configured'}")
        print(f"  EKS Clusters: {', '.join(p.label for p in self._eks_clusters) or 'Not configured'}")
        print(f"  External Commands: {len(self._external_commands)}")
        print(f"  Exclude Files: {', '.join(self._exclude_files) or 'None'}")
        print("  Repositories:")
        for policy in self._repositories:
            print(
                f"    {policy.label}: expires={policy.expires} (before {policy.expire_before:%Y-%m-%d %H:%M:%S %Z}) "
                f"keep_count={policy.keep_count} keep_tag_patterns={list(policy.keep_tag_patterns)}"
            )
