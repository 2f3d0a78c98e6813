"""
Lambda scanner: images behind aliased versions and the most recent published
versions of matching container-image functions.
"""

import threading
from typing import Dict, List, Optional, Sequence, Tuple

from ecr_cleaner.config_manager import LambdaPolicy
from ecr_cleaner.errors import ProviderError, provider_errors
from ecr_cleaner.images import ImageReference, LiveImageTable
from ecr_cleaner.scanners.base import Scanner, run_bounded

LATEST_VERSION = "$LATEST"


def version_number(version: str) -> float:
    """Sort key for Lambda versions; $LATEST sorts above every published version."""
    if version == LATEST_VERSION:
        return float("inf")
    try:
        return int(version)
    except ValueError:
        raise ProviderError(f"Invalid Lambda version number: {version}", details={"version": version})


def select_live_versions(versions: Sequence[dict], aliases: Dict[str, List[str]], keep_count: int) -> List[dict]:
    """Pick the versions whose images must be kept.

    Every aliased version is live. Of the remaining versions, ordered newest
    first, the first keep_count are live as well.
    """
    ordered = sorted(versions, key=lambda v: version_number(v["Version"]), reverse=True)
    live = []
    kept = 0
    for v in ordered:
        if v["Version"] in aliases:
            live.append(v)
            continue
        kept += 1
        if kept <= keep_count:
            live.append(v)
    return live


class LambdaScanner(Scanner):
    name = "lambda"

    def __init__(self, lambda_client, functions: Sequence[LambdaPolicy], max_workers: int = 4,
                 cancel: Optional[threading.Event] = None, logger=None):
        super().__init__(max_workers=max_workers, cancel=cancel, logger=logger)
        self.client = lambda_client
        self.functions = tuple(functions)

    def scan(self) -> LiveImageTable:
        table = LiveImageTable()
        if not self.functions:
            self.logger.warning("lambda_functions are not defined. No Lambda functions will be scanned to find images in use.")
            return table
        for fn_table in run_bounded(self.scan_function, self.matching_functions(), self.max_workers, self.cancel):
            table.merge(fn_table)
        return table

    def matching_functions(self) -> List[Tuple[str, LambdaPolicy]]:
        matched = []
        for fn in self.paginate(self.client, "list_functions", "Functions"):
            if fn.get("PackageType") != "Image":
                continue
            name = fn["FunctionName"]
            policy = next((p for p in self.functions if p.matches(name)), None)
            if policy is not None:
                matched.append((name, policy))
        return matched

    def aliases(self, function_name: str) -> Dict[str, List[str]]:
        """Map version -> alias names, counting weighted routing targets too."""
        result: Dict[str, List[str]] = {}
        for alias in self.paginate(self.client, "list_aliases", "Aliases", FunctionName=function_name):
            result.setdefault(alias["FunctionVersion"], []).append(alias["Name"])
            weights = (alias.get("RoutingConfig") or {}).get("AdditionalVersionWeights") or {}
            for version in weights:
                result.setdefault(version, []).append(alias["Name"])
        return result

    def scan_function(self, item: Tuple[str, LambdaPolicy]) -> LiveImageTable:
        name, policy = item
        self.logger.debug(f"Checking Lambda function {name} latest {policy.keep_count} versions")
        aliases = self.aliases(name)
        versions = list(self.paginate(self.client, "list_versions_by_function", "Versions", FunctionName=name))
        table = LiveImageTable()
        for v in select_live_versions(versions, aliases, policy.keep_count):
            self._record_version(table, v["FunctionArn"], aliases.get(v["Version"], []))
        return table

    def _record_version(self, table: LiveImageTable, function_arn: str, alias_names: List[str]) -> None:
        self.check_cancelled("lambda:GetFunction")
        with provider_errors(f"lambda:GetFunction {function_arn}"):
            code = self.client.get_function(FunctionName=function_arn).get("Code", {})
        for key in ("ImageUri", "ResolvedImageUri"):
            uri = code.get(key)
            if not uri:
                continue
            ref = ImageReference(uri)
            if not ref.belongs_to_registry():
                self.logger.debug(f"Skipping non ECR image {ref}")
                continue
            if table.add(ref, function_arn):
                if alias_names:
                    self.logger.info(f"{ref} is in use by Lambda function {function_arn} aliases:{alias_names}")
                else:
                    self.logger.info(f"{ref} is in use by Lambda function {function_arn}")
