"""
Deletion Executor.

Applies a repository's deletion candidates: nothing happens for an empty
list or in plan mode, otherwise the operator confirms (unless forced) and
digests are deleted in batches. Failures reported per item by ECR are logged
and returned to the caller.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ecr_cleaner.errors import UserAbort, check_cancelled, provider_errors
from ecr_cleaner.logging_utils import get_logger, notice
from ecr_cleaner.scanners.base import chunked

BATCH_DELETE_IMAGE_LIMIT = 100


def prompt_yes_no(question: str) -> bool:
    """Ask on the terminal until the answer is yes or no."""
    while True:
        response = input(f"{question} (yes/no): ").lower().strip()
        if response in ["yes", "y"]:
            return True
        elif response in ["no", "n"]:
            return False
        else:
            print("Please enter 'yes' or 'no'.")


@dataclass
class DeletionResult:
    repository: str
    requested: int = 0
    deleted: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class DeletionExecutor:
    """Deletes candidate digests from one repository at a time"""

    def __init__(self, ecr_client, dry_run: bool = True, force: bool = False,
                 prompt: Optional[Callable[[str], bool]] = None,
                 cancel: Optional[threading.Event] = None, logger=None):
        """Initialize executor

        Args:
            ecr_client: boto3 ECR client
            dry_run: Plan mode; only report what would be deleted
            force: Skip the confirmation prompt
            prompt: Yes/no question callback (defaults to an interactive terminal prompt)
            cancel: Cancellation event checked between batches
            logger: Logger to report on
        """
        self.ecr = ecr_client
        self.dry_run = dry_run
        self.force = force
        self.prompt = prompt or prompt_yes_no
        self.cancel = cancel or threading.Event()
        self.logger = logger or get_logger(self.__class__.__name__)

    def confirm_deletion(self, repository: str, count: int) -> bool:
        if self.force:
            self.logger.warning("⚠️  Force mode enabled - skipping confirmation prompt")
            return True

        print("\n" + "=" * 60)
        print("⚠️  WARNING: You are about to DELETE images from Amazon ECR!")
        print("=" * 60)
        print(f"This will delete {count} images from {repository}.")
        print("This action cannot be undone.")
        print("Make sure you have reviewed the plan output above.")
        print("=" * 60)
        return self.prompt(f"Do you delete {count} images on {repository}?")

    def execute(self, repository: str, digests: Sequence[str]) -> DeletionResult:
        """Delete digests from repository.

        Raises:
            UserAbort: If the operator declines the confirmation
            ProviderError: If a BatchDeleteImage call fails as a whole
        """
        result = DeletionResult(repository=repository, requested=len(digests))
        if not digests:
            self.logger.info(f"No need to delete images on {repository}")
            return result
        if self.dry_run:
            notice(self.logger, f"Expired {len(digests)} image(s) found on {repository}. Run delete command to delete them.")
            return result
        if not self.confirm_deletion(repository, len(digests)):
            raise UserAbort()

        for digest in digests:
            notice(self.logger, f"Deleting {repository} {digest}")
        try:
            for chunk in chunked(list(digests), BATCH_DELETE_IMAGE_LIMIT):
                check_cancelled(self.cancel, "ecr:BatchDeleteImage")
                with provider_errors(f"ecr:BatchDeleteImage {repository}"):
                    resp = self.ecr.batch_delete_image(
                        repositoryName=repository,
                        imageIds=[{"imageDigest": d} for d in chunk],
                    )
                result.deleted += len(resp.get("imageIds", []))
                for failure in resp.get("failures", []):
                    image_id = failure.get("imageId", {})
                    entry = {
                        "digest": image_id.get("imageDigest", ""),
                        "code": failure.get("failureCode", ""),
                        "reason": failure.get("failureReason", ""),
                    }
                    self.logger.error(
                        f"Failed to delete {repository}@{entry['digest']}: {entry['code']} {entry['reason']}"
                    )
                    result.failures.append(entry)
        finally:
            self.logger.info(f"Deleted {result.deleted} images on {repository}")
        return result
