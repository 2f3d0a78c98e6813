"""
Shared plumbing for the live-set scanners: pagination with cancellation
checks, chunking for batch APIs and a bounded fan-out helper.
"""

import concurrent.futures
import threading
from typing import Any, Callable, Iterator, List, Optional, Sequence, TypeVar

from ecr_cleaner.errors import check_cancelled, provider_errors
from ecr_cleaner.images import LiveImageTable
from ecr_cleaner.logging_utils import get_logger

T = TypeVar("T")
R = TypeVar("R")


def paginate(client, operation: str, result_key: str, cancel: Optional[threading.Event] = None,
             **kwargs) -> Iterator[Any]:
    """Yield every item under result_key across all pages of a boto3 operation.

    Cancellation is checked before each page is requested, and SDK errors are
    raised as ProviderError naming the operation.
    """
    pages = iter(client.get_paginator(operation).paginate(**kwargs))
    while True:
        check_cancelled(cancel, operation)
        with provider_errors(operation):
            page = next(pages, None)
        if page is None:
            return
        yield from page.get(result_key) or []


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def run_bounded(fn: Callable[[T], R], items: Sequence[T], max_workers: int,
                cancel: Optional[threading.Event] = None) -> List[R]:
    """Run fn over items on at most max_workers threads.

    Results come back in input order. The first failure sets the cancel event
    so sibling work stops at its next check, and is then re-raised.
    """
    items = list(items)
    if not items:
        return []
    results: List[Any] = [None] * len(items)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as executor:
        future_to_index = {executor.submit(fn, item): i for i, item in enumerate(items)}
        try:
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        except BaseException:
            if cancel is not None:
                cancel.set()
            for future in future_to_index:
                future.cancel()
            raise
    return results


class Scanner:
    """Base class for one platform scan; scan() returns a fresh LiveImageTable."""

    name = "scanner"

    def __init__(self, max_workers: int = 4, cancel: Optional[threading.Event] = None, logger=None):
        self.max_workers = max_workers
        self.cancel = cancel or threading.Event()
        self.logger = logger or get_logger(self.__class__.__name__)

    def scan(self) -> LiveImageTable:
        raise NotImplementedError

    def paginate(self, client, operation: str, result_key: str, **kwargs) -> Iterator[Any]:
        return paginate(client, operation, result_key, cancel=self.cancel, **kwargs)

    def check_cancelled(self, operation: str = "") -> None:
        check_cancelled(self.cancel, operation)
