"""
Utility functions for report output.

This module provides functions to:
- Format byte counts for humans
- Open the output sink ("-" is stdout)
- Render the plan summary as a grid table or JSON
"""
import contextlib
import json
import sys
from typing import IO, Iterator

from tabulate import tabulate

from ecr_cleaner.summary import SummaryRow, SummaryTable

SUMMARY_HEADERS = ["repository", "type", "total", "expired", "keep"]
OUTPUT_FORMATS = ("table", "json")


def sizeof_fmt(num: float, suffix: str = "B") -> str:
    """Format bytes into human-readable size.

    Args:
        num: Number of bytes
        suffix: Suffix to append (default: "B")

    Returns:
        Formatted string like "1.5GiB", "500MiB", etc.
    """
    for unit in ("", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei", "Zi"):
        if abs(num) < 1024.0:
            return f"{num:3.1f}{unit}{suffix}"
        num /= 1024.0
    return f"{num:.1f}Yi{suffix}"


@contextlib.contextmanager
def open_output(path: str) -> Iterator[IO[str]]:
    """Yield a text stream for path; "-" or empty means stdout, which is left open."""
    if not path or path == "-":
        yield sys.stdout
        return
    with open(path, "w") as f:
        yield f


def summary_row(row: SummaryRow) -> list:
    expired = f"{-row.expired_count} ({sizeof_fmt(row.expired_bytes)})" if row.expired_count else ""
    return [
        row.repository,
        row.artifact_class.value,
        f"{row.total_count} ({sizeof_fmt(row.total_bytes)})",
        expired,
        f"{row.keep_count} ({sizeof_fmt(row.keep_bytes)})",
    ]


def format_summary_table(summary: SummaryTable) -> str:
    rows = [summary_row(r) for r in summary.printable_rows()]
    return tabulate(rows, headers=SUMMARY_HEADERS, tablefmt="grid")


def write_summary(summary: SummaryTable, stream: IO[str], fmt: str = "table") -> None:
    """Write the plan summary in the requested format."""
    if fmt == "json":
        json.dump(summary.to_list(), stream, indent=2)
        stream.write("\n")
    elif fmt == "table":
        stream.write(format_summary_table(summary) + "\n")
    else:
        raise ValueError(f"unknown output format: {fmt} (expected one of: {', '.join(OUTPUT_FORMATS)})")
