#!/usr/bin/env python3
"""
pytopdirs - Largest Directories Finder.

Walks a directory tree with a bounded number of in-flight filesystem requests,
computes the cumulative size of every subdirectory and reports the N largest
directories whose total meets a minimum size. Well-known system files and
directories (page files, recycle bins, ...) are skipped by default.
"""

import argparse
import asyncio
import json
import logging
import math
import os
import sys
import time
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, Protocol, TypeVar

import aiofiles.os

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CONCURRENT = 20
MIN_SIZE_THRESHOLD = 512 * 1024**2
DEFAULT_TOP = 10
RESULTS_FILE = "results.txt"
ERROR_LOG = "error.log"

IGNORED_FILES = frozenset(
    {
        "pagefile.sys",
        "hiberfil.sys",
        "swapfile.sys",
        "dumpstack.log.tmp",
        "memory.dmp",
    }
)

IGNORED_DIRS = frozenset(
    {
        "perflogs",
        "recovery",
        "system volume information",
        "$recycle.bin",
        "program files",
        "program files (x86)",
    }
)


class NodeType(Enum):
    """Enumeration of filesystem entry types."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"


class ColorFormatter(logging.Formatter):
    """
    Custom logging formatter that adds ANSI color codes to log messages.

    This formatter applies color coding based on log levels for better
    readability in terminal output.
    """

    COLORS = {
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record with colors.

        Args:
            record (logging.LogRecord):
                The log record to format.

        Returns:
            str:
                The formatted log message with ANSI color codes.

        """
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            message = f"{color}{message}{self.RESET}"
        return message


class IsoFormatter(logging.Formatter):
    """Formatter stamping records with an ISO-8601 UTC time, e.g. 2024-05-01T10:00:00.000Z."""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ErrorSink(Protocol):
    """Receives one message per failure encountered during a scan."""

    def record(self, message: str) -> None:
        ...


class LogErrorSink:
    """
    Append-only error log backed by a dedicated logger.

    Each failure becomes one line of the form ``[<ISO-8601 time>] <message>``.
    The file is opened lazily, so a scan without failures never creates it.

    Args:
        path (str):
            Path of the error log file.

    """

    def __init__(self, path: str = ERROR_LOG) -> None:
        self.path = path
        self.count = 0
        self._logger = logging.getLogger(f"{__name__}.errors")
        self._logger.propagate = False
        self._logger.setLevel(logging.ERROR)
        self._handler = logging.FileHandler(
            path, mode="a", delay=True, encoding="utf-8", errors="backslashreplace"
        )
        self._handler.setFormatter(IsoFormatter("[%(asctime)s] %(message)s"))
        self._logger.addHandler(self._handler)

    def record(self, message: str) -> None:
        self.count += 1
        self._logger.error(message)

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()


@dataclass(frozen=True)
class IgnoreFilter:
    """Basename filter for entries that must be skipped entirely.

    Attributes:
        files (frozenset[str]):
            Lowercase names of files to skip.
        dirs (frozenset[str]):
            Lowercase names of directories to skip (not traversed, not counted).

    """

    files: frozenset[str] = IGNORED_FILES
    dirs: frozenset[str] = IGNORED_DIRS

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", frozenset(n.lower() for n in self.files))
        object.__setattr__(self, "dirs", frozenset(n.lower() for n in self.dirs))

    def is_ignored_file(self, name: str) -> bool:
        return name.lower() in self.files

    def is_ignored_directory(self, name: str) -> bool:
        return name.lower() in self.dirs

    def with_extra(
        self, files: Iterable[str] = (), dirs: Iterable[str] = ()
    ) -> "IgnoreFilter":
        """Return a new filter that also skips the given names."""
        return IgnoreFilter(self.files | set(files), self.dirs | set(dirs))


class ConcurrencyGate:
    """
    Bounded-parallelism scheduler for awaitable work.

    At most ``limit`` submitted tasks run at any time; the rest wait in a FIFO
    queue and are admitted in submission order as slots free up. A slot is
    released exactly once per task, whether the task succeeds or raises, and is
    handed straight to the oldest waiter. There is no timeout: a task that never
    completes keeps its slot for good.

    Args:
        limit (int):
            Maximum number of concurrently executing tasks.

    Raises:
        ValueError: If limit is lower than 1.

    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self.active = 0
        self.peak = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def pending(self) -> int:
        """Number of submissions waiting for a slot."""
        return len(self._waiters)

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run a task once a slot is available.

        Args:
            task (Callable[[], Awaitable[T]]):
                Zero-argument callable producing the awaitable to run.

        Returns:
            T:
                The task's result. Its exception, if any, is raised here.

        """
        await self._acquire()
        try:
            return await task()
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self.active < self.limit and not self._waiters:
            self.active += 1
            self.peak = max(self.peak, self.active)
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        # The releasing task transfers its slot, active is already counted.
        await waiter

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active -= 1


@dataclass(frozen=True)
class ScanEntry:
    """One directory entry, classified without following symlinks."""

    name: str
    path: str
    node_type: NodeType


@dataclass(frozen=True)
class EntryOutcome:
    """Result of measuring one entry: a size, or the reason it failed."""

    path: str
    size: int = 0
    error: str | None = None


@dataclass(frozen=True)
class DirectorySizeRecord:
    """A directory whose recursive size met the reporting threshold."""

    path: str
    total_bytes: int


def entry_type(entry: os.DirEntry) -> NodeType:
    """Classify a directory entry without following symlinks."""
    if entry.is_symlink():
        return NodeType.SYMLINK
    if entry.is_dir(follow_symlinks=False):
        return NodeType.DIRECTORY
    if entry.is_file(follow_symlinks=False):
        return NodeType.FILE
    return NodeType.OTHER


def scan_entries(path: str) -> list[ScanEntry]:
    """List and classify the immediate entries of a directory (blocking)."""
    with os.scandir(path) as it:
        return [ScanEntry(entry.name, entry.path, entry_type(entry)) for entry in it]


async def list_entries(path: str) -> list[ScanEntry]:
    """Async wrapper for scan_entries; the directory handle never leaves the worker."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, scan_entries, path)


async def file_size(path: str) -> int:
    stats = await aiofiles.os.stat(path)
    return stats.st_size


class Aggregator:
    """
    Recursive directory size computation over a ConcurrencyGate.

    Every directory listing and every file stat is one gate submission. A
    directory waiting for its children holds no slot, so arbitrarily deep trees
    cannot exhaust the gate.

    Attributes:
        sizes (dict[str, int]):
            Directory path to total size, only for totals >= min_size.

    """

    def __init__(
        self,
        gate: ConcurrencyGate,
        ignore: IgnoreFilter,
        sink: ErrorSink,
        min_size: int = MIN_SIZE_THRESHOLD,
        progress_callback: Callable[[], None] | None = None,
    ) -> None:
        self.gate = gate
        self.ignore = ignore
        self.sink = sink
        self.min_size = min_size
        self.progress_callback = progress_callback
        self.sizes: dict[str, int] = {}

    async def compute_size(self, path: str) -> int:
        """
        Compute the total size of a directory tree.

        Unreadable directories and files are recorded with the error sink and
        count as zero bytes. The returned total is always the full sum, whether
        or not the directory met the threshold and was recorded in sizes.

        Args:
            path (str):
                Directory to measure.

        Returns:
            int:
                Total size in bytes of all non-ignored files below path.

        """
        logger.debug(f"Processing directory: {path}")
        try:
            entries = await self.gate.submit(lambda: list_entries(path))
        except OSError as exc:
            self.sink.record(f"Error accessing directory {path}: {exc}")
            return 0
        if self.progress_callback:
            self.progress_callback()

        measurements = []
        for entry in entries:
            if entry.node_type == NodeType.FILE:
                if self.ignore.is_ignored_file(entry.name):
                    logger.debug(f"Skipping ignored file: {entry.path}")
                    continue
                measurements.append(self._measure(entry, self._file_size))
            elif entry.node_type == NodeType.DIRECTORY:
                if self.ignore.is_ignored_directory(entry.name):
                    logger.debug(f"Skipping ignored directory: {entry.path}")
                    continue
                measurements.append(self._measure(entry, self.compute_size))
            else:
                logger.debug(f"Skipping {entry.node_type.value} entry: {entry.path}")

        total = 0
        for outcome in await asyncio.gather(*measurements):
            if outcome.error is None:
                total += outcome.size
            else:
                self.sink.record(outcome.error)

        if total >= self.min_size:
            self.sizes[path] = total
            logger.debug(f"Finished directory: {path} - Total Size: {format_gb(total)} GB")
        else:
            logger.debug(f"Below threshold: {path} - Total Size: {format_gb(total)} GB")
        return total

    async def _file_size(self, path: str) -> int:
        return await self.gate.submit(lambda: file_size(path))

    async def _measure(
        self, entry: ScanEntry, measure: Callable[[str], Awaitable[int]]
    ) -> EntryOutcome:
        try:
            size = await measure(entry.path)
        except OSError as exc:
            return EntryOutcome(
                entry.path, error=f"Error getting size of {entry.path}: {exc}"
            )
        except Exception as exc:
            return EntryOutcome(
                entry.path,
                error=f"Error processing {entry.node_type.value} {entry.path}: "
                f"{type(exc).__name__}: {exc}",
            )
        return EntryOutcome(entry.path, size)


def top_n(sizes: dict[str, int], n: int) -> list[DirectorySizeRecord]:
    """
    Select the n largest recorded directories.

    Args:
        sizes (dict[str, int]):
            Directory path to total size.
        n (int):
            Number of directories to keep.

    Returns:
        list[DirectorySizeRecord]:
            Records sorted by size, largest first. Equal sizes are ordered
            by path, so repeated scans rank them identically.

    """
    if n <= 0:
        return []
    ranked = sorted(sizes.items(), key=lambda item: (-item[1], item[0]))
    return [DirectorySizeRecord(path, size) for path, size in ranked[:n]]


def format_gb(size: int) -> str:
    """Format a size in bytes as gigabytes (1024**3) with 2 decimal places."""
    return f"{size / 1024**3:.2f}"


def format_report(
    records: list[DirectorySizeRecord], top: int, elapsed: float
) -> str:
    """
    Render the ranking as the plain-text report.

    Args:
        records (list[DirectorySizeRecord]):
            Ranked directories.
        top (int):
            Requested number of directories, used in the header.
        elapsed (float):
            Scan duration in seconds.

    Returns:
        str:
            Header, one numbered line per directory and the execution time.

    Examples:
        >>> print(format_report([DirectorySizeRecord("/data", 2 * 1024**3)], 1, 1.5))
        Top 1 Largest Directories:
        1. /data - 2.00 GB
        <BLANKLINE>
        Execution Time: 1.50 seconds
        <BLANKLINE>

    """
    lines = [f"Top {top} Largest Directories:"]
    for rank, record in enumerate(records, 1):
        lines.append(f"{rank}. {record.path} - {format_gb(record.total_bytes)} GB")
    lines.append("")
    lines.append(f"Execution Time: {elapsed:.2f} seconds")
    return "\n".join(lines) + "\n"


def write_report(path: str, text: str, sink: ErrorSink) -> bool:
    """Persist the report; failures are logged and recorded, never raised."""
    try:
        with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write(text)
    except (OSError, UnicodeError) as exc:
        logger.error(f"Failed to write results to {path}: {exc}")
        sink.record(f"Failed to write results to {path}: {exc}")
        return False
    return True


def console_text(text: str) -> str:
    """Escape characters the console cannot encode, including undecodable filename bytes."""
    encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
    return text.encode(encoding, "backslashreplace").decode(encoding)


def export_to_json(records: list[DirectorySizeRecord]) -> str:
    """
    Export the ranking to JSON.

    Args:
        records (list[DirectorySizeRecord]): Ranked directories

    Returns:
        str: JSON list of records with their rank and size in GB
    """
    return json.dumps(
        [
            {"rank": rank, **asdict(record), "size_gb": float(format_gb(record.total_bytes))}
            for rank, record in enumerate(records, 1)
        ],
        indent=2,
    )


def parse_size(size_str: str) -> int:
    """
    Parse human-readable size string into bytes.

    Supports formats like '512MB', '1.5GB', '500KB', or plain numbers for bytes.

    Args:
        size_str (str):
            Size string to parse (e.g., '512MB', '1.5GB', '500KB', '1024')

    Returns:
        int:
            Size in bytes as integer

    Raises:
        ValueError: If the size string format is invalid or negative

    Examples:
        >>> parse_size('512MB')
        536870912
        >>> parse_size('1024')
        1024

    """
    if not size_str:
        return 0

    size_str = size_str.strip().upper()

    units = {
        "TB": 1024**4,
        "GB": 1024**3,
        "MB": 1024**2,
        "KB": 1024,
        "B": 1,
    }

    value: float | None = None
    try:
        value = float(size_str)
    except ValueError:
        # Longest unit first so 'MB' is not read as 'B'
        for unit, multiplier in sorted(
            units.items(), key=lambda x: len(x[0]), reverse=True
        ):
            if size_str.endswith(unit):
                try:
                    value = float(size_str[: -len(unit)].strip()) * multiplier
                    break
                except ValueError:
                    continue

    if value is None:
        raise ValueError(
            f"Invalid size format: '{size_str}'. "
            f"Use formats like '512MB', '1.5GB', '500KB', or plain numbers for bytes."
        )
    if not math.isfinite(value):
        raise ValueError(f"Size must be finite: '{size_str}'")
    if value < 0:
        raise ValueError(f"Size must not be negative: '{size_str}'")
    return int(value)


def split_names(values: list[str]) -> list[str]:
    """Flatten repeated and comma-separated name options, dropping blanks."""
    names = []
    for value in values:
        names.extend(value.split(","))
    return [name.strip() for name in names if name.strip()]


@dataclass
class ScanResult:
    """Outcome of a full scan.

    Attributes:
        records (list[DirectorySizeRecord]):
            The top directories, largest first.
        root_size (int):
            Total size of the root directory.
        elapsed (float):
            Duration of traversal and ranking in seconds.
        sizes (dict[str, int]):
            Every directory that met the threshold.

    """

    records: list[DirectorySizeRecord]
    root_size: int
    elapsed: float
    sizes: dict[str, int] = field(default_factory=dict)


async def find_largest_directories(
    root: str,
    top: int = DEFAULT_TOP,
    *,
    sink: ErrorSink,
    max_concurrent: int = MAX_CONCURRENT,
    min_size: int = MIN_SIZE_THRESHOLD,
    ignore: IgnoreFilter | None = None,
    progress_callback: Callable[[], None] | None = None,
) -> ScanResult:
    """
    Scan root and rank its largest directories.

    Args:
        root (str):
            Directory to scan.
        top (int):
            Number of directories to report.
        sink (ErrorSink):
            Receives listing and stat failures.
        max_concurrent (int):
            Maximum number of in-flight filesystem requests.
        min_size (int):
            Minimum total size in bytes for a directory to be reported.
        ignore (IgnoreFilter | None):
            Names to skip (None for the default system names).
        progress_callback (Callable[[], None] | None):
            Called once per directory listed (None for no progress).

    Returns:
        ScanResult:
            The ranking, root total and timing.

    """
    gate = ConcurrencyGate(max_concurrent)
    aggregator = Aggregator(
        gate,
        ignore if ignore is not None else IgnoreFilter(),
        sink,
        min_size=min_size,
        progress_callback=progress_callback,
    )
    logger.info(f"Starting directory traversal: {root}")
    start = time.perf_counter()
    root_size = await aggregator.compute_size(root)
    records = top_n(aggregator.sizes, top)
    elapsed = time.perf_counter() - start
    return ScanResult(records, root_size, elapsed, dict(aggregator.sizes))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find the largest directories below a path.",
        conflict_handler="resolve",
        add_help=False,
    )
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        help="Show this help message and exit",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Directory to analyze",
    )
    parser.add_argument(
        "count",
        nargs="?",
        default=str(DEFAULT_TOP),
        help=f"Number of directories to report (default: {DEFAULT_TOP})",
    )
    parser.add_argument(
        "-j",
        "--max-concurrent",
        type=str,
        default=str(MAX_CONCURRENT),
        help=f"Maximum number of in-flight filesystem requests (default: {MAX_CONCURRENT})",
    )
    parser.add_argument(
        "-m",
        "--min-size",
        type=str,
        default="512MB",
        help="Only report directories at least this large (default: '512MB')",
    )
    parser.add_argument(
        "-x",
        "--ignore-file",
        action="append",
        default=[],
        help="Also skip files with this name (can be used multiple times or comma-separated)",
    )
    parser.add_argument(
        "-X",
        "--ignore-dir",
        action="append",
        default=[],
        help="Also skip directories with this name (can be used multiple times or comma-separated)",
    )
    parser.add_argument(
        "--no-default-ignores",
        action="store_true",
        help="Do not skip the built-in list of system files and directories",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=RESULTS_FILE,
        help=f"File the report is written to (default: {RESULTS_FILE})",
    )
    parser.add_argument(
        "--error-log",
        default=ERROR_LOG,
        help=f"File failures are appended to (default: {ERROR_LOG})",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the ranking as JSON instead of text",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every directory as it is processed",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Do not show the progress counter",
    )
    return parser


def parse_positive_int(value: str, name: str) -> int:
    """Parse a strictly positive integer option, raising ValueError otherwise."""
    try:
        number = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'") from None
    if number < 1:
        raise ValueError(f"{name} must be at least 1, got {number}")
    return number


def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the largest directories finder.

    Parses command-line arguments, scans the given directory, prints the
    ranking and saves it to the report file. Invalid invocations exit with
    status 1 before scanning; any failure during the scan itself is logged and
    the process still exits normally.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ColorFormatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if args.verbose else logging.INFO)

    if args.path is None:
        parser.print_usage(sys.stderr)
        logger.error("Missing required argument: path")
        sys.exit(1)

    try:
        top = parse_positive_int(args.count, "count")
        max_concurrent = parse_positive_int(args.max_concurrent, "--max-concurrent")
        min_size = parse_size(args.min_size)
    except ValueError:
        logger.exception("Error parsing arguments")
        sys.exit(1)

    abs_path = os.path.abspath(args.path)
    if not os.path.isdir(abs_path):
        logger.error(f"The path '{abs_path}' is not an existing directory.")
        sys.exit(1)

    ignore = (
        IgnoreFilter(frozenset(), frozenset())
        if args.no_default_ignores
        else IgnoreFilter()
    ).with_extra(split_names(args.ignore_file), split_names(args.ignore_dir))

    scanned_count = 0

    def progress_callback():
        nonlocal scanned_count
        scanned_count += 1
        print(f"\rScanned {scanned_count} directories...", end="", file=sys.stderr)

    sink = LogErrorSink(args.error_log)
    try:
        result = asyncio.run(
            find_largest_directories(
                abs_path,
                top,
                sink=sink,
                max_concurrent=max_concurrent,
                min_size=min_size,
                ignore=ignore,
                progress_callback=None if args.quiet else progress_callback,
            )
        )
        if not args.quiet:
            # Clear progress line
            print(file=sys.stderr)

        report = format_report(result.records, top, result.elapsed)
        if write_report(args.output, report, sink):
            logger.info(f"Results saved to {args.output}")

        if args.json:
            print(console_text(export_to_json(result.records)))
        else:
            print(console_text(report), end="")

        if sink.count:
            logger.warning(f"{sink.count} errors logged to {args.error_log}")
    except Exception as exc:
        logger.exception("An unexpected error occurred")
        sink.record(f"Uncaught error: {exc}")
    finally:
        sink.close()


if __name__ == "__main__":
    main()
