"""Hash-chained structured logging for scan cycles.

This module provides:
- One-time loguru sink configuration for console and file output
- A per-cycle ScanLogger that records structured, hash-chained entries
- Subscriber callbacks so callers can observe entries as they are produced
- Independent verification of a cycle log's integrity

Each entry includes the hash of the previous entry, making tampering
detectable.
"""

from __future__ import annotations

import hashlib
import json
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

LogSubscriber = Callable[["LogEntry"], None]

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[scan_id]}</cyan> | "
    "{message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[scan_id]} | {message}"


class LogCategory(str, Enum):
    """Category of a structured log entry."""

    DISCOVERY = "discovery"
    EVALUATION = "evaluation"
    QUOTE = "quote"
    CYCLE_SUMMARY = "cycle_summary"
    ERROR = "error"


class LogEntry(BaseModel):
    """A single hash-chained log entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    scan_id: str
    level: str
    message: str
    category: LogCategory
    protocol: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str | None = None
    entry_hash: str | None = None

    def compute_hash(self) -> str:
        """Compute the hash of this entry (excluding entry_hash field)."""
        data_for_hash = self.model_dump(mode="json", exclude={"entry_hash"})
        json_str = json.dumps(data_for_hash, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()

    def finalize(self) -> LogEntry:
        """Finalize the entry by computing its hash."""
        self.entry_hash = self.compute_hash()
        return self


def configure_logging(level: str = "INFO", log_dir: str | Path | None = None) -> None:
    """Configure loguru sinks for the process.

    Args:
        level: Minimum level for console and file output.
        log_dir: Directory for a rotating text log. Console only if None.
    """
    logger.remove()
    logger.configure(extra={"scan_id": "-"})
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level.upper())

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / "scanner.log",
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="50 MB",
            retention=10,
        )


class ScanLogger:
    """Hash-chained logger for one scan cycle.

    Creates structured logs with hash chaining for integrity verification.
    Entries are mirrored to loguru and delivered to subscribers.

    Usage:
        scan_logger = ScanLogger("scan_20240101_000000_ab12cd34", Path("logs"))
        scan_logger.info("Discovered candidates", LogCategory.DISCOVERY,
                         protocol="aave_v3", data={"count": 42})
    """

    def __init__(
        self,
        scan_id: str,
        log_dir: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scan logger.

        Args:
            scan_id: Identifier of the cycle being logged.
            log_dir: Directory for the JSONL file. In-memory only if None.
            clock: Timestamp source; defaults to UTC now.
        """
        self.scan_id = scan_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._previous_hash: str | None = None
        self._entry_count = 0
        self._subscribers: list[LogSubscriber] = []
        self._once_keys: set[tuple[Any, ...]] = set()

        self._json_log_path: Path | None = None
        if log_dir is not None:
            log_dir = Path(log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            self._json_log_path = log_dir / f"{scan_id}.jsonl"

        self._logger = logger.bind(scan_id=scan_id)

    @property
    def json_log_path(self) -> Path | None:
        return self._json_log_path

    def subscribe(self, callback: LogSubscriber) -> Callable[[], None]:
        """Register a callback for every new entry.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def _create_entry(
        self,
        level: str,
        message: str,
        category: LogCategory,
        protocol: str | None,
        data: dict[str, Any] | None,
    ) -> LogEntry:
        """Create a hash-chained log entry."""
        entry = LogEntry(
            timestamp=self._clock().isoformat(),
            scan_id=self.scan_id,
            level=level,
            message=message,
            category=category,
            protocol=protocol,
            data=data or {},
            previous_hash=self._previous_hash,
        )
        entry.finalize()
        self._previous_hash = entry.entry_hash
        self._entry_count += 1
        return entry

    def _write_json_entry(self, entry: LogEntry) -> None:
        """Write entry to JSON log file."""
        if self._json_log_path is None:
            return
        with open(self._json_log_path, "a") as f:
            f.write(entry.model_dump_json() + "\n")

    def _emit(
        self,
        level: str,
        message: str,
        category: LogCategory,
        protocol: str | None,
        data: dict[str, Any] | None,
    ) -> LogEntry:
        entry = self._create_entry(level, message, category, protocol, data)
        self._write_json_entry(entry)
        prefix = f"[{protocol}] " if protocol else ""
        self._logger.opt(depth=2).log(level, prefix + message)
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception as e:
                self._logger.opt(exception=e).warning(f"Log subscriber failed: {e}")
        return entry

    def debug(
        self,
        message: str,
        category: LogCategory,
        protocol: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Log a debug message."""
        return self._emit("DEBUG", message, category, protocol, data)

    def info(
        self,
        message: str,
        category: LogCategory,
        protocol: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Log an info message."""
        return self._emit("INFO", message, category, protocol, data)

    def warning(
        self,
        message: str,
        category: LogCategory,
        protocol: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Log a warning message."""
        return self._emit("WARNING", message, category, protocol, data)

    def error(
        self,
        message: str,
        category: LogCategory = LogCategory.ERROR,
        protocol: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Log an error message."""
        return self._emit("ERROR", message, category, protocol, data)

    def warning_once(
        self,
        key: tuple[Any, ...],
        message: str,
        category: LogCategory,
        protocol: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> LogEntry | None:
        """Log a warning only the first time ``key`` is seen in this cycle.

        Used for systemic failures (an unreachable source) so that one outage
        produces one entry rather than one per candidate.
        """
        if key in self._once_keys:
            return None
        self._once_keys.add(key)
        return self._emit("WARNING", message, category, protocol, data)

    def get_log_summary(self) -> dict[str, Any]:
        """Get a summary of the current log state."""
        return {
            "scan_id": self.scan_id,
            "entry_count": self._entry_count,
            "last_hash": self._previous_hash,
            "json_log_path": str(self._json_log_path) if self._json_log_path else None,
        }


def verify_log_integrity(log_path: Path) -> tuple[bool, list[str]]:
    """Verify the integrity of a hash-chained log file.

    Args:
        log_path: Path to the JSONL log file.

    Returns:
        Tuple of (is_valid, list_of_errors).
    """
    errors: list[str] = []
    previous_hash: str | None = None

    with open(log_path) as f:
        for line_num, line in enumerate(f, 1):
            try:
                entry = LogEntry.model_validate_json(line)
            except ValueError as e:
                errors.append(f"Line {line_num}: Parse error - {e}")
                continue

            if entry.previous_hash != previous_hash:
                errors.append(
                    f"Line {line_num}: Hash chain broken. "
                    f"Expected previous_hash={previous_hash}, "
                    f"got {entry.previous_hash}"
                )

            computed_hash = entry.compute_hash()
            if entry.entry_hash != computed_hash:
                errors.append(
                    f"Line {line_num}: Entry hash mismatch. "
                    f"Expected {computed_hash}, got {entry.entry_hash}"
                )

            previous_hash = entry.entry_hash

    return len(errors) == 0, errors
