"""Tests for hash-chained scan logging."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from liquidation_scanner.core.logging import (
    LogCategory,
    LogEntry,
    ScanLogger,
    configure_logging,
    verify_log_integrity,
)


class TestLogEntry:
    """Tests for LogEntry model."""

    def test_log_entry_hash_computation(self) -> None:
        """Should compute consistent hash."""
        entry = LogEntry(
            timestamp="2024-01-01T00:00:00+00:00",
            scan_id="scan_1",
            level="INFO",
            message="Test message",
            category=LogCategory.DISCOVERY,
        )
        assert entry.compute_hash() == entry.compute_hash()
        assert len(entry.compute_hash()) == 64  # SHA256 hex length

    def test_log_entry_finalize(self) -> None:
        """Should finalize with hash."""
        entry = LogEntry(
            scan_id="scan_1", level="INFO", message="Test", category=LogCategory.QUOTE
        ).finalize()
        assert entry.entry_hash == entry.compute_hash()

    def test_different_entries_have_different_hashes(self) -> None:
        """Different entries should have different hashes."""
        base = {
            "timestamp": "2024-01-01T00:00:00+00:00",
            "scan_id": "scan_1",
            "level": "INFO",
            "category": LogCategory.EVALUATION,
        }
        first = LogEntry(message="one", **base)
        second = LogEntry(message="two", **base)
        assert first.compute_hash() != second.compute_hash()


class TestScanLogger:
    """Tests for ScanLogger."""

    def test_writes_jsonl(self, scan_logger: ScanLogger, temp_log_dir: Path) -> None:
        """Should append one JSON line per entry."""
        scan_logger.info(
            "Discovered candidates",
            LogCategory.DISCOVERY,
            protocol="aave_v3",
            data={"count": 3},
        )

        path = temp_log_dir / "scan_test.jsonl"
        lines = path.read_text().strip().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["scan_id"] == "scan_test"
        assert record["category"] == "discovery"
        assert record["protocol"] == "aave_v3"
        assert record["data"] == {"count": 3}
        assert record["timestamp"] == "2024-01-01T12:00:00+00:00"

    def test_hash_chaining(self, scan_logger: ScanLogger) -> None:
        """Each entry should reference the previous entry's hash."""
        first = scan_logger.info("first", LogCategory.DISCOVERY)
        second = scan_logger.warning("second", LogCategory.EVALUATION)
        third = scan_logger.error("third")

        assert first.previous_hash is None
        assert second.previous_hash == first.entry_hash
        assert third.previous_hash == second.entry_hash
        assert third.category == LogCategory.ERROR

    def test_subscribers(self, scan_logger: ScanLogger) -> None:
        """Subscribers receive entries until they unsubscribe."""
        received: list[LogEntry] = []
        unsubscribe = scan_logger.subscribe(received.append)

        scan_logger.info("one", LogCategory.QUOTE)
        unsubscribe()
        scan_logger.info("two", LogCategory.QUOTE)

        assert [e.message for e in received] == ["one"]

    def test_failing_subscriber_does_not_break_logging(self, scan_logger: ScanLogger) -> None:
        """A raising subscriber must not stop other subscribers or the chain."""
        received: list[LogEntry] = []

        def broken(entry: LogEntry) -> None:
            raise ValueError("subscriber bug")

        scan_logger.subscribe(broken)
        scan_logger.subscribe(received.append)
        scan_logger.info("still logged", LogCategory.CYCLE_SUMMARY)

        assert len(received) == 1
        assert scan_logger.get_log_summary()["entry_count"] == 1

    def test_warning_once(self, scan_logger: ScanLogger) -> None:
        """Repeated systemic warnings are logged once per key."""
        first = scan_logger.warning_once(("aave_v3", "down"), "down", LogCategory.ERROR)
        second = scan_logger.warning_once(("aave_v3", "down"), "down", LogCategory.ERROR)
        other = scan_logger.warning_once(("compound", "down"), "down", LogCategory.ERROR)

        assert first is not None
        assert second is None
        assert other is not None
        assert scan_logger.get_log_summary()["entry_count"] == 2

    def test_in_memory_only(self) -> None:
        """Without a directory nothing is written."""
        scan_logger = ScanLogger("scan_mem")
        scan_logger.info("hello", LogCategory.DISCOVERY)
        assert scan_logger.json_log_path is None
        assert scan_logger.get_log_summary()["entry_count"] == 1


class TestLogIntegrity:
    """Tests for log integrity verification."""

    def test_verify_valid_log(self, scan_logger: ScanLogger) -> None:
        """Valid log should pass verification."""
        for i in range(5):
            scan_logger.info(f"entry {i}", LogCategory.EVALUATION, data={"i": i})

        is_valid, errors = verify_log_integrity(scan_logger.json_log_path)
        assert is_valid
        assert errors == []

    def test_detect_tampered_entry(self, scan_logger: ScanLogger) -> None:
        """Should detect a modified message."""
        scan_logger.info("original", LogCategory.EVALUATION)
        scan_logger.info("second", LogCategory.EVALUATION)

        path = scan_logger.json_log_path
        lines = path.read_text().splitlines()
        record = json.loads(lines[0])
        record["message"] = "tampered"
        lines[0] = json.dumps(record)
        path.write_text("\n".join(lines) + "\n")

        is_valid, errors = verify_log_integrity(path)
        assert not is_valid
        assert any("hash mismatch" in e for e in errors)

    def test_detect_broken_chain(self, scan_logger: ScanLogger) -> None:
        """Should detect a removed entry."""
        for i in range(3):
            scan_logger.info(f"entry {i}", LogCategory.EVALUATION)

        path = scan_logger.json_log_path
        lines = path.read_text().splitlines()
        path.write_text("\n".join([lines[0], lines[2]]) + "\n")

        is_valid, errors = verify_log_integrity(path)
        assert not is_valid
        assert any("chain broken" in e for e in errors)


class TestConfigureLogging:
    """Tests for loguru sink setup."""

    def test_creates_file_sink(self, tmp_path: Path) -> None:
        """Should create the log directory and write the text log."""
        log_dir = tmp_path / "text_logs"
        configure_logging("DEBUG", log_dir)

        ScanLogger("scan_sink").info("to file", LogCategory.CYCLE_SUMMARY)

        logger.complete()
        assert (log_dir / "scanner.log").exists()
        assert "to file" in (log_dir / "scanner.log").read_text()
        configure_logging("INFO")
