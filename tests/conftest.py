"""Pytest configuration and fixtures for the position scanner tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

from fakes import FakeChainReader
from liquidation_scanner.core.logging import ScanLogger
from liquidation_scanner.protocols.base import CycleContext

FIXED_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

SCANNER_ENV_VARS = (
    "RPC_URL",
    "LOG_DIR",
    "LOG_LEVEL",
    "DEPLOYMENTS_FILE",
    "WATCHLIST_FILE",
    "LOG_CHUNK_SIZE",
)


@pytest.fixture(autouse=True)
def clean_scanner_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the host environment out of settings tests."""
    for name in SCANNER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_log_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for log files."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock that always returns the same instant."""
    return lambda: FIXED_TIME


@pytest.fixture
def fake_reader() -> FakeChainReader:
    return FakeChainReader()


@pytest.fixture
def scan_logger(temp_log_dir: Path, fixed_clock: Callable[[], datetime]) -> ScanLogger:
    return ScanLogger("scan_test", temp_log_dir, clock=fixed_clock)


@pytest.fixture
def cycle_context(
    scan_logger: ScanLogger, fixed_clock: Callable[[], datetime]
) -> CycleContext:
    """Cycle context with short timeouts and two attempts per read."""
    return CycleContext(
        scan_id=scan_logger.scan_id,
        logger=scan_logger,
        call_timeout=1.0,
        retry_attempts=2,
        clock=fixed_clock,
    )
