"""Tests for scan orchestration and the scanner lifecycle."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from itertools import count
from pathlib import Path

import pytest

from fakes import USDC, WETH, FakeAdapter, FakeChainReader, FakeVenue, balance, user
from liquidation_scanner.core.errors import (
    ConfigurationError,
    CycleCanceled,
    RevertError,
    ScannerError,
    SourceUnavailable,
)
from liquidation_scanner.core.logging import LogEntry
from liquidation_scanner.core.orchestrator import ScanOrchestrator
from liquidation_scanner.data.constants import CURVE_COINS, WAD
from liquidation_scanner.data.models import CycleState, QuoteStatus, ScanReport
from liquidation_scanner.venues import CurveVenue

# 1 WETH at $2000 with an 80% threshold
UNDERWATER = (
    [balance(WETH, WAD, price_wad=2000 * WAD, threshold_wad=8 * WAD // 10)],
    [balance(USDC, 1800 * 10**6, decimals=6)],
)
HEALTHY = (
    [balance(WETH, WAD, price_wad=2000 * WAD, threshold_wad=8 * WAD // 10)],
    [balance(USDC, 1000 * 10**6, decimals=6)],
)
SAME_TOKEN = (
    [balance(USDC, 90 * 10**6, decimals=6)],
    [balance(USDC, 100 * 10**6, decimals=6)],
)

# Scheduling allowance on top of deadline and grace in timing checks
CYCLE_SLACK = 0.5


@pytest.fixture
def scan_ids() -> Callable[[datetime], str]:
    counter = count(1)
    return lambda now: f"scan_{next(counter)}"


def make_orchestrator(
    adapters: list[FakeAdapter],
    fixed_clock: Callable[[], datetime],
    scan_ids: Callable[[datetime], str],
    venues: list[FakeVenue] | None = None,
    **kwargs,
) -> ScanOrchestrator:
    return ScanOrchestrator(
        {a.protocol_id: a for a in adapters},
        {v.venue_id: v for v in venues or []},
        clock=fixed_clock,
        scan_id_factory=scan_ids,
        **kwargs,
    )


class TestRunScan:
    """Tests for a complete scan cycle."""

    @pytest.mark.asyncio
    async def test_finds_liquidatable_positions(self, fixed_clock, scan_ids) -> None:
        """Only positions below 1.0 become opportunities."""
        adapter = FakeAdapter(
            "aave_v3", [user(1), user(2)], balances={user(1): UNDERWATER, user(2): HEALTHY}
        )
        venue = FakeVenue("camelot", {(WETH, USDC): 940 * 10**6})
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids, venues=[venue])

        report = await orchestrator.run_scan({"protocols": ["aave_v3"], "venues": ["camelot"]})

        assert report.scan_id == "scan_1"
        assert len(report.opportunities) == 1
        opportunity = report.opportunities[0]
        assert opportunity.position.user_address == user(1)
        assert opportunity.position.normalized_health_ratio == 1600 * WAD * WAD // (1800 * WAD)
        assert opportunity.quote_status == QuoteStatus.QUOTED
        assert opportunity.best_quote.source_venue == "camelot"
        assert opportunity.estimated_profit_wad == 40 * WAD
        coverage = report.per_protocol_coverage["aave_v3"]
        assert coverage.candidates_seen == 2
        assert coverage.candidates_evaluated == 2
        assert orchestrator.status().state == CycleState.COMPLETED

    @pytest.mark.asyncio
    async def test_quote_statuses(self, fixed_clock, scan_ids) -> None:
        """Status reflects whether a swap was needed and found."""
        balances = {user(1): UNDERWATER, user(2): SAME_TOKEN}
        with_venue = make_orchestrator(
            [FakeAdapter("aave_v3", [user(1), user(2)], balances=balances)],
            fixed_clock,
            scan_ids,
            venues=[FakeVenue("curve", {})],
        )
        report = await with_venue.run_scan({"protocols": ["aave_v3"], "venues": ["curve"]})
        statuses = {o.position.user_address: o.quote_status for o in report.opportunities}
        assert statuses == {user(1): QuoteStatus.UNAVAILABLE, user(2): QuoteStatus.NOT_NEEDED}

        without_venue = make_orchestrator(
            [FakeAdapter("aave_v3", [user(1)], balances=balances)], fixed_clock, scan_ids
        )
        report = await without_venue.run_scan({"protocols": ["aave_v3"]})
        assert report.opportunities[0].quote_status == QuoteStatus.NOT_REQUESTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [RevertError("0x" + "f1" * 20, "getAmountsOut()", "no pair"), RuntimeError("venue bug")],
    )
    async def test_failing_venue_keeps_opportunity(
        self, fixed_clock, scan_ids, error: Exception
    ) -> None:
        """A venue that errors leaves the position ranked, unquoted."""
        adapter = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator(
            [adapter], fixed_clock, scan_ids, venues=[FakeVenue("broken", error=error)]
        )

        report = await orchestrator.run_scan({"protocols": ["aave_v3"], "venues": ["broken"]})

        assert len(report.opportunities) == 1
        assert report.opportunities[0].quote_status == QuoteStatus.UNAVAILABLE
        coverage = report.per_protocol_coverage["aave_v3"]
        assert coverage.skipped == 0
        assert coverage.candidates_evaluated == 1

    @pytest.mark.asyncio
    async def test_reverting_curve_pool_keeps_opportunity(self, fixed_clock, scan_ids) -> None:
        """A configured Curve pool that reverts does not drop the position."""
        reader = FakeChainReader()
        pool = "0x" + "f3" * 20
        reader.on(pool, CURVE_COINS, RevertError(pool, CURVE_COINS, "not a pool"))
        curve = CurveVenue("curve", reader, [{"address": pool, "n_coins": 2}])
        adapter = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids, venues=[curve])

        report = await orchestrator.run_scan({"protocols": ["aave_v3"], "venues": ["curve"]})

        assert [o.quote_status for o in report.opportunities] == [QuoteStatus.UNAVAILABLE]

    @pytest.mark.asyncio
    async def test_idempotent_with_fixed_clock(self, fixed_clock, scan_ids) -> None:
        """The same chain state gives the same report body."""
        balances = {user(i): UNDERWATER for i in range(1, 6)}
        adapter = FakeAdapter("aave_v3", [user(i) for i in range(1, 6)], balances=balances)
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)

        first = await orchestrator.run_scan({"protocols": ["aave_v3"]})
        second = await orchestrator.run_scan({"protocols": ["aave_v3"]})

        assert first.opportunities == second.opportunities
        assert first.per_protocol_coverage == second.per_protocol_coverage
        assert first.scan_id != second.scan_id

    @pytest.mark.asyncio
    async def test_failing_candidates_counted(self, fixed_clock, scan_ids) -> None:
        """Reverting accounts are skipped without stopping the batch."""
        candidates = [user(i) for i in range(1, 11)]
        adapter = FakeAdapter(
            "compound",
            candidates,
            balances={c: HEALTHY for c in candidates},
            failing=candidates[:3],
        )
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)

        report = await orchestrator.run_scan(
            {"protocols": ["compound"], "max_concurrency_per_protocol": 3}
        )

        coverage = report.per_protocol_coverage["compound"]
        assert coverage.candidates_seen == 10
        assert coverage.candidates_evaluated == 7
        assert coverage.skipped == 3
        assert coverage.skip_reasons == {"revert": 3}
        assert not coverage.source_unavailable

    @pytest.mark.asyncio
    async def test_max_users_caps_candidates(self, fixed_clock, scan_ids) -> None:
        """No more than max_users_per_protocol accounts are evaluated."""
        adapter = FakeAdapter("aave_v3", [user(i) for i in range(1, 11)])
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)

        report = await orchestrator.run_scan({"protocols": ["aave_v3"], "max_users_per_protocol": 4})

        assert report.per_protocol_coverage["aave_v3"].candidates_seen == 4
        assert adapter.loaded == [user(i) for i in range(1, 5)]

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_skip(self, fixed_clock, scan_ids) -> None:
        """An adapter bug on one account is isolated to that account."""
        adapter = FakeAdapter(
            "aave_v3", [user(1), user(2)], balances={user(1): UNDERWATER}, crashing=[user(2)]
        )
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)

        report = await orchestrator.run_scan({"protocols": ["aave_v3"]})

        assert len(report.opportunities) == 1
        assert report.per_protocol_coverage["aave_v3"].skip_reasons == {"error": 1}

    @pytest.mark.asyncio
    async def test_writes_cycle_log(self, fixed_clock, scan_ids, temp_log_dir: Path) -> None:
        """Each cycle writes its own JSONL log."""
        adapter = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids, log_dir=temp_log_dir)

        report = await orchestrator.run_scan({"protocols": ["aave_v3"]})

        assert (temp_log_dir / f"{report.scan_id}.jsonl").exists()


class TestIsolation:
    """Failures in one protocol never affect another."""

    @pytest.mark.asyncio
    async def test_deadline_keeps_partial_results(self, fixed_clock, scan_ids) -> None:
        """A slow protocol is cut off while the fast one completes."""
        slow_candidates = [user(i) for i in range(1, 21)]
        slow = FakeAdapter(
            "slow", slow_candidates, balances={c: UNDERWATER for c in slow_candidates}, delay=0.05
        )
        fast = FakeAdapter("fast", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([slow, fast], fixed_clock, scan_ids)

        started = time.monotonic()
        report = await orchestrator.run_scan(
            {
                "protocols": ["slow", "fast"],
                "per_protocol_deadline_ms": 200,
                "max_concurrency_per_protocol": 1,
                "cancel_grace_ms": 50,
            }
        )
        elapsed = time.monotonic() - started

        # Deadline plus grace, with slack for scheduling
        assert elapsed < 0.2 + 0.05 + CYCLE_SLACK

        slow_coverage = report.per_protocol_coverage["slow"]
        assert slow_coverage.deadline_exceeded
        assert slow_coverage.candidates_seen == 20
        assert 0 < slow_coverage.candidates_evaluated < 20
        fast_coverage = report.per_protocol_coverage["fast"]
        assert not fast_coverage.deadline_exceeded
        assert fast_coverage.candidates_evaluated == 1
        protocols = {o.position.protocol for o in report.opportunities}
        assert protocols == {"slow", "fast"}

    @pytest.mark.asyncio
    async def test_grace_bounds_stubborn_protocol(self, fixed_clock, scan_ids) -> None:
        """A protocol that ignores cancellation is abandoned after the grace period."""
        stubborn = FakeAdapter("stubborn", [user(1)], prepare_delay=10.0, cancel_delay=10.0)
        fast = FakeAdapter("fast", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([stubborn, fast], fixed_clock, scan_ids)

        started = time.monotonic()
        report = await orchestrator.run_scan(
            {
                "protocols": ["stubborn", "fast"],
                "per_protocol_deadline_ms": 100,
                "cancel_grace_ms": 100,
            }
        )
        elapsed = time.monotonic() - started

        # The deadline and the grace period were both waited out
        assert elapsed >= 0.18
        assert elapsed < 0.1 + 0.1 + CYCLE_SLACK
        coverage = report.per_protocol_coverage["stubborn"]
        assert coverage.deadline_exceeded
        assert coverage.candidates_seen == 0
        assert [o.position.protocol for o in report.opportunities] == ["fast"]

    @pytest.mark.asyncio
    async def test_prepare_failure_isolated(self, fixed_clock, scan_ids) -> None:
        """A protocol whose core contracts are unreachable is flagged, others finish."""
        down = FakeAdapter(
            "radiant", [user(1)], prepare_error=SourceUnavailable("radiant:rpc", "refused")
        )
        up = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([down, up], fixed_clock, scan_ids)

        report = await orchestrator.run_scan({"protocols": ["radiant", "aave_v3"]})

        assert report.per_protocol_coverage["radiant"].source_unavailable
        assert report.per_protocol_coverage["radiant"].candidates_seen == 0
        assert not report.per_protocol_coverage["aave_v3"].source_unavailable
        assert [o.position.protocol for o in report.opportunities] == ["aave_v3"]

    @pytest.mark.asyncio
    async def test_systemic_skips_logged_once(self, fixed_clock, scan_ids) -> None:
        """Unreachable accounts flag the protocol and warn once."""
        candidates = [user(i) for i in range(1, 6)]
        adapter = FakeAdapter("morpho", candidates, unreachable=candidates)
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)
        entries: list[LogEntry] = []
        orchestrator.subscribe(entries.append)

        report = await orchestrator.run_scan({"protocols": ["morpho"]})

        coverage = report.per_protocol_coverage["morpho"]
        assert coverage.source_unavailable
        assert coverage.skip_reasons == {"source_unavailable": 5}
        assert sum("Source unavailable" in e.message for e in entries) == 1


class TestCycleControl:
    """Tests for starting, waiting on and canceling cycles."""

    @pytest.mark.asyncio
    async def test_cancel(self, fixed_clock, scan_ids) -> None:
        """A canceled cycle produces no report."""
        adapter = FakeAdapter("aave_v3", [user(1)], delay=1.0)
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)

        scan_id = orchestrator.start_scan({"protocols": ["aave_v3"]})
        await asyncio.sleep(0.05)
        assert orchestrator.cancel_scan(scan_id)

        with pytest.raises(CycleCanceled):
            await orchestrator.wait_for_report(scan_id)
        assert orchestrator.status().state == CycleState.CANCELED
        assert not orchestrator.cancel_scan(scan_id)

    @pytest.mark.asyncio
    async def test_overlapping_start_rejected(self, fixed_clock, scan_ids) -> None:
        """Only one cycle runs at a time."""
        adapter = FakeAdapter("aave_v3", [user(1)], delay=0.05)
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)

        scan_id = orchestrator.start_scan({"protocols": ["aave_v3"]})
        with pytest.raises(ScannerError):
            orchestrator.start_scan({"protocols": ["aave_v3"]})

        report = await orchestrator.wait_for_report(scan_id)
        assert report.scan_id == scan_id
        assert not orchestrator.status().running

    @pytest.mark.asyncio
    async def test_unknown_scan_id(self, fixed_clock, scan_ids) -> None:
        """Waiting on an unknown id raises ScannerError."""
        orchestrator = make_orchestrator([], fixed_clock, scan_ids)
        with pytest.raises(ScannerError):
            await orchestrator.wait_for_report("scan_missing")

    @pytest.mark.parametrize(
        "config",
        [
            {"protocols": ["venus"]},
            {"protocols": ["aave_v3"], "venues": ["balancer"]},
            {"protocols": ["aave_v3"], "max_users_per_protocol": -1},
        ],
    )
    def test_configuration_errors(self, fixed_clock, scan_ids, config: dict) -> None:
        """Invalid configurations are rejected before any work starts."""
        orchestrator = make_orchestrator([FakeAdapter("aave_v3", [])], fixed_clock, scan_ids)
        with pytest.raises(ConfigurationError):
            orchestrator.validate(config)

    @pytest.mark.asyncio
    async def test_report_sink(self, fixed_clock, scan_ids) -> None:
        """The sink receives each report; its failures are logged, not raised."""
        received: list[ScanReport] = []

        def sink(report: ScanReport) -> None:
            received.append(report)
            raise OSError("disk full")

        adapter = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids, report_sink=sink)
        entries: list[LogEntry] = []
        orchestrator.subscribe(entries.append)

        report = await orchestrator.run_scan({"protocols": ["aave_v3"]})

        assert received == [report]
        assert any("Report sink failed" in e.message for e in entries)

    @pytest.mark.asyncio
    async def test_cycle_summary_logged(self, fixed_clock, scan_ids) -> None:
        """Start and completion are logged for every cycle."""
        adapter = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator([adapter], fixed_clock, scan_ids)
        entries: list[LogEntry] = []
        orchestrator.subscribe(entries.append)

        await orchestrator.run_scan({"protocols": ["aave_v3"]})

        messages = [e.message for e in entries]
        assert messages[0] == "Scan cycle started"
        assert messages[-1] == "Scan cycle completed: 1 opportunities"


class TestLifecycle:
    """Tests for the continuous scan loop."""

    @pytest.mark.asyncio
    async def test_start_stop(self, fixed_clock, scan_ids) -> None:
        """Cycles repeat until stop() is called."""
        reports: list[ScanReport] = []
        adapter = FakeAdapter("aave_v3", [user(1)], balances={user(1): UNDERWATER})
        orchestrator = make_orchestrator(
            [adapter], fixed_clock, scan_ids, report_sink=reports.append
        )

        loop_task = asyncio.create_task(
            orchestrator.start({"protocols": ["aave_v3"]}, interval_seconds=0.01)
        )
        for _ in range(200):
            if len(reports) >= 2:
                break
            await asyncio.sleep(0.01)
        assert orchestrator.status().running

        await orchestrator.stop()
        await loop_task

        assert len(reports) >= 2
        status = orchestrator.status()
        assert not status.running
        assert status.last_scan_id is not None
        assert status.last_completed_at == reports[-1].completed_at

    @pytest.mark.asyncio
    async def test_single_cycle_without_interval(self, fixed_clock, scan_ids) -> None:
        """Without an interval start() runs exactly one cycle."""
        reports: list[ScanReport] = []
        adapter = FakeAdapter("aave_v3", [user(1)])
        orchestrator = make_orchestrator(
            [adapter], fixed_clock, scan_ids, report_sink=reports.append
        )

        await orchestrator.start({"protocols": ["aave_v3"]})

        assert len(reports) == 1
        assert not orchestrator.status().running
