"""Scan orchestration and scanner lifecycle.

One scan cycle runs every requested protocol concurrently:
1. Prepare the adapter (markets, prices, parameters) at the latest block
2. Discover candidates within the configured block window
3. Evaluate candidates through a bounded worker pool
4. Quote seized collateral for each eligible position as it is found
5. Rank and deduplicate once every protocol has finished or timed out

Workers hand results to a single collector per protocol over an
asyncio.Queue. A protocol that misses its deadline keeps what it already
evaluated; a protocol whose sources are down is reported with
``source_unavailable`` and never blocks the others.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from liquidation_scanner.core.config import ScanConfig
from liquidation_scanner.core.errors import (
    ConfigurationError,
    CycleCanceled,
    RevertError,
    ScannerError,
    SourceUnavailable,
)
from liquidation_scanner.core.logging import LogCategory, LogSubscriber, ScanLogger
from liquidation_scanner.core.quotes import QuoteAggregator
from liquidation_scanner.core.ranker import OpportunityRanker, plan_liquidation
from liquidation_scanner.data.models import (
    CycleState,
    Opportunity,
    Position,
    ProtocolCoverage,
    QuoteStatus,
    ScannerStatus,
    ScanReport,
    Skipped,
)
from liquidation_scanner.protocols.base import CycleContext, ProtocolAdapter
from liquidation_scanner.venues.base import SwapVenue

ReportSink = Callable[[ScanReport], None]

# Finished cycles kept for wait_for_report
MAX_FINISHED_CYCLES = 16

_STATE_ORDER = [
    CycleState.IDLE,
    CycleState.DISCOVERING,
    CycleState.EVALUATING,
    CycleState.QUOTING,
    CycleState.RANKING,
]


def default_scan_id(now: datetime) -> str:
    return f"scan_{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


class _ProtocolRun:
    """Coverage accumulated for one protocol in one cycle.

    Mutated only by that protocol's collector.
    """

    def __init__(self, protocol_id: str, scan_logger: ScanLogger) -> None:
        self.protocol_id = protocol_id
        self.scan_logger = scan_logger
        self.candidates_seen = 0
        self.candidates_evaluated = 0
        self.skip_reasons: Counter[str] = Counter()
        self.source_unavailable = False
        self.deadline_exceeded = False
        self.opportunities: list[Opportunity] = []

    def mark_unavailable(self, error: Exception) -> None:
        self.source_unavailable = True
        self.scan_logger.warning_once(
            (self.protocol_id, "source_unavailable"),
            f"Source unavailable: {error}",
            LogCategory.ERROR,
            protocol=self.protocol_id,
        )

    def record(self, item: Opportunity | Position | Skipped) -> None:
        if isinstance(item, Skipped):
            self.skip_reasons[item.reason] += 1
            if item.systemic:
                self.source_unavailable = True
                self.scan_logger.warning_once(
                    (self.protocol_id, "source_unavailable"),
                    f"Source unavailable while evaluating: {item.detail}",
                    LogCategory.ERROR,
                    protocol=self.protocol_id,
                )
            else:
                self.scan_logger.debug(
                    f"Skipped {item.user_address}: {item.reason}",
                    LogCategory.EVALUATION,
                    protocol=self.protocol_id,
                    data={"user_address": item.user_address, "reason": item.reason, "detail": item.detail},
                )
            return

        self.candidates_evaluated += 1
        if isinstance(item, Opportunity):
            self.opportunities.append(item)
            position = item.position
            self.scan_logger.info(
                f"Liquidatable position {position.user_address}",
                LogCategory.EVALUATION,
                protocol=self.protocol_id,
                data={
                    "user_address": position.user_address,
                    "health_ratio": str(position.health_ratio),
                    "severely_undercollateralized": position.severely_undercollateralized,
                    "quote_status": item.quote_status.value,
                },
            )

    def coverage(self) -> ProtocolCoverage:
        return ProtocolCoverage(
            candidates_seen=self.candidates_seen,
            candidates_evaluated=self.candidates_evaluated,
            skipped=sum(self.skip_reasons.values()),
            source_unavailable=self.source_unavailable,
            deadline_exceeded=self.deadline_exceeded,
            skip_reasons=dict(sorted(self.skip_reasons.items())),
        )


class ScanOrchestrator:
    """Run scan cycles over a set of protocol adapters and swap venues.

    Only one cycle runs at a time. Adapters keep per-cycle state, so a
    second start_scan while a cycle is in flight is rejected.

    Usage:
        orchestrator = ScanOrchestrator(adapters, venues, log_dir=Path("logs"))
        report = await orchestrator.run_scan(ScanConfig(protocols=["aave_v3"]))
        for opportunity in report.opportunities:
            print(opportunity.position.user_address, opportunity.position.health_ratio)
    """

    def __init__(
        self,
        adapters: Mapping[str, ProtocolAdapter],
        venues: Mapping[str, SwapVenue] | None = None,
        log_dir: Path | None = None,
        clock: Callable[[], datetime] | None = None,
        report_sink: ReportSink | None = None,
        scan_id_factory: Callable[[datetime], str] | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            adapters: Protocol adapters by protocol id.
            venues: Swap venues by venue id.
            log_dir: Directory for per-cycle JSONL logs. In-memory if None.
            clock: Time source for timestamps; defaults to UTC now.
            report_sink: Called with every completed ScanReport.
            scan_id_factory: Builds a scan id from the cycle start time.
        """
        self.adapters = dict(adapters)
        self.venues = dict(venues or {})
        self.log_dir = log_dir
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.report_sink = report_sink
        self.scan_id_factory = scan_id_factory or default_scan_id

        self._subscribers: list[LogSubscriber] = []
        self._cycles: dict[str, asyncio.Task[ScanReport]] = {}
        self._current_scan_id: str | None = None
        self._state = CycleState.IDLE
        self._last_scan_id: str | None = None
        self._last_completed_at: datetime | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._stopped: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def subscribe(self, callback: LogSubscriber) -> Callable[[], None]:
        """Receive every log entry of every subsequent cycle.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def validate(self, config: ScanConfig | Mapping[str, Any]) -> ScanConfig:
        """Check a configuration against the registered adapters and venues.

        Raises:
            ConfigurationError: Invalid fields, or unknown protocols or venues.
        """
        if not isinstance(config, ScanConfig):
            config = ScanConfig.from_mapping(config)

        unknown = [p for p in config.protocols if p not in self.adapters]
        if unknown:
            raise ConfigurationError(
                f"Unknown protocols {unknown}; registered: {sorted(self.adapters)}"
            )
        unknown = [v for v in config.venues if v not in self.venues]
        if unknown:
            raise ConfigurationError(
                f"Unknown venues {unknown}; registered: {sorted(self.venues)}"
            )
        return config

    def start_scan(self, config: ScanConfig | Mapping[str, Any]) -> str:
        """Validate the configuration and launch a cycle in the background.

        Must be called from a running event loop.

        Returns:
            The scan id, for wait_for_report and cancel_scan.

        Raises:
            ConfigurationError: Before any work begins.
            ScannerError: If another cycle is still running.
        """
        config = self.validate(config)
        if self._current_scan_id is not None:
            raise ScannerError(f"Scan {self._current_scan_id} is still running")

        started_at = self.clock()
        scan_id = self.scan_id_factory(started_at)
        self._prune_finished()
        self._current_scan_id = scan_id
        self._last_scan_id = scan_id
        self._state = CycleState.DISCOVERING
        task = asyncio.create_task(self._run_cycle(scan_id, config, started_at), name=scan_id)
        task.add_done_callback(self._on_cycle_done)
        self._cycles[scan_id] = task
        return scan_id

    async def wait_for_report(self, scan_id: str) -> ScanReport:
        """Wait for a cycle and return its report.

        Raises:
            CycleCanceled: If the cycle was canceled.
            ScannerError: If the scan id is unknown.
        """
        task = self._cycles.get(scan_id)
        if task is None:
            raise ScannerError(f"Unknown scan id {scan_id}")
        await asyncio.wait({task})
        if task.cancelled():
            raise CycleCanceled(scan_id)
        return task.result()

    async def run_scan(self, config: ScanConfig | Mapping[str, Any]) -> ScanReport:
        """Run one cycle to completion."""
        return await self.wait_for_report(self.start_scan(config))

    def cancel_scan(self, scan_id: str) -> bool:
        """Abort a running cycle. No report is produced for it.

        Returns:
            True if a running cycle was canceled.
        """
        task = self._cycles.get(scan_id)
        if task is None or task.done():
            return False
        return task.cancel()

    async def start(
        self,
        config: ScanConfig | Mapping[str, Any],
        interval_seconds: float | None = None,
    ) -> None:
        """Run cycles until stop() is called.

        With ``interval_seconds`` None a single cycle is run. A failed or
        canceled cycle is logged and the loop continues.

        Raises:
            ConfigurationError: Before the first cycle.
        """
        config = self.validate(config)
        if self._running:
            raise ScannerError("Scanner is already running")

        self._running = True
        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_scan(config)
                except CycleCanceled as e:
                    logger.warning(str(e))
                except ScannerError as e:
                    logger.error(f"Scan cycle failed: {e}")
                except Exception as e:
                    logger.opt(exception=e).error(f"Scan cycle failed unexpectedly: {e}")

                if interval_seconds is None:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self._stopped.set()

    async def stop(self) -> None:
        """Stop the scan loop, canceling the cycle in flight."""
        if not self._running or self._stop_event is None or self._stopped is None:
            return
        self._stop_event.set()
        if self._current_scan_id is not None:
            self.cancel_scan(self._current_scan_id)
        await self._stopped.wait()

    def status(self) -> ScannerStatus:
        return ScannerStatus(
            running=self._running or self._current_scan_id is not None,
            last_scan_id=self._last_scan_id,
            last_completed_at=self._last_completed_at,
            state=self._state,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _prune_finished(self) -> None:
        finished = [sid for sid, task in self._cycles.items() if task.done()]
        for sid in finished[: max(0, len(finished) - MAX_FINISHED_CYCLES + 1)]:
            del self._cycles[sid]

    def _on_cycle_done(self, task: asyncio.Task[ScanReport]) -> None:
        if task.get_name() == self._current_scan_id:
            self._current_scan_id = None
        if task.cancelled():
            self._state = CycleState.CANCELED

    def _advance(self, state: CycleState) -> None:
        """Move the cycle state forward; never backward."""
        if self._state not in _STATE_ORDER:
            return
        if _STATE_ORDER.index(state) > _STATE_ORDER.index(self._state):
            self._state = state

    async def _run_cycle(
        self, scan_id: str, config: ScanConfig, started_at: datetime
    ) -> ScanReport:
        scan_logger = ScanLogger(scan_id, self.log_dir, clock=self.clock)
        for callback in self._subscribers:
            scan_logger.subscribe(callback)

        ctx = CycleContext(
            scan_id=scan_id,
            logger=scan_logger,
            call_timeout=config.per_call_timeout,
            retry_attempts=config.retry_attempts,
            clock=self.clock,
        )
        aggregator = QuoteAggregator(
            [self.venues[v] for v in config.venues],
            timeout=config.quote_timeout,
            logger=scan_logger,
        )
        ranker = OpportunityRanker(config.ranking_policy)

        scan_logger.info(
            "Scan cycle started",
            LogCategory.CYCLE_SUMMARY,
            data={
                "protocols": list(config.protocols),
                "venues": list(config.venues),
                "max_users_per_protocol": config.max_users_per_protocol,
                "ranking_policy": config.ranking_policy.value,
            },
        )

        try:
            runs = await asyncio.gather(
                *(
                    self._scan_protocol(pid, ctx, config, aggregator, ranker)
                    for pid in config.protocols
                )
            )

            self._advance(CycleState.RANKING)
            opportunities = ranker.rank(o for run in runs for o in run.opportunities)
            report = ScanReport(
                scan_id=scan_id,
                started_at=started_at,
                completed_at=self.clock(),
                opportunities=tuple(opportunities),
                per_protocol_coverage={run.protocol_id: run.coverage() for run in runs},
            )
        except asyncio.CancelledError:
            self._state = CycleState.CANCELED
            scan_logger.warning("Scan cycle canceled", LogCategory.CYCLE_SUMMARY)
            raise
        except Exception as e:
            self._state = CycleState.FAILED
            scan_logger.error(f"Scan cycle failed: {e}", data={"error": repr(e)})
            raise

        scan_logger.info(
            f"Scan cycle completed: {len(report.opportunities)} opportunities",
            LogCategory.CYCLE_SUMMARY,
            data={
                "opportunities": len(report.opportunities),
                "duration_ms": report.duration_ms,
                "coverage": {
                    name: coverage.model_dump()
                    for name, coverage in sorted(report.per_protocol_coverage.items())
                },
            },
        )
        self._state = CycleState.COMPLETED
        self._last_completed_at = report.completed_at

        if self.report_sink is not None:
            try:
                self.report_sink(report)
            except Exception as e:
                scan_logger.error(f"Report sink failed: {e}", data={"error": repr(e)})
        return report

    async def _scan_protocol(
        self,
        protocol_id: str,
        ctx: CycleContext,
        config: ScanConfig,
        aggregator: QuoteAggregator,
        ranker: OpportunityRanker,
    ) -> _ProtocolRun:
        """Run one protocol under its deadline. Never raises except on cancel."""
        run = _ProtocolRun(protocol_id, ctx.logger)
        work = asyncio.create_task(
            self._protocol_work(run, self.adapters[protocol_id], ctx, config, aggregator, ranker)
        )
        try:
            done, _ = await asyncio.wait({work}, timeout=config.per_protocol_deadline)
            if not done:
                run.deadline_exceeded = True
                work.cancel()
                await asyncio.wait({work}, timeout=config.cancel_grace)
                ctx.logger.warning(
                    "Deadline exceeded; coverage is partial",
                    LogCategory.CYCLE_SUMMARY,
                    protocol=protocol_id,
                    data={
                        "deadline_ms": config.per_protocol_deadline_ms,
                        "candidates_seen": run.candidates_seen,
                        "candidates_evaluated": run.candidates_evaluated,
                    },
                )
            elif not work.cancelled() and work.exception() is not None:
                error = work.exception()
                run.source_unavailable = True
                ctx.logger.error(
                    f"Protocol scan failed: {error}",
                    protocol=protocol_id,
                    data={"error": repr(error)},
                )
        finally:
            if not work.done():
                work.cancel()
        return run

    async def _protocol_work(
        self,
        run: _ProtocolRun,
        adapter: ProtocolAdapter,
        ctx: CycleContext,
        config: ScanConfig,
        aggregator: QuoteAggregator,
        ranker: OpportunityRanker,
    ) -> None:
        try:
            await adapter.prepare(ctx)
            from_block, to_block = config.block_window.resolve(adapter.block_number)
            candidates = await adapter.discover_candidates(
                from_block, to_block, config.max_users_per_protocol
            )
        except (SourceUnavailable, RevertError) as e:
            run.mark_unavailable(e)
            return

        run.candidates_seen = len(candidates)
        ctx.logger.info(
            f"Discovered {len(candidates)} candidates",
            LogCategory.DISCOVERY,
            protocol=run.protocol_id,
            data={
                "count": len(candidates),
                "from_block": from_block,
                "to_block": to_block,
                "block_number": adapter.block_number,
            },
        )
        self._advance(CycleState.EVALUATING)
        await self._evaluate(run, adapter, candidates, config, aggregator, ranker)

    async def _evaluate(
        self,
        run: _ProtocolRun,
        adapter: ProtocolAdapter,
        candidates: Sequence[str],
        config: ScanConfig,
        aggregator: QuoteAggregator,
        ranker: OpportunityRanker,
    ) -> None:
        """Evaluate candidates in a bounded pool and collect results in order of arrival."""
        queue: asyncio.Queue[Opportunity | Position | Skipped] = asyncio.Queue()
        semaphore = asyncio.Semaphore(config.max_concurrency_per_protocol)

        async def worker(user: str) -> None:
            async with semaphore:
                try:
                    result = await adapter.load_position(user)
                    if isinstance(result, Position) and result.is_liquidatable:
                        result = await self._to_opportunity(result, aggregator, ranker)
                except Exception as e:
                    run.scan_logger.error(
                        f"Unexpected error evaluating {user}: {e}",
                        protocol=run.protocol_id,
                        data={"user_address": user, "error": repr(e)},
                    )
                    result = Skipped(user, "error", detail=repr(e))
            await queue.put(result)

        workers = [asyncio.create_task(worker(user)) for user in candidates]
        try:
            for _ in range(len(workers)):
                run.record(await queue.get())
        finally:
            for task in workers:
                task.cancel()
            # Results that arrived before cancellation still count
            while not queue.empty():
                run.record(queue.get_nowait())

    async def _to_opportunity(
        self,
        position: Position,
        aggregator: QuoteAggregator,
        ranker: OpportunityRanker,
    ) -> Opportunity:
        plan = plan_liquidation(position)
        quote = None
        if not aggregator.venues:
            status = QuoteStatus.NOT_REQUESTED
        elif not plan.needs_quote:
            status = QuoteStatus.NOT_NEEDED
        else:
            self._advance(CycleState.QUOTING)
            quote = await aggregator.best_quote(
                plan.collateral.token_address,  # type: ignore[union-attr]
                plan.debt.token_address,  # type: ignore[union-attr]
                plan.seized_amount,
            )
            status = QuoteStatus.QUOTED if quote is not None else QuoteStatus.UNAVAILABLE
        return ranker.build_opportunity(position, plan, quote, status)

