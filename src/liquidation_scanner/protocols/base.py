"""Protocol adapter framework.

One interface, one implementation per lending-protocol family. An adapter:
- loads the protocol's per-cycle state (markets, prices, parameters)
- discovers candidate accounts (events or a watch-list)
- turns one account into a normalized Position, or a Skipped record

Adapters never raise out of ``load_position``: reverts, timeouts and
unsupported data become Skipped entries so one bad account cannot abort a
batch.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar

from liquidation_scanner.core.errors import EvaluationSkipped, RevertError, SourceUnavailable
from liquidation_scanner.core.logging import LogCategory, ScanLogger
from liquidation_scanner.data.chain import (
    RETRYABLE_ERRORS,
    ChainReader,
    ViewCall,
    with_retries,
)
from liquidation_scanner.data.constants import (
    DEFAULT_CLOSE_FACTOR_WAD,
    DEFAULT_LIQUIDATION_BONUS_WAD,
)
from liquidation_scanner.data.discovery import (
    DEFAULT_LOG_CHUNK_SIZE,
    EventDiscovery,
    EventSource,
    StaticDiscovery,
)
from liquidation_scanner.data.health_factor import HealthFactorCalculator, compute_health_ratio
from liquidation_scanner.data.models import (
    AssetBalance,
    Position,
    RawHealthMetric,
    Skipped,
)


@dataclass(frozen=True)
class CycleContext:
    """Per-cycle parameters handed to adapters by the orchestrator."""

    scan_id: str
    logger: ScanLogger
    call_timeout: float
    retry_attempts: int
    clock: Callable[[], datetime]


class ProtocolAdapter(ABC):
    """Base class for lending protocol adapters.

    Subclasses implement ``_read_position`` and, for event discovery,
    ``event_sources``. Per-cycle state is loaded in ``_prepare`` and is
    read-only while candidates are evaluated.

    Usage:
        adapter = AaveStyleAdapter("aave_v3", reader, pool=..., data_provider=..., oracle=...)
        await adapter.prepare(ctx)
        users = await adapter.discover_candidates(from_block, to_block, max_users=100)
        result = await adapter.load_position(users[0])
    """

    kind: ClassVar[str] = "base"

    def __init__(
        self,
        protocol_id: str,
        reader: ChainReader,
        watchlist: Sequence[str] | None = None,
        log_chunk_size: int = DEFAULT_LOG_CHUNK_SIZE,
        calculator: HealthFactorCalculator | None = None,
    ) -> None:
        """Initialize adapter.

        Args:
            protocol_id: Identifier used in reports and configuration.
            reader: Chain access port.
            watchlist: Static candidate list. Replaces event discovery when given.
            log_chunk_size: Max blocks per log query during discovery.
            calculator: Health ratio calculator (for native-metric verification).
        """
        self.protocol_id = protocol_id
        self.reader = reader
        self.watchlist = list(watchlist) if watchlist is not None else None
        self.log_chunk_size = log_chunk_size
        self.calculator = calculator or HealthFactorCalculator()
        self._ctx: CycleContext | None = None
        self._block_number = 0

    @property
    def ctx(self) -> CycleContext:
        if self._ctx is None:
            raise RuntimeError(f"{self.protocol_id}: prepare() has not been called")
        return self._ctx

    @property
    def block_number(self) -> int:
        """Block the current cycle's state was read at."""
        return self._block_number

    async def prepare(self, ctx: CycleContext) -> None:
        """Load per-cycle protocol state.

        Raises:
            SourceUnavailable: If the chain or a core contract cannot be read.
            RevertError: If a core contract call reverts.
        """
        self._ctx = ctx
        self._block_number = await with_retries(
            lambda: self.reader.block_number(ctx.call_timeout),
            ctx.retry_attempts,
            source=f"{self.protocol_id}:rpc",
        )
        await self._prepare()

    async def _prepare(self) -> None:
        """Subclass hook for reading markets, prices and parameters."""

    def event_sources(self) -> list[EventSource]:
        """Events that identify borrowers. Empty means watch-list only."""
        return []

    async def discover_candidates(
        self, from_block: int, to_block: int, max_users: int
    ) -> list[str]:
        """Candidate accounts for this cycle, capped at ``max_users``."""
        if self.watchlist is not None:
            return StaticDiscovery(self.watchlist).discover(max_users)

        sources = self.event_sources()
        if not sources:
            self.ctx.logger.warning_once(
                (self.protocol_id, "no_discovery_source"),
                "No event source and no watch-list configured; nothing to scan",
                LogCategory.DISCOVERY,
                protocol=self.protocol_id,
            )
            return []

        discovery = EventDiscovery(
            self.reader,
            sources,
            chunk_size=self.log_chunk_size,
            call_timeout=self.ctx.call_timeout,
            retry_attempts=self.ctx.retry_attempts,
        )
        return await discovery.discover(from_block, to_block, max_users)

    async def call(self, address: str, signature: str, *args: Any) -> tuple[Any, ...]:
        """View call with the cycle's timeout and retry policy."""
        ctx = self.ctx
        return await with_retries(
            lambda: self.reader.call_view(address, signature, args, ctx.call_timeout),
            ctx.retry_attempts,
            source=f"{self.protocol_id}:{address.lower()}",
        )

    async def call_many(self, calls: Sequence[ViewCall]) -> list[tuple[Any, ...]]:
        """Batch of view calls; the first failure is raised.

        Transport failures in the batch are retried as a whole.
        """
        ctx = self.ctx

        async def run() -> list[tuple[Any, ...] | Exception]:
            results = await self.reader.batch_call(calls, ctx.call_timeout)
            for result in results:
                if isinstance(result, RETRYABLE_ERRORS):
                    raise result
            return results

        results = await with_retries(
            run, ctx.retry_attempts, source=f"{self.protocol_id}:batch"
        )
        for result in results:
            if isinstance(result, Exception):
                raise result
        return results  # type: ignore[return-value]

    async def load_position(self, user_address: str) -> Position | Skipped:
        """Evaluate one account.

        Returns:
            A Position, or Skipped with a reason key. SourceUnavailable is
            marked systemic.
        """
        user = user_address.lower()
        try:
            return await self._read_position(user)
        except EvaluationSkipped as e:
            return Skipped(user, e.reason)
        except RevertError as e:
            return Skipped(user, "revert", detail=str(e))
        except SourceUnavailable as e:
            return Skipped(user, "source_unavailable", systemic=True, detail=str(e))

    @abstractmethod
    async def _read_position(self, user: str) -> Position:
        """Read and normalize one account.

        Raises:
            EvaluationSkipped, RevertError, SourceUnavailable.
        """

    def _evaluate(
        self,
        user: str,
        collateral: Sequence[AssetBalance],
        debt: Sequence[AssetBalance],
        native_ratio: int | None = None,
    ) -> tuple[int | None, bool]:
        """Engine ratio, checked against the protocol's own ratio when present.

        On a verification mismatch the native ratio wins, since it is what the
        protocol enforces on-chain.
        """
        evaluation = compute_health_ratio(collateral, debt)
        ratio = evaluation.ratio
        if native_ratio is not None and not evaluation.severely_undercollateralized:
            passed, _ = self.calculator.verify(ratio, native_ratio)
            if not passed:
                self._log_mismatch(user, collateral, debt, native_ratio)
                ratio = native_ratio
        return ratio, evaluation.severely_undercollateralized

    def _log_mismatch(
        self,
        user: str,
        collateral: Sequence[AssetBalance],
        debt: Sequence[AssetBalance],
        native_ratio: int,
    ) -> None:
        breakdown = self.calculator.calculate_with_breakdown(collateral, debt, native_ratio)
        self.ctx.logger.warning(
            f"Health ratio mismatch for {user}",
            LogCategory.EVALUATION,
            protocol=self.protocol_id,
            data={
                "user_address": user,
                "calculated": str(breakdown.calculated_ratio),
                "native": str(native_ratio),
                "relative_diff_wad": str(breakdown.verification_diff_wad),
                "breakdown": breakdown.to_dict(),
            },
        )

    def _position(
        self,
        user: str,
        collateral: Sequence[AssetBalance],
        debt: Sequence[AssetBalance],
        raw_metric: RawHealthMetric,
        ratio: int | None,
        severe: bool = False,
        liquidation_bonus_wad: int = DEFAULT_LIQUIDATION_BONUS_WAD,
        close_factor_wad: int = DEFAULT_CLOSE_FACTOR_WAD,
    ) -> Position:
        return Position(
            protocol=self.protocol_id,
            user_address=user,
            collateral=tuple(collateral),
            debt=tuple(debt),
            raw_health_metric=raw_metric,
            normalized_health_ratio=ratio,
            severely_undercollateralized=severe,
            liquidation_bonus_wad=liquidation_bonus_wad,
            close_factor_wad=close_factor_wad,
            block_number=self._block_number,
            last_evaluated_at=self.ctx.clock(),
        )


def sort_ratio(position: Position) -> int:
    """Ordering key for picking the riskiest market; infinite sorts last."""
    ratio = position.normalized_health_ratio
    return ratio if ratio is not None else 2**256
