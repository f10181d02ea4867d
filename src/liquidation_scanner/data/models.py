"""Data models for the multi-protocol position scanner.

Pydantic models for representing:
- Token amounts and priced balances
- Normalized lending positions
- Swap quotes and liquidation opportunities
- Scan reports with per-protocol coverage

Every value that takes part in an eligibility decision is an integer scaled
to a fixed-point base (WAD = 1e18). Decimal conversion happens only when a
report is rendered.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from liquidation_scanner.data.constants import (
    DEFAULT_CLOSE_FACTOR_WAD,
    DEFAULT_LIQUIDATION_BONUS_WAD,
    WAD,
)


def _normalize_address(v: str) -> str:
    if not v.startswith("0x"):
        v = "0x" + v
    return v.lower()


def wad_to_decimal(value: int) -> Decimal:
    """Exact conversion of a WAD-scaled integer to Decimal."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), WAD)
    text = f"{whole}.{frac:018d}".rstrip("0").rstrip(".")
    return Decimal(sign + text)


def to_wad(raw_amount: int, decimals: int) -> int:
    """Rescale a raw token amount with ``decimals`` to 18 decimals."""
    if decimals <= 18:
        return raw_amount * 10 ** (18 - decimals)
    return raw_amount // 10 ** (decimals - 18)


class QuoteStatus(str, Enum):
    """Outcome of the quote attempt attached to an opportunity."""

    QUOTED = "quoted"
    UNAVAILABLE = "unavailable"  # No venue carried the pair
    NOT_NEEDED = "not_needed"  # Collateral and debt are the same token
    NOT_REQUESTED = "not_requested"  # No venues configured for the cycle


class CycleState(str, Enum):
    """States of a single scan cycle."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    EVALUATING = "evaluating"
    QUOTING = "quoting"
    RANKING = "ranking"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class TokenAmount(BaseModel):
    """An amount of a token in its native decimals."""

    model_config = ConfigDict(frozen=True)

    token_address: str = Field(description="Token contract address")
    raw_amount: int = Field(ge=0, description="Raw amount in token decimals")
    decimals: int = Field(ge=0, le=36)
    symbol: str = ""

    @field_validator("token_address", mode="before")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        """Store addresses lowercase."""
        return _normalize_address(v)

    def to_wad(self) -> int:
        """Amount normalized to 18 decimals."""
        return to_wad(self.raw_amount, self.decimals)

    @property
    def amount(self) -> Decimal:
        """Human-readable amount (reporting only)."""
        return Decimal(self.raw_amount) / Decimal(10**self.decimals)


class AssetBalance(BaseModel):
    """A token amount together with the valuation inputs supplied by an adapter."""

    model_config = ConfigDict(frozen=True)

    amount: TokenAmount
    price_wad: int = Field(ge=0, description="Value of one whole token, 1e18-scaled")
    liquidation_threshold_wad: int = Field(
        default=WAD, ge=0, le=WAD, description="Share of value counted toward solvency"
    )

    @property
    def token_address(self) -> str:
        return self.amount.token_address


class RawHealthMetric(BaseModel):
    """A protocol's native solvency encoding, kept for audit and verification."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(description="e.g. 'health_factor_wad', 'liquidity_shortfall'")
    values: dict[str, int] = Field(default_factory=dict)


class Position(BaseModel):
    """A lending position normalized to the shared health-ratio convention.

    ``normalized_health_ratio`` is WAD-scaled: >= 1e18 is safe, < 1e18 is
    eligible for liquidation, and None stands for +infinity (no debt).
    """

    model_config = ConfigDict(frozen=True)

    protocol: str
    user_address: str = Field(description="User wallet address")
    collateral: tuple[AssetBalance, ...] = ()
    debt: tuple[AssetBalance, ...] = ()
    raw_health_metric: RawHealthMetric
    normalized_health_ratio: int | None = Field(default=None, ge=0)
    severely_undercollateralized: bool = False
    liquidation_bonus_wad: int = Field(default=DEFAULT_LIQUIDATION_BONUS_WAD, ge=0)
    close_factor_wad: int = Field(default=DEFAULT_CLOSE_FACTOR_WAD, ge=0, le=WAD)
    block_number: int = Field(default=0, ge=0)
    last_evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("user_address", mode="before")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        """Store addresses lowercase so dedup keys compare equal."""
        return _normalize_address(v)

    @property
    def key(self) -> tuple[str, str]:
        """Deduplication key."""
        return (self.protocol, self.user_address)

    @property
    def is_liquidatable(self) -> bool:
        return (
            self.normalized_health_ratio is not None
            and self.normalized_health_ratio < WAD
        )

    @property
    def health_ratio(self) -> Decimal | None:
        """Ratio as Decimal for display. None means infinite."""
        if self.normalized_health_ratio is None:
            return None
        return wad_to_decimal(self.normalized_health_ratio)


@dataclass(frozen=True)
class Skipped:
    """A candidate that could not be turned into a Position.

    ``reason`` is a short key counted in ProtocolCoverage.skip_reasons;
    ``detail`` carries the underlying error text for the log.
    """

    user_address: str
    reason: str
    systemic: bool = False
    detail: str = ""


class QuotePath(BaseModel):
    """A realizable swap quote from a single venue."""

    model_config = ConfigDict(frozen=True)

    source_venue: str
    token_in: str
    token_out: str
    amount_in: int = Field(ge=0)
    amount_out: int = Field(ge=0)
    route: tuple[str, ...] = Field(description="Ordered token hops, token_in first")

    @field_validator("token_in", "token_out", mode="before")
    @classmethod
    def normalize_tokens(cls, v: str) -> str:
        return _normalize_address(v)

    @field_validator("route", mode="before")
    @classmethod
    def normalize_route(cls, v: Any) -> tuple[str, ...]:
        return tuple(_normalize_address(hop) for hop in v)

    @model_validator(mode="after")
    def check_route(self) -> QuotePath:
        if len(self.route) < 2:
            raise ValueError("route needs at least two tokens")
        if self.route[0] != self.token_in or self.route[-1] != self.token_out:
            raise ValueError("route must start at token_in and end at token_out")
        return self

    @property
    def hops(self) -> int:
        return len(self.route) - 1


class Opportunity(BaseModel):
    """An eligible position enriched with valuation and an optional quote."""

    model_config = ConfigDict(frozen=True)

    position: Position
    estimated_collateral_value_wad: int = Field(ge=0)
    estimated_debt_value_wad: int = Field(ge=0)
    estimated_profit_wad: int = Field(description="Extractable value, may be negative")
    best_quote: QuotePath | None = None
    quote_status: QuoteStatus
    urgency_score: int = Field(ge=0, description="Ratio urgency, then extractable value")

    @property
    def key(self) -> tuple[str, str]:
        return self.position.key

    def to_dict(self) -> dict[str, Any]:
        """Render for the reporting boundary."""
        position = self.position
        quote = self.best_quote
        return {
            "protocol": position.protocol,
            "user_address": position.user_address,
            "health_ratio": str(position.health_ratio),
            "severely_undercollateralized": position.severely_undercollateralized,
            "raw_health_metric": position.raw_health_metric.model_dump(),
            "block_number": position.block_number,
            "last_evaluated_at": position.last_evaluated_at.isoformat(),
            "estimated_collateral_value": str(
                wad_to_decimal(self.estimated_collateral_value_wad)
            ),
            "estimated_debt_value": str(wad_to_decimal(self.estimated_debt_value_wad)),
            "estimated_profit": str(wad_to_decimal(self.estimated_profit_wad)),
            "urgency_score": str(self.urgency_score),
            "quote_status": self.quote_status.value,
            "best_quote": None
            if quote is None
            else {
                "source_venue": quote.source_venue,
                "token_in": quote.token_in,
                "token_out": quote.token_out,
                "amount_in": str(quote.amount_in),
                "amount_out": str(quote.amount_out),
                "route": list(quote.route),
            },
        }


class ProtocolCoverage(BaseModel):
    """How much of a protocol one cycle managed to look at."""

    model_config = ConfigDict(frozen=True)

    candidates_seen: int = Field(default=0, ge=0)
    candidates_evaluated: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    source_unavailable: bool = False
    deadline_exceeded: bool = False
    skip_reasons: dict[str, int] = Field(
        default_factory=dict, description="Skip reason -> count"
    )


class ScanReport(BaseModel):
    """The single result of one completed scan cycle."""

    model_config = ConfigDict(frozen=True)

    scan_id: str
    started_at: datetime
    completed_at: datetime
    opportunities: tuple[Opportunity, ...] = ()
    per_protocol_coverage: dict[str, ProtocolCoverage] = Field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "scan_id": self.scan_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "opportunities": [o.to_dict() for o in self.opportunities],
            "per_protocol_coverage": {
                name: coverage.model_dump()
                for name, coverage in sorted(self.per_protocol_coverage.items())
            },
        }


class ScannerStatus(BaseModel):
    """Lifecycle status exposed to the process-control layer."""

    running: bool
    last_scan_id: str | None = None
    last_completed_at: datetime | None = None
    state: CycleState = CycleState.IDLE


class KnownAddress(BaseModel):
    """Input format for watch-list entries (CSV/JSON import)."""

    user_address: str
    protocol: str | None = Field(
        default=None, description="Protocol this entry applies to; None for all"
    )
    label: str = Field(default="", description="Optional label for this address")
    source: str = Field(default="manual", description="Where this address came from")

    @field_validator("user_address", mode="before")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        """Normalize address."""
        return _normalize_address(v.strip())
