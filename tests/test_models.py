"""Tests for data models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from fakes import USDC, WETH, balance
from liquidation_scanner.data.constants import WAD
from liquidation_scanner.data.models import (
    KnownAddress,
    Opportunity,
    Position,
    ProtocolCoverage,
    QuotePath,
    QuoteStatus,
    RawHealthMetric,
    ScanReport,
    TokenAmount,
    to_wad,
    wad_to_decimal,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_position(ratio: int | None, user: str = "0x" + "AB" * 20) -> Position:
    return Position(
        protocol="aave_v3",
        user_address=user,
        collateral=(balance(WETH, WAD, price_wad=2000 * WAD),),
        debt=(balance(USDC, 1_900_000_000, decimals=6),),
        raw_health_metric=RawHealthMetric(kind="health_factor_wad", values={"health_factor": 1}),
        normalized_health_ratio=ratio,
        block_number=123,
        last_evaluated_at=NOW,
    )


class TestFixedPointHelpers:
    """Tests for WAD conversion helpers."""

    def test_wad_to_decimal_exact(self) -> None:
        """Should convert without rounding."""
        assert wad_to_decimal(12 * WAD // 10) == Decimal("1.2")
        assert wad_to_decimal(1) == Decimal("0.000000000000000001")
        assert wad_to_decimal(-5 * WAD // 2) == Decimal("-2.5")
        assert wad_to_decimal(0) == Decimal("0")

    def test_to_wad(self) -> None:
        """Should rescale to 18 decimals."""
        assert to_wad(1_500_000, 6) == 15 * WAD // 10
        assert to_wad(10**24, 24) == WAD


class TestTokenAmount:
    """Tests for TokenAmount model."""

    def test_address_normalized(self) -> None:
        """Should store lowercase 0x addresses."""
        amount = TokenAmount(token_address="AF88d065e77c8cC2239327C5EDb3A432268e5831", raw_amount=1, decimals=6)
        assert amount.token_address == "0xaf88d065e77c8cc2239327c5edb3a432268e5831"

    def test_arbitrary_precision(self) -> None:
        """Should accept amounts beyond 64 bits."""
        amount = TokenAmount(token_address=WETH, raw_amount=2**200, decimals=18)
        assert amount.raw_amount == 2**200

    def test_negative_rejected(self) -> None:
        """Should reject negative amounts."""
        with pytest.raises(ValidationError):
            TokenAmount(token_address=WETH, raw_amount=-1, decimals=18)

    def test_human_amount(self) -> None:
        """Should expose a Decimal amount for display."""
        amount = TokenAmount(token_address=USDC, raw_amount=1_234_500, decimals=6)
        assert amount.amount == Decimal("1.2345")


class TestPosition:
    """Tests for Position model."""

    def test_liquidatable_below_one(self) -> None:
        """Ratio below 1 is liquidatable, exactly 1 is not."""
        assert make_position(WAD - 1).is_liquidatable
        assert not make_position(WAD).is_liquidatable

    def test_infinite_ratio(self) -> None:
        """No debt is never liquidatable and has no ratio."""
        position = make_position(None)
        assert not position.is_liquidatable
        assert position.health_ratio is None

    def test_key_normalized(self) -> None:
        """Mixed-case addresses should produce the same key."""
        upper = make_position(WAD, user="0x" + "AB" * 20)
        lower = make_position(WAD, user="0x" + "ab" * 20)
        assert upper.key == lower.key == ("aave_v3", "0x" + "ab" * 20)

    def test_immutable(self) -> None:
        """Positions cannot be modified once emitted."""
        position = make_position(WAD)
        with pytest.raises(ValidationError):
            position.normalized_health_ratio = 0  # type: ignore[misc]


class TestQuotePath:
    """Tests for QuotePath model."""

    def test_hops(self) -> None:
        """Hops is route length minus one."""
        quote = QuotePath(
            source_venue="uniswap_v3",
            token_in=WETH,
            token_out=USDC,
            amount_in=WAD,
            amount_out=2000,
            route=(WETH, "0x" + "cc" * 20, USDC),
        )
        assert quote.hops == 2

    def test_route_must_match_tokens(self) -> None:
        """Route endpoints must be token_in and token_out."""
        with pytest.raises(ValidationError):
            QuotePath(
                source_venue="curve",
                token_in=WETH,
                token_out=USDC,
                amount_in=1,
                amount_out=1,
                route=(USDC, WETH),
            )

    def test_route_needs_two_tokens(self) -> None:
        """A single-token route is rejected."""
        with pytest.raises(ValidationError):
            QuotePath(
                source_venue="curve",
                token_in=WETH,
                token_out=WETH,
                amount_in=1,
                amount_out=1,
                route=(WETH,),
            )


class TestScanReport:
    """Tests for ScanReport serialization."""

    @pytest.fixture
    def report(self) -> ScanReport:
        position = make_position(9 * WAD // 10)
        opportunity = Opportunity(
            position=position,
            estimated_collateral_value_wad=1000 * WAD,
            estimated_debt_value_wad=950 * WAD,
            estimated_profit_wad=50 * WAD,
            best_quote=QuotePath(
                source_venue="camelot",
                token_in=WETH,
                token_out=USDC,
                amount_in=WAD // 2,
                amount_out=1_000_000_000,
                route=(WETH, USDC),
            ),
            quote_status=QuoteStatus.QUOTED,
            urgency_score=WAD // 10,
        )
        return ScanReport(
            scan_id="scan_1",
            started_at=NOW,
            completed_at=NOW + timedelta(milliseconds=1500),
            opportunities=(opportunity,),
            per_protocol_coverage={
                "compound": ProtocolCoverage(candidates_seen=3, candidates_evaluated=3),
                "aave_v3": ProtocolCoverage(
                    candidates_seen=2, candidates_evaluated=1, skipped=1, skip_reasons={"revert": 1}
                ),
            },
        )

    def test_duration(self, report: ScanReport) -> None:
        """Should compute duration in milliseconds."""
        assert report.duration_ms == 1500

    def test_to_dict_decimal_strings(self, report: ScanReport) -> None:
        """Fixed-point values leave the core as decimal strings."""
        data = report.to_dict()
        row = data["opportunities"][0]

        assert row["health_ratio"] == "0.9"
        assert row["estimated_profit"] == "50"
        assert row["urgency_score"] == str(WAD // 10)
        assert row["quote_status"] == "quoted"
        assert row["best_quote"]["amount_out"] == "1000000000"
        assert row["best_quote"]["route"] == [WETH, USDC]

    def test_to_dict_coverage_sorted(self, report: ScanReport) -> None:
        """Coverage is keyed by protocol in sorted order."""
        data = report.to_dict()
        assert list(data["per_protocol_coverage"]) == ["aave_v3", "compound"]
        assert data["per_protocol_coverage"]["aave_v3"]["skip_reasons"] == {"revert": 1}


class TestKnownAddress:
    """Tests for KnownAddress model."""

    def test_normalizes_address(self) -> None:
        """Should strip whitespace and lowercase."""
        entry = KnownAddress(user_address="  0xABCDEF0000000000000000000000000000000001 ")
        assert entry.user_address == "0xabcdef0000000000000000000000000000000001"
        assert entry.protocol is None
        assert entry.source == "manual"
