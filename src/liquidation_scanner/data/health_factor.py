"""Health ratio calculation and verification.

Normalizes every protocol's solvency encoding to one convention:

    Health Ratio = Sum(Amount_i * Price_i * LiquidationThreshold_i) / Sum(Debt_j * Price_j)

All arithmetic is on integers scaled by WAD (1e18). Each asset value is
floored independently, so the result does not depend on asset order. A ratio
of None means +infinity (no debt).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from liquidation_scanner.data.constants import (
    HEALTH_VERIFICATION_TOLERANCE_WAD,
    WAD,
)
from liquidation_scanner.data.models import AssetBalance, wad_to_decimal


def asset_value_wad(balance: AssetBalance) -> int:
    """Value of a balance in the protocol's quote unit, 1e18-scaled."""
    return balance.amount.raw_amount * balance.price_wad // 10**balance.amount.decimals


def threshold_adjusted_value_wad(balance: AssetBalance) -> int:
    """Value counted toward solvency (value * liquidation threshold)."""
    return (
        balance.amount.raw_amount
        * balance.price_wad
        * balance.liquidation_threshold_wad
        // (10**balance.amount.decimals * WAD)
    )


@dataclass(frozen=True)
class HealthEvaluation:
    """Result of evaluating one set of balances."""

    ratio: int | None
    severely_undercollateralized: bool
    total_collateral_value_wad: int
    adjusted_collateral_value_wad: int
    total_debt_value_wad: int

    @property
    def is_liquidatable(self) -> bool:
        return self.ratio is not None and self.ratio < WAD


def ratio_from_values(adjusted_collateral_wad: int, debt_wad: int) -> int | None:
    """Ratio of two WAD values. None when there is no debt."""
    if debt_wad <= 0:
        return None
    return adjusted_collateral_wad * WAD // debt_wad


def compute_health_ratio(
    collateral: Iterable[AssetBalance],
    debt: Iterable[AssetBalance],
) -> HealthEvaluation:
    """Compute the normalized health ratio for a set of balances.

    Args:
        collateral: Collateral balances with price and liquidation threshold.
        debt: Debt balances with price.

    Returns:
        HealthEvaluation. Zero debt gives ratio None; zero collateral with
        debt gives ratio 0 and the severely-undercollateralized flag.
    """
    collateral = list(collateral)
    total_collateral = sum((asset_value_wad(c) for c in collateral), 0)
    adjusted_collateral = sum((threshold_adjusted_value_wad(c) for c in collateral), 0)
    total_debt = sum((asset_value_wad(d) for d in debt), 0)

    ratio = ratio_from_values(adjusted_collateral, total_debt)
    severe = total_debt > 0 and total_collateral == 0

    return HealthEvaluation(
        ratio=0 if severe else ratio,
        severely_undercollateralized=severe,
        total_collateral_value_wad=total_collateral,
        adjusted_collateral_value_wad=adjusted_collateral,
        total_debt_value_wad=total_debt,
    )


def max_debt_to_cover_wad(debt_value_wad: int, close_factor_wad: int) -> int:
    """Largest debt value a single liquidation may repay."""
    return debt_value_wad * close_factor_wad // WAD


def seizable_collateral(
    debt_to_cover_wad: int,
    liquidation_bonus_wad: int,
    collateral_value_wad: int,
) -> int:
    """Collateral value received for repaying ``debt_to_cover_wad``.

    Capped at the collateral actually available.
    """
    return min(debt_to_cover_wad * liquidation_bonus_wad // WAD, collateral_value_wad)


def relative_diff_wad(computed: int, native: int) -> int:
    """|computed - native| / native, 1e18-scaled. 0 when native is 0."""
    if native == 0:
        return 0
    return abs(computed - native) * WAD // native


@dataclass
class HealthRatioBreakdown:
    """Detailed breakdown of a health ratio calculation."""

    total_collateral_value_wad: int
    adjusted_collateral_value_wad: int
    total_debt_value_wad: int
    calculated_ratio: int | None
    native_ratio: int | None

    collateral_contributions: list[dict[str, Any]] = field(default_factory=list)
    debt_contributions: list[dict[str, Any]] = field(default_factory=list)

    verification_passed: bool = True
    verification_diff_wad: int | None = None
    verification_tolerance_wad: int = HEALTH_VERIFICATION_TOLERANCE_WAD

    def to_dict(self) -> dict[str, Any]:
        def fmt(v: int | None) -> str:
            return "infinite" if v is None else str(wad_to_decimal(v))

        return {
            "total_collateral_value": fmt(self.total_collateral_value_wad),
            "adjusted_collateral_value": fmt(self.adjusted_collateral_value_wad),
            "total_debt_value": fmt(self.total_debt_value_wad),
            "calculated_ratio": fmt(self.calculated_ratio),
            "native_ratio": fmt(self.native_ratio),
            "verification_passed": self.verification_passed,
            "collateral_contributions": self.collateral_contributions,
            "debt_contributions": self.debt_contributions,
        }


class HealthFactorCalculator:
    """Calculate and verify health ratios for normalized positions.

    Supports:
    - Multiple collateral assets with different thresholds
    - Verification against a protocol's native metric

    Usage:
        calculator = HealthFactorCalculator()
        breakdown = calculator.calculate_with_breakdown(collateral, debt, native_ratio=hf)
        if not breakdown.verification_passed:
            logger.warning(f"Ratio mismatch: {breakdown.verification_diff_wad}")
    """

    def __init__(
        self,
        verification_tolerance_wad: int = HEALTH_VERIFICATION_TOLERANCE_WAD,
    ) -> None:
        """Initialize calculator.

        Args:
            verification_tolerance_wad: Maximum allowed relative difference
                between calculated and native ratio (1e15 = 0.1%).
        """
        self.verification_tolerance_wad = verification_tolerance_wad

    def calculate(
        self,
        collateral: Iterable[AssetBalance],
        debt: Iterable[AssetBalance],
    ) -> HealthEvaluation:
        return compute_health_ratio(collateral, debt)

    def verify(self, calculated: int | None, native: int | None) -> tuple[bool, int | None]:
        """Compare a calculated ratio with a native one.

        Returns:
            Tuple of (passed, relative_diff_wad). Skipped (passes) when either
            side is infinite.
        """
        if calculated is None or native is None:
            return True, None
        diff = relative_diff_wad(calculated, native)
        return diff <= self.verification_tolerance_wad, diff

    def calculate_with_breakdown(
        self,
        collateral: Iterable[AssetBalance],
        debt: Iterable[AssetBalance],
        native_ratio: int | None = None,
    ) -> HealthRatioBreakdown:
        """Calculate the ratio with per-asset contributions and verification.

        Args:
            collateral: Collateral balances.
            debt: Debt balances.
            native_ratio: The protocol's own ratio, 1e18-scaled, if it has one.

        Returns:
            HealthRatioBreakdown with full calculation details.
        """
        collateral = list(collateral)
        debt = list(debt)
        evaluation = self.calculate(collateral, debt)
        adjusted_total = evaluation.adjusted_collateral_value_wad
        debt_total = evaluation.total_debt_value_wad

        collateral_contributions = []
        for c in collateral:
            adjusted = threshold_adjusted_value_wad(c)
            collateral_contributions.append(
                {
                    "symbol": c.amount.symbol,
                    "address": c.token_address,
                    "raw_amount": str(c.amount.raw_amount),
                    "price": str(wad_to_decimal(c.price_wad)),
                    "value": str(wad_to_decimal(asset_value_wad(c))),
                    "liquidation_threshold": str(
                        wad_to_decimal(c.liquidation_threshold_wad)
                    ),
                    "adjusted_value": str(wad_to_decimal(adjusted)),
                    "contribution_pct": str(
                        wad_to_decimal(adjusted * 100 * WAD // adjusted_total)
                        if adjusted_total > 0
                        else 0
                    ),
                }
            )

        debt_contributions = []
        for d in debt:
            value = asset_value_wad(d)
            debt_contributions.append(
                {
                    "symbol": d.amount.symbol,
                    "address": d.token_address,
                    "raw_amount": str(d.amount.raw_amount),
                    "price": str(wad_to_decimal(d.price_wad)),
                    "value": str(wad_to_decimal(value)),
                    "contribution_pct": str(
                        wad_to_decimal(value * 100 * WAD // debt_total)
                        if debt_total > 0
                        else 0
                    ),
                }
            )

        passed, diff = self.verify(evaluation.ratio, native_ratio)

        return HealthRatioBreakdown(
            total_collateral_value_wad=evaluation.total_collateral_value_wad,
            adjusted_collateral_value_wad=adjusted_total,
            total_debt_value_wad=debt_total,
            calculated_ratio=evaluation.ratio,
            native_ratio=native_ratio,
            collateral_contributions=collateral_contributions,
            debt_contributions=debt_contributions,
            verification_passed=passed,
            verification_diff_wad=diff,
            verification_tolerance_wad=self.verification_tolerance_wad,
        )
