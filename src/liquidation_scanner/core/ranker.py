"""Opportunity valuation, deduplication and ranking.

Turns eligible positions into Opportunity objects and orders them:
1. Plan the liquidation (largest debt repaid, largest collateral seized)
2. Value the seized collateral, from a swap quote when one is available
3. Deduplicate by (protocol, user_address), keeping the latest evaluation
4. Sort by the configured ranking policy

Ranking is a pure function of its input; equal inputs give equal output.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from liquidation_scanner.core.config import RankingPolicy
from liquidation_scanner.data.constants import WAD
from liquidation_scanner.data.health_factor import (
    asset_value_wad,
    max_debt_to_cover_wad,
    seizable_collateral,
)
from liquidation_scanner.data.models import (
    AssetBalance,
    Opportunity,
    Position,
    QuotePath,
    QuoteStatus,
)


def _largest(balances: Iterable[AssetBalance]) -> AssetBalance | None:
    """Balance with the highest value; token address breaks ties."""
    ordered = sorted(balances, key=lambda b: (-asset_value_wad(b), b.token_address))
    return ordered[0] if ordered else None


@dataclass(frozen=True)
class LiquidationPlan:
    """The single liquidation call a liquidator would make for a position.

    All values are 1e18-scaled in the protocol's quote unit except
    ``seized_amount``, which is raw units of the collateral token.
    """

    collateral: AssetBalance | None
    debt: AssetBalance | None
    debt_to_cover_wad: int
    seized_value_wad: int
    seized_amount: int

    @property
    def needs_quote(self) -> bool:
        """Whether the seized collateral must be swapped back into the debt token."""
        if self.collateral is None or self.debt is None or self.seized_amount <= 0:
            return False
        return self.collateral.token_address != self.debt.token_address

    def quote_value_wad(self, quote: QuotePath) -> int:
        """Value of a quote's output, priced as the debt token."""
        if self.debt is None:
            return 0
        return quote.amount_out * self.debt.price_wad // 10**self.debt.amount.decimals

    def to_dict(self) -> dict[str, Any]:
        return {
            "collateral_token": self.collateral.token_address if self.collateral else None,
            "debt_token": self.debt.token_address if self.debt else None,
            "debt_to_cover_wad": str(self.debt_to_cover_wad),
            "seized_value_wad": str(self.seized_value_wad),
            "seized_amount": str(self.seized_amount),
        }


def plan_liquidation(position: Position) -> LiquidationPlan:
    """Plan repayment of the largest debt against the largest collateral.

    The repaid amount is capped by the close factor and the seized value by
    the collateral actually held.
    """
    collateral = _largest(position.collateral)
    debt = _largest(position.debt)
    if debt is None:
        return LiquidationPlan(collateral, None, 0, 0, 0)

    debt_to_cover = max_debt_to_cover_wad(asset_value_wad(debt), position.close_factor_wad)
    if collateral is None or collateral.price_wad == 0:
        return LiquidationPlan(collateral, debt, debt_to_cover, 0, 0)

    seized_value = seizable_collateral(
        debt_to_cover, position.liquidation_bonus_wad, asset_value_wad(collateral)
    )
    seized_amount = min(
        seized_value * 10**collateral.amount.decimals // collateral.price_wad,
        collateral.amount.raw_amount,
    )
    return LiquidationPlan(collateral, debt, debt_to_cover, seized_value, seized_amount)


# Whole quote units of extractable value below the ratio component
URGENCY_VALUE_SPAN = 10**12


def urgency_score(position: Position, extractable_value_wad: int = 0) -> int:
    """Urgency from the health ratio first and extractable value second.

    The score is ``(1e18 - ratio) * URGENCY_VALUE_SPAN + value``, where value
    is the extractable value in whole quote units, floored at 0 and capped
    below the span. A lower ratio always wins; value only separates equal
    ratios. Positions that are not eligible score 0.
    """
    ratio = position.normalized_health_ratio
    if ratio is None or ratio >= WAD:
        return 0
    value = min(max(extractable_value_wad, 0) // WAD, URGENCY_VALUE_SPAN - 1)
    return (WAD - ratio) * URGENCY_VALUE_SPAN + value


class OpportunityRanker:
    """Build, deduplicate and order opportunities.

    Usage:
        ranker = OpportunityRanker(RankingPolicy.RATIO_FIRST)
        opportunity = ranker.build_opportunity(position, plan, quote, status)
        ordered = ranker.rank(opportunities)
    """

    def __init__(self, policy: RankingPolicy = RankingPolicy.RATIO_FIRST) -> None:
        self.policy = policy

    def build_opportunity(
        self,
        position: Position,
        plan: LiquidationPlan,
        quote: QuotePath | None,
        quote_status: QuoteStatus,
    ) -> Opportunity:
        """Value an eligible position.

        With a quote, seized collateral is valued at what it actually swaps
        for in the debt token; otherwise at the protocol's own price.
        """
        collateral_value = plan.quote_value_wad(quote) if quote is not None else plan.seized_value_wad
        profit = collateral_value - plan.debt_to_cover_wad
        return Opportunity(
            position=position,
            estimated_collateral_value_wad=collateral_value,
            estimated_debt_value_wad=plan.debt_to_cover_wad,
            estimated_profit_wad=profit,
            best_quote=quote,
            quote_status=quote_status,
            urgency_score=urgency_score(position, profit),
        )

    @staticmethod
    def deduplicate(opportunities: Iterable[Opportunity]) -> list[Opportunity]:
        """One opportunity per (protocol, user_address).

        The most recently evaluated record wins (evaluation time, then block
        number); on a full tie the first one seen is kept.
        """
        kept: dict[tuple[str, str], Opportunity] = {}
        for opportunity in opportunities:
            current = kept.get(opportunity.key)
            if current is None or _recency(opportunity) > _recency(current):
                kept[opportunity.key] = opportunity
        return list(kept.values())

    def sort_key(self, opportunity: Opportunity) -> tuple[Any, ...]:
        position = opportunity.position
        ratio = position.normalized_health_ratio
        ratio_key = ratio if ratio is not None else WAD
        severity_key = 0 if position.severely_undercollateralized else 1
        value_key = -opportunity.estimated_profit_wad
        tail = (position.protocol, position.user_address)

        if self.policy is RankingPolicy.VALUE_FIRST:
            return (value_key, ratio_key, severity_key) + tail
        return (ratio_key, severity_key, value_key) + tail

    def rank(self, opportunities: Iterable[Opportunity]) -> list[Opportunity]:
        """Deduplicate and sort. The full list is returned."""
        return sorted(self.deduplicate(opportunities), key=self.sort_key)


def _recency(opportunity: Opportunity) -> tuple[Any, int]:
    position = opportunity.position
    return (position.last_evaluated_at, position.block_number)
