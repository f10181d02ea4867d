"""Concentrated-liquidity quoters (Uniswap v3 Quoter interface).

Tries every configured fee tier with ``quoteExactInputSingle`` and keeps the
best output. Tiers without a pool revert and are ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from liquidation_scanner.core.errors import QuoteUnavailable, RevertError, SourceUnavailable
from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import DEFAULT_FEE_TIERS, UNISWAP_V3_QUOTE_EXACT_INPUT_SINGLE
from liquidation_scanner.data.models import QuotePath
from liquidation_scanner.venues.base import ChainVenue


class UniswapV3Venue(ChainVenue):
    """Quote single-pool swaps across fee tiers."""

    kind = "uniswap_v3"

    def __init__(
        self,
        venue_id: str,
        reader: ChainReader,
        quoter: str,
        fee_tiers: Sequence[int] = DEFAULT_FEE_TIERS,
    ) -> None:
        super().__init__(venue_id, reader)
        self.quoter = quoter.lower()
        self.fee_tiers = list(fee_tiers)

    async def _quote_tier(self, token_in: str, token_out: str, fee: int, amount_in: int) -> int:
        (amount_out,) = await self._call(
            self.quoter,
            UNISWAP_V3_QUOTE_EXACT_INPUT_SINGLE,
            token_in,
            token_out,
            fee,
            amount_in,
            0,
        )
        return amount_out

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> QuotePath:
        if amount_in <= 0:
            raise QuoteUnavailable("amount_in must be positive")
        token_in, token_out = token_in.lower(), token_out.lower()
        results = await asyncio.gather(
            *(self._quote_tier(token_in, token_out, fee, amount_in) for fee in self.fee_tiers),
            return_exceptions=True,
        )

        best_out = 0
        outage: SourceUnavailable | None = None
        for result in results:
            if isinstance(result, RevertError):
                continue
            if isinstance(result, SourceUnavailable):
                outage = result
                continue
            if isinstance(result, BaseException):
                raise result
            best_out = max(best_out, result)

        if best_out == 0 and outage is not None:
            raise outage
        paths = [self._path(token_in, token_out, amount_in, best_out, [token_in, token_out])]
        return self._select(token_in, token_out, paths)
