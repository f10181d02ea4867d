"""Maverick V2 pools.

Each configured pool holds a (tokenA, tokenB) pair, read once and cached.
Quotes go through the Maverick V2 quoter's ``calculateSwap`` as an
exact-input swap with no tick limit. Swap amounts are uint128 on this venue;
larger inputs are not quoted. A pool that reverts is left out of the quote.
"""

from __future__ import annotations

from collections.abc import Sequence

from liquidation_scanner.core.errors import QuoteUnavailable, RevertError
from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import (
    MAVERICK_V2_CALCULATE_SWAP,
    MAVERICK_V2_TOKEN_A,
    MAVERICK_V2_TOKEN_B,
)
from liquidation_scanner.data.models import QuotePath
from liquidation_scanner.venues.base import ChainVenue

MAX_UINT128 = 2**128 - 1
MAX_TICK = 2**31 - 1
MIN_TICK = -(2**31)


class MaverickVenue(ChainVenue):
    """Quote through a fixed set of Maverick V2 pools."""

    kind = "maverick_v2"

    def __init__(
        self,
        venue_id: str,
        reader: ChainReader,
        quoter: str,
        pools: Sequence[str] = (),
    ) -> None:
        """Initialize venue.

        Args:
            venue_id: Identifier used in quotes and configuration.
            reader: Chain access port.
            quoter: MaverickV2Quoter address.
            pools: Pool addresses to quote on.
        """
        super().__init__(venue_id, reader)
        self.quoter = quoter.lower()
        self.pools = [str(p).lower() for p in pools]
        self._tokens: dict[str, tuple[str, str]] = {}

    async def tokens(self, pool: str) -> tuple[str, str]:
        """(tokenA, tokenB) of a pool (cached)."""
        if pool not in self._tokens:
            (token_a,) = await self._call(pool, MAVERICK_V2_TOKEN_A)
            (token_b,) = await self._call(pool, MAVERICK_V2_TOKEN_B)
            self._tokens[pool] = (token_a.lower(), token_b.lower())
        return self._tokens[pool]

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> QuotePath:
        if amount_in <= 0:
            raise QuoteUnavailable("amount_in must be positive")
        if amount_in > MAX_UINT128:
            raise QuoteUnavailable(f"{self.venue_id} cannot quote more than uint128")
        token_in, token_out = token_in.lower(), token_out.lower()

        paths: list[QuotePath] = []
        for pool in self.pools:
            try:
                pair = await self.tokens(pool)
            except RevertError:
                continue
            if set(pair) != {token_in, token_out}:
                continue
            token_a_in = pair[0] == token_in
            tick_limit = MAX_TICK if token_a_in else MIN_TICK
            try:
                _, amount_out, _ = await self._call(
                    self.quoter,
                    MAVERICK_V2_CALCULATE_SWAP,
                    pool,
                    amount_in,
                    token_a_in,
                    False,
                    tick_limit,
                )
            except RevertError:
                continue
            paths.append(self._path(token_in, token_out, amount_in, amount_out, [token_in, token_out]))

        return self._select(token_in, token_out, paths)
