"""Curve stable-swap pools.

Pool coins are read once with ``coins(i)`` and cached; a quote uses
``get_dy(i, j, dx)`` on every configured pool holding both tokens. A pool
that reverts on either read is left out of the quote.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from liquidation_scanner.core.errors import QuoteUnavailable, RevertError
from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import CURVE_COINS, CURVE_GET_DY
from liquidation_scanner.data.models import QuotePath
from liquidation_scanner.venues.base import ChainVenue


class CurveVenue(ChainVenue):
    """Quote through a fixed set of Curve pools."""

    kind = "curve"

    def __init__(
        self,
        venue_id: str,
        reader: ChainReader,
        pools: Sequence[Mapping[str, Any]],
    ) -> None:
        """Initialize venue.

        Args:
            venue_id: Identifier used in quotes and configuration.
            reader: Chain access port.
            pools: Entries of ``{"address": ..., "n_coins": ...}``.
        """
        super().__init__(venue_id, reader)
        self.pools = [
            (str(p["address"]).lower(), int(p.get("n_coins", 2))) for p in pools
        ]
        self._coins: dict[str, list[str]] = {}

    async def coins(self, pool: str, n_coins: int) -> list[str]:
        """Coin addresses of a pool (cached)."""
        if pool not in self._coins:
            coins = []
            for i in range(n_coins):
                (coin,) = await self._call(pool, CURVE_COINS, i)
                coins.append(coin.lower())
            self._coins[pool] = coins
        return self._coins[pool]

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> QuotePath:
        if amount_in <= 0:
            raise QuoteUnavailable("amount_in must be positive")
        token_in, token_out = token_in.lower(), token_out.lower()

        paths: list[QuotePath] = []
        for pool, n_coins in self.pools:
            try:
                coins = await self.coins(pool, n_coins)
            except RevertError:
                continue
            if token_in not in coins or token_out not in coins:
                continue
            i, j = coins.index(token_in), coins.index(token_out)
            try:
                (amount_out,) = await self._call(pool, CURVE_GET_DY, i, j, amount_in)
            except RevertError:
                continue
            paths.append(self._path(token_in, token_out, amount_in, amount_out, [token_in, token_out]))

        return self._select(token_in, token_out, paths)
