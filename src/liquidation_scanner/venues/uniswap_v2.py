"""Constant-product routers (Uniswap v2 interface: Sushiswap v2, Camelot).

Quotes the direct pair and two-hop routes through connector tokens with
``getAmountsOut``. A route whose pair does not exist reverts and is ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from liquidation_scanner.core.errors import QuoteUnavailable, RevertError, SourceUnavailable
from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import DEFAULT_CONNECTOR_TOKENS, UNISWAP_V2_GET_AMOUNTS_OUT
from liquidation_scanner.data.models import QuotePath
from liquidation_scanner.venues.base import ChainVenue


class UniswapV2Venue(ChainVenue):
    """Quote through a Uniswap-v2-compatible router."""

    kind = "uniswap_v2"

    def __init__(
        self,
        venue_id: str,
        reader: ChainReader,
        router: str,
        connectors: Sequence[str] = DEFAULT_CONNECTOR_TOKENS,
    ) -> None:
        """Initialize venue.

        Args:
            venue_id: Identifier used in quotes and configuration.
            reader: Chain access port.
            router: Router address.
            connectors: Intermediate tokens tried for two-hop routes.
        """
        super().__init__(venue_id, reader)
        self.router = router.lower()
        self.connectors = [c.lower() for c in connectors]

    def routes(self, token_in: str, token_out: str) -> list[list[str]]:
        """Candidate routes: direct first, then via each connector."""
        token_in, token_out = token_in.lower(), token_out.lower()
        routes = [[token_in, token_out]]
        for connector in self.connectors:
            if connector not in (token_in, token_out):
                routes.append([token_in, connector, token_out])
        return routes

    async def _quote_route(self, route: list[str], amount_in: int) -> int:
        (amounts,) = await self._call(self.router, UNISWAP_V2_GET_AMOUNTS_OUT, amount_in, route)
        return amounts[-1]

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> QuotePath:
        if amount_in <= 0:
            raise QuoteUnavailable("amount_in must be positive")
        routes = self.routes(token_in, token_out)
        results = await asyncio.gather(
            *(self._quote_route(route, amount_in) for route in routes),
            return_exceptions=True,
        )

        paths: list[QuotePath] = []
        outage: SourceUnavailable | None = None
        for route, result in zip(routes, results):
            if isinstance(result, RevertError):
                continue
            if isinstance(result, SourceUnavailable):
                outage = result
                continue
            if isinstance(result, BaseException):
                raise result
            paths.append(self._path(route[0], route[-1], amount_in, result, route))

        if not paths and outage is not None:
            raise outage
        return self._select(token_in, token_out, paths)
