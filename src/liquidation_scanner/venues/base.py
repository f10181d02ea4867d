"""Swap venue interface.

A venue quotes ``amount_in`` of one token for another and returns the best
route it knows, or raises QuoteUnavailable when it does not carry the pair.
Transport failures surface as SourceUnavailable so the aggregator can log
the outage once per cycle.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from liquidation_scanner.core.errors import QuoteUnavailable, SourceUnavailable
from liquidation_scanner.data.chain import RETRYABLE_ERRORS, ChainReader
from liquidation_scanner.data.models import QuotePath


class SwapVenue(Protocol):
    """Anything that can quote a token swap."""

    venue_id: str

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> QuotePath:
        """Best route on this venue.

        Raises:
            QuoteUnavailable: The venue does not carry the pair.
            SourceUnavailable: The venue cannot be reached.
        """
        ...


def best_path(paths: Iterable[QuotePath]) -> QuotePath | None:
    """Highest output, then fewest hops."""
    best: QuotePath | None = None
    for path in paths:
        if best is None or (path.amount_out, -path.hops) > (best.amount_out, -best.hops):
            best = path
    return best


class ChainVenue:
    """Base for venues quoted through on-chain view calls."""

    kind = "base"

    def __init__(self, venue_id: str, reader: ChainReader) -> None:
        self.venue_id = venue_id
        self.reader = reader

    async def _call(self, address: str, signature: str, *args: Any) -> tuple[Any, ...]:
        try:
            return await self.reader.call_view(address, signature, args)
        except RETRYABLE_ERRORS as e:
            raise SourceUnavailable(self.venue_id, repr(e)) from e

    def _path(self, token_in: str, token_out: str, amount_in: int, amount_out: int, route: list[str]) -> QuotePath:
        return QuotePath(
            source_venue=self.venue_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_out,
            route=tuple(route),
        )

    def _select(self, token_in: str, token_out: str, paths: list[QuotePath]) -> QuotePath:
        best = best_path(p for p in paths if p.amount_out > 0)
        if best is None:
            raise QuoteUnavailable(f"{self.venue_id} has no route {token_in} -> {token_out}")
        return best
