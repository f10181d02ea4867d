"""Best-execution quote aggregation.

Fans a single swap request out to every configured venue at once, each with
its own timeout, and keeps the best answer. A venue that times out, reverts,
is unreachable or fails unexpectedly contributes no quote; it never fails
the request as a whole.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from liquidation_scanner.core.errors import QuoteUnavailable, RevertError, SourceUnavailable
from liquidation_scanner.core.logging import LogCategory, ScanLogger
from liquidation_scanner.data.models import QuotePath
from liquidation_scanner.venues.base import SwapVenue


def quote_sort_key(path: QuotePath) -> tuple[int, int, str]:
    """Highest output, then fewer hops, then smallest venue id."""
    return (-path.amount_out, path.hops, path.source_venue)


class QuoteAggregator:
    """Query venues concurrently and select the best quote.

    Usage:
        aggregator = QuoteAggregator(venues, timeout=2.0, logger=scan_logger)
        quote = await aggregator.best_quote(weth, usdc, 10**18)
    """

    def __init__(
        self,
        venues: Sequence[SwapVenue],
        timeout: float,
        logger: ScanLogger | None = None,
    ) -> None:
        """Initialize aggregator.

        Args:
            venues: Venues to query. Empty means quoting is skipped.
            timeout: Per-venue timeout in seconds.
            logger: Cycle logger; outages are logged once per venue.
        """
        self.venues = list(venues)
        self.timeout = timeout
        self.logger = logger

    async def _ask(
        self, venue: SwapVenue, token_in: str, token_out: str, amount_in: int
    ) -> QuotePath | None:
        try:
            path = await asyncio.wait_for(
                venue.quote(token_in, token_out, amount_in), self.timeout
            )
        except (QuoteUnavailable, RevertError):
            return None
        except asyncio.TimeoutError:
            if self.logger:
                self.logger.debug(
                    f"Quote from {venue.venue_id} timed out",
                    LogCategory.QUOTE,
                    data={"venue": venue.venue_id, "token_in": token_in, "token_out": token_out},
                )
            return None
        except SourceUnavailable as e:
            if self.logger:
                self.logger.warning_once(
                    ("venue_unavailable", venue.venue_id),
                    f"Venue {venue.venue_id} unavailable: {e.reason}",
                    LogCategory.QUOTE,
                    data={"venue": venue.venue_id},
                )
            return None
        except Exception as e:
            if self.logger:
                self.logger.warning_once(
                    ("venue_error", venue.venue_id),
                    f"Venue {venue.venue_id} failed: {e!r}",
                    LogCategory.QUOTE,
                    data={"venue": venue.venue_id, "error": repr(e)},
                )
            return None

        if path.amount_out <= 0:
            return None
        return path

    async def best_quote(
        self, token_in: str, token_out: str, amount_in: int
    ) -> QuotePath | None:
        """Best quote across all venues, or None if none returned a valid quote."""
        if amount_in <= 0 or not self.venues:
            return None
        results = await asyncio.gather(
            *(self._ask(v, token_in, token_out, amount_in) for v in self.venues)
        )
        paths = [p for p in results if p is not None]
        if not paths:
            return None
        return min(paths, key=quote_sort_key)
