"""Swap venue adapters and the registry that builds them from deployments."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from liquidation_scanner.core.config import ScannerSettings
from liquidation_scanner.core.errors import ConfigurationError
from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.venues.base import ChainVenue, SwapVenue, best_path
from liquidation_scanner.venues.curve import CurveVenue
from liquidation_scanner.venues.maverick import MaverickVenue
from liquidation_scanner.venues.uniswap_v2 import UniswapV2Venue
from liquidation_scanner.venues.uniswap_v3 import UniswapV3Venue

VENUE_KINDS: dict[str, type[ChainVenue]] = {
    UniswapV2Venue.kind: UniswapV2Venue,
    UniswapV3Venue.kind: UniswapV3Venue,
    CurveVenue.kind: CurveVenue,
    MaverickVenue.kind: MaverickVenue,
}


def build_venue(venue_id: str, deployment: Mapping[str, Any], reader: ChainReader) -> ChainVenue:
    """Instantiate one venue from its deployment entry.

    Raises:
        ConfigurationError: Unknown kind or invalid fields.
    """
    kind = deployment.get("kind")
    venue_cls = VENUE_KINDS.get(str(kind))
    if venue_cls is None:
        raise ConfigurationError(
            f"Venue {venue_id!r} has unknown kind {kind!r}; expected one of {sorted(VENUE_KINDS)}"
        )
    params = {k: v for k, v in deployment.items() if k != "kind"}
    try:
        return venue_cls(venue_id, reader, **params)
    except (TypeError, KeyError) as e:
        raise ConfigurationError(f"Invalid deployment for venue {venue_id!r}: {e}") from e


def build_venues(
    reader: ChainReader,
    settings: ScannerSettings,
    venue_ids: Iterable[str] | None = None,
) -> dict[str, SwapVenue]:
    """Build the requested venues (all known deployments if None)."""
    ids = list(venue_ids) if venue_ids is not None else settings.known_venues
    venues: dict[str, SwapVenue] = {}
    for venue_id in ids:
        deployment = settings.venue_deployments.get(venue_id)
        if deployment is None:
            raise ConfigurationError(
                f"Unknown venue {venue_id!r}; known: {settings.known_venues}"
            )
        venues[venue_id] = build_venue(venue_id, deployment, reader)
    return venues


__all__ = [
    "ChainVenue",
    "CurveVenue",
    "MaverickVenue",
    "SwapVenue",
    "UniswapV2Venue",
    "UniswapV3Venue",
    "best_path",
    "build_venue",
    "build_venues",
]
