"""Lending protocol adapters and the registry that builds them from deployments."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from liquidation_scanner.core.config import ScannerSettings
from liquidation_scanner.core.errors import ConfigurationError
from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.models import KnownAddress
from liquidation_scanner.data.watchlist import addresses_for
from liquidation_scanner.protocols.aave import AaveStyleAdapter
from liquidation_scanner.protocols.base import CycleContext, ProtocolAdapter
from liquidation_scanner.protocols.cauldron import CauldronAdapter
from liquidation_scanner.protocols.compound import CompoundStyleAdapter
from liquidation_scanner.protocols.llamalend import LlamaLendAdapter
from liquidation_scanner.protocols.morpho import MorphoAdapter

ADAPTER_KINDS: dict[str, type[ProtocolAdapter]] = {
    AaveStyleAdapter.kind: AaveStyleAdapter,
    CompoundStyleAdapter.kind: CompoundStyleAdapter,
    CauldronAdapter.kind: CauldronAdapter,
    LlamaLendAdapter.kind: LlamaLendAdapter,
    MorphoAdapter.kind: MorphoAdapter,
}

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "aave": ("pool", "data_provider", "oracle"),
    "compound": ("comptroller",),
    "cauldron": ("cauldrons",),
    "llamalend": ("controllers",),
    "morpho": ("lens",),
}


def build_adapter(
    protocol_id: str,
    deployment: Mapping[str, Any],
    reader: ChainReader,
    watchlist: list[str] | None = None,
    log_chunk_size: int | None = None,
) -> ProtocolAdapter:
    """Instantiate one adapter from its deployment entry.

    Raises:
        ConfigurationError: Unknown kind, missing or unexpected fields.
    """
    kind = deployment.get("kind")
    adapter_cls = ADAPTER_KINDS.get(str(kind))
    if adapter_cls is None:
        raise ConfigurationError(
            f"Protocol {protocol_id!r} has unknown kind {kind!r}; "
            f"expected one of {sorted(ADAPTER_KINDS)}"
        )

    missing = [f for f in REQUIRED_FIELDS[adapter_cls.kind] if not deployment.get(f)]
    if missing:
        raise ConfigurationError(
            f"Protocol {protocol_id!r} is missing deployment fields: {missing}"
        )

    params = {k: v for k, v in deployment.items() if k != "kind"}
    if log_chunk_size is not None:
        params["log_chunk_size"] = log_chunk_size
    try:
        return adapter_cls(protocol_id, reader, watchlist=watchlist, **params)
    except TypeError as e:
        raise ConfigurationError(f"Invalid deployment for {protocol_id!r}: {e}") from e


def configured_protocols(settings: ScannerSettings) -> list[str]:
    """Protocols whose deployments carry every required field."""
    ids = []
    for protocol_id in settings.known_protocols:
        deployment = settings.protocol_deployments[protocol_id]
        required = REQUIRED_FIELDS.get(str(deployment.get("kind")))
        if required is not None and all(deployment.get(f) for f in required):
            ids.append(protocol_id)
    return ids


def build_adapters(
    reader: ChainReader,
    settings: ScannerSettings,
    protocol_ids: Iterable[str] | None = None,
    watchlist: list[KnownAddress] | None = None,
) -> dict[str, ProtocolAdapter]:
    """Build adapters for the requested protocols.

    Args:
        reader: Chain access port shared by all adapters.
        settings: Deployments and discovery settings.
        protocol_ids: Protocols to build (all known deployments if None).
        watchlist: Watch-list entries. A protocol with matching entries uses
            them instead of event discovery.

    Returns:
        Mapping of protocol id to adapter.
    """
    ids = list(protocol_ids) if protocol_ids is not None else settings.known_protocols
    adapters: dict[str, ProtocolAdapter] = {}
    for protocol_id in ids:
        deployment = settings.protocol_deployments.get(protocol_id)
        if deployment is None:
            raise ConfigurationError(
                f"Unknown protocol {protocol_id!r}; known: {settings.known_protocols}"
            )
        static = addresses_for(watchlist, protocol_id) if watchlist else []
        adapters[protocol_id] = build_adapter(
            protocol_id,
            deployment,
            reader,
            watchlist=static or None,
            log_chunk_size=settings.log_chunk_size,
        )
    return adapters


__all__ = [
    "ADAPTER_KINDS",
    "AaveStyleAdapter",
    "CauldronAdapter",
    "CompoundStyleAdapter",
    "CycleContext",
    "LlamaLendAdapter",
    "MorphoAdapter",
    "ProtocolAdapter",
    "build_adapter",
    "build_adapters",
    "configured_protocols",
]
