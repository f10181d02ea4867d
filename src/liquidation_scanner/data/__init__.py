"""Data handling modules: models, chain access, health evaluation and discovery."""

from liquidation_scanner.data.models import (
    AssetBalance,
    CycleState,
    KnownAddress,
    Opportunity,
    Position,
    ProtocolCoverage,
    QuotePath,
    QuoteStatus,
    RawHealthMetric,
    ScannerStatus,
    ScanReport,
    Skipped,
    TokenAmount,
)
from liquidation_scanner.data.chain import ChainReader, EventLog, ViewCall, Web3ChainReader
from liquidation_scanner.data.health_factor import (
    HealthEvaluation,
    HealthFactorCalculator,
    HealthRatioBreakdown,
    compute_health_ratio,
)
from liquidation_scanner.data.discovery import EventDiscovery, EventSource, StaticDiscovery
from liquidation_scanner.data.watchlist import (
    load_watchlist,
    save_watchlist,
    save_watchlist_csv,
    save_watchlist_json,
    watchlist_from_report,
)

__all__ = [
    # Models
    "AssetBalance",
    "CycleState",
    "KnownAddress",
    "Opportunity",
    "Position",
    "ProtocolCoverage",
    "QuotePath",
    "QuoteStatus",
    "RawHealthMetric",
    "ScannerStatus",
    "ScanReport",
    "Skipped",
    "TokenAmount",
    # Chain access
    "ChainReader",
    "EventLog",
    "ViewCall",
    "Web3ChainReader",
    # Health evaluation
    "HealthEvaluation",
    "HealthFactorCalculator",
    "HealthRatioBreakdown",
    "compute_health_ratio",
    # Discovery
    "EventDiscovery",
    "EventSource",
    "StaticDiscovery",
    "load_watchlist",
    "save_watchlist",
    "save_watchlist_csv",
    "save_watchlist_json",
    "watchlist_from_report",
]
