"""Core modules: errors, configuration, logging, quoting, ranking and orchestration.

Only the leaf modules are re-exported here; import the orchestrator, ranker
and quote aggregator from their own modules.
"""

from liquidation_scanner.core.errors import (
    ConfigurationError,
    CycleCanceled,
    EvaluationSkipped,
    QuoteUnavailable,
    RevertError,
    ScannerError,
    SourceUnavailable,
)
from liquidation_scanner.core.logging import (
    LogCategory,
    LogEntry,
    ScanLogger,
    configure_logging,
    verify_log_integrity,
)

__all__ = [
    # Errors
    "ConfigurationError",
    "CycleCanceled",
    "EvaluationSkipped",
    "QuoteUnavailable",
    "RevertError",
    "ScannerError",
    "SourceUnavailable",
    # Logging
    "LogCategory",
    "LogEntry",
    "ScanLogger",
    "configure_logging",
    "verify_log_integrity",
]
