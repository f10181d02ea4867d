"""Multi-protocol lending position scanner and liquidation opportunity ranker.

This package discovers borrowers on several lending protocols, normalizes
their solvency to a single health ratio, quotes the collateral a liquidation
would seize, and ranks the results.

The scanner is read-only: it never builds, signs or submits transactions.
"""

__version__ = "0.1.0"

from liquidation_scanner.core.errors import (
    ConfigurationError,
    CycleCanceled,
    ScannerError,
)

__all__ = ["ConfigurationError", "CycleCanceled", "ScannerError", "__version__"]
