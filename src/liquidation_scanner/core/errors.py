"""Error taxonomy for the position scanner.

Per-candidate and per-venue failures are recovered close to where they happen
and folded into coverage or quote-absence data. Only ConfigurationError and
CycleCanceled prevent a ScanReport from being produced.
"""

from __future__ import annotations


class ScannerError(Exception):
    """Base class for all scanner errors."""

    pass


class SourceUnavailable(ScannerError):
    """A chain endpoint, protocol core contract or venue cannot be reached.

    Systemic: logged once per cycle per source.
    """

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source} unavailable: {reason}")
        self.source = source
        self.reason = reason


class RevertError(ScannerError):
    """A view call reverted on-chain."""

    def __init__(self, address: str, signature: str, reason: str = "") -> None:
        super().__init__(f"call {signature} on {address} reverted: {reason or 'no reason'}")
        self.address = address
        self.signature = signature
        self.reason = reason


class EvaluationSkipped(ScannerError):
    """A single candidate could not be evaluated."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class QuoteUnavailable(ScannerError):
    """A venue does not carry the requested pair.

    Not an error condition for the cycle: an opportunity without a quote is a
    legitimate outcome.
    """

    pass


class ConfigurationError(ScannerError):
    """Invalid or missing configuration. Raised before any work begins."""

    pass


class CycleCanceled(ScannerError):
    """The operator aborted a scan cycle. No partial report is emitted."""

    def __init__(self, scan_id: str) -> None:
        super().__init__(f"Scan cycle {scan_id} was canceled")
        self.scan_id = scan_id
