"""Watch-list loading for static candidate discovery.

Supports loading watched addresses from:
- CSV files
- JSON files
- Python lists

and for writing the accounts a scan found back out as a watch-list, so the
next run can re-check them without event discovery.

Protocols without an enumerable user registry (peer-to-pool designs) can
only be scanned from a watch-list; any other protocol may use one instead of
event discovery.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from liquidation_scanner.core.errors import ConfigurationError
from liquidation_scanner.data.models import KnownAddress, ScanReport


def load_watchlist_csv(file_path: str | Path) -> list[KnownAddress]:
    """Load watched addresses from a CSV file.

    Expected CSV format:
        user_address,protocol,label,source
        0x123...,morpho,whale_1,historical
        0x456...,,active_user,subgraph

    An empty ``protocol`` applies the row to every protocol.

    Args:
        file_path: Path to CSV file.

    Returns:
        List of KnownAddress objects.
    """
    path = Path(file_path)
    entries: list[KnownAddress] = []

    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            protocol = (row.get("protocol") or "").strip()
            entries.append(
                KnownAddress(
                    user_address=row["user_address"],
                    protocol=protocol or None,
                    label=(row.get("label") or "").strip(),
                    source=(row.get("source") or "csv").strip(),
                )
            )

    logger.info(f"Loaded {len(entries)} watched addresses from {path}")
    return entries


def load_watchlist_json(file_path: str | Path) -> list[KnownAddress]:
    """Load watched addresses from a JSON file.

    Expected JSON format:
        [
            {"user_address": "0x123...", "protocol": "morpho", "label": "whale"},
            {"user_address": "0x456..."}
        ]

    Args:
        file_path: Path to JSON file.

    Returns:
        List of KnownAddress objects.
    """
    path = Path(file_path)

    with open(path) as f:
        data = json.load(f)

    entries = [KnownAddress.model_validate(item) for item in data]
    logger.info(f"Loaded {len(entries)} watched addresses from {path}")
    return entries


def watchlist_from_list(
    addresses: list[str],
    protocol: str | None = None,
    source: str = "manual",
) -> list[KnownAddress]:
    """Create watch-list entries from plain addresses."""
    return [
        KnownAddress(user_address=addr, protocol=protocol, source=source)
        for addr in addresses
    ]


def load_watchlist(file_path: str | Path) -> list[KnownAddress]:
    """Load a watch-list, choosing the format from the file suffix.

    Raises:
        ConfigurationError: If the file is missing, has an unknown suffix or
            contains invalid entries.
    """
    path = Path(file_path)
    if not path.exists():
        raise ConfigurationError(f"Watch-list file not found: {path}")
    try:
        if path.suffix.lower() == ".csv":
            return load_watchlist_csv(path)
        if path.suffix.lower() == ".json":
            return load_watchlist_json(path)
    except (ValidationError, KeyError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid watch-list {path}: {e}") from e
    raise ConfigurationError(f"Unsupported watch-list format: {path.suffix}")


def addresses_for(entries: list[KnownAddress], protocol: str) -> list[str]:
    """Addresses that apply to ``protocol``, in file order."""
    return [
        e.user_address for e in entries if e.protocol is None or e.protocol == protocol
    ]


def save_watchlist_csv(entries: list[KnownAddress], file_path: str | Path) -> None:
    """Save watch-list entries to a CSV file.

    Args:
        entries: Entries to save.
        file_path: Output file path.
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(
            f, fieldnames=["user_address", "protocol", "label", "source"]
        )
        writer.writeheader()
        for entry in entries:
            writer.writerow(
                {
                    "user_address": entry.user_address,
                    "protocol": entry.protocol or "",
                    "label": entry.label,
                    "source": entry.source,
                }
            )


def save_watchlist_json(entries: list[KnownAddress], file_path: str | Path) -> None:
    """Save watch-list entries to a JSON file."""
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        json.dump([e.model_dump() for e in entries], f, indent=2)


def save_watchlist(entries: list[KnownAddress], file_path: str | Path) -> None:
    """Save a watch-list, choosing the format from the file suffix.

    Raises:
        ConfigurationError: If the suffix is neither .csv nor .json.
    """
    path = Path(file_path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        save_watchlist_csv(entries, path)
    elif suffix == ".json":
        save_watchlist_json(entries, path)
    else:
        raise ConfigurationError(f"Unsupported watch-list format: {path.suffix}")
    logger.info(f"Saved {len(entries)} watched addresses to {path}")


def watchlist_from_report(report: ScanReport) -> list[KnownAddress]:
    """Watch-list of the accounts behind a report's opportunities, in rank order."""
    by_protocol: dict[str, list[str]] = {}
    for opportunity in report.opportunities:
        position = opportunity.position
        by_protocol.setdefault(position.protocol, []).append(position.user_address)

    entries: list[KnownAddress] = []
    for protocol, addresses in by_protocol.items():
        entries.extend(watchlist_from_list(addresses, protocol=protocol, source=report.scan_id))
    return entries
