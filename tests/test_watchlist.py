"""Tests for watch-list loading."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from fakes import USDC, WETH, balance, user
from liquidation_scanner.core.errors import ConfigurationError
from liquidation_scanner.data.constants import WAD
from liquidation_scanner.data.models import (
    KnownAddress,
    Opportunity,
    Position,
    QuoteStatus,
    RawHealthMetric,
    ScanReport,
)
from liquidation_scanner.data.watchlist import (
    addresses_for,
    load_watchlist,
    save_watchlist,
    save_watchlist_csv,
    save_watchlist_json,
    watchlist_from_list,
    watchlist_from_report,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_report(accounts: list[tuple[str, str]]) -> ScanReport:
    opportunities = tuple(
        Opportunity(
            position=Position(
                protocol=protocol,
                user_address=address,
                collateral=(balance(WETH, WAD, price_wad=2000 * WAD),),
                debt=(balance(USDC, 2100 * 10**6, decimals=6),),
                raw_health_metric=RawHealthMetric(kind="health_factor_wad"),
                normalized_health_ratio=95 * WAD // 100,
                last_evaluated_at=NOW,
            ),
            estimated_collateral_value_wad=2000 * WAD,
            estimated_debt_value_wad=2100 * WAD,
            estimated_profit_wad=0,
            quote_status=QuoteStatus.NOT_REQUESTED,
            urgency_score=0,
        )
        for protocol, address in accounts
    )
    return ScanReport(
        scan_id="scan_watch",
        started_at=NOW,
        completed_at=NOW,
        opportunities=opportunities,
    )


class TestLoadWatchlist:
    """Tests for load_watchlist."""

    def test_load_csv(self, tmp_path: Path) -> None:
        """Should parse CSV rows; an empty protocol applies everywhere."""
        path = tmp_path / "watch.csv"
        path.write_text(
            "user_address,protocol,label,source\n"
            f"{user(1)},morpho,whale,historical\n"
            f"{user(2)},,,\n"
        )

        entries = load_watchlist(path)

        assert [e.user_address for e in entries] == [user(1), user(2)]
        assert entries[0].protocol == "morpho"
        assert entries[0].label == "whale"
        assert entries[1].protocol is None
        assert entries[1].source == "csv"

    def test_load_json(self, tmp_path: Path) -> None:
        """Should parse a JSON list."""
        path = tmp_path / "watch.json"
        path.write_text(json.dumps([{"user_address": user(5).upper().replace("0X", "0x")}]))

        entries = load_watchlist(path)
        assert entries == [KnownAddress(user_address=user(5))]

    def test_missing_file(self, tmp_path: Path) -> None:
        """Should raise ConfigurationError for a missing file."""
        with pytest.raises(ConfigurationError):
            load_watchlist(tmp_path / "absent.csv")

    def test_unknown_suffix(self, tmp_path: Path) -> None:
        """Should reject unsupported formats."""
        path = tmp_path / "watch.txt"
        path.write_text(user(1))
        with pytest.raises(ConfigurationError):
            load_watchlist(path)

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Should wrap malformed files."""
        path = tmp_path / "watch.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_watchlist(path)


class TestWatchlistHelpers:
    """Tests for saving and filtering."""

    def test_addresses_for(self) -> None:
        """Should keep unscoped rows and rows for the protocol."""
        entries = [
            KnownAddress(user_address=user(1), protocol="morpho"),
            KnownAddress(user_address=user(2)),
            KnownAddress(user_address=user(3), protocol="aave_v3"),
        ]
        assert addresses_for(entries, "morpho") == [user(1), user(2)]

    def test_save_and_reload(self, tmp_path: Path) -> None:
        """Saved files load back to the same entries."""
        entries = watchlist_from_list([user(1), user(2)], protocol="morpho")

        save_watchlist_csv(entries, tmp_path / "out" / "watch.csv")
        save_watchlist_json(entries, tmp_path / "out" / "watch.json")

        assert load_watchlist(tmp_path / "out" / "watch.csv") == entries
        assert load_watchlist(tmp_path / "out" / "watch.json") == entries

    def test_save_by_suffix(self, tmp_path: Path) -> None:
        """The writer is chosen from the suffix; unknown suffixes are rejected."""
        entries = watchlist_from_list([user(1)], protocol="aave_v3", source="scan_1")

        save_watchlist(entries, tmp_path / "watch.JSON")
        assert load_watchlist(tmp_path / "watch.JSON") == entries

        with pytest.raises(ConfigurationError):
            save_watchlist(entries, tmp_path / "watch.txt")
        assert not (tmp_path / "watch.txt").exists()


class TestWatchlistFromReport:
    """Tests for turning a report into a watch-list."""

    def test_grouped_by_protocol(self) -> None:
        """Entries keep rank order within each protocol and carry the scan id."""
        report = make_report(
            [("aave_v3", user(1)), ("morpho", user(2)), ("aave_v3", user(3))]
        )

        entries = watchlist_from_report(report)

        assert [(e.protocol, e.user_address) for e in entries] == [
            ("aave_v3", user(1)),
            ("aave_v3", user(3)),
            ("morpho", user(2)),
        ]
        assert {e.source for e in entries} == {"scan_watch"}
        assert addresses_for(entries, "morpho") == [user(2)]

    def test_empty_report(self) -> None:
        """A report without opportunities gives an empty watch-list."""
        assert watchlist_from_report(make_report([])) == []
