"""Command-line interface for the position scanner.

Provides the ``liquidation-scan`` entry point:
- Builds adapters and venues from deployments and the environment
- Runs one scan cycle, or a loop of cycles with ``--interval``
- Prints a ranked summary and writes each ScanReport as JSON
- Optionally writes the accounts behind each report as a watch-list

The scanner is read-only; nothing here signs or sends transactions.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from loguru import logger

from liquidation_scanner.core.config import RankingPolicy, ScanConfig, ScannerSettings
from liquidation_scanner.core.errors import ConfigurationError, CycleCanceled
from liquidation_scanner.core.logging import configure_logging
from liquidation_scanner.core.orchestrator import ScanOrchestrator
from liquidation_scanner.data.chain import Web3ChainReader
from liquidation_scanner.data.models import ScanReport
from liquidation_scanner.data.watchlist import load_watchlist, save_watchlist, watchlist_from_report
from liquidation_scanner.protocols import build_adapters, configured_protocols
from liquidation_scanner.venues import build_venues


def _split_ids(values: Sequence[str] | None) -> list[str] | None:
    """Accept both ``--protocols a b`` and ``--protocols a,b``."""
    if values is None:
        return None
    ids: list[str] = []
    for value in values:
        ids.extend(v.strip() for v in value.split(",") if v.strip())
    return ids


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="liquidation-scan",
        description="Scan lending protocols for liquidatable positions (read-only)",
    )

    # Scan scope
    scan_group = parser.add_argument_group("scan")
    scan_group.add_argument(
        "--config",
        type=Path,
        help="JSON file with scan configuration (command-line options override it)",
    )
    scan_group.add_argument(
        "--protocols",
        nargs="+",
        help="Protocols to scan, e.g. aave_v3 compound (default: all configured deployments)",
    )
    scan_group.add_argument(
        "--venues",
        nargs="+",
        help="Swap venues to quote on (default: all configured deployments)",
    )
    scan_group.add_argument(
        "--no-quotes",
        action="store_true",
        help="Skip quoting seized collateral",
    )
    scan_group.add_argument(
        "--max-users",
        type=int,
        help="Max candidates per protocol per cycle (default: 100)",
    )
    scan_group.add_argument("--from-block", type=int, help="First block for event discovery")
    scan_group.add_argument("--to-block", type=int, help="Last block for event discovery")
    scan_group.add_argument(
        "--lookback-blocks",
        type=int,
        help="Blocks searched when --from-block is not given (default: 10000)",
    )
    scan_group.add_argument(
        "--ranking-policy",
        choices=[p.value for p in RankingPolicy],
        help="Primary ordering of opportunities (default: ratio_first)",
    )

    # Timing and concurrency
    timing_group = parser.add_argument_group("timing")
    timing_group.add_argument("--call-timeout-ms", type=int, help="Per-call timeout (default: 5000)")
    timing_group.add_argument(
        "--deadline-ms", type=int, help="Per-protocol deadline (default: 60000)"
    )
    timing_group.add_argument("--quote-timeout-ms", type=int, help="Per-venue quote timeout")
    timing_group.add_argument(
        "--concurrency", type=int, help="Concurrent evaluations per protocol (default: 10)"
    )
    timing_group.add_argument("--retries", type=int, help="Attempts per read (default: 3)")
    timing_group.add_argument(
        "--interval",
        type=float,
        help="Repeat the scan every N seconds until interrupted",
    )

    # Sources
    source_group = parser.add_argument_group("sources")
    source_group.add_argument("--rpc-url", help="JSON-RPC endpoint (default: $RPC_URL)")
    source_group.add_argument(
        "--deployments",
        type=Path,
        help="JSON file overriding protocol and venue deployments (default: $DEPLOYMENTS_FILE)",
    )
    source_group.add_argument(
        "--watchlist",
        type=Path,
        help="CSV or JSON watch-list of addresses (default: $WATCHLIST_FILE)",
    )

    # Output
    output_group = parser.add_argument_group("output")
    output_group.add_argument(
        "--output-dir",
        type=Path,
        default=Path("./output"),
        help="Directory for report files (default: ./output)",
    )
    output_group.add_argument("--output-json", type=Path, help="Path to save the last report")
    output_group.add_argument(
        "--save-watchlist",
        type=Path,
        help="Write opportunity accounts to this CSV or JSON watch-list after each scan",
    )
    output_group.add_argument("--log-dir", type=Path, help="Log directory (default: $LOG_DIR)")
    output_group.add_argument(
        "--top",
        type=int,
        default=20,
        help="Opportunities printed per report (default: 20)",
    )
    output_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def build_scan_config(
    args: argparse.Namespace,
    default_protocols: Sequence[str],
    default_venues: Sequence[str],
) -> ScanConfig:
    """Merge the optional config file with command-line options.

    Raises:
        ConfigurationError: If the file cannot be read or the result is invalid.
    """
    data: dict[str, Any] = {}
    if args.config is not None:
        try:
            with open(args.config) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {args.config}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {args.config} must contain an object")

    protocols = _split_ids(args.protocols)
    if protocols is not None:
        data["protocols"] = protocols
    data.setdefault("protocols", list(default_protocols))

    venues = _split_ids(args.venues)
    if args.no_quotes:
        data["venues"] = []
    elif venues is not None:
        data["venues"] = venues
    data.setdefault("venues", list(default_venues))

    window = dict(data.get("block_window") or {})
    for key, value in (
        ("from_block", args.from_block),
        ("to_block", args.to_block),
        ("lookback_blocks", args.lookback_blocks),
    ):
        if value is not None:
            window[key] = value
    if window:
        data["block_window"] = window

    for key, value in (
        ("max_users_per_protocol", args.max_users),
        ("ranking_policy", args.ranking_policy),
        ("per_call_timeout_ms", args.call_timeout_ms),
        ("per_protocol_deadline_ms", args.deadline_ms),
        ("quote_timeout_ms", args.quote_timeout_ms),
        ("max_concurrency_per_protocol", args.concurrency),
        ("retry_attempts", args.retries),
    ):
        if value is not None:
            data[key] = value

    return ScanConfig.from_mapping(data)


def print_report(report: ScanReport, top: int) -> None:
    """Print a ranked summary of one report."""
    print()
    print("=" * 60)
    print(f"SCAN {report.scan_id}")
    print("=" * 60)
    print(f"Duration: {report.duration_ms} ms")
    print(f"Opportunities: {len(report.opportunities)}")
    print()
    print("Coverage:")
    for name, coverage in sorted(report.per_protocol_coverage.items()):
        flags = []
        if coverage.source_unavailable:
            flags.append("source unavailable")
        if coverage.deadline_exceeded:
            flags.append("deadline exceeded")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(
            f"  {name}: seen {coverage.candidates_seen}, "
            f"evaluated {coverage.candidates_evaluated}, "
            f"skipped {coverage.skipped}{suffix}"
        )

    if report.opportunities:
        print()
        print("Ranked opportunities:")
        for rank, opportunity in enumerate(report.opportunities[:top], 1):
            row = opportunity.to_dict()
            venue = opportunity.best_quote.source_venue if opportunity.best_quote else "-"
            print(
                f"  {rank:>3}. {row['protocol']:<12} {row['user_address']} "
                f"ratio={row['health_ratio']} profit={row['estimated_profit']} "
                f"quote={row['quote_status']} ({venue})"
            )
        hidden = len(report.opportunities) - top
        if hidden > 0:
            print(f"  ... {hidden} more in the JSON report")


def save_report(report: ScanReport, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(report.to_dict(), f, indent=2)


async def _run(
    orchestrator: ScanOrchestrator,
    config: ScanConfig,
    interval: float | None,
) -> None:
    if interval is None:
        await orchestrator.run_scan(config)
        return
    try:
        await orchestrator.start(config, interval_seconds=interval)
    finally:
        await orchestrator.stop()


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point for ``liquidation-scan``."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = ScannerSettings.from_env()
        if args.deployments is not None:
            settings.merge_deployments_file(args.deployments)
        if args.log_dir is not None:
            settings.log_dir = args.log_dir
        if args.verbose:
            settings.log_level = "DEBUG"
        configure_logging(settings.log_level, settings.log_dir)

        rpc_url = args.rpc_url or settings.rpc_url
        if not rpc_url:
            raise ConfigurationError("No RPC endpoint: pass --rpc-url or set RPC_URL")

        watchlist_file = args.watchlist or settings.watchlist_file
        watchlist = load_watchlist(watchlist_file) if watchlist_file else None
        if args.save_watchlist is not None and args.save_watchlist.suffix.lower() not in (
            ".csv",
            ".json",
        ):
            raise ConfigurationError(
                f"Unsupported watch-list format: {args.save_watchlist.suffix}"
            )

        config = build_scan_config(args, configured_protocols(settings), settings.known_venues)
        reader = Web3ChainReader(rpc_url, default_timeout=config.per_call_timeout)
        adapters = build_adapters(reader, settings, config.protocols, watchlist)
        venues = build_venues(reader, settings, config.venues)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    args.output_dir.mkdir(parents=True, exist_ok=True)

    def sink(report: ScanReport) -> None:
        print_report(report, args.top)
        save_report(report, args.output_dir / f"{report.scan_id}.json")
        if args.output_json:
            save_report(report, args.output_json)
            print(f"Report saved to {args.output_json}")
        if args.save_watchlist:
            entries = watchlist_from_report(report)
            save_watchlist(entries, args.save_watchlist)
            print(f"Watch-list of {len(entries)} accounts saved to {args.save_watchlist}")

    orchestrator = ScanOrchestrator(
        adapters,
        venues,
        log_dir=settings.log_dir,
        report_sink=sink,
    )

    print("=" * 60)
    print("Liquidation Position Scanner (READ-ONLY)")
    print("=" * 60)
    print(f"Protocols: {', '.join(config.protocols)}")
    print(f"Venues: {', '.join(config.venues) or 'none'}")
    print(f"Max users per protocol: {config.max_users_per_protocol}")
    print(f"Ranking policy: {config.ranking_policy.value}")

    try:
        asyncio.run(_run(orchestrator, config, args.interval))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except CycleCanceled as e:
        logger.warning(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
