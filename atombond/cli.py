#!/usr/bin/env python3
"""
atombond CLI
=============

Command-line front end for the bonding pipeline.

Usage:
    atombond --root ./ledgers add addr1 bit -f 1 2 3 4 5 6 7 8   # append to every lane
    atombond --root ./ledgers bond addr1 bit                     # manual trigger
    atombond --root ./ledgers bond addr1 bit --cascade
    atombond --root ./ledgers status
    atombond --config config/pipeline.yaml watch                 # run watchers

Exit codes for `bond`:
    0 bonded, 2 insufficient atoms, 3 validation error,
    4 storage error, 5 consistency error, 1 usage/config error
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from .atoms import Atom
from .config import PipelineConfig
from .errors import BondingError, ConfigError
from .orchestrator import HierarchyOrchestrator
from .results import BondResult, BondStatus

logger = logging.getLogger(__name__)

EXIT_CODES = {
    BondStatus.BONDED: 0,
    BondStatus.INSUFFICIENT: 2,
    BondStatus.INVALID: 3,
    BondStatus.STORAGE_ERROR: 4,
    BondStatus.CONSISTENCY_ERROR: 5,
}
EXIT_USAGE = 1


def load_config(args: argparse.Namespace) -> PipelineConfig:
    if args.config:
        config = PipelineConfig.from_yaml(args.config)
        if args.root:
            config.root = Path(args.root)
    else:
        config = PipelineConfig.default(args.root or Path("ledgers"))

    if args.log_level is None:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    return config


def _summary(result: BondResult, verbose: bool) -> dict:
    data = result.to_dict()
    if not verbose and "record" in data:
        # atomsUsed can hold thousands of entries
        record = dict(data["record"])
        record["atomsUsed"] = len(record["atomsUsed"])
        data["record"] = record
    return data


def cmd_bond(args: argparse.Namespace) -> int:
    """Manual bonding trigger."""
    config = load_config(args)
    orchestrator = HierarchyOrchestrator(config, enable_watchers=False)

    if args.cascade:
        results = orchestrator.bond_cascade(args.account, args.tier)
    else:
        results = [orchestrator.engine.try_bond(args.account, args.tier)]

    for result in results:
        print(json.dumps(_summary(result, args.verbose), indent=2, default=str))

    # Most specific outcome: first failure, else bonded if anything bonded
    failures = [r for r in results if r.status not in (BondStatus.BONDED, BondStatus.INSUFFICIENT)]
    if failures:
        return EXIT_CODES[failures[0].status]
    if any(r.bonded for r in results):
        return 0
    return EXIT_CODES[results[-1].status]


def cmd_add(args: argparse.Namespace) -> int:
    """Append atoms to one or all lanes of an account."""
    config = load_config(args)
    orchestrator = HierarchyOrchestrator(config, enable_watchers=False)
    lanes = [args.lane] if args.lane else config.lanes

    for lane in lanes:
        atoms = [Atom.create(frequency, iv=args.iv, auth_tag=args.auth_tag) for frequency in args.frequency]
        stored = orchestrator.store.append(args.account, args.tier, lane, atoms)
        print(
            f"  {args.tier}/{args.account}/{lane}: +{len(stored)} "
            f"(seq {stored[0].sequence_index}..{stored[-1].sequence_index})"
        )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show lane counts per tier and account."""
    config = load_config(args)
    orchestrator = HierarchyOrchestrator(config, enable_watchers=False)
    status = orchestrator.status()

    print("Ledger Status")
    print("=" * 40)
    for tier in config.tiers:
        accounts = status["tiers"][tier.name]
        if args.account:
            accounts = {k: v for k, v in accounts.items() if k == args.account}
        label = f"threshold {tier.threshold}" if tier in config.bondable_tiers else "terminal"
        print(f"\n{tier.name} ({label}):")
        if not accounts:
            print("  (no accounts)")
        for account, counts in accounts.items():
            lanes = ", ".join(f"{lane}={count}" for lane, count in counts.items())
            print(f"  {account}: {lanes}")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Run watchers and the cascade until interrupted."""
    config = load_config(args)
    orchestrator = HierarchyOrchestrator(config)
    orchestrator.start()
    orchestrator.sweep()

    print(f"Watching {config.root}. Press Ctrl+C to stop...")
    try:
        while True:
            time.sleep(args.report_interval)
            stats = orchestrator.stats
            print(
                f"checks={stats['checks']} bonded={stats['bonded']} "
                f"insufficient={stats['insufficient']} failed={stats['failed']}"
            )
    except KeyboardInterrupt:
        print("\nStopping...")

    orchestrator.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atombond",
        description="Hierarchical atom-bonding pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=Path, help="Pipeline YAML config")
    parser.add_argument("--root", type=Path, help="Ledger root (overrides config)")
    parser.add_argument("--log-level", help="Logging level (default: from config, else INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    bond_parser = subparsers.add_parser("bond", help="Bond one batch for an account")
    bond_parser.add_argument("account", help="Account name")
    bond_parser.add_argument("tier", help="Tier to consume atoms from")
    bond_parser.add_argument("--cascade", action="store_true", help="Keep bonding upward")
    bond_parser.add_argument("--verbose", "-v", action="store_true", help="Print full atomsUsed")

    add_parser = subparsers.add_parser("add", help="Append atoms")
    add_parser.add_argument("account", help="Account name")
    add_parser.add_argument("tier", help="Tier to append to")
    add_parser.add_argument("--frequency", "-f", type=float, nargs="+", required=True, help="Frequencies")
    add_parser.add_argument("--lane", help="Single lane (default: every lane)")
    add_parser.add_argument("--iv", default="", help="IV metadata")
    add_parser.add_argument("--auth-tag", default="", help="Auth tag metadata")

    status_parser = subparsers.add_parser("status", help="Show lane counts")
    status_parser.add_argument("account", nargs="?", help="Only this account")

    watch_parser = subparsers.add_parser("watch", help="Run watchers")
    watch_parser.add_argument("--report-interval", type=float, default=10.0, help="Seconds between reports")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "bond": cmd_bond,
        "add": cmd_add,
        "status": cmd_status,
        "watch": cmd_watch,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return EXIT_USAGE

    logging.basicConfig(
        level=getattr(logging, (args.log_level or "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return command(args)
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except BondingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CODES[BondStatus.STORAGE_ERROR]


if __name__ == "__main__":
    sys.exit(main())
