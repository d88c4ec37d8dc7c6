#!/usr/bin/env python3
"""
WalletKit command-line utilities.

Usage:
    python run_wallet.py generate-mnemonic [--words 24]
    python run_wallet.py validate-mnemonic "abandon abandon ... about"
    python run_wallet.py logs [--clear]
    python run_wallet.py show-config [--config walletkit.toml]

Environment variables (alternative to a config file):
    WALLETKIT_API_KEY, WALLETKIT_NETWORK, WALLETKIT_LOG_STORE, ...
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from walletkit_core.config import WalletKitConfig, load_config  # noqa: E402
from walletkit_core.log_store import LogStore  # noqa: E402
from walletkit_core.logging_config import close_log_store, setup_logging_from_config  # noqa: E402
from walletkit_core.seed_phrase import generate_mnemonic, validate_mnemonic  # noqa: E402

logger = logging.getLogger("walletkit.cli")

DEFAULT_LOG_STORE = "data/logs.db"


def _redacted(cfg: WalletKitConfig) -> dict:
    data = dataclasses.asdict(cfg)
    if data["engine"]["api_key"]:
        data["engine"]["api_key"] = "***"
    return data


def cmd_generate_mnemonic(args, cfg: WalletKitConfig) -> int:
    print(generate_mnemonic(args.words))
    return 0


def cmd_validate_mnemonic(args, cfg: WalletKitConfig) -> int:
    if validate_mnemonic(args.phrase):
        print("valid")
        return 0
    print("invalid", file=sys.stderr)
    return 1


def cmd_logs(args, cfg: WalletKitConfig) -> int:
    with LogStore(cfg.logging.store_path or DEFAULT_LOG_STORE,
                  max_entries=cfg.logging.max_entries) as store:
        if args.clear:
            store.clear()
            print("Logs cleared")
            return 0
        for line in store.query():
            print(line)
    return 0


def cmd_show_config(args, cfg: WalletKitConfig) -> int:
    print(json.dumps(_redacted(cfg), indent=2))
    return 0


def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="WalletKit utilities")
    p.add_argument("--config", default=os.environ.get("WALLETKIT_CONFIG"),
                   help="Path to walletkit.toml config file")
    sub = p.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate-mnemonic", help="Print a new BIP-39 seed phrase")
    gen.add_argument("--words", type=int, choices=(12, 15, 18, 21, 24), default=12)
    gen.set_defaults(func=cmd_generate_mnemonic)

    val = sub.add_parser("validate-mnemonic", help="Check a seed phrase checksum")
    val.add_argument("phrase", help="Seed phrase (quote it)")
    val.set_defaults(func=cmd_validate_mnemonic)

    logs = sub.add_parser("logs", help="Print or clear persisted diagnostic logs")
    logs.add_argument("--clear", action="store_true", help="Delete all persisted logs")
    logs.set_defaults(func=cmd_logs)

    show = sub.add_parser("show-config", help="Print the effective configuration")
    show.set_defaults(func=cmd_show_config)

    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config)
    log_store = setup_logging_from_config(cfg.logging)
    try:
        logger.debug(f"Running command: {args.command}")
        return args.func(args, cfg)
    finally:
        if log_store is not None:
            close_log_store(log_store)


if __name__ == "__main__":
    raise SystemExit(main())
