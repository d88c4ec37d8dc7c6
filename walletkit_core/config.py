"""
TOML-based configuration for WalletKit.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from walletkit_core.config import load_config
    cfg = load_config("walletkit.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class EngineConfig:
    """Settings handed to the wallet engine on connect."""
    network: str = "mainnet"
    working_dir: str = "./breez_data"
    api_key: str = ""
    # Custom Esplora explorers avoid public rate limits.  Empty = engine default.
    liquid_explorer_url: str = ""
    bitcoin_explorer_url: str = ""

    def to_engine_config(self) -> dict[str, Any]:
        cfg: dict[str, Any] = {
            "network": self.network,
            "working_dir": self.working_dir,
            "api_key": self.api_key,
        }
        if self.liquid_explorer_url:
            cfg["liquid_explorer"] = {
                "type": "esplora",
                "url": self.liquid_explorer_url,
                "use_waterfalls": False,
            }
        if self.bitcoin_explorer_url:
            cfg["bitcoin_explorer"] = {
                "type": "esplora",
                "url": self.bitcoin_explorer_url,
                "use_waterfalls": False,
            }
        return cfg


@dataclass
class ConnectionConfig:
    """Connect retry policy.  Delay before attempt n is base * 2**n."""
    max_retries: int = 3
    base_delay_seconds: float = 5.0


@dataclass
class VaultConfig:
    """Seed-phrase vault settings."""
    path: str = "data/vault.db"
    kdf_iterations: int = 600_000
    lock_timeout_seconds: float = 900.0   # 0 = never auto-lock
    unlock_max_attempts: int = 5
    unlock_window_seconds: float = 900.0


@dataclass
class SyncConfig:
    """Event synchroniser settings."""
    poll_interval_seconds: float = 60.0


@dataclass
class LightningAddressConfig:
    """Lightning-address registration service."""
    service_url: str = "https://breez.fun"
    domain: str = "breez.fun"
    timeout_seconds: float = 30.0
    max_attempts: int = 20
    webhook_url: str = ""


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None
    store_path: str | None = None   # SQLite log store for diagnostics
    persist_level: str = "INFO"
    max_entries: int = 5000


@dataclass
class WalletKitConfig:
    """Top-level configuration container."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    lightning_address: LightningAddressConfig = field(default_factory=LightningAddressConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> WalletKitConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        WALLETKIT_NETWORK               -> engine.network
        WALLETKIT_API_KEY               -> engine.api_key
        WALLETKIT_WORKING_DIR           -> engine.working_dir
        WALLETKIT_LIQUID_EXPLORER_URL   -> engine.liquid_explorer_url
        WALLETKIT_BITCOIN_EXPLORER_URL  -> engine.bitcoin_explorer_url
        WALLETKIT_VAULT_PATH            -> vault.path
        WALLETKIT_LNURL_SERVICE_URL     -> lightning_address.service_url
        WALLETKIT_WEBHOOK_URL           -> lightning_address.webhook_url
        WALLETKIT_LOG_LEVEL             -> logging.level
        WALLETKIT_LOG_FMT               -> logging.format
        WALLETKIT_LOG_STORE             -> logging.store_path
    """
    cfg = WalletKitConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("engine", cfg.engine),
                ("connection", cfg.connection),
                ("vault", cfg.vault),
                ("sync", cfg.sync),
                ("lightning_address", cfg.lightning_address),
                ("lightning-address", cfg.lightning_address),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("WALLETKIT_NETWORK"):
        cfg.engine.network = v
    if v := os.environ.get("WALLETKIT_API_KEY"):
        cfg.engine.api_key = v
    if v := os.environ.get("WALLETKIT_WORKING_DIR"):
        cfg.engine.working_dir = v
    if v := os.environ.get("WALLETKIT_LIQUID_EXPLORER_URL"):
        cfg.engine.liquid_explorer_url = v
    if v := os.environ.get("WALLETKIT_BITCOIN_EXPLORER_URL"):
        cfg.engine.bitcoin_explorer_url = v
    if v := os.environ.get("WALLETKIT_VAULT_PATH"):
        cfg.vault.path = v
    if v := os.environ.get("WALLETKIT_LNURL_SERVICE_URL"):
        cfg.lightning_address.service_url = v.rstrip("/")
    if v := os.environ.get("WALLETKIT_WEBHOOK_URL"):
        cfg.lightning_address.webhook_url = v
    if v := os.environ.get("WALLETKIT_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("WALLETKIT_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("WALLETKIT_LOG_STORE"):
        cfg.logging.store_path = v

    return cfg
