"""
WalletKit - session, vault and sync layer for a self-custodial Lightning wallet.

Key features:
- Single-flight engine connection with exponential backoff
- Encrypted seed-phrase vault with legacy-scheme migration
- Payment event synchronisation with a polling fallback
- Lightning-address registration with username-collision retry
"""

__version__ = "1.0.0"
__all__ = [
    "config",
    "connection",
    "engine",
    "errors",
    "lightning_address",
    "log_store",
    "logging_config",
    "models",
    "observable",
    "rate_limit",
    "seed_phrase",
    "service",
    "synchronizer",
    "vault",
]
