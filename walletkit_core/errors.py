"""
Exception hierarchy for WalletKit.

Every failure that crosses a public boundary is one of these types so
callers can tell a bad credential (never retried) from a flaky network
(retried with backoff) from a taken username (retried with a suffix).
"""

from __future__ import annotations


class WalletKitError(Exception):
    """Base class for all WalletKit errors."""


# ── credentials ──────────────────────────────────────────────────


class InvalidCredentialError(WalletKitError):
    """Bad seed phrase or password.  Fatal, never retried."""


class InvalidMnemonicError(InvalidCredentialError):
    """Seed phrase failed BIP-39 checksum validation."""

    def __init__(self, message: str = "Invalid mnemonic phrase"):
        super().__init__(message)


# ── engine / connection ──────────────────────────────────────────


class ConnectError(WalletKitError):
    """Connecting to the wallet engine failed with a non-retryable error."""


class RetryableConnectivityError(WalletKitError):
    """Transient network or rate-limit failure."""


class EngineUnavailableError(WalletKitError):
    """An engine operation was attempted while not connected."""

    def __init__(self, message: str = "Wallet engine not connected"):
        super().__init__(message)


class ConfigError(WalletKitError):
    """Required configuration is missing or malformed."""


# ── vault ────────────────────────────────────────────────────────


class VaultError(WalletKitError):
    """Base class for credential vault failures."""


class VaultLockedError(VaultError):
    """The secure storage has not been unlocked (or auto-locked)."""


class DecryptionError(VaultError):
    """Ciphertext could not be authenticated with the supplied password."""


class VaultStorageError(VaultError):
    """The storage substrate failed to read or write."""


# ── session ──────────────────────────────────────────────────────


class WalletLockedError(WalletKitError):
    """An operation needs an unlocked wallet (storage unlocked and connected)."""


class NoSavedWalletError(WalletKitError):
    """Unlock was requested but no seed phrase is stored for the user."""

    def __init__(self, message: str = "No saved wallet found"):
        super().__init__(message)


class UnlockRateLimitedError(WalletKitError):
    """Too many unlock attempts for one user."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            f"Too many unlock attempts. Please try again in {retry_after} seconds."
        )


class NotFoundError(WalletKitError):
    """A registration or credential that was required does not exist."""


# ── lightning address ────────────────────────────────────────────


class RegistrationError(WalletKitError):
    """The Lightning-address registration service rejected a request."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class UsernameConflictError(RegistrationError):
    """The requested username is already taken (HTTP 409)."""

    def __init__(self, message: str = "Username is already taken"):
        super().__init__(message, status=409)
