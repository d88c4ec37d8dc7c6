"""
BIP-39 seed phrase helpers.

Generation and checksum validation go through the reference ``mnemonic``
implementation; a phrase with the right word count but a bad checksum is
rejected before it ever reaches the wallet engine.
"""

from __future__ import annotations

from mnemonic import Mnemonic

from walletkit_core.errors import InvalidMnemonicError

_WORDS_TO_STRENGTH = {12: 128, 15: 160, 18: 192, 21: 224, 24: 256}

_MNEMO: Mnemonic | None = None


def _get_mnemo() -> Mnemonic:
    global _MNEMO
    if _MNEMO is None:
        _MNEMO = Mnemonic("english")
    return _MNEMO


def normalize_mnemonic(phrase: str) -> str:
    """Collapse whitespace and lower-case the words."""
    return " ".join(phrase.strip().lower().split())


def generate_mnemonic(words: int = 12) -> str:
    """Generate a new English BIP-39 phrase (12 words by default)."""
    if words not in _WORDS_TO_STRENGTH:
        raise ValueError("Word count must be 12/15/18/21/24")
    return _get_mnemo().generate(strength=_WORDS_TO_STRENGTH[words])


def validate_mnemonic(phrase: str) -> bool:
    """Word-count and checksum validation."""
    if not phrase:
        return False
    normalized = normalize_mnemonic(phrase)
    if len(normalized.split()) not in _WORDS_TO_STRENGTH:
        return False
    try:
        return _get_mnemo().check(normalized)
    except (ValueError, LookupError):
        return False


def require_valid_mnemonic(phrase: str) -> str:
    """Return the normalised phrase or raise :class:`InvalidMnemonicError`."""
    if not phrase:
        raise InvalidMnemonicError("Mnemonic is required to connect")
    if not validate_mnemonic(phrase):
        raise InvalidMnemonicError()
    return normalize_mnemonic(phrase)
