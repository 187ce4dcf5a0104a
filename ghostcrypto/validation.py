"""
Input validation for user-supplied values.

Each validator raises ValidationError with a user-actionable message and
returns the normalized value otherwise.
"""

import re
from enum import Enum

from .alias import validate_alias
from .errors import ValidationError
from .primitives import b64decode

MIN_PASSPHRASE_LENGTH = 8
MAX_MESSAGE_LENGTH = 10_000
PUBLIC_KEY_B64_LENGTH = 44

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+=*$")


class PassphraseStrength(str, Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"


def validate_passphrase(passphrase) -> PassphraseStrength:
    """
    Check passphrase length and grade its strength.

    Strong: 12+ characters using at least three of upper, lower, digit and
    other characters. Medium: 10+ characters using at least two.

    Raises:
        ValidationError: If missing or shorter than 8 characters
    """
    if not passphrase or not isinstance(passphrase, str):
        raise ValidationError("Passphrase is required")
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValidationError(f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters")

    criteria = sum([
        bool(re.search(r"[A-Z]", passphrase)),
        bool(re.search(r"[a-z]", passphrase)),
        bool(re.search(r"[0-9]", passphrase)),
        bool(re.search(r"[^A-Za-z0-9]", passphrase)),
    ])

    if len(passphrase) >= 12 and criteria >= 3:
        return PassphraseStrength.STRONG
    if len(passphrase) >= 10 and criteria >= 2:
        return PassphraseStrength.MEDIUM
    return PassphraseStrength.WEAK


def validate_message(message) -> str:
    """
    Check message text and return it trimmed.

    Raises:
        ValidationError: If empty, whitespace-only or over 10,000 characters
    """
    if not message or not isinstance(message, str) or not message.strip():
        raise ValidationError("Message cannot be empty")
    trimmed = message.strip()
    if len(trimmed) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
    return trimmed


def validate_public_key(public_key) -> bytes:
    """
    Check a base64 public key and return its 32 raw bytes.

    Raises:
        ValidationError: If missing, not base64 or not 44 characters
    """
    if not public_key or not isinstance(public_key, str):
        raise ValidationError("Public key is required")
    if not _BASE64_PATTERN.match(public_key):
        raise ValidationError("Public key must be valid base64")
    if len(public_key) != PUBLIC_KEY_B64_LENGTH:
        raise ValidationError(
            f"Public key must be {PUBLIC_KEY_B64_LENGTH} characters (base64-encoded 32 bytes)"
        )
    return b64decode(public_key, 32)


__all__ = [
    'PassphraseStrength',
    'validate_alias',
    'validate_passphrase',
    'validate_message',
    'validate_public_key',
]
