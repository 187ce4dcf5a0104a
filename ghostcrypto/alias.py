"""
Alias derivation.

An alias is a short code derived from a public signing key, shown to users
and typed into handshake requests. It is a discovery label, not a secret.
"""

import re

from .errors import ValidationError
from .primitives import sha256, b64encode

# Ambiguous glyphs (I, O, 0, 1) are left out
ALIAS_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789!@$?"
ALIAS_LENGTH = 12
GROUP_SIZE = 4
SEPARATOR = "-"

ALIAS_PATTERN = re.compile(r"^[A-Z2-9!@$?]{4}-[A-Z2-9!@$?]{4}-[A-Z2-9!@$?]{4}$")


def derive_alias(signing_public_key: bytes) -> str:
    """
    Derive the alias for a public signing key.

    The digest is taken over the base64 text of the key so aliases match the
    ones already issued by existing clients.

    Args:
        signing_public_key: Raw 32-byte Ed25519 public key

    Returns:
        Alias formatted as XXXX-XXXX-XXXX
    """
    digest = sha256(b64encode(signing_public_key).encode("ascii"))
    raw = "".join(ALIAS_ALPHABET[b % len(ALIAS_ALPHABET)] for b in digest[:ALIAS_LENGTH])
    groups = [raw[i:i + GROUP_SIZE] for i in range(0, ALIAS_LENGTH, GROUP_SIZE)]
    return SEPARATOR.join(groups)


def is_valid_alias(alias) -> bool:
    return isinstance(alias, str) and ALIAS_PATTERN.match(alias.strip()) is not None


def validate_alias(alias) -> str:
    """
    Check alias format and return it trimmed.

    Raises:
        ValidationError: If the alias is empty or not XXXX-XXXX-XXXX
    """
    if not alias or not isinstance(alias, str):
        raise ValidationError("Alias is required")
    trimmed = alias.strip()
    if not ALIAS_PATTERN.match(trimmed):
        raise ValidationError("Alias must be in format XXXX-XXXX-XXXX (12 characters)")
    return trimmed
