"""
Message encryption with a contact's session key material.

The material (raw X25519 agreement output, or anything else of any length)
is hashed to a 256-bit AES-GCM key. Each message gets a fresh random 96-bit
nonce. There is no key rotation: one key serves the whole contact lifetime.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict
from cryptography.exceptions import InvalidTag

from .errors import DecryptionFailure, ValidationError
from .primitives import (
    NONCE_SIZE,
    aead_encrypt,
    aead_decrypt,
    random_bytes,
    sha256,
    b64encode,
    b64decode,
)

logger = logging.getLogger(__name__)

UNDECRYPTABLE_PLACEHOLDER = "[decryption failed]"

# Relay-side lifetime of a stored message
MESSAGE_TTL = timedelta(hours=72)


@dataclass(frozen=True)
class EncryptedPayload:
    """
    Attributes:
        ciphertext: AES-GCM ciphertext + tag
        nonce: 12-byte nonce
    """
    ciphertext: bytes
    nonce: bytes

    def to_dict(self) -> Dict:
        return {
            'ciphertext': b64encode(self.ciphertext),
            'nonce': b64encode(self.nonce),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedPayload':
        return cls(
            ciphertext=b64decode(data['ciphertext']),
            nonce=b64decode(data['nonce'], NONCE_SIZE),
        )


def message_key(session_key_material: bytes) -> bytes:
    """Reduce session key material of any length to a 32-byte AES key"""
    if not session_key_material:
        raise ValidationError("Session key material is empty")
    return sha256(session_key_material)


def encrypt(plaintext: str, session_key_material: bytes) -> EncryptedPayload:
    """
    Encrypt a message for a contact.

    Args:
        plaintext: Message text
        session_key_material: The contact's shared secret

    Returns:
        EncryptedPayload with a fresh nonce
    """
    nonce = random_bytes(NONCE_SIZE)
    ciphertext = aead_encrypt(message_key(session_key_material), nonce, plaintext.encode("utf-8"))
    return EncryptedPayload(ciphertext=ciphertext, nonce=nonce)


def decrypt(ciphertext: bytes, nonce: bytes, session_key_material: bytes) -> str:
    """
    Decrypt a message.

    Raises:
        DecryptionFailure: Wrong key, tampered ciphertext or malformed nonce
    """
    if len(nonce) != NONCE_SIZE:
        raise DecryptionFailure("Malformed nonce")
    try:
        plaintext = aead_decrypt(message_key(session_key_material), nonce, ciphertext)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError):
        raise DecryptionFailure()


def decrypt_or_placeholder(ciphertext: bytes, nonce: bytes, session_key_material: bytes) -> str:
    """Decrypt, or return UNDECRYPTABLE_PLACEHOLDER so the message is still shown"""
    try:
        return decrypt(ciphertext, nonce, session_key_material)
    except DecryptionFailure:
        logger.warning("Rendering undecryptable message as placeholder")
        return UNDECRYPTABLE_PLACEHOLDER
