"""
Passphrase-based sealing of private key material.

A passphrase is stretched with PBKDF2-HMAC-SHA256 into an AES-256-GCM key.
Every seal call draws a fresh salt and nonce, so sealing the same key twice
under the same passphrase never produces the same triple.
"""

import logging
from dataclasses import dataclass
from typing import Dict
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AuthenticationFailure, ValidationError
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    aead_encrypt,
    aead_decrypt,
    random_bytes,
    b64encode,
    b64decode,
)

logger = logging.getLogger(__name__)

SALT_SIZE = 16
PBKDF2_ITERATIONS = 210_000
MIN_PBKDF2_ITERATIONS = 200_000


@dataclass(frozen=True)
class SealedKeyMaterial:
    """
    Output of one sealing operation.

    Attributes:
        cipher_text: AES-GCM ciphertext + tag
        nonce: 12-byte GCM nonce
        salt: 16-byte PBKDF2 salt
    """
    cipher_text: bytes
    nonce: bytes
    salt: bytes

    def to_dict(self) -> Dict:
        """Convert to the storage record shape"""
        return {
            'cipherText': b64encode(self.cipher_text),
            'nonce': b64encode(self.nonce),
            'salt': b64encode(self.salt),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SealedKeyMaterial':
        """Create from a storage record"""
        try:
            return cls(
                cipher_text=b64decode(data['cipherText']),
                nonce=b64decode(data['nonce'], NONCE_SIZE),
                salt=b64decode(data['salt'], SALT_SIZE),
            )
        except KeyError as e:
            raise ValidationError(f"Sealed key material is missing {e.args[0]}")


class PassphraseVault:
    """
    Seals and opens private key material with a passphrase.
    """

    def __init__(self, iterations: int = PBKDF2_ITERATIONS):
        """
        Initialize the vault.

        Args:
            iterations: PBKDF2 iteration count (never below 200,000)
        """
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}")
        self.iterations = iterations

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive an encryption key from a passphrase using PBKDF2.

        Args:
            passphrase: User's passphrase
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    def seal(self, plaintext: bytes, passphrase: str) -> SealedKeyMaterial:
        """
        Encrypt key material under a passphrase.

        Args:
            plaintext: Raw private key bytes
            passphrase: User's passphrase

        Returns:
            SealedKeyMaterial with fresh salt and nonce
        """
        salt = random_bytes(SALT_SIZE)
        nonce = random_bytes(NONCE_SIZE)
        key = self.derive_key(passphrase, salt)
        return SealedKeyMaterial(
            cipher_text=aead_encrypt(key, nonce, plaintext),
            nonce=nonce,
            salt=salt,
        )

    def open(self, sealed: SealedKeyMaterial, passphrase: str) -> bytes:
        """
        Decrypt sealed key material.

        A wrong passphrase and a tampered record fail the same way.

        Raises:
            AuthenticationFailure: If the GCM tag does not verify
        """
        key = self.derive_key(passphrase, sealed.salt)
        try:
            return aead_decrypt(key, sealed.nonce, sealed.cipher_text)
        except (InvalidTag, ValueError):
            logger.debug("Unseal attempt failed")
            raise AuthenticationFailure()
