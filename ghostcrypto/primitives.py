"""
Cryptographic Primitives for Ghost Network

This module provides the foundational cryptographic operations used by the
identity, vault, handshake and session cipher modules. Keys cross module
boundaries as raw bytes; `cryptography` key objects never leave this module.
"""

import os
import hmac
import base64
import binascii
import hashlib
from dataclasses import dataclass
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ValidationError

KEY_SIZE = 32
NONCE_SIZE = 12


@dataclass(frozen=True)
class KeyPair:
    """
    Raw keypair material.

    Attributes:
        public_key: 32-byte raw public key
        private_key: 32-byte raw private key (seal it before it touches disk)
    """
    public_key: bytes
    private_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()!r}, private_key=<redacted>)"


def _raw_public(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def _raw_private(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def generate_encryption_keypair() -> KeyPair:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key agreement.

    Returns:
        KeyPair with raw 32-byte public and private keys
    """
    private_key = X25519PrivateKey.generate()
    return KeyPair(public_key=_raw_public(private_key.public_key()), private_key=_raw_private(private_key))


def generate_signing_keypair() -> KeyPair:
    """
    Generate an Ed25519 keypair for digital signatures (identity keys).

    Returns:
        KeyPair with raw 32-byte public key and 32-byte private seed
    """
    private_key = Ed25519PrivateKey.generate()
    return KeyPair(public_key=_raw_public(private_key.public_key()), private_key=_raw_private(private_key))


def dh_exchange(private_key: bytes, peer_public_key: bytes) -> bytes:
    """
    Perform X25519 Diffie-Hellman key agreement.

    agreement(a, B) == agreement(b, A) for any two keypairs (a, A), (b, B).

    Args:
        private_key: Our raw X25519 private key
        peer_public_key: Their raw X25519 public key

    Returns:
        32-byte shared secret

    Raises:
        ValidationError: If either key is malformed or the peer key is a low-order point
    """
    if len(private_key) != KEY_SIZE or len(peer_public_key) != KEY_SIZE:
        raise ValidationError("X25519 keys must be 32 bytes")
    try:
        ours = X25519PrivateKey.from_private_bytes(private_key)
        theirs = X25519PublicKey.from_public_bytes(peer_public_key)
        return ours.exchange(theirs)
    except ValueError:
        raise ValidationError("Peer encryption key is not usable for key agreement")


def sign(private_key: bytes, data: bytes) -> bytes:
    """Sign data with a raw Ed25519 private key, returning a 64-byte signature"""
    return Ed25519PrivateKey.from_private_bytes(private_key).sign(data)


def verify_signature(public_key: bytes, signature: bytes, data: bytes) -> bool:
    """
    Verify an Ed25519 signature.

    Returns:
        True if the signature is valid, False otherwise (including malformed keys)
    """
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, associated_data: bytes = None) -> bytes:
    """
    Encrypt with AES-256-GCM.

    Args:
        key: 32-byte encryption key
        nonce: 12-byte nonce, never reused under the same key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        ciphertext + tag (16 bytes)
    """
    return AESGCM(key).encrypt(nonce, plaintext, associated_data)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes = None) -> bytes:
    """
    Decrypt with AES-256-GCM.

    Raises:
        cryptography.exceptions.InvalidTag: On tag mismatch; callers translate it
    """
    return AESGCM(key).decrypt(nonce, ciphertext, associated_data)


def random_bytes(length: int) -> bytes:
    """Bytes from the operating system CSPRNG"""
    return os.urandom(length)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str, expected_length: int = None) -> bytes:
    """
    Strictly decode standard base64.

    Raises:
        ValidationError: If the text is not base64 or has the wrong decoded length
    """
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise ValidationError("Value must be valid base64")
    if expected_length is not None and len(data) != expected_length:
        raise ValidationError(f"Value must decode to {expected_length} bytes")
    return data


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
