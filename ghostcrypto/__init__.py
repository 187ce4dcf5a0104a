"""
Cryptographic core for Ghost Network.

Implements:
- Ed25519 / X25519 identity keys with passphrase-sealed private halves
- Alias derivation from the public signing key
- Handshake state machine with X25519 session-key agreement
- AES-256-GCM message encryption under a contact's session key
- A simplified recovery phrase for backup display and verification
"""

from .errors import (
    GhostError,
    ValidationError,
    CryptoError,
    AuthenticationFailure,
    DecryptionFailure,
    PeerNotReady,
    HandshakeNotFound,
    Unauthorized,
    NotPending,
    HandshakeExpired,
    StorageUnavailable,
)
from .primitives import (
    generate_signing_keypair,
    generate_encryption_keypair,
    dh_exchange,
)
from .vault import PassphraseVault, SealedKeyMaterial
from .alias import derive_alias, validate_alias
from .identity import Identity, PublicIdentity
from .handshake import (
    Contact,
    Handshake,
    HandshakeStatus,
    HandshakeStateMachine,
)

__all__ = [
    'GhostError',
    'ValidationError',
    'CryptoError',
    'AuthenticationFailure',
    'DecryptionFailure',
    'PeerNotReady',
    'HandshakeNotFound',
    'Unauthorized',
    'NotPending',
    'HandshakeExpired',
    'StorageUnavailable',
    'generate_signing_keypair',
    'generate_encryption_keypair',
    'dh_exchange',
    'PassphraseVault',
    'SealedKeyMaterial',
    'derive_alias',
    'validate_alias',
    'Identity',
    'PublicIdentity',
    'Contact',
    'Handshake',
    'HandshakeStatus',
    'HandshakeStateMachine',
]
