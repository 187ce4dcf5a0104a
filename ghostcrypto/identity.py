"""
Device identity.

An Identity is a signing keypair, an encryption keypair and the alias derived
from the signing public key. Private halves are only ever held sealed; the
methods that need them unseal inside the call and drop the clear value
before returning.
"""

import uuid
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Optional

from .alias import derive_alias
from .errors import ValidationError
from .primitives import (
    KEY_SIZE,
    generate_signing_keypair,
    generate_encryption_keypair,
    dh_exchange,
    sign,
    b64encode,
    b64decode,
)
from .vault import PassphraseVault, SealedKeyMaterial

logger = logging.getLogger(__name__)

REGISTRATION_CONTEXT = b"ghost-network/identity/v1"
ROTATION_CONTEXT = b"ghost-network/rotation/v1"


def registration_payload(identity_id: str, signing_public_key: bytes,
                         encryption_public_key: bytes, alias: str, issued_at: str) -> bytes:
    """Canonical bytes an identity signs when publishing itself to the relay"""
    return b"\n".join([
        REGISTRATION_CONTEXT,
        identity_id.encode("utf-8"),
        signing_public_key,
        encryption_public_key,
        alias.encode("utf-8"),
        issued_at.encode("utf-8"),
    ])


def rotation_payload(identity_id: str, new_signing_public_key: bytes) -> bytes:
    """Bytes the current signing key signs to hand an id over to a new key"""
    return b"\n".join([
        ROTATION_CONTEXT,
        identity_id.encode("utf-8"),
        new_signing_public_key,
    ])


@dataclass
class Identity:
    """
    A device's cryptographic identity.

    Attributes:
        id: Account identifier, kept across rotations
        signing_public_key: Raw Ed25519 public key
        encryption_public_key: Raw X25519 public key
        alias: Code derived from signing_public_key
        sealed_signing_key: Passphrase-sealed Ed25519 private key
        sealed_encryption_key: Passphrase-sealed X25519 private key
        created_at: When these keys were generated
    """
    id: str
    signing_public_key: bytes
    encryption_public_key: bytes
    alias: str
    sealed_signing_key: SealedKeyMaterial
    sealed_encryption_key: SealedKeyMaterial
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, passphrase: str, identity_id: Optional[str] = None,
               vault: Optional[PassphraseVault] = None) -> 'Identity':
        """
        Generate fresh keypairs and seal the private halves.

        Args:
            passphrase: Passphrase protecting both private keys
            identity_id: Existing account id on rotation/restore; new UUID otherwise
            vault: Vault to seal with (default parameters if omitted)

        Returns:
            New Identity
        """
        vault = vault or PassphraseVault()
        signing = generate_signing_keypair()
        encryption = generate_encryption_keypair()

        identity = cls(
            id=identity_id or str(uuid.uuid4()),
            signing_public_key=signing.public_key,
            encryption_public_key=encryption.public_key,
            alias=derive_alias(signing.public_key),
            sealed_signing_key=vault.seal(signing.private_key, passphrase),
            sealed_encryption_key=vault.seal(encryption.private_key, passphrase),
        )
        logger.info("Generated identity %s (alias %s)", identity.id, identity.alias)
        return identity

    def verify_alias(self) -> bool:
        """True if the stored alias still matches the signing key"""
        return derive_alias(self.signing_public_key) == self.alias

    def agree(self, peer_encryption_public_key: bytes, passphrase: str,
              vault: Optional[PassphraseVault] = None) -> bytes:
        """
        Unseal our encryption key and run X25519 with a peer's public key.

        Raises:
            AuthenticationFailure: Wrong passphrase
            ValidationError: Unusable peer key
        """
        vault = vault or PassphraseVault()
        private_key = vault.open(self.sealed_encryption_key, passphrase)
        try:
            return dh_exchange(private_key, peer_encryption_public_key)
        finally:
            del private_key

    def sign(self, data: bytes, passphrase: str, vault: Optional[PassphraseVault] = None) -> bytes:
        """Unseal the signing key and sign data with it"""
        vault = vault or PassphraseVault()
        private_key = vault.open(self.sealed_signing_key, passphrase)
        try:
            return sign(private_key, data)
        finally:
            del private_key

    def registration_payload(self, issued_at: str) -> bytes:
        return registration_payload(self.id, self.signing_public_key,
                                    self.encryption_public_key, self.alias, issued_at)

    def endorse(self, successor: 'Identity', passphrase: str,
                vault: Optional[PassphraseVault] = None) -> bytes:
        """
        Sign the hand-over of this account id to successor's signing key.

        Raises:
            ValidationError: successor belongs to another account id
            AuthenticationFailure: Wrong passphrase
        """
        if successor.id != self.id:
            raise ValidationError("Can only endorse a successor with the same account id")
        return self.sign(rotation_payload(self.id, successor.signing_public_key), passphrase, vault)

    def registration_request(self, passphrase: str, vault: Optional[PassphraseVault] = None,
                             issued_at: Optional[datetime] = None,
                             rotation_signature: Optional[bytes] = None) -> Dict:
        """
        Build a signed registration for the relay.

        Args:
            passphrase: Unseals the signing key
            vault: Vault to unseal with
            issued_at: Registration time; the relay only accepts increasing values per id
            rotation_signature: Endorsement from the previous key, after a rotation

        Returns:
            Request body for the relay's identity endpoint
        """
        stamp = (issued_at or datetime.now(timezone.utc)).isoformat()
        return {
            'identity': self.public_record(),
            'issued_at': stamp,
            'signature': b64encode(self.sign(self.registration_payload(stamp), passphrase, vault)),
            'rotation_signature': b64encode(rotation_signature) if rotation_signature else None,
        }

    def public_record(self) -> Dict:
        """Identity record as published to the relay"""
        return {
            'id': self.id,
            'signingPublicKey': b64encode(self.signing_public_key),
            'encryptionPublicKey': b64encode(self.encryption_public_key),
            'alias': self.alias,
        }

    def to_dict(self) -> Dict:
        """Full record for local storage (private halves stay sealed)"""
        record = self.public_record()
        record.update({
            'sealedSigningKey': self.sealed_signing_key.to_dict(),
            'sealedEncryptionKey': self.sealed_encryption_key.to_dict(),
            'createdAt': self.created_at.isoformat(),
        })
        return record

    @classmethod
    def from_dict(cls, data: Dict) -> 'Identity':
        """
        Rebuild an Identity from local storage.

        Raises:
            ValidationError: If fields are missing or the alias does not match the key
        """
        try:
            identity = cls(
                id=data['id'],
                signing_public_key=b64decode(data['signingPublicKey'], KEY_SIZE),
                encryption_public_key=b64decode(data['encryptionPublicKey'], KEY_SIZE),
                alias=data['alias'],
                sealed_signing_key=SealedKeyMaterial.from_dict(data['sealedSigningKey']),
                sealed_encryption_key=SealedKeyMaterial.from_dict(data['sealedEncryptionKey']),
                created_at=datetime.fromisoformat(data['createdAt']),
            )
        except KeyError as e:
            raise ValidationError(f"Stored identity is missing {e.args[0]}")

        if not identity.verify_alias():
            raise ValidationError("Stored alias does not match the signing key")
        return identity

    def __repr__(self) -> str:
        return f"Identity(id={self.id!r}, alias={self.alias!r})"


@dataclass(frozen=True)
class PublicIdentity:
    """
    Public half of someone's identity, as read from the relay.

    encryption_public_key is None until the peer has published one.
    """
    id: str
    signing_public_key: bytes
    encryption_public_key: Optional[bytes]
    alias: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'PublicIdentity':
        enc = data.get('encryptionPublicKey')
        return cls(
            id=data['id'],
            signing_public_key=b64decode(data['signingPublicKey'], KEY_SIZE),
            encryption_public_key=b64decode(enc, KEY_SIZE) if enc else None,
            alias=data['alias'],
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'signingPublicKey': b64encode(self.signing_public_key),
            'encryptionPublicKey': b64encode(self.encryption_public_key) if self.encryption_public_key else None,
            'alias': self.alias,
        }
