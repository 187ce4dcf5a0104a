"""
Handshake State Machine

A handshake establishes mutual trust between two identities:

    pending --accept--> accepted
    pending --reject--> rejected
    pending --(expires_at passes)--> expired

The initiator names the target by alias. The target accepts by unsealing its
encryption key and running X25519 against the initiator's published key; the
shared secret becomes the session key material of both Contact records,
which the store creates in the same atomic step that marks the handshake
accepted.
"""

import logging
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from .alias import validate_alias
from .errors import (
    HandshakeExpired,
    NotPending,
    PeerNotReady,
    Unauthorized,
    ValidationError,
)
from .identity import Identity, PublicIdentity
from .primitives import KEY_SIZE, b64encode, b64decode
from .vault import PassphraseVault

logger = logging.getLogger(__name__)

HANDSHAKE_TTL = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as SQLite hands them back) as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class HandshakeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Handshake:
    id: str
    initiator_id: str
    target_alias: str
    status: HandshakeStatus
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'initiatorId': self.initiator_id,
            'targetAlias': self.target_alias,
            'status': self.status.value,
            'createdAt': as_utc(self.created_at).isoformat(),
            'expiresAt': as_utc(self.expires_at).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Handshake':
        return cls(
            id=data['id'],
            initiator_id=data['initiatorId'],
            target_alias=data['targetAlias'],
            status=HandshakeStatus(data['status']),
            created_at=as_utc(datetime.fromisoformat(data['createdAt'])),
            expires_at=as_utc(datetime.fromisoformat(data['expiresAt'])),
        )


@dataclass(frozen=True)
class Contact:
    """
    Mutual trust record. Both owners hold one, with identical key material.
    """
    id: str
    owner_id: str
    peer_id: str
    session_key_material: bytes

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'ownerId': self.owner_id,
            'peerId': self.peer_id,
            'sessionKeyMaterial': b64encode(self.session_key_material),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Contact':
        return cls(
            id=data['id'],
            owner_id=data['ownerId'],
            peer_id=data['peerId'],
            session_key_material=b64decode(data['sessionKeyMaterial'], KEY_SIZE),
        )

    def __repr__(self) -> str:
        return f"Contact(id={self.id!r}, owner_id={self.owner_id!r}, peer_id={self.peer_id!r})"


def ensure_actionable(handshake: Handshake, now: Optional[datetime] = None):
    """
    Raise unless the handshake can still be accepted or rejected.

    Raises:
        NotPending: Status is terminal
        HandshakeExpired: Still marked pending but past expires_at
    """
    if handshake.status != HandshakeStatus.PENDING:
        raise NotPending(f"Handshake is {handshake.status.value}")
    if handshake.is_expired(now):
        raise HandshakeExpired()


class HandshakeStore(Protocol):
    """
    Storage boundary for handshakes and contacts.

    Implemented by the relay database and by the relay HTTP client.
    accept_handshake must be atomic: both contacts and the status change
    are applied together or not at all, and repeating it on an accepted
    handshake is a no-op.
    """

    async def create_handshake(self, initiator_id: str, target_alias: str,
                               expires_at: datetime) -> Handshake: ...

    async def get_handshake(self, handshake_id: str, caller_id: str) -> Handshake: ...

    async def list_pending_handshakes(self, caller_id: str) -> List[Handshake]: ...

    async def get_public_identity(self, identity_id: str) -> PublicIdentity: ...

    async def accept_handshake(self, handshake_id: str, caller_id: str,
                               session_key_material: bytes) -> Handshake: ...

    async def reject_handshake(self, handshake_id: str, caller_id: str) -> Handshake: ...


class HandshakeStateMachine:
    """
    Drives handshakes on behalf of one local identity.
    """

    def __init__(self, identity: Identity, store: HandshakeStore,
                 vault: Optional[PassphraseVault] = None):
        """
        Args:
            identity: The local identity acting as initiator or target
            store: Storage boundary (relay database or relay client)
            vault: Vault used to unseal the encryption key
        """
        self.identity = identity
        self.store = store
        self.vault = vault or PassphraseVault()

    async def initiate(self, target_alias: str, now: Optional[datetime] = None,
                       ttl: timedelta = HANDSHAKE_TTL) -> Handshake:
        """
        Ask the owner of target_alias to connect.

        Raises:
            ValidationError: Malformed alias, or our own alias
        """
        alias = validate_alias(target_alias)
        if alias == self.identity.alias:
            raise ValidationError("Cannot start a handshake with yourself")

        expires_at = (now or utcnow()) + ttl
        handshake = await self.store.create_handshake(self.identity.id, alias, expires_at)
        logger.info("Handshake %s initiated towards %s", handshake.id, alias)
        return handshake

    async def incoming(self) -> List[Handshake]:
        """Pending handshakes that name our alias and have not expired"""
        handshakes = await self.store.list_pending_handshakes(self.identity.id)
        now = utcnow()
        return [h for h in handshakes if not h.is_expired(now)]

    async def accept(self, handshake_id: str, passphrase: str,
                     now: Optional[datetime] = None) -> Handshake:
        """
        Accept a pending handshake addressed to us.

        Retrying on an already-accepted handshake returns it unchanged.

        Raises:
            HandshakeNotFound, Unauthorized, NotPending, HandshakeExpired,
            PeerNotReady, AuthenticationFailure
        """
        handshake = await self.store.get_handshake(handshake_id, self.identity.id)
        if handshake.target_alias != self.identity.alias:
            raise Unauthorized("Handshake is addressed to another alias")
        if handshake.status == HandshakeStatus.ACCEPTED:
            logger.info("Handshake %s already accepted", handshake.id)
            return handshake
        ensure_actionable(handshake, now)

        initiator = await self.store.get_public_identity(handshake.initiator_id)
        if initiator.encryption_public_key is None:
            raise PeerNotReady("Initiator has not published an encryption key")

        session_key_material = self.identity.agree(
            initiator.encryption_public_key, passphrase, self.vault
        )
        accepted = await self.store.accept_handshake(
            handshake.id, self.identity.id, session_key_material
        )
        logger.info("Handshake %s accepted", accepted.id)
        return accepted

    async def reject(self, handshake_id: str, now: Optional[datetime] = None) -> Handshake:
        """
        Reject a pending handshake addressed to us. No key material is produced.

        Raises:
            HandshakeNotFound, Unauthorized, NotPending, HandshakeExpired
        """
        handshake = await self.store.get_handshake(handshake_id, self.identity.id)
        if handshake.target_alias != self.identity.alias:
            raise Unauthorized("Handshake is addressed to another alias")
        ensure_actionable(handshake, now)

        rejected = await self.store.reject_handshake(handshake.id, self.identity.id)
        logger.info("Handshake %s rejected", rejected.id)
        return rejected
