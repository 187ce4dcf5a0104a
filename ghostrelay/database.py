"""
Database models and operations for the relay.

Uses SQLAlchemy with SQLite for identities, handshakes, contacts and
messages. Message bodies are stored only as ciphertext.
"""

import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Tuple
from sqlalchemy import Column, String, DateTime, Text, UniqueConstraint, select, update, delete, or_, and_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from ghostcrypto.alias import derive_alias, validate_alias
from ghostcrypto.errors import (
    HandshakeExpired,
    HandshakeNotFound,
    NotPending,
    PeerNotReady,
    StorageUnavailable,
    Unauthorized,
    ValidationError,
)
from ghostcrypto.handshake import Contact, Handshake, HandshakeStatus, as_utc, utcnow
from ghostcrypto.identity import PublicIdentity, registration_payload, rotation_payload
from ghostcrypto.primitives import KEY_SIZE, NONCE_SIZE, b64encode, b64decode, verify_signature

logger = logging.getLogger(__name__)

# Statement parameters and result rows carry session key material
for _name in ("sqlalchemy.engine", "aiosqlite"):
    logging.getLogger(_name).setLevel(logging.WARNING)

Base = declarative_base()

MAX_ACCEPT_ATTEMPTS = 5

# Allowed distance between a registration's issued_at and the relay clock
REGISTRATION_WINDOW = timedelta(minutes=5)


def _new_id() -> str:
    return str(uuid.uuid4())


def _naive(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC"""
    return as_utc(value).astimezone(timezone.utc).replace(tzinfo=None)


def _now() -> datetime:
    return _naive(utcnow())


class IdentityRecord(Base):
    """Published identity (public halves only)"""
    __tablename__ = "identities"

    id = Column(String(36), primary_key=True)
    signing_public_key = Column(String(64), unique=True, nullable=False)
    encryption_public_key = Column(String(64), nullable=True)
    alias = Column(String(14), unique=True, index=True, nullable=False)
    registered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class HandshakeRecord(Base):
    """Trust request from an initiator to an alias"""
    __tablename__ = "handshakes"

    id = Column(String(36), primary_key=True, default=_new_id)
    initiator_id = Column(String(36), index=True, nullable=False)
    target_alias = Column(String(14), index=True, nullable=False)
    status = Column(String(16), nullable=False, default=HandshakeStatus.PENDING.value)
    created_at = Column(DateTime, default=_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class ContactRecord(Base):
    """One side of an accepted handshake"""
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("owner_id", "peer_id", name="uq_contact_owner_peer"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(36), index=True, nullable=False)
    peer_id = Column(String(36), nullable=False)
    session_key_material = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)


class MessageRecord(Base):
    """Encrypted message awaiting expiry"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    sender_id = Column(String(36), index=True, nullable=False)
    recipient_id = Column(String(36), index=True, nullable=False)
    contact_id = Column(String(36), index=True, nullable=False)
    ciphertext = Column(Text, nullable=False)
    nonce = Column(String(24), nullable=False)
    synthetic_timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)


def _to_public_identity(record: IdentityRecord) -> PublicIdentity:
    return PublicIdentity(
        id=record.id,
        signing_public_key=b64decode(record.signing_public_key),
        encryption_public_key=b64decode(record.encryption_public_key) if record.encryption_public_key else None,
        alias=record.alias,
    )


def _to_handshake(record: HandshakeRecord, status: Optional[HandshakeStatus] = None) -> Handshake:
    return Handshake(
        id=record.id,
        initiator_id=record.initiator_id,
        target_alias=record.target_alias,
        status=status or HandshakeStatus(record.status),
        created_at=as_utc(record.created_at),
        expires_at=as_utc(record.expires_at),
    )


def _to_contact(record: ContactRecord) -> Contact:
    return Contact(
        id=record.id,
        owner_id=record.owner_id,
        peer_id=record.peer_id,
        session_key_material=b64decode(record.session_key_material),
    )


def _message_dict(record: MessageRecord) -> dict:
    return {
        'id': record.id,
        'senderId': record.sender_id,
        'recipientId': record.recipient_id,
        'contactId': record.contact_id,
        'ciphertext': record.ciphertext,
        'nonce': record.nonce,
        'syntheticTimestamp': as_utc(record.synthetic_timestamp).isoformat(),
        'createdAt': as_utc(record.created_at).isoformat(),
        'expiresAt': as_utc(record.expires_at).isoformat(),
    }


class _AcceptConflict(Exception):
    """Another writer changed the handshake between read and update"""


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./ghost_relay.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False, hide_parameters=True)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def register_identity(self, record: dict, signature: bytes, issued_at: str,
                                rotation_signature: Optional[bytes] = None) -> PublicIdentity:
        """
        Publish or replace an identity.

        The alias must be derived from the signing key and the record, with
        its issued_at stamp, must be signed by that key. For an id that is
        already registered:

        - issued_at must be later than the last accepted registration, so a
          captured request cannot be replayed to mint a token;
        - a new signing key must be endorsed by the stored one
          (rotation_signature over rotation_payload).

        Raises:
            ValidationError: Malformed record, alias mismatch, bad signature,
                stale issued_at or alias taken
            Unauthorized: Replayed registration or unendorsed key change
        """
        try:
            identity_id = str(uuid.UUID(record['id']))
            signing_public_key = b64decode(record['signingPublicKey'], KEY_SIZE)
            enc = record.get('encryptionPublicKey')
            encryption_public_key = b64decode(enc, KEY_SIZE) if enc else None
            alias = validate_alias(record['alias'])
            issued = as_utc(datetime.fromisoformat(issued_at))
        except (KeyError, ValueError, TypeError):
            raise ValidationError("Malformed identity record")

        if derive_alias(signing_public_key) != alias:
            raise ValidationError("Alias is not derived from the signing key")
        if abs(utcnow() - issued) > REGISTRATION_WINDOW:
            raise ValidationError("Registration issued_at is outside the accepted window")

        payload = registration_payload(identity_id, signing_public_key,
                                       encryption_public_key or b"", alias, issued_at)
        if not verify_signature(signing_public_key, signature, payload):
            raise ValidationError("Identity signature does not verify")

        values = {
            'signing_public_key': b64encode(signing_public_key),
            'encryption_public_key': b64encode(encryption_public_key) if encryption_public_key else None,
            'alias': alias,
            'registered_at': _naive(issued),
        }

        async with self.async_session() as session:
            existing = await session.get(IdentityRecord, identity_id)
            if existing:
                current_key = existing.signing_public_key
                if current_key != values['signing_public_key']:
                    proof = rotation_payload(identity_id, signing_public_key)
                    if not rotation_signature or not verify_signature(b64decode(current_key), rotation_signature, proof):
                        logger.warning("Refused unendorsed key change for identity %s", identity_id)
                        raise Unauthorized("Key change must be endorsed by the current signing key")

            try:
                if existing:
                    result = await session.execute(
                        update(IdentityRecord)
                        .where(
                            IdentityRecord.id == identity_id,
                            IdentityRecord.signing_public_key == current_key,
                            or_(IdentityRecord.registered_at.is_(None),
                                IdentityRecord.registered_at < values['registered_at']),
                        )
                        .values(updated_at=_now(), **values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        logger.warning("Refused stale or replayed registration for identity %s", identity_id)
                        raise Unauthorized("Registration is not newer than the last one")
                else:
                    session.add(IdentityRecord(id=identity_id, **values))
                await session.commit()
            except IntegrityError:
                raise ValidationError("Alias or signing key already registered")

            logger.info("Identity %s registered as %s", identity_id, alias)
            return PublicIdentity(
                id=identity_id,
                signing_public_key=signing_public_key,
                encryption_public_key=encryption_public_key,
                alias=alias,
            )

    async def get_public_identity(self, identity_id: str) -> PublicIdentity:
        """
        Get the public identity for an id.

        Raises:
            PeerNotReady: If the identity has not been published
        """
        async with self.async_session() as session:
            record = await session.get(IdentityRecord, identity_id)
            if not record:
                raise PeerNotReady("Identity not found; the other device must sync its identity")
            return _to_public_identity(record)

    async def _caller(self, session: AsyncSession, caller_id: str) -> IdentityRecord:
        caller = await session.get(IdentityRecord, caller_id)
        if not caller:
            raise Unauthorized("Caller identity is not registered")
        return caller

    # ------------------------------------------------------------------
    # Handshakes
    # ------------------------------------------------------------------

    async def create_handshake(self, initiator_id: str, target_alias: str,
                               expires_at: datetime) -> Handshake:
        """
        Create a pending handshake.

        Raises:
            Unauthorized: Initiator is not registered
            ValidationError: Malformed alias or the initiator's own alias
        """
        alias = validate_alias(target_alias)
        async with self.async_session() as session:
            initiator = await self._caller(session, initiator_id)
            if initiator.alias == alias:
                raise ValidationError("Cannot start a handshake with yourself")

            record = HandshakeRecord(
                initiator_id=initiator_id,
                target_alias=alias,
                status=HandshakeStatus.PENDING.value,
                created_at=_now(),
                expires_at=_naive(expires_at),
            )
            session.add(record)
            await session.commit()
            return _to_handshake(record)

    async def get_handshake(self, handshake_id: str, caller_id: str) -> Handshake:
        """
        Get a handshake visible to the caller (its initiator or its target).

        Raises:
            HandshakeNotFound: Missing or not visible to the caller
        """
        async with self.async_session() as session:
            caller = await self._caller(session, caller_id)
            record = await session.get(HandshakeRecord, handshake_id)
            if not record or (record.initiator_id != caller.id and record.target_alias != caller.alias):
                raise HandshakeNotFound()
            return _to_handshake(record)

    async def list_pending_handshakes(self, caller_id: str) -> List[Handshake]:
        """Pending handshakes addressed to the caller's alias, newest first"""
        async with self.async_session() as session:
            caller = await self._caller(session, caller_id)
            result = await session.execute(
                select(HandshakeRecord)
                .where(
                    HandshakeRecord.target_alias == caller.alias,
                    HandshakeRecord.status == HandshakeStatus.PENDING.value,
                )
                .order_by(HandshakeRecord.created_at.desc())
            )
            return [_to_handshake(r) for r in result.scalars().all()]

    async def accept_handshake(self, handshake_id: str, caller_id: str,
                               session_key_material: bytes) -> Handshake:
        """
        Atomically accept a handshake.

        Marks it accepted with a compare-and-swap on status='pending' and
        upserts both contacts in the same transaction. A lost race or lock
        conflict is retried from a fresh read; an already-accepted handshake
        is returned unchanged.

        Raises:
            HandshakeNotFound, Unauthorized, NotPending, HandshakeExpired,
            ValidationError, StorageUnavailable
        """
        if len(session_key_material) != KEY_SIZE:
            raise ValidationError(f"Session key material must be {KEY_SIZE} bytes")
        material = b64encode(session_key_material)

        for attempt in range(1, MAX_ACCEPT_ATTEMPTS + 1):
            try:
                return await self._accept_once(handshake_id, caller_id, material)
            except (_AcceptConflict, IntegrityError, OperationalError):
                logger.warning("Accept of handshake %s conflicted (attempt %d)", handshake_id, attempt)
                await asyncio.sleep(0.05 * attempt)

        raise StorageUnavailable("Handshake accept kept conflicting; retry later")

    async def _accept_once(self, handshake_id: str, caller_id: str, material: str) -> Handshake:
        expired = None
        async with self.async_session() as session:
            async with session.begin():
                caller = await self._caller(session, caller_id)
                record = await session.get(HandshakeRecord, handshake_id)
                if not record:
                    raise HandshakeNotFound()
                if record.target_alias != caller.alias:
                    raise Unauthorized("Handshake is addressed to another alias")

                status = HandshakeStatus(record.status)
                if status == HandshakeStatus.ACCEPTED:
                    return _to_handshake(record)
                if status != HandshakeStatus.PENDING:
                    raise NotPending(f"Handshake is {status.value}")

                if as_utc(record.expires_at) <= utcnow():
                    await self._mark_expired(session, handshake_id)
                    expired = _to_handshake(record, HandshakeStatus.EXPIRED)
                else:
                    result = await session.execute(
                        update(HandshakeRecord)
                        .where(
                            HandshakeRecord.id == handshake_id,
                            HandshakeRecord.status == HandshakeStatus.PENDING.value,
                        )
                        .values(status=HandshakeStatus.ACCEPTED.value)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise _AcceptConflict()

                    await self._upsert_contact(session, caller.id, record.initiator_id, material)
                    await self._upsert_contact(session, record.initiator_id, caller.id, material)

        if expired:
            logger.info("Handshake %s expired before it was accepted", handshake_id)
            raise HandshakeExpired()

        logger.info("Handshake %s accepted; contacts created for %s and %s",
                    handshake_id, caller_id, record.initiator_id)
        return _to_handshake(record, HandshakeStatus.ACCEPTED)

    async def _upsert_contact(self, session: AsyncSession, owner_id: str, peer_id: str, material: str):
        result = await session.execute(
            select(ContactRecord).where(
                ContactRecord.owner_id == owner_id,
                ContactRecord.peer_id == peer_id,
            )
        )
        contact = result.scalar_one_or_none()
        if contact:
            contact.session_key_material = material
        else:
            session.add(ContactRecord(owner_id=owner_id, peer_id=peer_id, session_key_material=material))
        await session.flush()

    async def _mark_expired(self, session: AsyncSession, handshake_id: str):
        await session.execute(
            update(HandshakeRecord)
            .where(
                HandshakeRecord.id == handshake_id,
                HandshakeRecord.status == HandshakeStatus.PENDING.value,
            )
            .values(status=HandshakeStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )

    async def reject_handshake(self, handshake_id: str, caller_id: str) -> Handshake:
        """
        Reject a pending handshake addressed to the caller.

        Raises:
            HandshakeNotFound, Unauthorized, NotPending, HandshakeExpired
        """
        expired = False
        async with self.async_session() as session:
            async with session.begin():
                caller = await self._caller(session, caller_id)
                record = await session.get(HandshakeRecord, handshake_id)
                if not record:
                    raise HandshakeNotFound()
                if record.target_alias != caller.alias:
                    raise Unauthorized("Handshake is addressed to another alias")
                if record.status != HandshakeStatus.PENDING.value:
                    raise NotPending(f"Handshake is {record.status}")

                if as_utc(record.expires_at) <= utcnow():
                    await self._mark_expired(session, handshake_id)
                    expired = True
                else:
                    result = await session.execute(
                        update(HandshakeRecord)
                        .where(
                            HandshakeRecord.id == handshake_id,
                            HandshakeRecord.status == HandshakeStatus.PENDING.value,
                        )
                        .values(status=HandshakeStatus.REJECTED.value)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise NotPending("Handshake changed state concurrently")

        if expired:
            raise HandshakeExpired()
        logger.info("Handshake %s rejected", handshake_id)
        return _to_handshake(record, HandshakeStatus.REJECTED)

    # ------------------------------------------------------------------
    # Contacts and messages
    # ------------------------------------------------------------------

    async def list_contacts(self, owner_id: str) -> List[Contact]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ContactRecord)
                .where(ContactRecord.owner_id == owner_id)
                .order_by(ContactRecord.created_at)
            )
            return [_to_contact(r) for r in result.scalars().all()]

    async def get_contact(self, contact_id: str, owner_id: str) -> Contact:
        """
        Raises:
            ValidationError: If the contact does not exist or belongs to someone else
        """
        async with self.async_session() as session:
            record = await session.get(ContactRecord, contact_id)
            if not record or record.owner_id != owner_id:
                raise ValidationError("Unknown contact")
            return _to_contact(record)

    async def insert_message(self, sender_id: str, contact_id: str, ciphertext: str, nonce: str,
                             synthetic_timestamp: datetime, expires_at: datetime) -> dict:
        """
        Store an encrypted message from the owner of contact_id to its peer.

        Raises:
            ValidationError: Unknown contact or malformed ciphertext/nonce
        """
        b64decode(ciphertext)
        b64decode(nonce, NONCE_SIZE)
        contact = await self.get_contact(contact_id, sender_id)

        async with self.async_session() as session:
            record = MessageRecord(
                sender_id=sender_id,
                recipient_id=contact.peer_id,
                contact_id=contact.id,
                ciphertext=ciphertext,
                nonce=nonce,
                synthetic_timestamp=_naive(synthetic_timestamp),
                created_at=_now(),
                expires_at=_naive(expires_at),
            )
            session.add(record)
            await session.commit()
            return _message_dict(record)

    async def list_messages(self, owner_id: str, contact_id: str, limit: int = 200) -> List[dict]:
        """Unexpired messages in both directions between a contact's owner and peer, oldest first"""
        contact = await self.get_contact(contact_id, owner_id)
        async with self.async_session() as session:
            result = await session.execute(
                select(MessageRecord)
                .where(
                    or_(
                        and_(MessageRecord.sender_id == owner_id, MessageRecord.recipient_id == contact.peer_id),
                        and_(MessageRecord.sender_id == contact.peer_id, MessageRecord.recipient_id == owner_id),
                    ),
                    MessageRecord.expires_at > _now(),
                )
                .order_by(MessageRecord.created_at)
                .limit(limit)
            )
            return [_message_dict(r) for r in result.scalars().all()]

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup_expired(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """
        Delete expired messages and expired pending/expired handshakes.

        Returns:
            (messages deleted, handshakes deleted)
        """
        cutoff = _naive(now or utcnow())
        async with self.async_session() as session:
            async with session.begin():
                messages = await session.execute(
                    delete(MessageRecord).where(MessageRecord.expires_at < cutoff)
                )
                handshakes = await session.execute(
                    delete(HandshakeRecord).where(
                        HandshakeRecord.expires_at < cutoff,
                        HandshakeRecord.status.in_([
                            HandshakeStatus.PENDING.value,
                            HandshakeStatus.EXPIRED.value,
                        ]),
                    )
                )
        counts = (messages.rowcount, handshakes.rowcount)
        if any(counts):
            logger.info("Cleanup removed %d messages and %d handshakes", *counts)
        return counts
