"""
Tests for the handshake state machine running against the relay database.
"""

import asyncio
import dataclasses
import logging
from datetime import timedelta
import pytest
from sqlalchemy import func, select

from ghostcrypto.errors import (
    AuthenticationFailure,
    DecryptionFailure,
    HandshakeExpired,
    HandshakeNotFound,
    NotPending,
    PeerNotReady,
    Unauthorized,
    ValidationError,
)
from ghostcrypto.handshake import HANDSHAKE_TTL, HandshakeStateMachine, HandshakeStatus, utcnow
from ghostcrypto.identity import Identity, registration_payload
from ghostcrypto.primitives import b64decode, b64encode
from ghostcrypto.session_cipher import UNDECRYPTABLE_PLACEHOLDER, decrypt
from ghostcrypto.vault import MIN_PBKDF2_ITERATIONS, PassphraseVault
from ghostclient.keystore import LocalKeyStore
from ghostclient.messaging import compose_message, render_messages
from ghostclient.session import IdentitySession
from ghostrelay.database import ContactRecord, Database, IdentityRecord

VAULT = PassphraseVault(MIN_PBKDF2_ITERATIONS)
ALICE_PASS = "Alice-Passphrase-1"
BOB_PASS = "Bob-Passphrase-22"


async def _open_db(tmp_path) -> Database:
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    await db.create_tables()
    return db


async def _submit(db: Database, request: dict):
    rotation = request['rotation_signature']
    return await db.register_identity(
        request['identity'],
        b64decode(request['signature']),
        request['issued_at'],
        b64decode(rotation) if rotation else None,
    )


async def _register(db: Database, passphrase: str) -> Identity:
    identity = Identity.create(passphrase, vault=VAULT)
    await _submit(db, identity.registration_request(passphrase, VAULT))
    return identity


async def _seed_with_alias(db: Database, identity: Identity, alias: str) -> Identity:
    """Store an identity row under a fixed alias, bypassing registration checks"""
    async with db.async_session() as session:
        session.add(IdentityRecord(
            id=identity.id,
            signing_public_key=b64encode(identity.signing_public_key),
            encryption_public_key=b64encode(identity.encryption_public_key),
            alias=alias,
        ))
        await session.commit()
    return dataclasses.replace(identity, alias=alias)


async def _count_contacts(db: Database) -> int:
    async with db.async_session() as session:
        result = await session.execute(select(func.count()).select_from(ContactRecord))
        return result.scalar_one()


def run(scenario, tmp_path):
    async def wrapper():
        db = await _open_db(tmp_path)
        try:
            await scenario(db)
        finally:
            await db.close()
    asyncio.run(wrapper())


def test_accept_creates_one_contact_pair(tmp_path):
    """Accepting WXYZ-4567-89AB's handshake links both sides exactly once"""
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _seed_with_alias(db, Identity.create(BOB_PASS, vault=VAULT), "WXYZ-4567-89AB")
        alice_side = HandshakeStateMachine(alice, db, VAULT)
        bob_side = HandshakeStateMachine(bob, db, VAULT)

        now = utcnow()
        handshake = await alice_side.initiate("WXYZ-4567-89AB", now=now)
        assert handshake.status == HandshakeStatus.PENDING
        assert handshake.target_alias == "WXYZ-4567-89AB"
        assert handshake.expires_at == now + HANDSHAKE_TTL

        incoming = await bob_side.incoming()
        assert [h.id for h in incoming] == [handshake.id]

        accepted = await bob_side.accept(handshake.id, BOB_PASS)
        assert accepted.status == HandshakeStatus.ACCEPTED

        alice_contacts = await db.list_contacts(alice.id)
        bob_contacts = await db.list_contacts(bob.id)
        assert len(alice_contacts) == 1 and len(bob_contacts) == 1
        assert alice_contacts[0].peer_id == bob.id
        assert bob_contacts[0].peer_id == alice.id
        material = alice_contacts[0].session_key_material
        assert len(material) == 32
        assert bob_contacts[0].session_key_material == material
        assert alice.agree(bob.encryption_public_key, ALICE_PASS, VAULT) == material

        again = await bob_side.accept(handshake.id, BOB_PASS)
        assert again.status == HandshakeStatus.ACCEPTED
        again = await db.accept_handshake(handshake.id, bob.id, material)
        assert again.status == HandshakeStatus.ACCEPTED
        assert await _count_contacts(db) == 2

        stored = await db.get_handshake(handshake.id, alice.id)
        assert stored.status == HandshakeStatus.ACCEPTED
        assert await bob_side.incoming() == []

    run(scenario, tmp_path)


def test_expired_handshake_cannot_be_accepted_or_rejected(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        bob_side = HandshakeStateMachine(bob, db, VAULT)

        past = utcnow() - timedelta(minutes=1)
        first = await db.create_handshake(alice.id, bob.alias, past)
        second = await db.create_handshake(alice.id, bob.alias, past)
        assert first.status == HandshakeStatus.PENDING

        with pytest.raises(NotPending):
            await bob_side.accept(first.id, BOB_PASS)
        with pytest.raises(HandshakeExpired):
            await bob_side.reject(first.id)

        # The relay refuses on its own too and marks the handshake expired
        with pytest.raises(HandshakeExpired):
            await db.accept_handshake(first.id, bob.id, bytes(32))
        with pytest.raises(HandshakeExpired):
            await db.reject_handshake(second.id, bob.id)

        assert (await db.get_handshake(first.id, bob.id)).status == HandshakeStatus.EXPIRED
        assert await _count_contacts(db) == 0
        assert await bob_side.incoming() == []

    run(scenario, tmp_path)


def test_concurrent_accepts_converge(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        handshake = await db.create_handshake(alice.id, bob.alias, utcnow() + HANDSHAKE_TTL)
        material = bob.agree(alice.encryption_public_key, BOB_PASS, VAULT)

        results = await asyncio.gather(*[
            db.accept_handshake(handshake.id, bob.id, material) for _ in range(3)
        ])

        assert all(r.status == HandshakeStatus.ACCEPTED for r in results)
        assert await _count_contacts(db) == 2

    run(scenario, tmp_path)


def test_wrong_passphrase_leaves_handshake_pending(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        handshake = await HandshakeStateMachine(alice, db, VAULT).initiate(bob.alias)

        with pytest.raises(AuthenticationFailure):
            await HandshakeStateMachine(bob, db, VAULT).accept(handshake.id, "not-bobs-passphrase")

        assert (await db.get_handshake(handshake.id, bob.id)).status == HandshakeStatus.PENDING
        assert await _count_contacts(db) == 0

    run(scenario, tmp_path)


def test_reject(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        handshake = await HandshakeStateMachine(alice, db, VAULT).initiate(bob.alias)
        bob_side = HandshakeStateMachine(bob, db, VAULT)

        rejected = await bob_side.reject(handshake.id)
        assert rejected.status == HandshakeStatus.REJECTED
        assert await _count_contacts(db) == 0

        with pytest.raises(NotPending):
            await bob_side.accept(handshake.id, BOB_PASS)

    run(scenario, tmp_path)


def test_initiator_without_encryption_key(tmp_path):
    async def scenario(db):
        alice = Identity.create(ALICE_PASS, vault=VAULT)
        record = alice.public_record()
        record["encryptionPublicKey"] = None
        issued_at = utcnow().isoformat()
        payload = registration_payload(alice.id, alice.signing_public_key, b"", alice.alias, issued_at)
        await db.register_identity(record, alice.sign(payload, ALICE_PASS, VAULT), issued_at)

        bob = await _register(db, BOB_PASS)
        handshake = await db.create_handshake(alice.id, bob.alias, utcnow() + HANDSHAKE_TTL)

        with pytest.raises(PeerNotReady) as excinfo:
            await HandshakeStateMachine(bob, db, VAULT).accept(handshake.id, BOB_PASS)
        assert excinfo.value.retryable

        assert (await db.get_handshake(handshake.id, bob.id)).status == HandshakeStatus.PENDING

    run(scenario, tmp_path)


def test_only_the_target_may_accept(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        carol = await _register(db, "Carol-Passphrase-3")
        handshake = await db.create_handshake(alice.id, bob.alias, utcnow() + HANDSHAKE_TTL)

        with pytest.raises(Unauthorized):
            await db.accept_handshake(handshake.id, carol.id, bytes(32))
        with pytest.raises(HandshakeNotFound):
            await HandshakeStateMachine(carol, db, VAULT).accept(handshake.id, "Carol-Passphrase-3")
        with pytest.raises(HandshakeNotFound):
            await db.accept_handshake("no-such-handshake", bob.id, bytes(32))

    run(scenario, tmp_path)


def test_cannot_target_own_alias(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        with pytest.raises(ValidationError):
            await HandshakeStateMachine(alice, db, VAULT).initiate(alice.alias)
        with pytest.raises(ValidationError):
            await db.create_handshake(alice.id, alice.alias, utcnow() + HANDSHAKE_TTL)
        with pytest.raises(ValidationError):
            await HandshakeStateMachine(alice, db, VAULT).initiate("abcd-efgh-ijkl")

    run(scenario, tmp_path)


def test_registration_checks(tmp_path):
    async def scenario(db):
        now = utcnow()
        alice = Identity.create(ALICE_PASS, vault=VAULT)
        request = alice.registration_request(ALICE_PASS, VAULT, issued_at=now - timedelta(minutes=2))

        forged = dict(request, identity=dict(alice.public_record(), alias="WXYZ-4567-89AB"))
        with pytest.raises(ValidationError):
            await _submit(db, forged)
        with pytest.raises(ValidationError):
            await _submit(db, dict(request, signature=b64encode(bytes(64))))
        with pytest.raises(ValidationError):
            await _submit(db, dict(request, issued_at="yesterday"))
        stale = alice.registration_request(ALICE_PASS, VAULT, issued_at=now - timedelta(minutes=10))
        with pytest.raises(ValidationError):
            await _submit(db, stale)

        published = await _submit(db, request)
        assert published.alias == alice.alias

        # The same signed request cannot be replayed for a fresh token
        with pytest.raises(Unauthorized):
            await _submit(db, request)

        rotated = Identity.create(ALICE_PASS, identity_id=alice.id, vault=VAULT)
        unendorsed = rotated.registration_request(ALICE_PASS, VAULT, issued_at=now - timedelta(minutes=1))
        with pytest.raises(Unauthorized):
            await _submit(db, unendorsed)
        self_endorsed = rotated.registration_request(
            ALICE_PASS, VAULT, issued_at=now - timedelta(minutes=1),
            rotation_signature=rotated.endorse(rotated, ALICE_PASS, VAULT))
        with pytest.raises(Unauthorized):
            await _submit(db, self_endorsed)
        assert (await db.get_public_identity(alice.id)).alias == alice.alias

        endorsed = rotated.registration_request(
            ALICE_PASS, VAULT, issued_at=now - timedelta(minutes=1),
            rotation_signature=alice.endorse(rotated, ALICE_PASS, VAULT))
        await _submit(db, endorsed)
        current = await db.get_public_identity(alice.id)
        assert current.alias == rotated.alias
        assert current.encryption_public_key == rotated.encryption_public_key

        # Neither the old keys nor the consumed endorsement work again
        with pytest.raises(Unauthorized):
            await _submit(db, alice.registration_request(ALICE_PASS, VAULT))
        with pytest.raises(Unauthorized):
            await _submit(db, endorsed)
        await _submit(db, rotated.registration_request(ALICE_PASS, VAULT))

        with pytest.raises(PeerNotReady):
            await db.get_public_identity("00000000-0000-0000-0000-000000000000")

    run(scenario, tmp_path)


def test_foreign_key_cannot_take_over_an_identity(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        handshake = await HandshakeStateMachine(alice, db, VAULT).initiate(bob.alias)
        await HandshakeStateMachine(bob, db, VAULT).accept(handshake.id, BOB_PASS)
        contact = (await db.list_contacts(alice.id))[0]
        now = utcnow()
        message = compose_message(contact, "secret to bob", now=now)
        await db.insert_message(alice.id, contact.id, message["ciphertext"], message["nonce"],
                                now, now + timedelta(hours=1))

        mallory = Identity.create("Mallory-Passphrase-5", identity_id=bob.id, vault=VAULT)
        with pytest.raises(Unauthorized):
            await _submit(db, mallory.registration_request("Mallory-Passphrase-5", VAULT))
        forged_endorsement = mallory.registration_request(
            "Mallory-Passphrase-5", VAULT,
            rotation_signature=mallory.endorse(mallory, "Mallory-Passphrase-5", VAULT))
        with pytest.raises(Unauthorized):
            await _submit(db, forged_endorsement)

        stored = await db.get_public_identity(bob.id)
        assert stored.signing_public_key == bob.signing_public_key
        assert stored.encryption_public_key == bob.encryption_public_key
        assert stored.alias == bob.alias

    run(scenario, tmp_path)


def test_cleanup_expired(tmp_path):
    async def scenario(db):
        alice = await _register(db, ALICE_PASS)
        bob = await _register(db, BOB_PASS)
        now = utcnow()

        accepted = await HandshakeStateMachine(alice, db, VAULT).initiate(bob.alias)
        await HandshakeStateMachine(bob, db, VAULT).accept(accepted.id, BOB_PASS)
        stale = await db.create_handshake(alice.id, bob.alias, now - timedelta(minutes=1))
        await db.create_handshake(alice.id, bob.alias, now + HANDSHAKE_TTL)

        contact = (await db.list_contacts(alice.id))[0]
        for expires_at in (now - timedelta(minutes=1), now + timedelta(hours=72)):
            message = compose_message(contact, "hello", now=now)
            await db.insert_message(alice.id, contact.id, message["ciphertext"], message["nonce"],
                                    now, expires_at)

        assert len(await db.list_messages(bob.id, (await db.list_contacts(bob.id))[0].id)) == 1

        messages_deleted, handshakes_deleted = await db.cleanup_expired(now + timedelta(hours=2))
        assert (messages_deleted, handshakes_deleted) == (1, 2)

        assert (await db.get_handshake(accepted.id, alice.id)).status == HandshakeStatus.ACCEPTED
        with pytest.raises(HandshakeNotFound):
            await db.get_handshake(stale.id, alice.id)
        assert len(await db.list_messages(alice.id, contact.id)) == 1

    run(scenario, tmp_path)


def test_secrets_stay_out_of_logs_and_errors(tmp_path, caplog):
    caplog.set_level(logging.DEBUG)
    errors = []

    async def scenario(db):
        session = IdentitySession(LocalKeyStore(str(tmp_path / "alice")), vault=VAULT)
        words = session.onboard(ALICE_PASS)
        alice = session.identity
        await _submit(db, alice.registration_request(ALICE_PASS, VAULT))
        bob = await _register(db, BOB_PASS)

        with pytest.raises(AuthenticationFailure) as excinfo:
            VAULT.open(alice.sealed_signing_key, "Wrong-Passphrase-9")
        errors.append(str(excinfo.value))

        handshake = await HandshakeStateMachine(alice, db, VAULT).initiate(bob.alias)
        bob_side = HandshakeStateMachine(bob, db, VAULT)
        with pytest.raises(AuthenticationFailure) as excinfo:
            await bob_side.accept(handshake.id, "Wrong-Passphrase-9")
        errors.append(str(excinfo.value))
        await bob_side.accept(handshake.id, BOB_PASS)

        contact = (await db.list_contacts(alice.id))[0]
        now = utcnow()
        message = compose_message(contact, "meet at the north gate", now=now)
        await db.insert_message(alice.id, contact.id, message["ciphertext"], message["nonce"],
                                now, now + timedelta(hours=1))
        received = await db.list_messages(bob.id, (await db.list_contacts(bob.id))[0].id)

        wrong_key = bytes(32)
        assert render_messages(received, wrong_key)[0]["text"] == UNDECRYPTABLE_PLACEHOLDER
        with pytest.raises(DecryptionFailure) as excinfo:
            decrypt(b64decode(message["ciphertext"]), b64decode(message["nonce"]), wrong_key)
        errors.append(str(excinfo.value))

        private_key = VAULT.open(alice.sealed_encryption_key, ALICE_PASS)
        return words, contact.session_key_material, private_key

    async def wrapper():
        db = await _open_db(tmp_path)
        try:
            return await scenario(db)
        finally:
            await db.close()

    words, material, private_key = asyncio.run(wrapper())

    secrets = [
        ALICE_PASS,
        BOB_PASS,
        "Wrong-Passphrase-9",
        "meet at the north gate",
        " ".join(words),
        material.hex(),
        b64encode(material),
        private_key.hex(),
        b64encode(private_key),
    ]
    assert caplog.records
    for secret in secrets:
        assert secret not in caplog.text
        for error in errors:
            assert secret not in error
