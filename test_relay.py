"""
Tests for the relay HTTP API.
"""

from datetime import datetime, timedelta
import pytest
from fastapi.testclient import TestClient

from ghostcrypto.handshake import Contact, utcnow
from ghostcrypto.identity import Identity
from ghostcrypto.primitives import b64decode, b64encode
from ghostcrypto.vault import MIN_PBKDF2_ITERATIONS, PassphraseVault
from ghostclient.messaging import compose_message, render_messages
from ghostrelay.auth import create_access_token, verify_token
from ghostrelay.database import Database
from ghostrelay.main import create_app

VAULT = PassphraseVault(MIN_PBKDF2_ITERATIONS)
ALICE_PASS = "Alice-Passphrase-1"
BOB_PASS = "Bob-Passphrase-22"


@pytest.fixture
def client(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    with TestClient(create_app(db, cleanup_interval=0)) as test_client:
        yield test_client


def _register(client, passphrase):
    identity = Identity.create(passphrase, vault=VAULT)
    response = client.post("/api/identities", json=identity.registration_request(passphrase, VAULT))
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["identity_id"] == identity.id
    assert data["alias"] == identity.alias
    return identity, {"Authorization": f"Bearer {data['access_token']}"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_tokens():
    token = create_access_token("identity-1")
    assert verify_token(token) == "identity-1"
    assert verify_token(token + "x") is None
    assert verify_token(create_access_token("identity-1", timedelta(seconds=-1))) is None


def test_registration_rejects_bad_signature(client):
    identity = Identity.create(ALICE_PASS, vault=VAULT)
    request = identity.registration_request(ALICE_PASS, VAULT)
    response = client.post("/api/identities", json=dict(request, signature=b64encode(bytes(64))))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_registration_cannot_take_over_an_id(client):
    alice, alice_auth = _register(client, ALICE_PASS)
    mallory = Identity.create("Mallory-Passphrase-5", identity_id=alice.id, vault=VAULT)

    response = client.post("/api/identities", json=mallory.registration_request("Mallory-Passphrase-5", VAULT))
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"
    assert "access_token" not in response.json()

    published = client.get(f"/api/identities/{alice.id}", headers=alice_auth).json()
    assert published["alias"] == alice.alias

    # A captured registration does not mint a second token
    captured = alice.registration_request(ALICE_PASS, VAULT, issued_at=utcnow() + timedelta(minutes=1))
    assert client.post("/api/identities", json=captured).status_code == 200
    response = client.post("/api/identities", json=captured)
    assert response.status_code == 403


def test_requires_token(client):
    assert client.get("/api/contacts").status_code == 401
    response = client.get("/api/contacts", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_handshake_and_messages(client):
    alice, alice_auth = _register(client, ALICE_PASS)
    bob, bob_auth = _register(client, BOB_PASS)

    response = client.post("/api/handshakes", json={"target_alias": bob.alias}, headers=alice_auth)
    assert response.status_code == 200
    handshake = response.json()
    assert handshake["status"] == "pending"
    assert handshake["initiatorId"] == alice.id

    pending = client.get("/api/handshakes/pending", headers=bob_auth).json()["handshakes"]
    assert [h["id"] for h in pending] == [handshake["id"]]
    assert client.get("/api/handshakes/pending", headers=alice_auth).json()["handshakes"] == []

    initiator = client.get(f"/api/identities/{alice.id}", headers=bob_auth).json()
    material = bob.agree(b64decode(initiator["encryptionPublicKey"]), BOB_PASS, VAULT)

    for _ in range(2):
        response = client.post(f"/api/handshakes/{handshake['id']}/accept",
                               json={"session_key_material": b64encode(material)}, headers=bob_auth)
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

    alice_contacts = client.get("/api/contacts", headers=alice_auth).json()["contacts"]
    bob_contacts = client.get("/api/contacts", headers=bob_auth).json()["contacts"]
    assert len(alice_contacts) == 1 and len(bob_contacts) == 1
    assert alice_contacts[0]["sessionKeyMaterial"] == bob_contacts[0]["sessionKeyMaterial"]

    alice_contact = Contact.from_dict(alice_contacts[0])
    message = compose_message(alice_contact, "see you at nine")
    response = client.post(f"/api/contacts/{alice_contact.id}/messages", json={
        "ciphertext": message["ciphertext"],
        "nonce": message["nonce"],
        "synthetic_timestamp": message["syntheticTimestamp"],
        "expires_at": message["expiresAt"],
    }, headers=alice_auth)
    assert response.status_code == 200
    assert response.json()["recipientId"] == bob.id

    received = client.get(f"/api/contacts/{bob_contacts[0]['id']}/messages", headers=bob_auth).json()["messages"]
    assert [m["text"] for m in render_messages(received, material)] == ["see you at nine"]

    # Bob cannot post into Alice's contact record
    response = client.post(f"/api/contacts/{alice_contact.id}/messages", json={
        "ciphertext": message["ciphertext"],
        "nonce": message["nonce"],
        "synthetic_timestamp": message["syntheticTimestamp"],
    }, headers=bob_auth)
    assert response.status_code == 400


def test_error_mapping(client):
    alice, alice_auth = _register(client, ALICE_PASS)
    bob, bob_auth = _register(client, BOB_PASS)
    carol, carol_auth = _register(client, "Carol-Passphrase-3")

    handshake = client.post("/api/handshakes", json={"target_alias": bob.alias}, headers=alice_auth).json()
    material = {"session_key_material": b64encode(bytes(range(32)))}

    response = client.post("/api/handshakes/missing/accept", json=material, headers=bob_auth)
    assert response.status_code == 404
    assert response.json()["error"] == "handshake_not_found"

    response = client.post(f"/api/handshakes/{handshake['id']}/accept", json=material, headers=carol_auth)
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"

    response = client.post(f"/api/handshakes/{handshake['id']}/reject", headers=bob_auth)
    assert response.json()["status"] == "rejected"
    response = client.post(f"/api/handshakes/{handshake['id']}/accept", json=material, headers=bob_auth)
    assert response.status_code == 409
    assert response.json()["error"] == "not_pending"

    response = client.post("/api/handshakes", json={"target_alias": "abcd-efgh-ijkl"}, headers=alice_auth)
    assert response.status_code == 400

    past = (utcnow() - timedelta(minutes=5)).isoformat()
    response = client.post("/api/handshakes", json={"target_alias": bob.alias, "expires_at": past},
                           headers=alice_auth)
    assert response.status_code == 400


def test_handshake_expiry_is_capped(client):
    alice, alice_auth = _register(client, ALICE_PASS)
    bob, _ = _register(client, BOB_PASS)

    requested = utcnow() + timedelta(hours=5)
    handshake = client.post("/api/handshakes", json={
        "target_alias": bob.alias,
        "expires_at": requested.isoformat(),
    }, headers=alice_auth).json()

    expires_at = datetime.fromisoformat(handshake["expiresAt"])
    assert expires_at <= utcnow() + timedelta(hours=1)
