"""
HTTP client for the relay.

RelayClient implements the same handshake store contract as the relay's
Database, so a HandshakeStateMachine can run on a device against a remote
relay. Relay errors come back as the matching GhostError subclass.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional
import httpx

from ghostcrypto.errors import (
    StorageUnavailable,
    Unauthorized,
    ValidationError,
    error_from_code,
)
from ghostcrypto.handshake import Contact, Handshake
from ghostcrypto.identity import PublicIdentity
from ghostcrypto.primitives import b64encode

from . import config

logger = logging.getLogger(__name__)


class RelayClient:
    """
    Async client for the relay API.
    """

    def __init__(self, server_url: Optional[str] = None, token: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: Optional[float] = None):
        """
        Initialize relay client.

        Args:
            server_url: Base URL of the relay (GHOST_RELAY_URL if omitted)
            token: Access token from an earlier registration
            transport: httpx transport (e.g. ASGITransport in tests)
            timeout: Request timeout in seconds
        """
        self.server_url = (server_url or config.RELAY_URL).rstrip("/")
        self.token = token
        self.identity_id: Optional[str] = None
        self.http_client = httpx.AsyncClient(
            base_url=self.server_url,
            transport=transport,
            timeout=timeout or config.HTTP_TIMEOUT,
        )

    async def __aenter__(self) -> 'RelayClient':
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        await self.http_client.aclose()

    async def _request(self, method: str, path: str, json: Optional[Dict] = None) -> Dict:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self.http_client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e.__class__.__name__)
            raise StorageUnavailable(f"Relay unreachable: {e.__class__.__name__}")

        if response.status_code < 400:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("detail", "") if isinstance(body, dict) else ""
        code = body.get("error") if isinstance(body, dict) else None

        if code:
            raise error_from_code(code, detail if isinstance(detail, str) else "")
        if response.status_code == 401:
            raise Unauthorized("Relay rejected the access token")
        if response.status_code == 422:
            raise ValidationError("Relay rejected the request body")
        raise StorageUnavailable(f"Relay returned HTTP {response.status_code}")

    def _check_caller(self, caller_id: str):
        if self.identity_id and caller_id != self.identity_id:
            raise Unauthorized("Client is authenticated as another identity")

    async def register(self, request: Dict) -> str:
        """
        Publish an identity record.

        Args:
            request: Identity.registration_request()

        Returns:
            Access token, also kept for later requests
        """
        data = await self._request("POST", "/api/identities", json=request)
        self.token = data["access_token"]
        self.identity_id = data["identity_id"]
        logger.info("Registered identity %s as %s", data["identity_id"], data["alias"])
        return self.token

    async def get_public_identity(self, identity_id: str) -> PublicIdentity:
        data = await self._request("GET", f"/api/identities/{identity_id}")
        return PublicIdentity.from_dict(data)

    async def create_handshake(self, initiator_id: str, target_alias: str,
                               expires_at: datetime) -> Handshake:
        self._check_caller(initiator_id)
        data = await self._request("POST", "/api/handshakes", json={
            "target_alias": target_alias,
            "expires_at": expires_at.isoformat(),
        })
        return Handshake.from_dict(data)

    async def get_handshake(self, handshake_id: str, caller_id: str) -> Handshake:
        self._check_caller(caller_id)
        return Handshake.from_dict(await self._request("GET", f"/api/handshakes/{handshake_id}"))

    async def list_pending_handshakes(self, caller_id: str) -> List[Handshake]:
        self._check_caller(caller_id)
        data = await self._request("GET", "/api/handshakes/pending")
        return [Handshake.from_dict(h) for h in data["handshakes"]]

    async def accept_handshake(self, handshake_id: str, caller_id: str,
                               session_key_material: bytes) -> Handshake:
        self._check_caller(caller_id)
        data = await self._request("POST", f"/api/handshakes/{handshake_id}/accept", json={
            "session_key_material": b64encode(session_key_material),
        })
        return Handshake.from_dict(data)

    async def reject_handshake(self, handshake_id: str, caller_id: str) -> Handshake:
        self._check_caller(caller_id)
        return Handshake.from_dict(await self._request("POST", f"/api/handshakes/{handshake_id}/reject"))

    async def list_contacts(self) -> List[Contact]:
        data = await self._request("GET", "/api/contacts")
        return [Contact.from_dict(c) for c in data["contacts"]]

    async def send_message(self, message: Dict) -> Dict:
        """
        Store a message built by compose_message.

        Returns:
            The relay's message record
        """
        return await self._request("POST", f"/api/contacts/{message['contactId']}/messages", json={
            "ciphertext": message["ciphertext"],
            "nonce": message["nonce"],
            "synthetic_timestamp": message["syntheticTimestamp"],
            "expires_at": message["expiresAt"],
        })

    async def list_messages(self, contact_id: str) -> List[Dict]:
        data = await self._request("GET", f"/api/contacts/{contact_id}/messages")
        return data["messages"]
