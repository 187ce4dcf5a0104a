"""
FastAPI relay for Ghost Network.

This server:
- Publishes identities after checking the alias, the key-possession signature
  and, for an existing id, that the current key holder asked for it
- Stores handshakes and accepts them atomically
- Stores encrypted messages until they expire (it never sees plaintext)
- Periodically deletes expired messages and handshakes
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from ghostcrypto.errors import GhostError, ValidationError
from ghostcrypto.handshake import HANDSHAKE_TTL, as_utc, utcnow
from ghostcrypto.primitives import KEY_SIZE, b64decode
from ghostcrypto.session_cipher import MESSAGE_TTL

from . import config
from .database import Database
from .auth import create_access_token, verify_token, Token

logger = logging.getLogger(__name__)

# Upper bound on a stored ciphertext (base64 characters)
MAX_CIPHERTEXT_LENGTH = 64 * 1024

STATUS_BY_CODE = {
    "validation_error": 400,
    "decryption_failure": 400,
    "authentication_failure": 401,
    "unauthorized": 403,
    "handshake_not_found": 404,
    "not_pending": 409,
    "peer_not_ready": 409,
    "handshake_expired": 410,
    "storage_unavailable": 503,
}


# Pydantic models for API
class IdentityRegister(BaseModel):
    identity: dict
    issued_at: str
    signature: str
    rotation_signature: Optional[str] = None


class HandshakeCreate(BaseModel):
    target_alias: str
    expires_at: Optional[datetime] = None


class HandshakeAccept(BaseModel):
    session_key_material: str


class MessageCreate(BaseModel):
    ciphertext: str
    nonce: str
    synthetic_timestamp: datetime
    expires_at: Optional[datetime] = None


bearer = HTTPBearer(auto_error=False)


async def current_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> str:
    """Identity id from the bearer token"""
    identity_id = verify_token(credentials.credentials) if credentials else None
    if not identity_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return identity_id


def _clamp_expiry(requested: Optional[datetime], ttl: timedelta) -> datetime:
    now = utcnow()
    latest = now + ttl
    if requested is None:
        return latest
    requested = as_utc(requested)
    if requested <= now:
        raise ValidationError("expires_at must be in the future")
    return min(requested, latest)


async def _cleanup_loop(db: Database, interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await db.cleanup_expired()
        except SQLAlchemyError:
            logger.exception("Periodic cleanup failed; retrying next interval")


def create_app(db: Optional[Database] = None, cleanup_interval: Optional[int] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        db: Database to serve (configured GHOST_DATABASE_URL if omitted)
        cleanup_interval: Seconds between cleanup runs; 0 disables the task

    Returns:
        FastAPI app
    """
    db = db or Database(config.DATABASE_URL)
    interval = config.CLEANUP_INTERVAL_SECONDS if cleanup_interval is None else cleanup_interval

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        task = asyncio.create_task(_cleanup_loop(db, interval)) if interval > 0 else None
        yield
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await db.close()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="Ghost Network Relay",
        description="Identity, handshake and encrypted message relay",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db

    @app.exception_handler(GhostError)
    async def ghost_error_handler(request: Request, exc: GhostError):
        status = STATUS_BY_CODE.get(exc.code, 400)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=status, content={"error": exc.code, "detail": exc.detail})

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Storage error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content={"error": "storage_unavailable", "detail": "Storage is temporarily unavailable"},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/identities", response_model=Token)
    async def register(data: IdentityRegister):
        """
        Publish an identity and return a token for it.

        Re-registering an existing id needs a newer issued_at, and new keys
        need an endorsement from the current signing key.
        """
        signature = b64decode(data.signature)
        rotation_signature = b64decode(data.rotation_signature) if data.rotation_signature else None
        identity = await db.register_identity(data.identity, signature, data.issued_at, rotation_signature)

        return Token(
            access_token=create_access_token(identity.id),
            token_type="bearer",
            identity_id=identity.id,
            alias=identity.alias,
        )

    @app.get("/api/identities/{identity_id}")
    async def get_identity(identity_id: str, caller: str = Depends(current_identity)):
        identity = await db.get_public_identity(identity_id)
        return identity.to_dict()

    @app.post("/api/handshakes")
    async def create_handshake(data: HandshakeCreate, caller: str = Depends(current_identity)):
        expires_at = _clamp_expiry(data.expires_at, HANDSHAKE_TTL)
        handshake = await db.create_handshake(caller, data.target_alias, expires_at)
        return handshake.to_dict()

    @app.get("/api/handshakes/pending")
    async def list_pending(caller: str = Depends(current_identity)) -> dict:
        handshakes = await db.list_pending_handshakes(caller)
        return {"handshakes": [h.to_dict() for h in handshakes]}

    @app.get("/api/handshakes/{handshake_id}")
    async def get_handshake(handshake_id: str, caller: str = Depends(current_identity)):
        handshake = await db.get_handshake(handshake_id, caller)
        return handshake.to_dict()

    @app.post("/api/handshakes/{handshake_id}/accept")
    async def accept_handshake(handshake_id: str, data: HandshakeAccept,
                               caller: str = Depends(current_identity)):
        material = b64decode(data.session_key_material, KEY_SIZE)
        handshake = await db.accept_handshake(handshake_id, caller, material)
        return handshake.to_dict()

    @app.post("/api/handshakes/{handshake_id}/reject")
    async def reject_handshake(handshake_id: str, caller: str = Depends(current_identity)):
        handshake = await db.reject_handshake(handshake_id, caller)
        return handshake.to_dict()

    @app.get("/api/contacts")
    async def list_contacts(caller: str = Depends(current_identity)) -> dict:
        contacts = await db.list_contacts(caller)
        return {"contacts": [c.to_dict() for c in contacts]}

    @app.post("/api/contacts/{contact_id}/messages")
    async def send_message(contact_id: str, data: MessageCreate,
                           caller: str = Depends(current_identity)):
        if len(data.ciphertext) > MAX_CIPHERTEXT_LENGTH:
            raise ValidationError("Ciphertext too large")
        message = await db.insert_message(
            sender_id=caller,
            contact_id=contact_id,
            ciphertext=data.ciphertext,
            nonce=data.nonce,
            synthetic_timestamp=data.synthetic_timestamp,
            expires_at=_clamp_expiry(data.expires_at, MESSAGE_TTL),
        )
        return message

    @app.get("/api/contacts/{contact_id}/messages")
    async def list_messages(contact_id: str, caller: str = Depends(current_identity)) -> dict:
        messages: List[dict] = await db.list_messages(caller, contact_id)
        return {"messages": messages}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.RELAY_HOST, port=config.RELAY_PORT)
