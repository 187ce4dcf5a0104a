"""
Composing and rendering messages for a contact.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from ghostcrypto.handshake import Contact, as_utc, utcnow
from ghostcrypto.primitives import b64decode
from ghostcrypto.errors import ValidationError
from ghostcrypto.session_cipher import MESSAGE_TTL, decrypt_or_placeholder, encrypt, UNDECRYPTABLE_PLACEHOLDER
from ghostcrypto.validation import validate_message

logger = logging.getLogger(__name__)

SYNTHETIC_INTERVAL = timedelta(minutes=15)


def synthetic_timestamp(actual: datetime) -> datetime:
    """Round down to the 15-minute bucket shown instead of the real send time"""
    interval = int(SYNTHETIC_INTERVAL.total_seconds())
    seconds = int(as_utc(actual).timestamp()) // interval * interval
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def compose_message(contact: Contact, plaintext: str, now: Optional[datetime] = None) -> Dict:
    """
    Build an encrypted message record for a contact's peer.

    Args:
        contact: Our contact record (we are its owner)
        plaintext: Message text; trimmed and length-checked
        now: Send time

    Returns:
        Message record ready for the relay

    Raises:
        ValidationError: Empty or oversize text
    """
    text = validate_message(plaintext)
    now = now or utcnow()
    payload = encrypt(text, contact.session_key_material)

    record = payload.to_dict()
    record.update({
        'senderId': contact.owner_id,
        'recipientId': contact.peer_id,
        'contactId': contact.id,
        'syntheticTimestamp': synthetic_timestamp(now).isoformat(),
        'expiresAt': (now + MESSAGE_TTL).isoformat(),
    })
    return record


def render_messages(records: Iterable[Dict], session_key_material: bytes) -> List[Dict]:
    """
    Decrypt message records for display.

    A record that cannot be decrypted keeps its place with the placeholder
    text instead of failing the whole list.
    """
    rendered = []
    for record in records:
        try:
            ciphertext = b64decode(record['ciphertext'])
            nonce = b64decode(record['nonce'])
            text = decrypt_or_placeholder(ciphertext, nonce, session_key_material)
        except (KeyError, ValidationError):
            logger.warning("Message %s has a malformed payload", record.get("id"))
            text = UNDECRYPTABLE_PLACEHOLDER
        rendered.append({**record, 'text': text})
    return rendered
