"""
Local key storage for a device.

Holds the identity record (private halves sealed by the passphrase vault),
the recovery phrase digest and any pending key-rotation endorsement in a
small SQLite file.
"""

import json
import sqlite3
import logging
from typing import Optional, Dict
from pathlib import Path
from datetime import datetime, timezone

from ghostcrypto.errors import StorageUnavailable, ValidationError

from . import config

logger = logging.getLogger(__name__)

IDENTITY_ITEM = "identity"
RECOVERY_DIGEST_ITEM = "recovery_digest"
ROTATION_SIGNATURE_ITEM = "rotation_signature"


class LocalKeyStore:
    """
    Manages the device's local identity storage.
    """

    def __init__(self, storage_dir: Optional[str] = None, name: str = "ghost"):
        """
        Initialize local storage.

        Args:
            storage_dir: Directory to store data (GHOST_DATA_DIR if omitted)
            name: Database file name without extension
        """
        self.storage_dir = Path(storage_dir or config.DATA_DIR)
        self.db_path = self.storage_dir / f"{name}.db"
        self.db: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        if self.db is None:
            try:
                self.storage_dir.mkdir(parents=True, exist_ok=True)
                self.db = sqlite3.connect(str(self.db_path))
            except (OSError, sqlite3.Error) as e:
                raise StorageUnavailable(f"Cannot open local store: {e.__class__.__name__}")
            self._init_database()
        return self.db

    def _init_database(self):
        """Initialize SQLite database"""
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS items (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.db.commit()

    def _put(self, key: str, value: str):
        db = self._connect()
        db.execute(
            "INSERT OR REPLACE INTO items (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, datetime.now(timezone.utc).isoformat())
        )
        db.commit()

    def _get(self, key: str) -> Optional[str]:
        cursor = self._connect().execute("SELECT value FROM items WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row[0] if row else None

    def save_identity(self, record: Dict):
        """
        Save the identity record.

        Args:
            record: Output of Identity.to_dict()
        """
        self._put(IDENTITY_ITEM, json.dumps(record))

    def load_identity(self) -> Optional[Dict]:
        """
        Load the identity record.

        Returns:
            Identity record dictionary or None

        Raises:
            ValidationError: If the stored record is not valid JSON
        """
        raw = self._get(IDENTITY_ITEM)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            raise ValidationError("Stored identity is corrupted")

    def save_recovery_digest(self, digest: bytes):
        self._put(RECOVERY_DIGEST_ITEM, digest.hex())

    def load_recovery_digest(self) -> Optional[bytes]:
        raw = self._get(RECOVERY_DIGEST_ITEM)
        if not raw:
            return None
        try:
            return bytes.fromhex(raw)
        except ValueError:
            raise ValidationError("Stored recovery digest is corrupted")

    def save_rotation_signature(self, signature: bytes):
        """Keep the previous key's endorsement until the relay has seen it"""
        self._put(ROTATION_SIGNATURE_ITEM, signature.hex())

    def load_rotation_signature(self) -> Optional[bytes]:
        raw = self._get(ROTATION_SIGNATURE_ITEM)
        if not raw:
            return None
        try:
            return bytes.fromhex(raw)
        except ValueError:
            raise ValidationError("Stored rotation signature is corrupted")

    def clear_rotation_signature(self):
        db = self._connect()
        db.execute("DELETE FROM items WHERE key = ?", (ROTATION_SIGNATURE_ITEM,))
        db.commit()

    def shred(self):
        """Delete every stored item and remove the database file"""
        db = self._connect()
        db.execute("DELETE FROM items")
        db.commit()
        db.execute("VACUUM")
        self.close()
        self.db_path.unlink(missing_ok=True)
        logger.info("Local identity store shredded")

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
