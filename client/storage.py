"""
Encrypted local key store for the chat client.

Holds the device's RSA key pairs, one row per key pair id. Private keys are
kept encrypted on disk with a key derived from the local passphrase and are
never exported from the device.
"""

import os
import sqlite3
import threading
from typing import Dict, Optional, List
from pathlib import Path
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.exceptions import InvalidTag

from e2ee.keys import KeyPair
from e2ee.primitives import serialize_private_key, deserialize_private_key


PBKDF2_ITERATIONS = 100000
_VERIFIER = b"key-store-v1"


class KeyStore:
    """
    Persistent store of key pairs keyed by string id.

    Pure storage: ``get``, ``put`` and ``delete`` only. sqlite errors
    propagate to the caller unchanged.

    Loaded key pairs are kept in memory until the entry is replaced or
    deleted. Safe to call from worker threads.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize the key store.

        Args:
            username: Local account the store belongs to (names the files)
            storage_dir: Directory for the database and salt
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.keys.db"
        self.salt_path = self.storage_dir / f"{username}.keys.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None
        self._loaded: Dict[str, KeyPair] = {}
        self._lock = threading.Lock()

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive the at-rest encryption key from a passphrase using PBKDF2.

        Args:
            password: Local passphrase
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock the store, creating it on first use.

        Args:
            password: Local passphrase

        Returns:
            True if unlocked, False if the passphrase is wrong or the salt
            file is missing for an existing database
        """
        if not self.db_path.exists():
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)
            self.encryption_key = self.derive_key(password, salt)
            self._init_database()
            self._set_verifier()
            return True

        if not self.salt_path.exists():
            return False

        self.encryption_key = self.derive_key(password, self.salt_path.read_bytes())
        self._init_database()

        if not self._check_verifier():
            self.close()
            self.encryption_key = None
            return False
        return True

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                id TEXT PRIMARY KEY,
                public_key BLOB NOT NULL,
                encrypted_private_key BLOB NOT NULL,
                created_at REAL NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _require_unlocked(self) -> sqlite3.Connection:
        if not self.encryption_key or not self.db:
            raise ValueError("Storage not unlocked")
        return self.db

    def _encrypt(self, data: bytes, associated_data: bytes) -> bytes:
        """Encrypt data with storage key"""
        self._require_unlocked()

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        return nonce + aesgcm.encrypt(nonce, data, associated_data)

    def _decrypt(self, encrypted_data: bytes, associated_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        self._require_unlocked()

        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(nonce, ciphertext, associated_data)

    def _set_verifier(self):
        db = self._require_unlocked()
        db.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            ("verifier", self._encrypt(_VERIFIER, b"verifier"))
        )
        db.commit()

    def _check_verifier(self) -> bool:
        db = self._require_unlocked()
        row = db.execute("SELECT encrypted_value FROM metadata WHERE key = ?", ("verifier",)).fetchone()
        if row is None:
            return False
        try:
            return self._decrypt(row[0], b"verifier") == _VERIFIER
        except InvalidTag:
            return False

    def get(self, key_pair_id: str) -> Optional[KeyPair]:
        """
        Load a key pair.

        Args:
            key_pair_id: Id of the key pair

        Returns:
            KeyPair or None if absent
        """
        with self._lock:
            key_pair = self._loaded.get(key_pair_id)
            if key_pair is None:
                key_pair = self._load(key_pair_id)
                if key_pair is not None:
                    self._loaded[key_pair_id] = key_pair
            return key_pair

    def _load(self, key_pair_id: str) -> Optional[KeyPair]:
        db = self._require_unlocked()
        row = db.execute(
            "SELECT public_key, encrypted_private_key, created_at FROM keys WHERE id = ?",
            (key_pair_id,)
        ).fetchone()

        if row is None:
            return None

        public_der, encrypted_private, created_at = row
        private_key = deserialize_private_key(self._decrypt(encrypted_private, key_pair_id.encode()))

        return KeyPair(
            id=key_pair_id,
            public_key=serialization.load_der_public_key(public_der),
            private_key=private_key,
            created_at=created_at
        )

    def put(self, key_pair: KeyPair):
        """
        Store a key pair, replacing any existing entry with the same id.

        Args:
            key_pair: Key pair to store
        """
        with self._lock:
            db = self._require_unlocked()

            public_der = key_pair.public_key.public_bytes(
                encoding=serialization.Encoding.DER,
                format=serialization.PublicFormat.SubjectPublicKeyInfo
            )
            # Bound to the row id so a blob cannot be moved to another entry
            encrypted_private = self._encrypt(serialize_private_key(key_pair.private_key), key_pair.id.encode())

            db.execute(
                "INSERT OR REPLACE INTO keys (id, public_key, encrypted_private_key, created_at) VALUES (?, ?, ?, ?)",
                (key_pair.id, public_der, encrypted_private, key_pair.created_at)
            )
            db.commit()
            self._loaded.pop(key_pair.id, None)

    def delete(self, key_pair_id: str):
        """Remove a key pair if present"""
        with self._lock:
            db = self._require_unlocked()
            db.execute("DELETE FROM keys WHERE id = ?", (key_pair_id,))
            db.commit()
            self._loaded.pop(key_pair_id, None)

    def list_ids(self) -> List[str]:
        """Ids of every stored key pair"""
        with self._lock:
            db = self._require_unlocked()
            return [row[0] for row in db.execute("SELECT id FROM keys ORDER BY id")]

    def close(self):
        """Close database connection"""
        with self._lock:
            self._loaded.clear()
            if self.db:
                self.db.close()
                self.db = None

    def __enter__(self) -> 'KeyStore':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
