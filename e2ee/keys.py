"""
Local key pair model and identifiers.
"""

import time
from dataclasses import dataclass, field
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .primitives import export_public_key


# Id used before key pairs were scoped per user
LEGACY_KEY_PAIR_ID = "primary"
KEY_PAIR_ID_PREFIX = "primary"


def scoped_key_pair_id(user_id: str) -> str:
    """Key store id of the key pair belonging to ``user_id``"""
    return f"{KEY_PAIR_ID_PREFIX}:{user_id}"


@dataclass
class KeyPair:
    """
    A device-local RSA key pair.

    Attributes:
        id: LEGACY_KEY_PAIR_ID or scoped_key_pair_id(user_id)
        public_key: RSA public key
        private_key: RSA private key, never sent anywhere
        created_at: Unix timestamp of generation
    """
    id: str
    public_key: RSAPublicKey
    private_key: RSAPrivateKey
    created_at: float = field(default_factory=time.time)

    def exported_public_key(self) -> str:
        return export_public_key(self.public_key)

    def with_id(self, new_id: str) -> 'KeyPair':
        """Same key material and creation time under another id"""
        return KeyPair(
            id=new_id,
            public_key=self.public_key,
            private_key=self.private_key,
            created_at=self.created_at
        )

    def __repr__(self) -> str:
        return f"KeyPair(id={self.id!r}, created_at={self.created_at!r})"
