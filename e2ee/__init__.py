"""
Cryptographic module for end-to-end encrypted chat.

Implements a classical hybrid public-key scheme:
- AES-256-GCM per-message session keys for content
- RSA-OAEP (SHA-256) wrapping of the session key for each recipient

The scheme is not post-quantum secure.
"""

from .primitives import (
    generate_rsa_keypair,
    export_public_key,
    import_public_key,
    is_valid_spki_public_key,
    CryptoError,
    EncryptedSessionKeyNotFoundError,
    StoredKeyPairNotFoundError,
    MessageDecryptionError,
)
from .session_keys import (
    MultiRecipientKeys,
    LegacySingleKey,
    PayloadValidationError,
    pack_session_keys,
    unpack_session_keys,
    validate_encryption_payload,
)
from .keys import KeyPair, LEGACY_KEY_PAIR_ID, scoped_key_pair_id
from .hybrid import (
    EncryptedContent,
    EncryptedPayload,
    encrypt_message,
    encrypt_session_key_for,
    seal_for_recipients,
    decrypt_message,
    decrypt_message_with_stored_keys,
)
from .cancellation import CancellationToken, OperationCancelled
from .reporting import ErrorReporter

__all__ = [
    'generate_rsa_keypair',
    'export_public_key',
    'import_public_key',
    'is_valid_spki_public_key',
    'CryptoError',
    'EncryptedSessionKeyNotFoundError',
    'StoredKeyPairNotFoundError',
    'MessageDecryptionError',
    'MultiRecipientKeys',
    'LegacySingleKey',
    'PayloadValidationError',
    'pack_session_keys',
    'unpack_session_keys',
    'validate_encryption_payload',
    'KeyPair',
    'LEGACY_KEY_PAIR_ID',
    'scoped_key_pair_id',
    'EncryptedContent',
    'EncryptedPayload',
    'encrypt_message',
    'encrypt_session_key_for',
    'seal_for_recipients',
    'decrypt_message',
    'decrypt_message_with_stored_keys',
    'CancellationToken',
    'OperationCancelled',
    'ErrorReporter',
]
