"""
Hybrid Encryption and Decryption Engines

Message content is encrypted once with a fresh AES-256-GCM session key. The
session key is then wrapped with RSA-OAEP separately for every recipient, so
the server only ever sees ciphertext and wrapped keys.

All cryptographic work is run in a worker thread so that many messages can
be sealed or opened concurrently without blocking the event loop.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .primitives import (
    aes_decrypt,
    aes_encrypt,
    b64decode,
    b64encode,
    generate_nonce,
    generate_session_key,
    rsa_decrypt,
    rsa_encrypt,
    EncryptedSessionKeyNotFoundError,
    MessageDecryptionError,
    StoredKeyPairNotFoundError,
)
from .session_keys import (
    LegacySingleKey,
    PayloadValidationError,
    pack_session_keys,
    unpack_session_keys,
)
from .keys import LEGACY_KEY_PAIR_ID, scoped_key_pair_id
from .cancellation import CancellationToken, check
from .reporting import ErrorReporter, default_reporter


@dataclass
class EncryptedContent:
    """
    Result of encrypting message content.

    Attributes:
        ciphertext: base64 AES-GCM ciphertext with tag
        iv: base64 12-byte nonce
        session_key: Raw session key, to be wrapped per recipient and dropped
    """
    ciphertext: str
    iv: str
    session_key: bytes

    def __repr__(self) -> str:
        return f"EncryptedContent(ciphertext={self.ciphertext[:16]!r}..., iv={self.iv!r})"


@dataclass
class EncryptedPayload:
    """Wire representation of one encrypted message"""
    ciphertext: str
    iv: str
    encrypted_session_key: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'encrypted_session_key': self.encrypted_session_key
        }


def _encrypt_content(plaintext: str) -> EncryptedContent:
    session_key = generate_session_key()
    nonce = generate_nonce()
    ciphertext = aes_encrypt(session_key, nonce, plaintext.encode("utf-8"))
    return EncryptedContent(
        ciphertext=b64encode(ciphertext),
        iv=b64encode(nonce),
        session_key=session_key
    )


async def encrypt_message(plaintext: str) -> EncryptedContent:
    """
    Encrypt message content under a fresh session key and nonce.

    Args:
        plaintext: Message text

    Returns:
        EncryptedContent with the raw session key for wrapping
    """
    return await asyncio.to_thread(_encrypt_content, plaintext)


async def encrypt_session_key_for(session_key: bytes, recipient_public_key: RSAPublicKey) -> str:
    """
    Wrap a session key for one recipient.

    Args:
        session_key: Raw AES key from encrypt_message
        recipient_public_key: Recipient's RSA public key

    Returns:
        base64 wrapped key
    """
    wrapped = await asyncio.to_thread(rsa_encrypt, recipient_public_key, session_key)
    return b64encode(wrapped)


async def seal_for_recipients(
    plaintext: str,
    recipient_public_keys: Dict[str, RSAPublicKey],
) -> EncryptedPayload:
    """
    Encrypt a message for every recipient.

    Args:
        plaintext: Message text
        recipient_public_keys: Mapping of user id to public key. Must include
            the sender if the sender wants to read the message back.

    Returns:
        EncryptedPayload ready to be stored

    Raises:
        PayloadValidationError: If there are no recipients
    """
    if not recipient_public_keys:
        raise PayloadValidationError("At least one recipient is required")

    content = await encrypt_message(plaintext)
    user_ids = list(recipient_public_keys)
    wrapped = await asyncio.gather(*(
        encrypt_session_key_for(content.session_key, recipient_public_keys[user_id])
        for user_id in user_ids
    ))

    return EncryptedPayload(
        ciphertext=content.ciphertext,
        iv=content.iv,
        encrypted_session_key=pack_session_keys(dict(zip(user_ids, wrapped)))
    )


def select_wrapped_key(encrypted_session_key: str, user_id: str) -> str:
    """
    Pick the wrapped key meant for ``user_id``.

    Raises:
        EncryptedSessionKeyNotFoundError: If the message was not encrypted
            for this user
    """
    payload = unpack_session_keys(encrypted_session_key)

    if isinstance(payload, LegacySingleKey):
        return payload.wrapped_key

    wrapped = payload.key_for(user_id)
    if wrapped is None:
        raise EncryptedSessionKeyNotFoundError(user_id)
    return wrapped


def _open(ciphertext: str, wrapped_key: str, iv: str, private_key: RSAPrivateKey) -> str:
    session_key = rsa_decrypt(private_key, b64decode(wrapped_key))
    content = aes_decrypt(session_key, b64decode(iv), b64decode(ciphertext))
    return content.decode("utf-8")


async def decrypt_message(
    ciphertext: str,
    encrypted_session_key: str,
    iv: str,
    private_key: RSAPrivateKey,
    user_id: str,
    reporter: Optional[ErrorReporter] = None,
) -> str:
    """
    Decrypt a message with one private key.

    Args:
        ciphertext: base64 content ciphertext
        encrypted_session_key: Packed wrapped keys (or legacy single key)
        iv: base64 nonce
        private_key: Candidate RSA private key
        user_id: Id of the reading user, used to select the wrapped key
        reporter: Error sink, defaults to the module reporter

    Returns:
        Plaintext

    Raises:
        EncryptedSessionKeyNotFoundError: Message was never encrypted for user_id
        MessageDecryptionError: Any other failure
    """
    wrapped_key = select_wrapped_key(encrypted_session_key, user_id)

    try:
        return await asyncio.to_thread(_open, ciphertext, wrapped_key, iv, private_key)
    except Exception as e:
        (reporter or default_reporter).report("Message decryption failed", e, {"user_id": user_id})
        raise MessageDecryptionError() from e


def candidate_key_pair_ids(user_id: str) -> List[str]:
    """Scoped key pair id first, then the legacy id if it differs"""
    scoped_id = scoped_key_pair_id(user_id)
    if scoped_id == LEGACY_KEY_PAIR_ID:
        return [scoped_id]
    return [scoped_id, LEGACY_KEY_PAIR_ID]


async def decrypt_message_with_stored_keys(
    ciphertext: str,
    encrypted_session_key: str,
    iv: str,
    user_id: str,
    key_store,
    reporter: Optional[ErrorReporter] = None,
    token: Optional[CancellationToken] = None,
) -> str:
    """
    Decrypt a message trying every locally stored key pair for the user.

    Key pairs are loaded from the store in a worker thread, one at a time;
    the legacy key pair is only loaded once the scoped one has failed.

    Args:
        ciphertext: base64 content ciphertext
        encrypted_session_key: Packed wrapped keys (or legacy single key)
        iv: base64 nonce
        user_id: Id of the reading user
        key_store: Store providing ``get(id)``
        reporter: Error sink
        token: Cancellation token checked between candidates

    Returns:
        Plaintext

    Raises:
        StoredKeyPairNotFoundError: No key pair on this device
        EncryptedSessionKeyNotFoundError: Message not encrypted for user_id
        MessageDecryptionError: Every candidate key failed
        OperationCancelled: Token cancelled between attempts
    """
    last_error = None
    for key_pair_id in candidate_key_pair_ids(user_id):
        key_pair = await asyncio.to_thread(key_store.get, key_pair_id)
        check(token)
        if key_pair is None:
            continue

        try:
            return await decrypt_message(
                ciphertext,
                encrypted_session_key,
                iv,
                key_pair.private_key,
                user_id,
                reporter=reporter
            )
        except MessageDecryptionError as e:
            last_error = e

    if last_error is None:
        raise StoredKeyPairNotFoundError(user_id)
    raise last_error
