"""
Message sealing and opening for one signed-in user.

Ties the hybrid engines to the local key store and the plaintext cache, and
turns every decryption outcome into something displayable. Reading never
raises: failures become placeholder text with a state the UI can style.
"""

import asyncio
import enum
from dataclasses import dataclass
from typing import Dict, Optional

from e2ee.cancellation import CancellationToken, OperationCancelled
from e2ee.hybrid import EncryptedPayload, decrypt_message_with_stored_keys, seal_for_recipients
from e2ee.keys import scoped_key_pair_id
from e2ee.primitives import (
    import_public_key,
    EncryptedSessionKeyNotFoundError,
    StoredKeyPairNotFoundError,
    MessageDecryptionError,
)
from e2ee.reporting import ErrorReporter, default_reporter

from client.cache import PlaintextCache


NOT_FOR_DEVICE_TEXT = "This message was not encrypted for this device"
KEY_NOT_FOUND_TEXT = "Encryption key not found on this device"
DECRYPTION_FAILED_TEXT = "Could not decrypt message"


class DecryptionState(str, enum.Enum):
    OK = "ok"
    PLAINTEXT = "plaintext"
    NOT_FOR_DEVICE = "not_for_device"
    KEY_NOT_FOUND = "key_not_found"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DecryptionResult:
    state: DecryptionState
    text: str

    @property
    def ok(self) -> bool:
        return self.state in (DecryptionState.OK, DecryptionState.PLAINTEXT)


class MessageSession:
    """
    Per-user messaging context.

    Owns the plaintext cache for the signed-in user; a new session (and a
    new cache) is created on every sign-in.
    """

    def __init__(
        self,
        user_id: str,
        key_store,
        cache: Optional[PlaintextCache] = None,
        reporter: Optional[ErrorReporter] = None,
    ):
        self.user_id = user_id
        self.key_store = key_store
        self.cache = cache if cache is not None else PlaintextCache()
        self.reporter = reporter or default_reporter

    async def compose(self, plaintext: str, recipient_public_keys: Dict[str, str]) -> EncryptedPayload:
        """
        Encrypt a message for the chat participants and this device.

        Args:
            plaintext: Message text
            recipient_public_keys: Participant user id -> base64 SPKI public key

        Returns:
            EncryptedPayload to send

        Raises:
            StoredKeyPairNotFoundError: If this device has no key pair, since
                the sender could not read the message back
            CryptoError: If a participant's public key is invalid
        """
        own = await asyncio.to_thread(self.key_store.get, scoped_key_pair_id(self.user_id))
        if own is None:
            raise StoredKeyPairNotFoundError(self.user_id)

        keys = {user_id: import_public_key(public_key) for user_id, public_key in recipient_public_keys.items()}
        keys[self.user_id] = own.public_key

        payload = await seal_for_recipients(plaintext, keys)
        # Sender sees their own message at once, without a decrypt round trip
        self.cache.put(self.user_id, payload.ciphertext, plaintext)
        return payload

    async def read(self, record: Dict, token: Optional[CancellationToken] = None) -> DecryptionResult:
        """
        Produce displayable text for a message record.

        Args:
            record: Message with ``ciphertext`` and optionally ``iv`` and
                ``encrypted_session_key``
            token: Cancelled when the viewer goes away; results of a
                cancelled read are not cached

        Returns:
            DecryptionResult
        """
        ciphertext = record.get("ciphertext") or ""
        encrypted_session_key = record.get("encrypted_session_key")
        iv = record.get("iv")

        if not encrypted_session_key or not iv:
            return DecryptionResult(DecryptionState.PLAINTEXT, ciphertext)

        cached = self.cache.get(self.user_id, ciphertext)
        if cached is not None:
            return DecryptionResult(DecryptionState.OK, cached)

        try:
            plaintext = await decrypt_message_with_stored_keys(
                ciphertext,
                encrypted_session_key,
                iv,
                self.user_id,
                self.key_store,
                reporter=self.reporter,
                token=token
            )
        except OperationCancelled:
            return DecryptionResult(DecryptionState.CANCELLED, DECRYPTION_FAILED_TEXT)
        except EncryptedSessionKeyNotFoundError:
            return DecryptionResult(DecryptionState.NOT_FOR_DEVICE, NOT_FOR_DEVICE_TEXT)
        except StoredKeyPairNotFoundError:
            return DecryptionResult(DecryptionState.KEY_NOT_FOUND, KEY_NOT_FOUND_TEXT)
        except MessageDecryptionError:
            return DecryptionResult(DecryptionState.FAILED, DECRYPTION_FAILED_TEXT)
        except Exception as e:
            self.reporter.report("Unexpected decryption error", e, {"user_id": self.user_id})
            return DecryptionResult(DecryptionState.FAILED, DECRYPTION_FAILED_TEXT)

        if token is not None and token.cancelled:
            return DecryptionResult(DecryptionState.CANCELLED, DECRYPTION_FAILED_TEXT)

        self.cache.put(self.user_id, ciphertext, plaintext)
        return DecryptionResult(DecryptionState.OK, plaintext)
