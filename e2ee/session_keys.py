"""
Wire format of the ``encrypted_session_key`` field.

Current messages carry base64(UTF-8(JSON({user_id: wrapped_key_b64}))),
one wrapped copy of the session key per recipient. Messages written before
multi-recipient support carry a single wrapped key as-is. Decoding yields a
tagged value so callers never type-check the raw field themselves.
"""

import json
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Union

from .primitives import CryptoError, b64decode, b64encode, NONCE_SIZE


# Decoded payloads shorter than this are not considered a JSON map.
MIN_PACKED_LENGTH = 8

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


class PayloadValidationError(CryptoError):
    """Encrypted message payload is structurally invalid"""
    pass


@dataclass(frozen=True)
class MultiRecipientKeys:
    """Session key wrapped once per recipient user id"""
    keys: Dict[str, str]

    def key_for(self, user_id: str) -> Optional[str]:
        return self.keys.get(user_id)


@dataclass(frozen=True)
class LegacySingleKey:
    """Pre-multi-recipient payload: one wrapped key for the only recipient"""
    wrapped_key: str


SessionKeyPayload = Union[MultiRecipientKeys, LegacySingleKey]


def pack_session_keys(keys_by_user_id: Dict[str, str]) -> str:
    """
    Pack per-recipient wrapped keys into the ``encrypted_session_key`` string.

    Args:
        keys_by_user_id: Mapping of recipient user id to base64 wrapped key

    Returns:
        base64 of the JSON-encoded mapping

    Raises:
        PayloadValidationError: If the mapping is empty
    """
    if not keys_by_user_id:
        raise PayloadValidationError("At least one recipient is required")
    return b64encode(json.dumps(keys_by_user_id).encode("utf-8"))


def unpack_session_keys(encrypted_session_key: str) -> SessionKeyPayload:
    """
    Decode the ``encrypted_session_key`` field.

    Any structural problem (bad base64, not UTF-8, not JSON, too short, not an
    object, empty, non-string value) means the field is a legacy single key.
    """
    try:
        decoded = b64decode(encrypted_session_key).decode("utf-8")
    except (CryptoError, UnicodeDecodeError):
        return LegacySingleKey(encrypted_session_key)

    if len(decoded) < MIN_PACKED_LENGTH:
        return LegacySingleKey(encrypted_session_key)

    try:
        parsed = json.loads(decoded)
    except (ValueError, RecursionError):
        return LegacySingleKey(encrypted_session_key)

    if not isinstance(parsed, dict) or not parsed:
        return LegacySingleKey(encrypted_session_key)

    if not all(isinstance(value, str) for value in parsed.values()):
        return LegacySingleKey(encrypted_session_key)

    return MultiRecipientKeys(dict(parsed))


def is_canonical_base64(value: str) -> bool:
    """True if value is non-empty, padded standard base64"""
    if not value or len(value) % 4 != 0:
        return False
    if not _BASE64_PATTERN.match(value):
        return False
    try:
        b64decode(value)
    except CryptoError:
        return False
    return True


def parse_session_keys_strict(encrypted_session_key: str) -> Dict[str, str]:
    """
    Parse a multi-recipient payload, rejecting anything else.

    Used where new messages are accepted; the legacy form is never valid for
    newly written records.

    Raises:
        PayloadValidationError: If the payload is not a non-empty map of
            base64 strings
    """
    if not is_canonical_base64(encrypted_session_key):
        raise PayloadValidationError("Invalid encrypted session key payload")

    try:
        parsed = json.loads(b64decode(encrypted_session_key).decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError):
        raise PayloadValidationError("Invalid encrypted session key payload")

    if not isinstance(parsed, dict) or not parsed:
        raise PayloadValidationError("Invalid encrypted session key payload")

    for wrapped in parsed.values():
        if not isinstance(wrapped, str) or not is_canonical_base64(wrapped):
            raise PayloadValidationError("Invalid encrypted session key payload")

    return parsed


def validate_encryption_payload(
    participant_ids: Iterable[str],
    ciphertext: str,
    encrypted_session_key: Optional[str],
    iv: Optional[str],
) -> bool:
    """
    Validate an incoming message record against the chat's membership.

    Args:
        participant_ids: User ids of every chat participant
        ciphertext: Message content (base64 when encrypted)
        encrypted_session_key: Packed wrapped keys, or None for plaintext
        iv: base64 nonce, or None for plaintext

    Returns:
        True if the record is encrypted, False if it is plaintext

    Raises:
        PayloadValidationError: On any structural or membership problem
    """
    if bool(encrypted_session_key) != bool(iv):
        raise PayloadValidationError(
            "Encrypted messages must include both encrypted_session_key and iv"
        )

    if not encrypted_session_key:
        return False

    if not is_canonical_base64(ciphertext):
        raise PayloadValidationError("Encrypted message content must be base64 ciphertext")

    if not is_canonical_base64(iv) or len(b64decode(iv)) != NONCE_SIZE:
        raise PayloadValidationError("Encrypted messages must include a valid 12-byte iv")

    keys = parse_session_keys_strict(encrypted_session_key)
    participants = set(participant_ids)

    for user_id in participants:
        if not keys.get(user_id):
            raise PayloadValidationError("Missing encrypted session key for a chat participant")

    for user_id in keys:
        if user_id not in participants:
            raise PayloadValidationError(
                "Encrypted session key payload includes users outside of this chat"
            )

    return True
