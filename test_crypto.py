"""
Tests for the hybrid encryption scheme: primitives, the session key wire
format, and the encryption/decryption engines.
"""

import asyncio
import base64
import json

import pytest

from e2ee.primitives import (
    aes_decrypt,
    aes_encrypt,
    b64decode,
    b64encode,
    export_public_key,
    generate_nonce,
    generate_rsa_keypair,
    generate_session_key,
    import_public_key,
    is_valid_spki_public_key,
    rsa_decrypt,
    rsa_encrypt,
    CryptoError,
    EncryptedSessionKeyNotFoundError,
    MessageDecryptionError,
    StoredKeyPairNotFoundError,
)
from e2ee.session_keys import (
    LegacySingleKey,
    MultiRecipientKeys,
    PayloadValidationError,
    pack_session_keys,
    unpack_session_keys,
    validate_encryption_payload,
)
from e2ee.hybrid import (
    decrypt_message,
    decrypt_message_with_stored_keys,
    encrypt_message,
    encrypt_session_key_for,
    seal_for_recipients,
)
from e2ee.keys import KeyPair, LEGACY_KEY_PAIR_ID, scoped_key_pair_id
from e2ee.cancellation import CancellationToken, OperationCancelled
from e2ee.reporting import ErrorReporter


KEY_SIZE = 2048


class MemoryKeyStore:
    """Dict-backed stand-in for the sqlite key store"""

    def __init__(self, *key_pairs):
        self.entries = {kp.id: kp for kp in key_pairs}
        self.reads = []

    def get(self, key_pair_id):
        self.reads.append(key_pair_id)
        return self.entries.get(key_pair_id)

    def put(self, key_pair):
        self.entries[key_pair.id] = key_pair

    def delete(self, key_pair_id):
        self.entries.pop(key_pair_id, None)


class RecordingReporter(ErrorReporter):
    def __init__(self):
        super().__init__(sink=lambda context, extra: self.reports.append((context, extra)))
        self.reports = []


@pytest.fixture(scope="module")
def keys():
    """RSA key pairs for alice, bob and carol"""
    return {name: generate_rsa_keypair(KEY_SIZE) for name in ("alice", "bob", "carol")}


def _key_pair(keys, name, key_pair_id=None):
    private_key, public_key = keys[name]
    return KeyPair(id=key_pair_id or scoped_key_pair_id(name), public_key=public_key, private_key=private_key)


def _seal(plaintext, keys, names):
    return asyncio.run(seal_for_recipients(plaintext, {name: keys[name][1] for name in names}))


def _legacy_payload(plaintext, public_key):
    async def scenario():
        content = await encrypt_message(plaintext)
        wrapped = await encrypt_session_key_for(content.session_key, public_key)
        return content, wrapped
    return asyncio.run(scenario())


def test_aes_round_trip_and_authentication():
    """AES-GCM encrypts, decrypts and rejects a wrong key"""
    key = generate_session_key()
    nonce = generate_nonce()
    ciphertext = aes_encrypt(key, nonce, b"Hello, World!")

    assert len(nonce) == 12
    assert aes_decrypt(key, nonce, ciphertext) == b"Hello, World!"

    with pytest.raises(CryptoError):
        aes_decrypt(generate_session_key(), nonce, ciphertext)


def test_rsa_wrap_unwrap(keys):
    private_key, public_key = keys["alice"]
    session_key = generate_session_key()

    wrapped = rsa_encrypt(public_key, session_key)
    assert rsa_decrypt(private_key, wrapped) == session_key

    with pytest.raises(CryptoError):
        rsa_decrypt(keys["bob"][0], wrapped)


def test_public_key_export_import(keys):
    exported = export_public_key(keys["alice"][1])

    assert is_valid_spki_public_key(exported)
    assert export_public_key(import_public_key(exported)) == exported


def test_invalid_public_keys_rejected():
    assert not is_valid_spki_public_key("")
    assert not is_valid_spki_public_key("not base64!")
    assert not is_valid_spki_public_key(b64encode(b"\x30\x03\x02\x01\x00"))


def test_encrypt_message_uses_fresh_key_and_nonce():
    first = asyncio.run(encrypt_message("same text"))
    second = asyncio.run(encrypt_message("same text"))

    assert first.session_key != second.session_key
    assert first.iv != second.iv
    assert len(b64decode(first.iv)) == 12
    assert first.ciphertext != second.ciphertext


def test_pack_and_unpack_session_keys():
    packed = pack_session_keys({"alice": "QUJD", "bob": "REVG"})

    unpacked = unpack_session_keys(packed)
    assert isinstance(unpacked, MultiRecipientKeys)
    assert unpacked.keys == {"alice": "QUJD", "bob": "REVG"}

    with pytest.raises(PayloadValidationError):
        pack_session_keys({})


@pytest.mark.parametrize("raw", [
    b"not json",
    b"[1, 2, 3, 4, 5]",
    b'{"a":1}',
    b'{"alice": 12345}',
    b"{}      ",
])
def test_unpack_falls_back_to_legacy(raw):
    field = base64.b64encode(raw).decode()

    unpacked = unpack_session_keys(field)

    assert unpacked == LegacySingleKey(field)


def test_unpack_undecodable_is_legacy():
    assert unpack_session_keys("%%%") == LegacySingleKey("%%%")
    assert unpack_session_keys(b64encode(b"\xff\xfe\x00\x01" * 8)) == LegacySingleKey(b64encode(b"\xff\xfe\x00\x01" * 8))


def test_two_recipients_can_decrypt_third_cannot(keys):
    """alice and bob read "hello", carol gets a not-for-me error"""
    payload = _seal("hello", keys, ["alice", "bob"])

    for name in ("alice", "bob"):
        plaintext = asyncio.run(decrypt_message(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, keys[name][0], name
        ))
        assert plaintext == "hello"

    with pytest.raises(EncryptedSessionKeyNotFoundError) as excinfo:
        asyncio.run(decrypt_message(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, keys["carol"][0], "carol"
        ))
    assert excinfo.value.user_id == "carol"


def test_round_trip_unicode(keys):
    text = "Grüße 👋 — multi\nline"
    payload = _seal(text, keys, ["alice"])

    plaintext = asyncio.run(decrypt_message(
        payload.ciphertext, payload.encrypted_session_key, payload.iv, keys["alice"][0], "alice"
    ))
    assert plaintext == text


def test_seal_requires_recipient():
    with pytest.raises(PayloadValidationError):
        asyncio.run(seal_for_recipients("hello", {}))


def test_legacy_payload_decrypts_for_any_user_id(keys):
    content, wrapped = _legacy_payload("old message", keys["alice"][1])

    for user_id in ("alice", "someone-else"):
        plaintext = asyncio.run(decrypt_message(
            content.ciphertext, wrapped, content.iv, keys["alice"][0], user_id
        ))
        assert plaintext == "old message"


def test_not_json_payload_is_tried_as_wrapped_key(keys):
    """base64("not json") is used directly as the wrapped key, which fails generically"""
    content = asyncio.run(encrypt_message("hello"))
    reporter = RecordingReporter()

    with pytest.raises(MessageDecryptionError):
        asyncio.run(decrypt_message(
            content.ciphertext, b64encode(b"not json"), content.iv, keys["alice"][0], "alice", reporter
        ))

    assert reporter.reports[0][0] == "Message decryption failed"
    assert reporter.reports[0][1]["error_name"] == "CryptoError"


def test_deeply_nested_payload_is_tried_as_wrapped_key(keys):
    nested = b64encode(b"[" * 100000)
    content = asyncio.run(encrypt_message("hello"))
    reporter = RecordingReporter()

    assert isinstance(unpack_session_keys(nested), LegacySingleKey)
    with pytest.raises(MessageDecryptionError):
        asyncio.run(decrypt_message(
            content.ciphertext, nested, content.iv, keys["alice"][0], "alice", reporter
        ))
    assert len(reporter.reports) == 1


def test_tampered_ciphertext_fails_generically(keys):
    payload = _seal("hello", keys, ["alice"])
    raw = bytearray(b64decode(payload.ciphertext))
    raw[0] ^= 0x01
    tampered = b64encode(bytes(raw))

    with pytest.raises(MessageDecryptionError):
        asyncio.run(decrypt_message(
            tampered, payload.encrypted_session_key, payload.iv, keys["alice"][0], "alice", RecordingReporter()
        ))


def test_wrong_private_key_fails_generically(keys):
    payload = _seal("hello", keys, ["alice"])
    reporter = RecordingReporter()

    with pytest.raises(MessageDecryptionError):
        asyncio.run(decrypt_message(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, keys["bob"][0], "alice", reporter
        ))
    assert len(reporter.reports) == 1


def test_not_for_me_is_not_reported(keys):
    payload = _seal("hello", keys, ["alice"])
    reporter = RecordingReporter()

    with pytest.raises(EncryptedSessionKeyNotFoundError):
        asyncio.run(decrypt_message(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, keys["bob"][0], "bob", reporter
        ))
    assert reporter.reports == []


def test_stored_keys_without_any_key_pair(keys):
    payload = _seal("hello", keys, ["alice"])
    store = MemoryKeyStore()

    with pytest.raises(StoredKeyPairNotFoundError) as excinfo:
        asyncio.run(decrypt_message_with_stored_keys(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, "alice", store
        ))
    assert excinfo.value.user_id == "alice"


def test_stored_keys_tries_scoped_then_legacy(keys):
    """A stale scoped key fails, the legacy key then succeeds"""
    content, wrapped = _legacy_payload("from before migration", keys["alice"][1])
    store = MemoryKeyStore(
        _key_pair(keys, "bob", scoped_key_pair_id("alice")),
        _key_pair(keys, "alice", LEGACY_KEY_PAIR_ID),
    )

    plaintext = asyncio.run(decrypt_message_with_stored_keys(
        content.ciphertext, wrapped, content.iv, "alice", store, RecordingReporter()
    ))

    assert plaintext == "from before migration"
    assert store.reads == [scoped_key_pair_id("alice"), LEGACY_KEY_PAIR_ID]


def test_stored_keys_skips_legacy_when_scoped_succeeds(keys):
    payload = _seal("hello", keys, ["alice"])
    store = MemoryKeyStore(
        _key_pair(keys, "alice"),
        _key_pair(keys, "carol", LEGACY_KEY_PAIR_ID),
    )

    plaintext = asyncio.run(decrypt_message_with_stored_keys(
        payload.ciphertext, payload.encrypted_session_key, payload.iv, "alice", store
    ))

    assert plaintext == "hello"
    assert store.reads == [scoped_key_pair_id("alice")]


def test_stored_keys_not_for_me_propagates_immediately(keys):
    payload = _seal("hello", keys, ["alice"])
    store = MemoryKeyStore(
        _key_pair(keys, "carol"),
        _key_pair(keys, "alice", LEGACY_KEY_PAIR_ID),
    )

    with pytest.raises(EncryptedSessionKeyNotFoundError):
        asyncio.run(decrypt_message_with_stored_keys(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, "carol", store
        ))


def test_stored_keys_all_candidates_fail(keys):
    payload = _seal("hello", keys, ["alice"])
    store = MemoryKeyStore(
        _key_pair(keys, "bob", scoped_key_pair_id("alice")),
        _key_pair(keys, "carol", LEGACY_KEY_PAIR_ID),
    )
    reporter = RecordingReporter()

    with pytest.raises(MessageDecryptionError):
        asyncio.run(decrypt_message_with_stored_keys(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, "alice", store, reporter
        ))
    assert len(reporter.reports) == 2


def test_stored_keys_respects_cancellation(keys):
    payload = _seal("hello", keys, ["alice"])
    store = MemoryKeyStore(_key_pair(keys, "alice"))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        asyncio.run(decrypt_message_with_stored_keys(
            payload.ciphertext, payload.encrypted_session_key, payload.iv, "alice", store, token=token
        ))


def test_validate_encryption_payload(keys):
    ids = {"1": keys["alice"][1], "2": keys["bob"][1]}
    payload = asyncio.run(seal_for_recipients("hello", ids))

    assert validate_encryption_payload(["1", "2"], payload.ciphertext, payload.encrypted_session_key, payload.iv)
    assert not validate_encryption_payload(["1", "2"], "plain text", None, None)

    with pytest.raises(PayloadValidationError, match="chat participant"):
        validate_encryption_payload(["1", "2", "3"], payload.ciphertext, payload.encrypted_session_key, payload.iv)

    with pytest.raises(PayloadValidationError, match="outside of this chat"):
        validate_encryption_payload(["1"], payload.ciphertext, payload.encrypted_session_key, payload.iv)

    with pytest.raises(PayloadValidationError, match="both"):
        validate_encryption_payload(["1", "2"], payload.ciphertext, payload.encrypted_session_key, None)

    with pytest.raises(PayloadValidationError, match="12-byte iv"):
        validate_encryption_payload(["1", "2"], payload.ciphertext, payload.encrypted_session_key, b64encode(b"short"))

    with pytest.raises(PayloadValidationError, match="session key payload"):
        validate_encryption_payload(["1"], payload.ciphertext, b64encode(json.dumps({"1": 5}).encode()), payload.iv)

    with pytest.raises(PayloadValidationError, match="session key payload"):
        validate_encryption_payload(["1", "2"], payload.ciphertext, b64encode(b"[" * 100000), payload.iv)
