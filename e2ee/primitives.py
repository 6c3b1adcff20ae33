"""
Cryptographic Primitives for Hybrid End-to-End Encryption

This module provides the building blocks used by the hybrid scheme:
RSA-OAEP (SHA-256) for wrapping per-message session keys and AES-256-GCM
for message content. The scheme is classical and not post-quantum secure.
"""

import os
import base64
import binascii
from typing import Optional, Tuple
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


RSA_KEY_SIZE = int(os.environ.get("E2EE_RSA_KEY_SIZE", "4096"))
RSA_PUBLIC_EXPONENT = 65537
SESSION_KEY_BITS = 256
NONCE_SIZE = 12
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class EncryptedSessionKeyNotFoundError(CryptoError):
    """The message carries no wrapped session key for this user."""

    def __init__(self, user_id: str):
        super().__init__(f"No encrypted session key for user {user_id}")
        self.user_id = user_id


class StoredKeyPairNotFoundError(CryptoError):
    """No key pair is stored on this device for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"No stored key pair for user {user_id}")
        self.user_id = user_id


class MessageDecryptionError(CryptoError):
    """Generic decryption failure (bad key, tampering, malformed data)."""

    def __init__(self, message: str = "Could not decrypt message"):
        super().__init__(message)


_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None
)


def generate_rsa_keypair(key_size: Optional[int] = None) -> Tuple[RSAPrivateKey, RSAPublicKey]:
    """
    Generate an RSA keypair for public-key encryption of session keys.

    Args:
        key_size: Modulus length in bits, defaults to RSA_KEY_SIZE

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=key_size or RSA_KEY_SIZE
    )
    return private_key, private_key.public_key()


def rsa_encrypt(public_key: RSAPublicKey, data: bytes) -> bytes:
    """Encrypt data with RSA-OAEP/SHA-256"""
    return public_key.encrypt(data, _OAEP)


def rsa_decrypt(private_key: RSAPrivateKey, data: bytes) -> bytes:
    """
    Decrypt RSA-OAEP/SHA-256 ciphertext.

    Raises:
        CryptoError: If the key does not match or the data is malformed
    """
    try:
        return private_key.decrypt(data, _OAEP)
    except ValueError as e:
        raise CryptoError(f"Key unwrap failed: {e}")


def generate_session_key() -> bytes:
    """Generate a fresh 256-bit AES session key"""
    return AESGCM.generate_key(bit_length=SESSION_KEY_BITS)


def generate_nonce() -> bytes:
    """Generate a fresh 12-byte AES-GCM nonce"""
    return os.urandom(NONCE_SIZE)


def aes_encrypt(key: bytes, nonce: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Encrypt with AES-256-GCM.

    Args:
        key: 32-byte session key
        nonce: 12-byte nonce
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        ciphertext + tag (16 bytes)
    """
    return AESGCM(key).encrypt(nonce, plaintext, associated_data)


def aes_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    Raises:
        CryptoError: If the key is not a valid AES key, the nonce has the
            wrong size, or authentication fails
    """
    if len(nonce) != NONCE_SIZE:
        raise CryptoError("Invalid nonce length")
    if len(ciphertext) < TAG_SIZE:
        raise CryptoError("Ciphertext too short")

    try:
        aesgcm = AESGCM(key)
    except ValueError as e:
        raise CryptoError(f"Invalid session key: {e}")

    try:
        return aesgcm.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag:
        raise CryptoError("Decryption failed: authentication tag mismatch")


def b64encode(data: bytes) -> str:
    """Standard base64 with padding, as text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Strict standard base64 decode.

    Raises:
        CryptoError: If the input is not valid base64
    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid base64: {e}")


def export_public_key(public_key: RSAPublicKey) -> str:
    """Serialize a public key as base64 DER SubjectPublicKeyInfo"""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return b64encode(der)


def import_public_key(spki_b64: str) -> RSAPublicKey:
    """
    Load a base64 DER SubjectPublicKeyInfo RSA public key.

    Raises:
        CryptoError: If the key cannot be parsed or is not RSA
    """
    der = b64decode(spki_b64)
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Invalid public key: {e}")
    if not isinstance(key, RSAPublicKey):
        raise CryptoError("Public key is not an RSA key")
    return key


def serialize_private_key(private_key: RSAPrivateKey) -> bytes:
    """Serialize a private key as unencrypted PKCS#8 DER (callers encrypt at rest)"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(der: bytes) -> RSAPrivateKey:
    """Load a PKCS#8 DER RSA private key"""
    key = serialization.load_der_private_key(der, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise CryptoError("Private key is not an RSA key")
    return key


def is_valid_spki_public_key(spki_b64: str) -> bool:
    """
    Check that a published key is base64 DER SPKI for an RSA key.

    Args:
        spki_b64: Candidate public key string

    Returns:
        True if the key parses, False otherwise
    """
    if not spki_b64:
        return False
    try:
        import_public_key(spki_b64)
    except CryptoError:
        return False
    return True
