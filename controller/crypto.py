"""
chainShell Crypto Module (Shared)
AES-GCM for session traffic, RSA-OAEP for the session-key bootstrap.

Ciphertext travels inside transport events as text, so every encrypt
function returns base64 and every decrypt function accepts it.

Symmetric format: base64(<12-byte nonce><ciphertext><16-byte tag>)
"""

import base64
import binascii
from typing import Optional

from Crypto.Cipher import AES, PKCS1_OAEP
from Crypto.PublicKey import RSA
from Crypto.Random import get_random_bytes

from .errors import DecryptError, EncryptError

NONCE_SIZE = 12
TAG_SIZE = 16
SESSION_KEY_SIZE = 32


def generate_asymmetric_keys(bits: int = 2048) -> RSA.RsaKey:
    """Generate the RSA keypair agents use to send their session keys."""
    return RSA.generate(bits)


def export_public_key(key: RSA.RsaKey) -> str:
    """PEM text of the public half of key."""
    return key.publickey().export_key().decode("ascii")


def import_public_key(pem: str) -> RSA.RsaKey:
    return RSA.import_key(pem)


def generate_session_key() -> bytes:
    return get_random_bytes(SESSION_KEY_SIZE)


def asymmetric_encrypt(plaintext: bytes, public_key: RSA.RsaKey) -> str:
    """Wrap plaintext (normally a session key) for the holder of the private key."""
    try:
        cipher = PKCS1_OAEP.new(public_key)
        return base64.b64encode(cipher.encrypt(plaintext)).decode("ascii")
    except (TypeError, ValueError) as e:
        raise EncryptError(f"RSA encryption failed: {e}") from e


def asymmetric_decrypt(ciphertext: str, private_key: RSA.RsaKey) -> bytes:
    try:
        raw = base64.b64decode(ciphertext, validate=True)
        cipher = PKCS1_OAEP.new(private_key)
        return cipher.decrypt(raw)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecryptError(f"RSA decryption failed: {e}") from e


def symmetric_encrypt(plaintext: bytes, key: Optional[bytes]) -> str:
    """
    Encrypt plaintext with AES-GCM under key.

    Raises EncryptError if the key is missing or has an invalid length.
    """
    if not key:
        raise EncryptError("No session key available")

    # Random nonce per message (12 bytes recommended for GCM)
    nonce = get_random_bytes(NONCE_SIZE)

    try:
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    except (TypeError, ValueError) as e:
        raise EncryptError(f"AES encryption failed: {e}") from e

    return base64.b64encode(nonce + ciphertext + tag).decode("ascii")


def symmetric_decrypt(ciphertext: str, key: Optional[bytes]) -> bytes:
    """
    Decrypt and verify an AES-GCM message produced by symmetric_encrypt.

    Raises DecryptError on a missing or wrong key, bad encoding, or tampering.
    """
    if not key:
        raise DecryptError("No session key available")

    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptError(f"Ciphertext is not valid base64: {e}") from e

    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise DecryptError("Message too short")

    nonce = raw[:NONCE_SIZE]
    tag = raw[-TAG_SIZE:]
    body = raw[NONCE_SIZE:-TAG_SIZE]

    try:
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(body, tag)
    except (TypeError, ValueError) as e:
        raise DecryptError(f"AES decryption failed: {e}") from e
