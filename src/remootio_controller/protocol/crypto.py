"""AES-256-CBC and HMAC-SHA256 primitives for the Remootio API.

Stateless functions over byte buffers. Payloads are AES-256-CBC with PKCS7
padding; frames are authenticated with HMAC-SHA256 over the canonical MAC
base ``{"iv":"<base64>","payload":"<base64>"}``. The device firmware computes
the tag over exactly that byte string with ``iv`` first, so ``mac_base`` must
never be built through a JSON serializer that could reorder or re-space keys.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from remootio_controller.const import CRYPTO_IV_BYTES, CRYPTO_KEY_BYTES
from remootio_controller.protocol.exceptions import CryptoError

__all__ = [
    "authenticate",
    "b64decode",
    "b64encode",
    "decrypt",
    "encrypt",
    "generate_iv",
    "mac_base",
    "verify",
]

_BLOCK_BITS = algorithms.AES.block_size


def _check_params(key: bytes, iv: bytes) -> None:
    if len(key) != CRYPTO_KEY_BYTES:
        raise CryptoError(f"invalid_key_length:{len(key)}")
    if len(iv) != CRYPTO_IV_BYTES:
        raise CryptoError(f"invalid_iv_length:{len(iv)}")


def encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    """Encrypt ``plaintext`` with AES-256-CBC and PKCS7 padding.

    Raises:
        CryptoError: key is not 32 bytes or iv is not 16 bytes

    """
    _check_params(key, iv)
    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    """Decrypt AES-256-CBC ``ciphertext`` and strip PKCS7 padding.

    Raises:
        CryptoError: bad key/iv length, ciphertext not block aligned, or bad padding

    """
    _check_params(key, iv)
    if not ciphertext or len(ciphertext) % CRYPTO_IV_BYTES:
        raise CryptoError(f"ciphertext_not_block_aligned:{len(ciphertext)}")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CryptoError("bad_padding") from e


def authenticate(key: bytes, message: bytes) -> bytes:
    """Return the 32-byte HMAC-SHA256 tag of ``message``."""
    return hmac.new(key, message, hashlib.sha256).digest()


def verify(key: bytes, message: bytes, tag: bytes) -> bool:
    """Check ``tag`` against ``message`` in constant time."""
    return hmac.compare_digest(authenticate(key, message), tag)


def mac_base(iv_b64: str, payload_b64: str) -> bytes:
    """Build the canonical authenticated byte string for an ``ENCRYPTED`` frame.

    Uses the base64 strings exactly as they travel on the wire.
    """
    return f'{{"iv":"{iv_b64}","payload":"{payload_b64}"}}'.encode()


def generate_iv() -> bytes:
    """Return a fresh random 16-byte initialization vector."""
    return os.urandom(CRYPTO_IV_BYTES)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict base64 decode.

    Raises:
        CryptoError: ``data`` is not valid base64

    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError("invalid_base64") from e
