# backend/core/crypto.py
import hashlib
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from . import config

IV_LENGTH = 16


def _key() -> bytes:
    return hashlib.sha256(config.ENCRYPTION_KEY.encode("utf-8")).digest()


def encrypt(text: str | None) -> str | None:
    """AES-256-CBC encrypts text into the stored 'ivhex:cipherhex' form."""
    if not text:
        return None
    iv = os.urandom(IV_LENGTH)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    data = padder.update(text.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_key()), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(data) + encryptor.finalize()
    return f"{iv.hex()}:{encrypted.hex()}"


def decrypt(text: str | None) -> str | None:
    """Reverses encrypt(). Raises ValueError on malformed or tampered input."""
    if not text:
        return None
    iv_hex, sep, encrypted_hex = text.partition(":")
    if not sep:
        raise ValueError("Encrypted value is missing its IV")
    iv = bytes.fromhex(iv_hex)
    encrypted = bytes.fromhex(encrypted_hex)
    if len(iv) != IV_LENGTH:
        raise ValueError("Encrypted value has an invalid IV")

    decryptor = Cipher(algorithms.AES(_key()), modes.CBC(iv)).decryptor()
    data = decryptor.update(encrypted) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(data) + unpadder.finalize()).decode("utf-8")
