from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

ENCODING = "utf-8"
IV_BYTES = 16
AES_KEY_HEX_CHARS = 32
TIMESTAMP_WINDOW = timedelta(minutes=15)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 128
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128


def sign(content: str, key: str) -> str:
    mac = hmac.new(key.encode(ENCODING), content.encode(ENCODING), hashlib.sha256)
    return mac.hexdigest()


def constant_time_equals(given: str | None, computed: str | None) -> bool:
    if given is None or computed is None or len(given) != len(computed):
        return False
    mismatch = 0
    for a, b in zip(given, computed):
        mismatch |= ord(a) ^ ord(b)
    return mismatch == 0


def salted_password_hash(username: str, password: str, endpoint: str, app_name: str) -> str:
    return sign(username + app_name + (endpoint or "").lower(), password)


def random_token() -> str:
    return secrets.token_bytes(16).hex()


def _aes_key(key: str) -> bytes:
    # Device keys are exactly 32 hex chars; password hashes are 64 and only
    # their first half is used.
    raw = (key or "")[:AES_KEY_HEX_CHARS]
    if len(raw) != AES_KEY_HEX_CHARS:
        raise ValueError(f"encryption key must be at least {AES_KEY_HEX_CHARS} hex characters")
    return bytes.fromhex(raw)


def encrypt_and_wrap(plaintext: str, key: str) -> str:
    iv = secrets.token_bytes(IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode(ENCODING)) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_aes_key(key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + ciphertext).decode("ascii")


def unwrap_and_decrypt(wrapped: str, key: str) -> str:
    raw = base64.b64decode(wrapped.strip().encode("ascii"))
    if len(raw) < IV_BYTES * 2 or len(raw) % IV_BYTES:
        raise ValueError("wrapped payload is not IV + AES-CBC ciphertext")
    iv, ciphertext = raw[:IV_BYTES], raw[IV_BYTES:]
    decryptor = Cipher(algorithms.AES(_aes_key(key)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(padded) + unpadder.finalize()).decode(ENCODING)


def parse_timestamp(timestamp: str) -> datetime:
    text = (timestamp or "").strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_timestamp_valid(timestamp: str | None, now: datetime | None = None) -> bool:
    if timestamp is None:
        return False
    try:
        ts = parse_timestamp(timestamp)
    except ValueError:
        return False
    current = now or datetime.now(timezone.utc)
    return current - TIMESTAMP_WINDOW <= ts <= current + TIMESTAMP_WINDOW


def is_valid_username(username: str | None) -> bool:
    if username is None:
        return False
    if len(username) < USERNAME_MIN_LENGTH or len(username) > USERNAME_MAX_LENGTH:
        return False
    return all(c.isalpha() or c.isdecimal() or c in "_." for c in username)


def is_valid_password(password: str | None) -> bool:
    if password is None:
        return False
    return PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH
