from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from supportai.core.config import get_settings
from supportai.domain.types import ApiKeyAuth, BasicAuth, OAuthAuth


logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
_KEY_LENGTH = 32
_MASK_VISIBLE = 4
_MASK_MAX = 20


def _key_bytes(value: str) -> bytes:
    # Hex first, then base64.
    stripped = value.strip()
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("encryption key must be hex or base64") from exc


def _load_key(raw_key: str | None = None) -> bytes | None:
    # None means encryption is not configured and values pass through as plaintext.
    value = raw_key if raw_key is not None else get_settings().encryption_key
    if not value or not value.strip():
        return None
    key = _key_bytes(value)
    if len(key) != _KEY_LENGTH:
        raise ValueError("encryption key must be 32 bytes (64 hex characters)")
    return key


def is_encryption_configured() -> bool:
    return bool(get_settings().encryption_key.strip())


def encrypt(plaintext: str, *, key: str | None = None) -> str:
    """Encrypt to ``iv:authTag:ciphertext`` (base64 parts) with AES-256-GCM."""
    resolved = _load_key(key)
    if resolved is None or not plaintext:
        return plaintext
    iv = os.urandom(IV_LENGTH)
    # AESGCM appends the 16-byte tag to the ciphertext.
    sealed = AESGCM(resolved).encrypt(iv, plaintext.encode("utf-8"), None)
    cipher_text, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, tag, cipher_text))


def decrypt(value: str, *, key: str | None = None) -> str:
    """Decrypt ``iv:authTag:ciphertext``; anything else is returned unchanged."""
    resolved = _load_key(key)
    if resolved is None or not value:
        return value
    parts = value.split(":")
    if len(parts) != 3:
        return value
    try:
        iv, tag, cipher_text = (base64.b64decode(part, validate=True) for part in parts)
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            return value
        plain = AESGCM(resolved).decrypt(iv, cipher_text + tag, None)
        return plain.decode("utf-8")
    except (InvalidTag, binascii.Error, ValueError, UnicodeDecodeError):
        logger.warning("credential_decrypt_failed")
        return value


def _secret_fields(auth: Any) -> tuple[str, ...]:
    if isinstance(auth, ApiKeyAuth):
        return ("api_key",)
    if isinstance(auth, BasicAuth):
        return ("password",)
    if isinstance(auth, OAuthAuth):
        return ("access_token",)
    return ()


def encrypt_credentials(auth: Any) -> Any:
    fields = _secret_fields(auth)
    if not fields:
        return auth
    return auth.model_copy(update={name: encrypt(getattr(auth, name)) for name in fields})


def decrypt_credentials(auth: Any) -> Any:
    fields = _secret_fields(auth)
    if not fields:
        return auth
    return auth.model_copy(update={name: decrypt(getattr(auth, name)) for name in fields})


def mask_credential(value: str) -> str:
    # First four characters stay visible, followed by at most twenty mask characters.
    if len(value) <= _MASK_VISIBLE:
        return "****"
    return value[:_MASK_VISIBLE] + "*" * min(len(value) - _MASK_VISIBLE, _MASK_MAX)


def mask_credentials(auth: Any) -> dict[str, Any]:
    payload = auth.model_dump(mode="json")
    for name in _secret_fields(auth):
        payload[name] = mask_credential(str(payload.get(name) or ""))
    return payload
