from __future__ import annotations

import pytest

from supportai.domain.types import ApiKeyAuth, BasicAuth, NoAuth
from supportai.services.crypto.credentials import (
    decrypt,
    decrypt_credentials,
    encrypt,
    encrypt_credentials,
    mask_credential,
    mask_credentials,
)


KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


def test_encrypt_round_trip_uses_fresh_iv() -> None:
    first = encrypt("sk_live_secret", key=KEY)
    second = encrypt("sk_live_secret", key=KEY)

    assert first != second
    assert len(first.split(":")) == 3
    assert decrypt(first, key=KEY) == "sk_live_secret"
    assert decrypt(second, key=KEY) == "sk_live_secret"


def test_plaintext_passthrough_without_key() -> None:
    assert encrypt("plain", key="") == "plain"
    assert decrypt("plain", key="") == "plain"


def test_non_ciphertext_values_are_returned_unchanged() -> None:
    assert decrypt("legacy-plaintext-token", key=KEY) == "legacy-plaintext-token"
    # Well-formed but tampered values fail authentication and pass through.
    sealed = encrypt("value", key=KEY)
    iv, tag, body = sealed.split(":")
    tampered = ":".join([iv, tag, "AAAA" + body[4:]])
    assert decrypt(tampered, key=KEY) == tampered


def test_wrong_key_length_is_rejected() -> None:
    with pytest.raises(ValueError):
        encrypt("value", key="abcd")


def test_masking() -> None:
    assert mask_credential("abc") == "****"
    assert mask_credential("sk_live_123456") == "sk_l" + "*" * 10
    assert mask_credential("x" * 100) == "xxxx" + "*" * 20


def test_credential_models(monkeypatch: pytest.MonkeyPatch) -> None:
    from supportai.core.config import get_settings

    monkeypatch.setenv("ENCRYPTION_KEY", KEY)
    get_settings.cache_clear()

    auth = ApiKeyAuth(api_key="sk_live_123456")
    sealed = encrypt_credentials(auth)
    assert sealed.api_key != auth.api_key
    assert decrypt_credentials(sealed).api_key == "sk_live_123456"
    assert mask_credentials(auth)["api_key"] == "sk_l" + "*" * 10

    basic = BasicAuth(username="ops", password="hunter22")
    assert decrypt_credentials(encrypt_credentials(basic)).password == "hunter22"
    assert encrypt_credentials(NoAuth()) == NoAuth()
