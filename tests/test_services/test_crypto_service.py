"""Tests for credential encryption at rest."""

from __future__ import annotations

import pytest

from objsync.services.crypto_service import (
    CredentialPair,
    decrypt_credentials,
    decrypt_value,
    encrypt_credentials,
    encrypt_value,
)


class TestCryptoService:
    def test_encrypt_decrypt_roundtrip(self) -> None:
        ciphertext = encrypt_value("AKIAEXAMPLE", "my-app-secret")
        assert ciphertext != "AKIAEXAMPLE"
        assert decrypt_value(ciphertext, "my-app-secret") == "AKIAEXAMPLE"

    def test_random_iv(self) -> None:
        assert encrypt_value("test", "same-key") != encrypt_value("test", "same-key")

    def test_decrypt_with_wrong_key_raises(self) -> None:
        ciphertext = encrypt_value("secret data", "correct-key")
        with pytest.raises(ValueError, match="Failed to decrypt"):
            decrypt_value(ciphertext, "wrong-key")

    def test_decrypt_garbage_raises(self) -> None:
        with pytest.raises(ValueError, match="Failed to decrypt"):
            decrypt_value("not-valid-ciphertext", "any-key")

    def test_credential_pair(self) -> None:
        pair = CredentialPair("AKIA", "wJalrXUtnFEMI/K7MDENG")
        stored = encrypt_credentials(pair, "key")
        assert stored.access_key != pair.access_key
        assert stored.secret_key != pair.secret_key
        assert decrypt_credentials(stored, "key") == pair
