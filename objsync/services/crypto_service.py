"""Symmetric encryption for backend credentials stored at rest."""

from __future__ import annotations

import base64
import hashlib
from typing import NamedTuple

from cryptography.fernet import Fernet, InvalidToken


class CredentialPair(NamedTuple):
    access_key: str
    secret_key: str


def _fernet(secret_key: str) -> Fernet:
    """Derive a Fernet instance from the application secret using SHA-256."""
    digest = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_value(plaintext: str, secret_key: str) -> str:
    """Encrypt a string and return the ciphertext as a URL-safe string."""
    return _fernet(secret_key).encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret_key: str) -> str:
    """Decrypt a ciphertext string. Raises ValueError on failure."""
    try:
        return _fernet(secret_key).decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Failed to decrypt credential data") from exc


def encrypt_credentials(pair: CredentialPair, secret_key: str) -> CredentialPair:
    """Encrypt both halves of an access/secret key pair."""
    return CredentialPair(
        access_key=encrypt_value(pair.access_key, secret_key),
        secret_key=encrypt_value(pair.secret_key, secret_key),
    )


def decrypt_credentials(pair: CredentialPair, secret_key: str) -> CredentialPair:
    """Decrypt both halves of a stored key pair. Raises ValueError on failure."""
    return CredentialPair(
        access_key=decrypt_value(pair.access_key, secret_key),
        secret_key=decrypt_value(pair.secret_key, secret_key),
    )
