"""Sealing of subscription passwords at rest.

The key is derived once from the server-wide secret (sha256 -> urlsafe base64,
the shape Fernet expects) and is read-only afterwards. Fernet gives
authenticated encryption, so a blob sealed under another secret fails to open
instead of decrypting to garbage.
"""

from __future__ import annotations

import base64
from hashlib import sha256

from cryptography.fernet import Fernet, InvalidToken

from .errors import InvalidCiphertext

__all__ = ["PasswordCipher", "derive_key"]


def derive_key(secret: str) -> bytes:
    if not secret:
        raise ValueError("secret must not be empty")
    return base64.urlsafe_b64encode(sha256(secret.encode("utf-8")).digest())


class PasswordCipher:
    def __init__(self, secret: str) -> None:
        self._fernet = Fernet(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError) as exc:
            raise InvalidCiphertext("password cannot be decrypted with the configured secret") from exc

    def __repr__(self) -> str:
        return "PasswordCipher(<sealed>)"
