"""Encryption at rest for subscription secrets (Fernet)."""

import base64
import hashlib
import secrets

from cryptography.fernet import Fernet, InvalidToken

from eventrelay.config import Settings

MIN_SECRET_BYTES = 16


def generate_secret() -> bytes:
    return ("whsec_" + secrets.token_urlsafe(32)).encode("ascii")


def derive_key(secret_key: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode("utf-8")).digest())


class SecretBox:
    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretBox":
        if settings.secret_encryption_key:
            return cls(settings.secret_encryption_key.encode("ascii"))
        return cls(derive_key(settings.secret_key))

    def encrypt(self, secret: bytes) -> str:
        return self._fernet.encrypt(secret).decode("ascii")

    def decrypt(self, ciphertext: str) -> bytes:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Subscription secret cannot be decrypted with the configured key") from exc

    def __repr__(self) -> str:
        return "SecretBox(<redacted>)"
