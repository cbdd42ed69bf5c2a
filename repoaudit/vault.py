"""AES-GCM credential vault for repository access tokens."""

from __future__ import annotations

import base64
import binascii
import os
from typing import Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AuthenticationError, ConfigError

SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
PBKDF2_ITERATIONS = 100_000


class CredentialVault:
    """Encrypts and decrypts tokens with a key derived from one server-held secret.

    Each encryption draws a fresh salt and IV, so the same token never produces
    the same ciphertext twice. The stored form is
    ``base64(salt || iv || ciphertext_with_tag)``. Plaintext tokens are only
    returned to the caller that asked for them and are never logged.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigError("Credential vault secret must not be empty")
        self._secret = secret.encode("utf-8")

    @classmethod
    def from_env(
        cls, name: str = "REPOAUDIT_TOKEN_SECRET", env: Optional[Mapping[str, str]] = None
    ) -> "CredentialVault":
        environ = os.environ if env is None else env
        secret = environ.get(name)
        if not secret:
            raise ConfigError(f"Environment variable {name} is not set; cannot decrypt credentials")
        return cls(secret)

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._secret)

    def encrypt(self, token: str) -> str:
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(iv, token.encode("utf-8"), None)
        return base64.b64encode(salt + iv + ciphertext).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        try:
            raw = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AuthenticationError("Stored credential is not valid base64") from exc
        if len(raw) <= SALT_BYTES + IV_BYTES:
            raise AuthenticationError("Stored credential is truncated")

        salt = raw[:SALT_BYTES]
        iv = raw[SALT_BYTES : SALT_BYTES + IV_BYTES]
        ciphertext = raw[SALT_BYTES + IV_BYTES :]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            raise AuthenticationError(
                "Stored credential could not be decrypted; reconnect the repository account"
            ) from exc
        return plaintext.decode("utf-8")
