from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import Settings

KEY_LENGTH_BYTES = 32
NONCE_LENGTH_BYTES = 12
TAG_LENGTH_BYTES = 16
ASSOCIATED_DATA = b"token-encryption"


class TokenCipherError(ValueError):
    pass


class EmptyInputError(TokenCipherError):
    pass


class TokenIntegrityError(TokenCipherError):
    pass


class MissingKeyMaterialError(TokenCipherError):
    pass


class TokenCipher:
    """AES-256-GCM codec for calendar credentials stored at rest.

    Encoded values are base64 of ``nonce || tag || ciphertext``.
    """

    def __init__(self, key_material: str) -> None:
        self._aead = AESGCM(derive_key(key_material))

    def encode(self, plaintext: str) -> str:
        if not plaintext:
            raise EmptyInputError("Cannot encrypt an empty secret.")
        nonce = os.urandom(NONCE_LENGTH_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), ASSOCIATED_DATA)
        ciphertext, tag = sealed[:-TAG_LENGTH_BYTES], sealed[-TAG_LENGTH_BYTES:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decode(self, encoded: str) -> str:
        if not encoded:
            raise EmptyInputError("Cannot decrypt an empty value.")
        try:
            combined = base64.b64decode(encoded.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise TokenIntegrityError("Encrypted secret is not valid base64.") from exc
        if len(combined) < NONCE_LENGTH_BYTES + TAG_LENGTH_BYTES:
            raise TokenIntegrityError("Encrypted secret is truncated.")

        nonce = combined[:NONCE_LENGTH_BYTES]
        tag = combined[NONCE_LENGTH_BYTES : NONCE_LENGTH_BYTES + TAG_LENGTH_BYTES]
        ciphertext = combined[NONCE_LENGTH_BYTES + TAG_LENGTH_BYTES :]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, ASSOCIATED_DATA)
        except InvalidTag as exc:
            raise TokenIntegrityError("Encrypted secret failed authentication.") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TokenIntegrityError("Decrypted secret is not valid UTF-8.") from exc


def derive_key(key_material: str) -> bytes:
    if not key_material:
        raise MissingKeyMaterialError("Token encryption key is not configured.")
    raw_key = key_material.encode("utf-8")
    if len(raw_key) < KEY_LENGTH_BYTES:
        return hashlib.sha256(raw_key).digest()
    return raw_key[:KEY_LENGTH_BYTES]


def get_token_cipher(settings: Settings) -> TokenCipher:
    return TokenCipher(settings.token_encryption_key)
