"""Reversible encoding for distributor passwords held in the credential store.

Base64 is a placeholder for a real cipher. Adapters only depend on the
``CredentialCipher`` protocol, so a KMS- or AES-backed implementation can be
dropped in without touching them.
"""

from __future__ import annotations

import base64
import binascii
from typing import Protocol


class CredentialDecryptError(ValueError):
    """Stored credential could not be decoded."""


class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class Base64CredentialCipher:
    def encrypt(self, plaintext: str) -> str:
        return base64.b64encode(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return base64.b64decode(ciphertext.encode("ascii"), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeError) as exc:
            raise CredentialDecryptError("credential is not valid base64 text") from exc
