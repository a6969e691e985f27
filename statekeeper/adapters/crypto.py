"""
Blob encryption at rest — AES-256-GCM envelope.

Envelope layout:

    STKENC_v1 | iv(12) | ciphertext+tag

Key derivation: PBKDF2-SHA256 over the store passphrase and a per-store
salt.  The blob's content id is bound as associated data, so a blob
copied under another id fails to decrypt.  Fingerprints are always
computed over plaintext, which keeps content ids stable whether or not
encryption is on.
"""

from __future__ import annotations

import base64
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from statekeeper.core.errors import CorruptState, PermissionDenied

MAGIC = b"STKENC_v1"
IV_BYTES = 12
SALT_BYTES = 16
KEY_BYTES = 32
KDF_ITERATIONS = 480_000

_VERIFIER_AAD = b"statekeeper-verifier"
_VERIFIER_PLAINTEXT = b"statekeeper"


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """Derive an AES-256 key from a passphrase using PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def new_salt() -> bytes:
    return os.urandom(SALT_BYTES)


class BlobCipher:
    """Encrypts and decrypts blobs for one store."""

    def __init__(self, passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS):
        if not passphrase or len(passphrase) < 8:
            raise ValueError("Encryption passphrase must be at least 8 characters")
        self._aesgcm = AESGCM(_derive_key(passphrase, salt, iterations))
        self.salt = salt
        self.iterations = iterations

    def encrypt(self, content_id: str, plaintext: bytes) -> bytes:
        iv = os.urandom(IV_BYTES)
        return MAGIC + iv + self._aesgcm.encrypt(iv, plaintext, content_id.encode("ascii"))

    def decrypt(self, content_id: str, envelope: bytes) -> bytes:
        """Raises ``InvalidTag`` on a wrong key or tampered bytes."""
        iv = envelope[len(MAGIC):len(MAGIC) + IV_BYTES]
        body = envelope[len(MAGIC) + IV_BYTES:]
        return self._aesgcm.decrypt(iv, body, content_id.encode("ascii"))

    # ── Store header ────────────────────────────────────────────

    def header(self) -> dict[str, Any]:
        """Salt + verifier, persisted next to the store so a wrong
        passphrase is detected before any blob is read."""
        iv = os.urandom(IV_BYTES)
        verifier = iv + self._aesgcm.encrypt(iv, _VERIFIER_PLAINTEXT, _VERIFIER_AAD)
        return {
            "algorithm": "aes-256-gcm",
            "kdf": "pbkdf2-sha256",
            "iterations": self.iterations,
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "verifier": base64.b64encode(verifier).decode("ascii"),
        }

    @classmethod
    def from_header(cls, passphrase: str, header: dict[str, Any]) -> BlobCipher:
        """Rebuild the cipher from a stored header, checking the passphrase.

        Raises:
            PermissionDenied: The passphrase does not match the store.
        """
        cipher = cls(
            passphrase,
            base64.b64decode(header["salt"]),
            int(header.get("iterations", KDF_ITERATIONS)),
        )
        verifier = base64.b64decode(header["verifier"])
        try:
            cipher._aesgcm.decrypt(verifier[:IV_BYTES], verifier[IV_BYTES:], _VERIFIER_AAD)
        except InvalidTag:
            raise PermissionDenied(
                "Encryption passphrase does not match this store",
                next_action="Check the passphrase environment variable for this store.",
            ) from None
        return cipher


def is_envelope(data: bytes) -> bool:
    return data.startswith(MAGIC)


def open_envelope(cipher: BlobCipher | None, content_id: str, data: bytes, key: str = "") -> bytes:
    """Decrypt a stored envelope, mapping failures onto the error taxonomy."""
    if cipher is None:
        raise PermissionDenied(
            f"Blob {content_id[:12]} is encrypted and no passphrase is configured",
            key=key,
            next_action="Enable backend.encryption and set the passphrase variable.",
        )
    try:
        return cipher.decrypt(content_id, data)
    except InvalidTag:
        raise CorruptState(
            f"Blob {content_id[:12]} failed authenticated decryption",
            key=key,
            expected=content_id,
            actual="<undecryptable>",
        ) from None
