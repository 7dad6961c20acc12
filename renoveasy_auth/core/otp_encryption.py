import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptError
from .key_manager import KeyManager, UnknownKeyVersion

NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptedOtp:
    phone: str
    ciphertext: bytes
    nonce: bytes
    tag: bytes
    key_version: int
    created_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    # which store served this record (redis | database | memory)
    backend: Optional[str] = field(default=None, compare=False)

    def with_attempts(self, attempts: int) -> "EncryptedOtp":
        return replace(self, attempt_count=attempts)

    def tagged(self, backend: str) -> "EncryptedOtp":
        return replace(self, backend=backend)

    def __repr__(self) -> str:
        return (
            f"EncryptedOtp(key_version={self.key_version}, attempts={self.attempt_count}, "
            f"expires_at={self.expires_at.isoformat()}, backend={self.backend})"
        )


class OtpEncryption:
    """AES-256-GCM sealing of OTP codes, bound to the canonical phone as associated data."""

    def __init__(self, keys: KeyManager):
        self.keys = keys

    def encrypt(self, code: str, phone: str, created_at: datetime, expires_at: datetime) -> EncryptedOtp:
        version, key = self.keys.current_otp_key()
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, code.encode(), phone.encode())
        return EncryptedOtp(
            phone=phone,
            ciphertext=sealed[:-TAG_SIZE],
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            key_version=version,
            created_at=created_at,
            expires_at=expires_at,
        )

    def decrypt(self, enc: EncryptedOtp, phone: str) -> str:
        try:
            key = self.keys.otp_key(enc.key_version)
        except UnknownKeyVersion as e:
            raise DecryptError(f"unknown key version {enc.key_version}") from e
        try:
            plain = AESGCM(key).decrypt(enc.nonce, enc.ciphertext + enc.tag, phone.encode())
        except InvalidTag as e:
            raise DecryptError("authentication tag mismatch") from e
        return plain.decode()
