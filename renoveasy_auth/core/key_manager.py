# renoveasy_auth/core/key_manager.py
"""Key material for OTP sealing and JWT signing.

OTP keys form a versioned ring: one current write key plus older read keys.
The ring is an immutable snapshot; rotation builds a new snapshot and swaps
the reference under a lock, so readers never observe a half-rotated ring.
Retired keys stay readable until `retirement_seconds` (at least the OTP TTL)
has passed, after which no live OTP can reference them.
"""
import base64
import hashlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..utils import utcnow

logger = logging.getLogger(__name__)


class UnknownKeyVersion(KeyError):
    pass


class KeyConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class OtpKeyRing:
    current_version: int
    keys: Mapping[int, bytes]
    retired_at: Mapping[int, datetime]

    def __repr__(self) -> str:
        return f"OtpKeyRing(current={self.current_version}, versions={sorted(self.keys)})"


@dataclass(frozen=True)
class JwtKeyPair:
    private_pem: bytes
    public_pem: bytes
    kid: str

    def __repr__(self) -> str:
        return f"JwtKeyPair(kid={self.kid})"


def parse_otp_keys(entries: List[str]) -> Dict[int, bytes]:
    """Parse `version:base64key` entries into a version -> 32-byte key map."""
    keys: Dict[int, bytes] = {}
    for entry in entries:
        version, sep, encoded = entry.partition(":")
        if not sep:
            raise KeyConfigError("OTP key entries must look like 'version:base64key'")
        try:
            key = base64.b64decode(encoded.strip())
            v = int(version)
        except ValueError as e:
            raise KeyConfigError("Malformed OTP key entry") from e
        if len(key) != 32:
            raise KeyConfigError(f"OTP key version {v} must be 32 bytes for AES-256-GCM")
        keys[v] = key
    return keys


def compute_kid(public_pem: bytes) -> str:
    public_key = serialization.load_pem_public_key(public_pem)
    der = public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return base64.urlsafe_b64encode(hashlib.sha256(der).digest()[:12]).decode().rstrip("=")


def generate_rsa_keypair(bits: int = 2048) -> Tuple[bytes, bytes]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return private_pem, public_pem


def _read(path: Optional[str]) -> Optional[bytes]:
    if not path:
        return None
    with open(path, "rb") as fh:
        return fh.read()


class KeyManager:
    def __init__(
        self,
        otp_keys: Dict[int, bytes],
        jwt_keys: JwtKeyPair,
        retirement_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not otp_keys:
            raise KeyConfigError("At least one OTP encryption key is required")
        self._lock = threading.Lock()
        self._clock = clock
        self.retirement = timedelta(seconds=retirement_seconds)
        self._ring = OtpKeyRing(
            current_version=max(otp_keys),
            keys=MappingProxyType(dict(otp_keys)),
            retired_at=MappingProxyType({}),
        )
        self._jwt = jwt_keys

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] = utcnow) -> "KeyManager":
        otp_keys = parse_otp_keys(settings.otp_encryption_keys_list)
        if not otp_keys:
            if settings.is_production:
                raise KeyConfigError("OTP_ENCRYPTION_KEYS must be set in production")
            logger.warning("No OTP_ENCRYPTION_KEYS configured; using an ephemeral key")
            otp_keys = {1: AESGCM.generate_key(bit_length=256)}

        private_pem = settings.JWT_PRIVATE_KEY.encode() if settings.JWT_PRIVATE_KEY else _read(settings.JWT_PRIVATE_KEY_PATH)
        public_pem = settings.JWT_PUBLIC_KEY.encode() if settings.JWT_PUBLIC_KEY else _read(settings.JWT_PUBLIC_KEY_PATH)
        if private_pem and not public_pem:
            private_key = serialization.load_pem_private_key(private_pem, password=None)
            public_pem = private_key.public_key().public_bytes(
                serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
            )
        if not private_pem:
            if settings.is_production:
                raise KeyConfigError("JWT_PRIVATE_KEY or JWT_PRIVATE_KEY_PATH must be set in production")
            logger.warning("No RS256 key configured; generating an ephemeral key pair")
            private_pem, public_pem = generate_rsa_keypair()

        jwt_keys = JwtKeyPair(private_pem=private_pem, public_pem=public_pem, kid=compute_kid(public_pem))
        return cls(otp_keys, jwt_keys, retirement_seconds=settings.OTP_KEY_RETIREMENT_SECONDS, clock=clock)

    def __repr__(self) -> str:
        return f"KeyManager({self._ring!r}, {self._jwt!r})"

    # OTP ring

    def current_otp_key(self) -> Tuple[int, bytes]:
        ring = self._ring
        return ring.current_version, ring.keys[ring.current_version]

    def otp_key(self, version: int) -> bytes:
        ring = self._ring
        try:
            return ring.keys[version]
        except KeyError:
            raise UnknownKeyVersion(version) from None

    def otp_versions(self) -> List[int]:
        return sorted(self._ring.keys)

    def rotate_otp(self, new_key: Optional[bytes] = None) -> int:
        """Install a new current key and drop retired keys past their retirement delay."""
        key = new_key or AESGCM.generate_key(bit_length=256)
        if len(key) != 32:
            raise KeyConfigError("OTP keys must be 32 bytes")
        with self._lock:
            now = self._clock()
            old = self._ring
            version = max(old.keys) + 1
            keys = dict(old.keys)
            retired = dict(old.retired_at)
            retired[old.current_version] = now
            for v, when in list(retired.items()):
                if now - when >= self.retirement:
                    keys.pop(v, None)
                    retired.pop(v)
            keys[version] = key
            self._ring = OtpKeyRing(
                current_version=version,
                keys=MappingProxyType(keys),
                retired_at=MappingProxyType(retired),
            )
        logger.info(f"Rotated OTP key to version {version}; readable versions {sorted(keys)}")
        return version

    def prune_retired(self) -> List[int]:
        with self._lock:
            now = self._clock()
            old = self._ring
            expired = [v for v, when in old.retired_at.items() if now - when >= self.retirement]
            if not expired:
                return []
            keys = {v: k for v, k in old.keys.items() if v not in expired}
            retired = {v: w for v, w in old.retired_at.items() if v not in expired}
            self._ring = OtpKeyRing(old.current_version, MappingProxyType(keys), MappingProxyType(retired))
        return expired

    # JWT

    @property
    def jwt_private_pem(self) -> bytes:
        return self._jwt.private_pem

    @property
    def jwt_public_pem(self) -> bytes:
        return self._jwt.public_pem

    @property
    def jwt_kid(self) -> str:
        return self._jwt.kid
