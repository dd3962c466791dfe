import base64
import binascii
import hmac
import secrets
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

KEY_LENGTH = 32


class WireGuardKey:
    """A 32-byte Curve25519 key, rendered as base64 in config files and hex on the wire."""

    def __init__(self, raw: bytes):
        if len(raw) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes, got {len(raw)}")
        self._raw = bytes(raw)

    @property
    def raw(self) -> bytes:
        return self._raw

    @property
    def hex_key(self) -> str:
        return self._raw.hex()

    @property
    def base64_key(self) -> str:
        return base64.b64encode(self._raw).decode("ascii")

    @classmethod
    def from_hex(cls, value: str):
        if len(value) != KEY_LENGTH * 2:
            return None
        try:
            return cls(bytes.fromhex(value))
        except ValueError:
            return None

    @classmethod
    def from_base64(cls, value: str):
        # 32 bytes always encode to 44 chars ending in a single pad
        if len(value) != 44 or not value.endswith("=") or value.endswith("=="):
            return None
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(raw) != KEY_LENGTH:
            return None
        return cls(raw)

    def __eq__(self, other):
        if not isinstance(other, WireGuardKey):
            return NotImplemented
        return hmac.compare_digest(self._raw, other._raw)

    def __hash__(self):
        return hash(self._raw)

    def __repr__(self):
        return f"{type(self).__name__}({self.base64_key!r})"


class PublicKey(WireGuardKey):
    pass


class PreSharedKey(WireGuardKey):
    @classmethod
    def generate(cls) -> "PreSharedKey":
        return cls(secrets.token_bytes(KEY_LENGTH))


class PrivateKey(WireGuardKey):
    @classmethod
    def generate(cls) -> "PrivateKey":
        key = x25519.X25519PrivateKey.generate()
        return cls(key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ))

    @property
    def public_key(self) -> PublicKey:
        key = x25519.X25519PrivateKey.from_private_bytes(self._raw)
        return PublicKey(key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ))

    def __repr__(self):
        # never print private key material
        return f"PrivateKey(public={self.public_key.base64_key!r})"


def is_all_zero(key: Optional[WireGuardKey]) -> bool:
    return key is not None and not any(key.raw)
