"""
Password Escrow Cryptography Module

Ed25519 keypairs and signatures (via `cryptography`), canonical JSON for
signed transaction messages, and small byte/key helpers shared by the
protocol, the reference ledger and the client.

The protocol holds only PUBLIC keys. Beneficiary private keys exist only in
the memory of whoever re-derived them from the password.
"""

from __future__ import annotations

import base64
import hashlib
import json
import math
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import PWE_E_INVALID_PARAMETER, escrow_error


PUBKEY_LEN = 32
SIGNATURE_LEN = 64

KeyLike = Union[bytes, bytearray, str]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def b64e(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(str(text).encode("ascii"), validate=True)


def require_key(value: KeyLike, name: str, *, length: int = PUBKEY_LEN) -> bytes:
    """Coerce a key given as raw bytes or hex into exactly `length` bytes.

    Raises PWE_E_INVALID_PARAMETER on malformed input (wrong length, bad hex).
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        try:
            raw = bytes.fromhex(value.strip())
        except ValueError:
            raise escrow_error(PWE_E_INVALID_PARAMETER, f"{name} is not valid hex", field=name)
    else:
        raise escrow_error(
            PWE_E_INVALID_PARAMETER,
            f"{name} must be bytes or hex string",
            field=name,
            got=type(value).__name__,
        )
    if len(raw) != length:
        raise escrow_error(
            PWE_E_INVALID_PARAMETER,
            f"{name} must be {length} bytes, got {len(raw)}",
            field=name,
        )
    return raw


# Canonical JSON: the signed transaction message format.
# - sort_keys / compact separators: deterministic bytes
# - NFC-normalized strings: no byte-distinct but visually identical values
# - allow_nan=False: strict JSON only
_CANON_MAX_DEPTH = 32


def _canonicalize(obj: Any, depth: int = 0) -> Any:
    if depth > _CANON_MAX_DEPTH:
        raise TypeError("max nesting depth exceeded")
    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise TypeError("non-finite float")
        return obj
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise TypeError(f"dict key must be str, got {type(k).__name__}")
            out[unicodedata.normalize("NFC", k)] = _canonicalize(v, depth + 1)
        return out
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, depth + 1) for v in obj]
    raise TypeError(f"non-JSON-serializable type: {type(obj).__name__}")


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON encoding used for everything that gets signed."""
    return json.dumps(
        _canonicalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    Public-only instances (private_key_bytes is None) can verify but not sign.
    """
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls) -> "Ed25519KeyPair":
        """Generate a new random Ed25519 key pair."""
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private(private_key)

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519KeyPair":
        """
        Create key pair from a 32-byte seed (RFC 8032 secret key).

        Deterministic: the same seed always yields the same keypair.
        """
        if len(seed) != 32:
            raise escrow_error(PWE_E_INVALID_PARAMETER, f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(bytes(seed))
        return cls._from_private(private_key)

    @classmethod
    def from_public_key(cls, public_key: KeyLike) -> "Ed25519KeyPair":
        """Create a verification-only key pair."""
        return cls(public_key_bytes=require_key(public_key, "public_key"))

    @classmethod
    def _from_private(cls, private_key: Ed25519PrivateKey) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the private key."""
        if not self.can_sign():
            raise ValueError(f"Key {self.public_key_hex} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(bytes(message))

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature with the public key."""
        return verify_ed25519(self.public_key_bytes, message, signature)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"public_key_hex": self.public_key_hex}
        if self.private_key_bytes is not None:
            d["private_key_hex"] = self.private_key_bytes.hex()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ed25519KeyPair":
        priv = data.get("private_key_hex")
        if priv:
            kp = cls.from_seed(require_key(priv, "private_key_hex"))
            if data.get("public_key_hex") and kp.public_key_hex != str(data["public_key_hex"]).lower():
                raise escrow_error(PWE_E_INVALID_PARAMETER, "public_key_hex does not match private_key_hex")
            return kp
        return cls.from_public_key(str(data["public_key_hex"]))


def verify_ed25519(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Ed25519 verification that never raises on malformed input."""
    if len(public_key) != PUBKEY_LEN or len(signature) != SIGNATURE_LEN:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(bytes(public_key)).verify(bytes(signature), bytes(message))
        return True
    except InvalidSignature:
        return False
    except ValueError:
        return False
