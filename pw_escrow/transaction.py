"""
Signed ledger transactions.

A transaction names one escrow instruction, its arguments, the public keys
that must sign it, and an expiry. The signed message is the canonical JSON of
everything except the signatures, so a signature binds the signer to the exact
instruction, arguments, program and expiry.

Authorization in the protocol is signature-as-capability: handlers only say
*which* keys must have signed; `verify_signer` (injected into the ledger)
decides *whether* they did.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .address import PROGRAM_ID
from .crypto import (
    Ed25519KeyPair,
    KeyLike,
    _now_utc,
    _parse_iso_utc,
    _sha256_hex,
    b64d,
    b64e,
    canonical_json_dumps,
    require_key,
    verify_ed25519,
)
from .errors import PWE_E_INVALID_PARAMETER, escrow_error

DEFAULT_TTL_SECONDS = 120
# Longest validity window a ledger accepts; bounds how long replay records are kept.
MAX_TTL_SECONDS = 86400

SignerVerifier = Callable[[bytes, "Transaction"], bool]


@dataclass
class Transaction:
    instruction: str
    args: Dict[str, Any]
    signers: List[str]  # hex public keys, in signing order
    valid_until_utc: str
    nonce: str
    program_id: str = PROGRAM_ID.hex()
    signatures: Dict[str, str] = field(default_factory=dict)  # hex pubkey -> base64 signature

    @classmethod
    def build(
        cls,
        instruction: str,
        args: Dict[str, Any],
        signers: Sequence[KeyLike],
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        program_id: KeyLike = PROGRAM_ID,
        now: Optional[datetime] = None,
    ) -> "Transaction":
        ordered: List[str] = []
        for s in signers:
            h = require_key(s, "signer").hex()
            if h not in ordered:
                ordered.append(h)
        if not ordered:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "transaction requires at least one signer")
        t = now or _now_utc()
        return cls(
            instruction=str(instruction),
            args=dict(args),
            signers=ordered,
            valid_until_utc=(t + timedelta(seconds=int(ttl_seconds))).isoformat(),
            nonce=secrets.token_hex(16),
            program_id=require_key(program_id, "program_id").hex(),
        )

    def message_dict(self) -> Dict[str, Any]:
        return {
            "program_id": self.program_id,
            "instruction": self.instruction,
            "args": self.args,
            "signers": list(self.signers),
            "valid_until_utc": self.valid_until_utc,
            "nonce": self.nonce,
        }

    def message(self) -> bytes:
        try:
            return canonical_json_dumps(self.message_dict()).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise escrow_error(PWE_E_INVALID_PARAMETER, f"malformed transaction: {e}")

    @property
    def tx_id(self) -> str:
        return _sha256_hex(self.message())

    def sign(self, *keypairs: Ed25519KeyPair) -> "Transaction":
        """Add signatures from keypairs that are declared signers."""
        msg = self.message()
        for kp in keypairs:
            h = kp.public_key_hex
            if h not in self.signers:
                raise escrow_error(
                    PWE_E_INVALID_PARAMETER,
                    "keypair is not a declared signer of this transaction",
                    signer=h,
                )
            self.signatures[h] = b64e(kp.sign(msg))
        return self

    def has_signer(self, key: KeyLike) -> bool:
        return require_key(key, "signer").hex() in self.signers

    def expires_at(self) -> Optional[datetime]:
        return _parse_iso_utc(self.valid_until_utc)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        exp = self.expires_at()
        if exp is None:
            return True
        return (now or _now_utc()) > exp

    def to_dict(self) -> Dict[str, Any]:
        d = self.message_dict()
        d["signatures"] = dict(self.signatures)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        try:
            return cls(
                instruction=str(data["instruction"]),
                args=dict(data.get("args") or {}),
                signers=[str(s).lower() for s in data["signers"]],
                valid_until_utc=str(data["valid_until_utc"]),
                nonce=str(data["nonce"]),
                program_id=str(data.get("program_id") or PROGRAM_ID.hex()).lower(),
                signatures={str(k).lower(): str(v) for k, v in (data.get("signatures") or {}).items()},
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise escrow_error(PWE_E_INVALID_PARAMETER, f"malformed transaction: {e}")


def verify_signer(claimed_signer: bytes, tx: Transaction) -> bool:
    """True iff `claimed_signer` is a declared signer and its signature over the message verifies."""
    h = bytes(claimed_signer).hex()
    if h not in tx.signers:
        return False
    sig_b64 = tx.signatures.get(h)
    if not sig_b64:
        return False
    try:
        sig = b64d(sig_b64)
    except ValueError:
        return False
    return verify_ed25519(bytes(claimed_signer), tx.message(), sig)
