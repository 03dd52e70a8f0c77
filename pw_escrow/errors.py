"""Stable error taxonomy for the password escrow.

Every failure raised by the protocol, the reference ledger, or the client is an
`EscrowError` carrying one of the codes below. The code is the contract;
messages are for humans.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Escrow protocol
PWE_E_ALREADY_EXISTS = "PWE_E_ALREADY_EXISTS"
PWE_E_NOT_FOUND = "PWE_E_NOT_FOUND"
PWE_E_UNAUTHORIZED = "PWE_E_UNAUTHORIZED"
PWE_E_MINT_MISMATCH = "PWE_E_MINT_MISMATCH"
PWE_E_INSUFFICIENT_FUNDS = "PWE_E_INSUFFICIENT_FUNDS"
PWE_E_INVALID_PARAMETER = "PWE_E_INVALID_PARAMETER"

# Ledger / transactions
PWE_E_TX_EXPIRED = "PWE_E_TX_EXPIRED"
PWE_E_TX_DUPLICATE = "PWE_E_TX_DUPLICATE"
PWE_E_LOCKDOWN_ACTIVE = "PWE_E_LOCKDOWN_ACTIVE"

# Generic
PWE_E_INTERNAL = "PWE_E_INTERNAL"


_HTTP_STATUS: Dict[str, int] = {
    PWE_E_ALREADY_EXISTS: 409,
    PWE_E_NOT_FOUND: 404,
    PWE_E_UNAUTHORIZED: 403,
    PWE_E_MINT_MISMATCH: 422,
    PWE_E_INSUFFICIENT_FUNDS: 422,
    PWE_E_INVALID_PARAMETER: 400,
    PWE_E_TX_EXPIRED: 400,
    PWE_E_TX_DUPLICATE: 409,
    PWE_E_LOCKDOWN_ACTIVE: 503,
    PWE_E_INTERNAL: 500,
}

_RETRYABLE = {PWE_E_TX_EXPIRED, PWE_E_LOCKDOWN_ACTIVE}


@dataclass
class EscrowError(Exception):
    """Base escrow exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def escrow_error(code: str, message: str, **details: Any) -> EscrowError:
    """Build an EscrowError with the transport defaults registered for `code`."""
    return EscrowError(
        code=code,
        message=message,
        retryable=code in _RETRYABLE,
        http_status=_HTTP_STATUS.get(code, 400),
        details=details,
    )
