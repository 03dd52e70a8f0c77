"""Deterministic (program-derived) addresses.

Mirrors the host ledger's address facility:

    candidate = sha256(seed_0 || ... || seed_n || program_id || "ProgramDerivedAddress")

A candidate is only usable if it is NOT a valid Ed25519 public key, so no
private key can ever sign for it; only the owning program can "sign" by
presenting the seeds. `find_program_address` appends a one-byte bump seed,
trying 255 down to 0, and returns the first off-curve candidate.

Escrow records live at
    find_program_address([b"escrow", beneficiary, config_identity], PROGRAM_ID)
which anyone who knows the beneficiary key can recompute, and nobody can
predict without it.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import nacl.bindings

from .crypto import PUBKEY_LEN, KeyLike, _sha256, require_key
from .errors import PWE_E_INVALID_PARAMETER, escrow_error

MAX_SEEDS = 16
MAX_SEED_LEN = 32
PDA_MARKER = b"ProgramDerivedAddress"

ESCROW_SEED = b"escrow"

# Program identities of this deployment.
PROGRAM_ID = _sha256(b"pw_escrow:program:v1")
TOKEN_PROGRAM_ID = _sha256(b"pw_escrow:token-program:v1")
ASSOCIATED_TOKEN_PROGRAM_ID = _sha256(b"pw_escrow:associated-token-program:v1")
SYSTEM_PROGRAM_ID = bytes(32)


def is_on_curve(candidate: bytes) -> bool:
    """True if `candidate` decodes to a valid Ed25519 point."""
    if len(candidate) != PUBKEY_LEN:
        return False
    return bool(nacl.bindings.crypto_core_ed25519_is_valid_point(bytes(candidate)))


def _check_seeds(seeds: Sequence[bytes]) -> List[bytes]:
    if len(seeds) > MAX_SEEDS:
        raise escrow_error(PWE_E_INVALID_PARAMETER, f"at most {MAX_SEEDS} seeds allowed", got=len(seeds))
    out = []
    for i, s in enumerate(seeds):
        s = bytes(s)
        if len(s) > MAX_SEED_LEN:
            raise escrow_error(
                PWE_E_INVALID_PARAMETER,
                f"seed {i} longer than {MAX_SEED_LEN} bytes",
                index=i,
                length=len(s),
            )
        out.append(s)
    return out


def create_program_address(seeds: Sequence[bytes], program_id: KeyLike = PROGRAM_ID) -> bytes:
    """Hash seeds into an address; InvalidParameter if the result is on the curve."""
    pid = require_key(program_id, "program_id")
    h = b"".join(_check_seeds(seeds)) + pid + PDA_MARKER
    candidate = _sha256(h)
    if is_on_curve(candidate):
        raise escrow_error(PWE_E_INVALID_PARAMETER, "seeds produce an on-curve address")
    return candidate


def find_program_address(seeds: Sequence[bytes], program_id: KeyLike = PROGRAM_ID) -> Tuple[bytes, int]:
    """Return (address, bump) for the first bump in 255..0 that lands off the curve."""
    pid = require_key(program_id, "program_id")
    base = _check_seeds(seeds)
    if len(base) >= MAX_SEEDS:
        raise escrow_error(PWE_E_INVALID_PARAMETER, "no room for bump seed")
    prefix = b"".join(base)
    for bump in range(255, -1, -1):
        candidate = _sha256(prefix + bytes([bump]) + pid + PDA_MARKER)
        if not is_on_curve(candidate):
            return candidate, bump
    # Probability ~2^-256; treat as malformed input.
    raise escrow_error(PWE_E_INVALID_PARAMETER, "unable to find a viable bump seed")


def escrow_seeds(beneficiary: KeyLike, config_identity: KeyLike) -> List[bytes]:
    return [
        ESCROW_SEED,
        require_key(beneficiary, "beneficiary"),
        require_key(config_identity, "config"),
    ]


def derive_escrow_address(
    beneficiary: KeyLike,
    config_identity: KeyLike,
    program_id: KeyLike = PROGRAM_ID,
) -> Tuple[bytes, int]:
    """Escrow address for (beneficiary, config). Returns (address, bump)."""
    return find_program_address(escrow_seeds(beneficiary, config_identity), program_id)


def associated_token_address(owner: KeyLike, mint: KeyLike) -> bytes:
    """Canonical token account address for (owner, mint)."""
    addr, _bump = find_program_address(
        [require_key(owner, "owner"), TOKEN_PROGRAM_ID, require_key(mint, "mint")],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return addr
