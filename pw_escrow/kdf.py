"""Password -> beneficiary keypair derivation.

The beneficiary of an escrow is an Ed25519 keypair whose 32-byte seed is

    seed = Argon2id(password, salt, associated_data=config_identity)

Argon2id is memory-hard, which makes guessing low-entropy passwords expensive.
The configuration identity is passed as Argon2 *associated data* (not as part
of the salt), so the same password and salt under two configurations yield
unrelated keypairs.

Two entry points:
- deposit time: `derive_beneficiary` picks a fresh salt; only the public key
  and the salt leave the caller.
- withdraw time: `rederive_keypair` reads the public salt and config from the
  escrow record and rebuilds the full keypair to sign the withdrawal.

This module never compares keys. A wrong password produces a different
keypair, which the ledger's signature check rejects.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
import unicodedata
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from argon2.low_level import ARGON2_VERSION, Type, core, error_to_str, ffi, lib

from .crypto import PUBKEY_LEN, Ed25519KeyPair, KeyLike, require_key
from .errors import PWE_E_INTERNAL, PWE_E_INVALID_PARAMETER, escrow_error
from .metrics import observe_kdf_seconds
from .records import Escrow

logger = logging.getLogger("pw_escrow.kdf")

SALT_LEN = 16
SEED_LEN = 32
MIN_SALT_LEN = 8  # Argon2 minimum
MAX_LANES = 255

Password = Union[str, bytes]


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters.

    Environment variables:
    - PWE_KDF_TIME_COST: number of passes (default 3).
    - PWE_KDF_MEMORY_KIB: memory in KiB (default 65536 = 64 MiB).
    - PWE_KDF_PARALLELISM: lanes (default 1).

    Depositor and beneficiary must use identical parameters; publish them
    (the HTTP API serves them at /v1/kdf-params).
    """

    time_cost: int = 3
    memory_cost_kib: int = 65536
    parallelism: int = 1

    def __post_init__(self) -> None:
        for name in ("time_cost", "memory_cost_kib", "parallelism"):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int):
                raise escrow_error(PWE_E_INVALID_PARAMETER, f"kdf {name} must be an integer", field=name)
        if self.time_cost < 1:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "kdf time_cost must be at least 1", field="time_cost")
        if not 1 <= self.parallelism <= MAX_LANES:
            raise escrow_error(
                PWE_E_INVALID_PARAMETER, f"kdf parallelism must be in [1, {MAX_LANES}]", field="parallelism"
            )
        # Argon2 needs at least 8 KiB per lane.
        if self.memory_cost_kib < 8 * self.parallelism:
            raise escrow_error(
                PWE_E_INVALID_PARAMETER,
                "kdf memory_cost_kib must be at least 8 * parallelism",
                memory_cost_kib=self.memory_cost_kib,
                parallelism=self.parallelism,
            )

    @classmethod
    def from_env(cls) -> "KdfParams":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        time_cost = _get_int("PWE_KDF_TIME_COST", cls.time_cost)
        memory = _get_int("PWE_KDF_MEMORY_KIB", cls.memory_cost_kib)
        lanes = _get_int("PWE_KDF_PARALLELISM", cls.parallelism)

        # Clamp to Argon2 minimums
        if time_cost < 1:
            time_cost = 1
        if lanes < 1:
            lanes = 1
        if lanes > MAX_LANES:
            lanes = MAX_LANES
        if memory < 8 * lanes:
            memory = 8 * lanes

        return cls(time_cost=time_cost, memory_cost_kib=memory, parallelism=lanes)

    def to_dict(self) -> dict:
        return {
            "algorithm": "argon2id",
            "version": int(ARGON2_VERSION),
            "time_cost": self.time_cost,
            "memory_cost_kib": self.memory_cost_kib,
            "parallelism": self.parallelism,
            "hash_len": SEED_LEN,
            "salt_len": SALT_LEN,
        }


def normalize_password(password: Password) -> bytes:
    """Text passwords are NFC-normalized and UTF-8 encoded."""
    if isinstance(password, str):
        raw = unicodedata.normalize("NFC", password).encode("utf-8")
    elif isinstance(password, (bytes, bytearray)):
        raw = bytes(password)
    else:
        raise escrow_error(PWE_E_INVALID_PARAMETER, "password must be str or bytes")
    if not raw:
        raise escrow_error(PWE_E_INVALID_PARAMETER, "password must be non-empty")
    return raw


def new_salt() -> bytes:
    return secrets.token_bytes(SALT_LEN)


def derive_seed(
    password: Password,
    salt: bytes,
    domain: KeyLike,
    params: Optional[KdfParams] = None,
) -> bytes:
    """Argon2id(password, salt) with `domain` as associated data -> 32-byte seed."""
    params = params or KdfParams.from_env()
    pwd = normalize_password(password)
    salt = bytes(salt)
    if len(salt) < MIN_SALT_LEN:
        raise escrow_error(
            PWE_E_INVALID_PARAMETER,
            f"salt must be at least {MIN_SALT_LEN} bytes, got {len(salt)}",
        )
    ad = require_key(domain, "domain", length=PUBKEY_LEN)

    start = time.monotonic()
    cout = ffi.new("uint8_t[]", SEED_LEN)
    cpwd = ffi.new("uint8_t[]", pwd)
    csalt = ffi.new("uint8_t[]", salt)
    cad = ffi.new("uint8_t[]", ad)
    ctx = ffi.new(
        "argon2_context *",
        dict(
            version=ARGON2_VERSION,
            out=cout,
            outlen=SEED_LEN,
            pwd=cpwd,
            pwdlen=len(pwd),
            salt=csalt,
            saltlen=len(salt),
            secret=ffi.NULL,
            secretlen=0,
            ad=cad,
            adlen=len(ad),
            t_cost=params.time_cost,
            m_cost=params.memory_cost_kib,
            lanes=params.parallelism,
            threads=params.parallelism,
            allocate_cbk=ffi.NULL,
            free_cbk=ffi.NULL,
            flags=lib.ARGON2_DEFAULT_FLAGS,
        ),
    )
    rc = core(ctx, Type.ID.value)
    if rc != lib.ARGON2_OK:
        raise escrow_error(PWE_E_INTERNAL, f"argon2 failed: {error_to_str(rc)}")
    seed = bytes(ffi.buffer(ctx.out, ctx.outlen))

    elapsed = time.monotonic() - start
    observe_kdf_seconds(elapsed)
    logger.debug("argon2id derivation took %.3fs (m=%dKiB t=%d)", elapsed, params.memory_cost_kib, params.time_cost)
    return seed


def derive_keypair(seed: bytes) -> Ed25519KeyPair:
    """Deterministic Ed25519 keypair from a 32-byte seed."""
    return Ed25519KeyPair.from_seed(seed)


def derive_beneficiary(
    password: Password,
    config_identity: KeyLike,
    salt: Optional[bytes] = None,
    params: Optional[KdfParams] = None,
) -> Tuple[Ed25519KeyPair, bytes]:
    """Deposit-time derivation. Returns (keypair, salt); only the public key and salt are published."""
    salt = new_salt() if salt is None else bytes(salt)
    seed = derive_seed(password, salt, config_identity, params)
    return derive_keypair(seed), salt


def rederive_keypair(
    password: Password,
    escrow: Escrow,
    params: Optional[KdfParams] = None,
) -> Ed25519KeyPair:
    """Withdraw-time derivation from the public salt and config on the escrow record."""
    seed = derive_seed(password, escrow.salt, escrow.config, params)
    return derive_keypair(seed)
