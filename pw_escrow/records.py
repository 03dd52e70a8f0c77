"""
Escrow account record types and their fixed binary layout.

The byte layout is a compatibility contract: external scanners select escrow
records by matching raw bytes at fixed offsets (config at 8, depositor at 40)
without decoding the rest. Do not reorder fields.

    EscrowConfig (80 bytes)             Escrow (193 bytes)
    0   discriminator   8               0   discriminator   8
    8   authority       32              8   config          32
    40  fee_recipient   32              40  depositor       32
    72  fee_bps (u64)   8               72  beneficiary     32
                                        104 salt            16
                                        120 mint            32
                                        152 vault           32
                                        184 amount (u64)    8
                                        192 bump (u8)       1

Integers are little-endian. The discriminator is sha256("account:<Name>")[:8].
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict

from .crypto import _sha256
from .errors import PWE_E_INVALID_PARAMETER, escrow_error


def account_discriminator(name: str) -> bytes:
    return _sha256(f"account:{name}".encode("utf-8"))[:8]


MAX_FEE_BPS = 10_000
U64_MAX = 2**64 - 1


@dataclass(frozen=True)
class EscrowConfig:
    """Per-deployment administrative parameters, stored at `identity`."""
    identity: bytes
    authority: bytes
    fee_recipient: bytes
    fee_bps: int

    DISCRIMINATOR = account_discriminator("EscrowConfig")
    _LAYOUT = struct.Struct("<8s32s32sQ")
    SIZE = _LAYOUT.size  # 80

    def encode(self) -> bytes:
        return self._LAYOUT.pack(self.DISCRIMINATOR, self.authority, self.fee_recipient, self.fee_bps)

    @classmethod
    def decode(cls, identity: bytes, data: bytes) -> "EscrowConfig":
        if len(data) != cls.SIZE or data[:8] != cls.DISCRIMINATOR:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "account is not an EscrowConfig", address=identity.hex())
        _disc, authority, fee_recipient, fee_bps = cls._LAYOUT.unpack(data)
        return cls(identity=identity, authority=authority, fee_recipient=fee_recipient, fee_bps=fee_bps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.hex(),
            "authority": self.authority.hex(),
            "fee_recipient": self.fee_recipient.hex(),
            "fee_bps": self.fee_bps,
        }


@dataclass(frozen=True)
class Escrow:
    """One outstanding password-claimable deposit, stored at `address`."""
    address: bytes
    config: bytes
    depositor: bytes
    beneficiary: bytes
    salt: bytes
    mint: bytes
    vault: bytes
    amount: int
    bump: int

    DISCRIMINATOR = account_discriminator("Escrow")
    _LAYOUT = struct.Struct("<8s32s32s32s16s32s32sQB")
    SIZE = _LAYOUT.size  # 193

    CONFIG_OFFSET = 8
    DEPOSITOR_OFFSET = 40

    def encode(self) -> bytes:
        return self._LAYOUT.pack(
            self.DISCRIMINATOR,
            self.config,
            self.depositor,
            self.beneficiary,
            self.salt,
            self.mint,
            self.vault,
            self.amount,
            self.bump,
        )

    @classmethod
    def decode(cls, address: bytes, data: bytes) -> "Escrow":
        if len(data) != cls.SIZE or data[:8] != cls.DISCRIMINATOR:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "account is not an Escrow", address=address.hex())
        (_disc, config, depositor, beneficiary, salt, mint, vault, amount, bump) = cls._LAYOUT.unpack(data)
        return cls(
            address=address,
            config=config,
            depositor=depositor,
            beneficiary=beneficiary,
            salt=salt,
            mint=mint,
            vault=vault,
            amount=amount,
            bump=bump,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address.hex(),
            "config": self.config.hex(),
            "depositor": self.depositor.hex(),
            "beneficiary": self.beneficiary.hex(),
            "salt": self.salt.hex(),
            "mint": self.mint.hex(),
            "vault": self.vault.hex(),
            "amount": self.amount,
            "bump": self.bump,
        }
