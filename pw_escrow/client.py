"""
Off-ledger client for the password escrow.

Builds, signs and submits transactions, and runs the password derivation
locally so the password and the derived private key never leave the caller.

Typical flow:

    client = EscrowClient(protocol)
    escrow, salt = client.deposit(depositor, config, source, mint, 1_000_000, "correct horse")
    # ... later, anyone holding the password:
    client.withdraw(escrow, "correct horse", destination)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .crypto import Ed25519KeyPair, KeyLike, require_key
from .errors import PWE_E_NOT_FOUND, escrow_error
from .kdf import KdfParams, Password, derive_beneficiary, rederive_keypair
from .protocol import DEPOSIT, INITIALIZE_CONFIG, UPDATE_CONFIG, WITHDRAW, EscrowProtocol
from .records import Escrow, EscrowConfig
from .transaction import DEFAULT_TTL_SECONDS, Transaction

logger = logging.getLogger("pw_escrow.client")


class EscrowClient:
    def __init__(
        self,
        protocol: EscrowProtocol,
        *,
        kdf_params: Optional[KdfParams] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.protocol = protocol
        self.kdf_params = kdf_params or KdfParams.from_env()
        self.ttl_seconds = int(ttl_seconds)

    def _submit(self, instruction: str, args: Dict[str, Any], keypairs: List[Ed25519KeyPair]) -> Dict[str, Any]:
        tx = Transaction.build(
            instruction,
            args,
            [kp.public_key_bytes for kp in keypairs],
            ttl_seconds=self.ttl_seconds,
            program_id=self.protocol.ledger.program_id,
        )
        tx.sign(*keypairs)
        return self.protocol.submit(tx)

    # ---------------------------
    # Configuration
    # ---------------------------

    def create_config(
        self,
        payer: Ed25519KeyPair,
        authority: KeyLike,
        fee_recipient: KeyLike,
        fee_bps: int,
        *,
        config_keypair: Optional[Ed25519KeyPair] = None,
    ) -> bytes:
        """Initialize a new configuration. Returns its identity."""
        config_kp = config_keypair or Ed25519KeyPair.generate()
        result = self._submit(
            INITIALIZE_CONFIG,
            {
                "payer": payer.public_key_hex,
                "config": config_kp.public_key_hex,
                "authority": require_key(authority, "authority").hex(),
                "fee_recipient": require_key(fee_recipient, "fee_recipient").hex(),
                "fee_bps": fee_bps,
            },
            [payer, config_kp],
        )
        return bytes.fromhex(result["config"])

    def update_config(
        self,
        caller: Ed25519KeyPair,
        config: KeyLike,
        *,
        authority: Optional[KeyLike] = None,
        fee_recipient: Optional[KeyLike] = None,
        fee_bps: Optional[int] = None,
    ) -> EscrowConfig:
        args: Dict[str, Any] = {
            "config": require_key(config, "config").hex(),
            "caller": caller.public_key_hex,
        }
        if authority is not None:
            args["authority"] = require_key(authority, "authority").hex()
        if fee_recipient is not None:
            args["fee_recipient"] = require_key(fee_recipient, "fee_recipient").hex()
        if fee_bps is not None:
            args["fee_bps"] = fee_bps
        result = self._submit(UPDATE_CONFIG, args, [caller])
        return EscrowConfig(
            identity=bytes.fromhex(result["identity"]),
            authority=bytes.fromhex(result["authority"]),
            fee_recipient=bytes.fromhex(result["fee_recipient"]),
            fee_bps=int(result["fee_bps"]),
        )

    # ---------------------------
    # Deposit / withdraw
    # ---------------------------

    def deposit_for(
        self,
        depositor: Ed25519KeyPair,
        config: KeyLike,
        source: KeyLike,
        mint: KeyLike,
        amount: int,
        beneficiary: KeyLike,
        salt: bytes,
    ) -> bytes:
        """Deposit for an already-derived beneficiary public key. Returns the escrow address."""
        result = self._submit(
            DEPOSIT,
            {
                "config": require_key(config, "config").hex(),
                "depositor": depositor.public_key_hex,
                "source": require_key(source, "source").hex(),
                "mint": require_key(mint, "mint").hex(),
                "amount": amount,
                "salt": bytes(salt).hex(),
                "beneficiary": require_key(beneficiary, "beneficiary").hex(),
            },
            [depositor],
        )
        return bytes.fromhex(result["escrow"])

    def deposit(
        self,
        depositor: Ed25519KeyPair,
        config: KeyLike,
        source: KeyLike,
        mint: KeyLike,
        amount: int,
        password: Password,
    ) -> Tuple[bytes, bytes]:
        """Derive the beneficiary from `password` and deposit. Returns (escrow_address, salt)."""
        beneficiary, salt = derive_beneficiary(password, config, params=self.kdf_params)
        address = self.deposit_for(depositor, config, source, mint, amount, beneficiary.public_key_bytes, salt)
        return address, salt

    def claim_keypair(self, escrow_address: KeyLike, password: Password) -> Ed25519KeyPair:
        """Re-derive the beneficiary keypair from the escrow's public salt and config."""
        escrow = self.protocol.get_escrow(escrow_address)
        if escrow is None:
            raise escrow_error(PWE_E_NOT_FOUND, "escrow not found", escrow=require_key(escrow_address, "escrow").hex())
        return rederive_keypair(password, escrow, self.kdf_params)

    def withdraw_with_keypair(
        self,
        escrow_address: KeyLike,
        beneficiary: Ed25519KeyPair,
        destination: KeyLike,
    ) -> Dict[str, Any]:
        return self._submit(
            WITHDRAW,
            {
                "escrow": require_key(escrow_address, "escrow").hex(),
                "beneficiary": beneficiary.public_key_hex,
                "destination": require_key(destination, "destination").hex(),
            },
            [beneficiary],
        )

    def withdraw(self, escrow_address: KeyLike, password: Password, destination: KeyLike) -> Dict[str, Any]:
        """Claim the escrow with `password`. A wrong password is rejected as Unauthorized."""
        keypair = self.claim_keypair(escrow_address, password)
        return self.withdraw_with_keypair(escrow_address, keypair, destination)

    # ---------------------------
    # Reads
    # ---------------------------

    def get_config(self, config: KeyLike) -> Optional[EscrowConfig]:
        return self.protocol.get_config(config)

    def get_escrow(self, address: KeyLike) -> Optional[Escrow]:
        return self.protocol.get_escrow(address)

    def find(self, config: Optional[KeyLike] = None, depositor: Optional[KeyLike] = None) -> Iterator[Escrow]:
        return self.protocol.find_escrows(config=config, depositor=depositor)
