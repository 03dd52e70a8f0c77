"""Escrow configuration accounts.

A configuration lives at its own address (the public key of a fresh keypair
that co-signs initialization) and is owned by the escrow program. Its
identity never changes after creation, so every escrow address derived from
it stays valid across parameter updates.
"""

from __future__ import annotations

import logging
from typing import Optional

from .crypto import KeyLike, require_key
from .errors import (
    PWE_E_INVALID_PARAMETER,
    PWE_E_NOT_FOUND,
    PWE_E_UNAUTHORIZED,
    escrow_error,
)
from .ledger import Ledger, LedgerTxn
from .records import MAX_FEE_BPS, EscrowConfig

logger = logging.getLogger("pw_escrow.registry")


def validate_fee_bps(fee_bps) -> int:
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise escrow_error(PWE_E_INVALID_PARAMETER, "fee_bps must be an integer")
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise escrow_error(
            PWE_E_INVALID_PARAMETER,
            f"fee_bps must be in [0, {MAX_FEE_BPS}]",
            fee_bps=fee_bps,
        )
    return fee_bps


class ConfigRegistry:
    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self.program_id = ledger.program_id

    def load(self, txn: LedgerTxn, identity: KeyLike) -> Optional[EscrowConfig]:
        ident = require_key(identity, "config")
        acct = txn.get_account(ident)
        if acct is None or acct.owner != self.program_id:
            return None
        if acct.data[:8] != EscrowConfig.DISCRIMINATOR:
            return None
        return EscrowConfig.decode(ident, acct.data)

    def get(self, identity: KeyLike) -> Optional[EscrowConfig]:
        with self.ledger.read() as txn:
            return self.load(txn, identity)

    def initialize(
        self,
        txn: LedgerTxn,
        payer: KeyLike,
        identity: KeyLike,
        authority: KeyLike,
        fee_recipient: KeyLike,
        fee_bps: int,
    ) -> EscrowConfig:
        """Create the configuration account at `identity`.

        The identity keypair must co-sign so nobody can squat a configuration
        address they do not control. The payer covers rent.
        """
        cfg = EscrowConfig(
            identity=require_key(identity, "config"),
            authority=require_key(authority, "authority"),
            fee_recipient=require_key(fee_recipient, "fee_recipient"),
            fee_bps=validate_fee_bps(fee_bps),
        )
        if not txn.signed_by(cfg.identity):
            raise escrow_error(PWE_E_UNAUTHORIZED, "config keypair must sign initialization", config=cfg.identity.hex())
        txn.create_account(require_key(payer, "payer"), cfg.identity, self.program_id, cfg.encode())
        logger.info(
            "config initialized: %s authority=%s fee_bps=%d",
            cfg.identity.hex(),
            cfg.authority.hex(),
            cfg.fee_bps,
        )
        return cfg

    def update(
        self,
        txn: LedgerTxn,
        identity: KeyLike,
        caller: KeyLike,
        *,
        authority: Optional[KeyLike] = None,
        fee_recipient: Optional[KeyLike] = None,
        fee_bps: Optional[int] = None,
    ) -> EscrowConfig:
        """Replace any of authority / fee_recipient / fee_bps. Only the current authority may call."""
        current = self.load(txn, identity)
        if current is None:
            raise escrow_error(PWE_E_NOT_FOUND, "config not found", config=require_key(identity, "config").hex())
        caller_key = require_key(caller, "caller")
        if caller_key != current.authority or not txn.signed_by(caller_key):
            raise escrow_error(PWE_E_UNAUTHORIZED, "caller is not the config authority", config=current.identity.hex())

        updated = EscrowConfig(
            identity=current.identity,
            authority=require_key(authority, "authority") if authority is not None else current.authority,
            fee_recipient=(
                require_key(fee_recipient, "fee_recipient") if fee_recipient is not None else current.fee_recipient
            ),
            fee_bps=validate_fee_bps(fee_bps) if fee_bps is not None else current.fee_bps,
        )
        txn.write_account(updated.identity, self.program_id, updated.encode())
        if updated.authority != current.authority:
            logger.info("config %s authority rotated to %s", updated.identity.hex(), updated.authority.hex())
        logger.info("config updated: %s fee_bps=%d", updated.identity.hex(), updated.fee_bps)
        return updated
