"""Escrow record persistence.

Each escrow is two ledger accounts created and destroyed together:
the record (owned by the escrow program, at the derived escrow address) and
its vault (the token account owned by that address).
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Sequence

from .crypto import KeyLike, require_key
from .ledger import Ledger, LedgerTxn, MemcmpFilter
from .records import Escrow


class EscrowStore:
    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self.program_id = ledger.program_id

    def create(self, txn: LedgerTxn, payer: bytes, escrow: Escrow) -> Escrow:
        """Create the record and the empty vault. AlreadyExists if the address is live."""
        txn.create_account(payer, escrow.address, self.program_id, escrow.encode())
        txn.create_token_account(payer, escrow.vault, escrow.mint, escrow.address)
        return escrow

    def load(self, txn: LedgerTxn, address: KeyLike) -> Optional[Escrow]:
        addr = require_key(address, "escrow")
        acct = txn.get_account(addr)
        if acct is None or acct.owner != self.program_id:
            return None
        if acct.data[:8] != Escrow.DISCRIMINATOR:
            return None
        return Escrow.decode(addr, acct.data)

    def get(self, address: KeyLike) -> Optional[Escrow]:
        with self.ledger.read() as txn:
            return self.load(txn, address)

    def find(self, config: Optional[KeyLike] = None, depositor: Optional[KeyLike] = None) -> Iterator[Escrow]:
        """Escrows matching the given config and/or depositor.

        Matching runs on raw bytes at fixed offsets inside the ledger. The
        matching rows are captured when `find` is called; decoding is lazy.
        The result is a point-in-time view: re-fetch by address before acting.
        """
        filters: List[MemcmpFilter] = [(0, Escrow.DISCRIMINATOR)]
        if config is not None:
            filters.append((Escrow.CONFIG_OFFSET, require_key(config, "config")))
        if depositor is not None:
            filters.append((Escrow.DEPOSITOR_OFFSET, require_key(depositor, "depositor")))
        rows = self.ledger.scan(self.program_id, filters, data_size=Escrow.SIZE)
        return (Escrow.decode(address, data) for address, data in rows)

    def delete(
        self,
        txn: LedgerTxn,
        escrow: Escrow,
        signer_seeds: Sequence[bytes],
        rent_destination: bytes,
    ) -> int:
        """Close the (empty) vault and the record. Returns lamports refunded."""
        refunded = txn.close_token_account(escrow.vault, rent_destination, escrow.address, signer_seeds=signer_seeds)
        refunded += txn.close_account(escrow.address, self.program_id, rent_destination)
        return refunded
