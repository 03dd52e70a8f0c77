"""
Escrow protocol: instruction handlers.

Each instruction is a signed `Transaction` executed atomically by the ledger.
Handlers only state which keys must have signed; the ledger has already
verified every declared signature before a handler runs.

Lifecycle per (beneficiary, config):

    absent --deposit--> deposited --withdraw--> absent

Deposit creates the record and vault and moves the tokens in. Withdraw moves
everything out (net to the destination, fee to the fee recipient), closes the
vault and the record, and refunds the remaining rent to the depositor. There
is no partial withdrawal and no top-up.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, Optional

from .address import derive_escrow_address, escrow_seeds, associated_token_address
from .crypto import KeyLike, require_key
from .errors import (
    EscrowError,
    PWE_E_INVALID_PARAMETER,
    PWE_E_MINT_MISMATCH,
    PWE_E_NOT_FOUND,
    PWE_E_UNAUTHORIZED,
    escrow_error,
)
from .kdf import SALT_LEN
from .ledger import Ledger, LedgerTxn
from .metrics import record_fee, record_instruction
from .records import MAX_FEE_BPS, U64_MAX, Escrow, EscrowConfig
from .registry import ConfigRegistry
from .store import EscrowStore
from .transaction import Transaction

logger = logging.getLogger("pw_escrow.protocol")

INITIALIZE_CONFIG = "initialize_config"
UPDATE_CONFIG = "update_config"
DEPOSIT = "deposit"
WITHDRAW = "withdraw"

Handler = Callable[[LedgerTxn, Transaction], Dict[str, Any]]


def compute_fee(amount: int, fee_bps: int) -> int:
    """Withdrawal fee in token units. Zero bps means no fee; rounding floors."""
    if fee_bps <= 0:
        return 0
    return (int(amount) * min(int(fee_bps), MAX_FEE_BPS)) // MAX_FEE_BPS


def _arg_key(args: Dict[str, Any], name: str) -> bytes:
    if args.get(name) is None:
        raise escrow_error(PWE_E_INVALID_PARAMETER, f"missing argument: {name}")
    return require_key(args[name], name)


def _opt_key(args: Dict[str, Any], name: str) -> Optional[bytes]:
    if args.get(name) is None:
        return None
    return require_key(args[name], name)


def _arg_amount(args: Dict[str, Any]) -> int:
    amount = args.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise escrow_error(PWE_E_INVALID_PARAMETER, "amount must be an integer")
    if amount <= 0:
        raise escrow_error(PWE_E_INVALID_PARAMETER, "amount must be greater than zero")
    if amount > U64_MAX:
        raise escrow_error(PWE_E_INVALID_PARAMETER, "amount exceeds u64")
    return amount


def _arg_salt(args: Dict[str, Any]) -> bytes:
    raw = args.get("salt")
    try:
        salt = bytes.fromhex(raw) if isinstance(raw, str) else bytes(raw)
    except (TypeError, ValueError):
        raise escrow_error(PWE_E_INVALID_PARAMETER, "salt must be hex or bytes")
    if len(salt) != SALT_LEN:
        raise escrow_error(PWE_E_INVALID_PARAMETER, f"salt must be {SALT_LEN} bytes", got=len(salt))
    return salt


class EscrowProtocol:
    """Dispatches signed transactions to instruction handlers on one ledger."""

    def __init__(
        self,
        ledger: Ledger,
        registry: Optional[ConfigRegistry] = None,
        store: Optional[EscrowStore] = None,
    ):
        self.ledger = ledger
        self.registry = registry or ConfigRegistry(ledger)
        self.store = store or EscrowStore(ledger)
        self._handlers: Dict[str, Handler] = {
            INITIALIZE_CONFIG: self._initialize_config,
            UPDATE_CONFIG: self._update_config,
            DEPOSIT: self._deposit,
            WITHDRAW: self._withdraw,
        }

    @property
    def instructions(self):
        return tuple(self._handlers)

    def submit(self, tx: Transaction) -> Dict[str, Any]:
        """Execute one signed transaction. Raises EscrowError; nothing is applied on failure."""
        handler = self._handlers.get(tx.instruction)
        if handler is None:
            record_instruction("unknown", PWE_E_INVALID_PARAMETER)
            raise escrow_error(PWE_E_INVALID_PARAMETER, f"unknown instruction: {tx.instruction}")
        try:
            result = self.ledger.execute(tx, handler)
        except EscrowError as e:
            record_instruction(tx.instruction, e.code)
            logger.warning("%s rejected (nonce=%s): %s", tx.instruction, tx.nonce[:16], e)
            raise
        record_instruction(tx.instruction, "ok")
        if tx.instruction == WITHDRAW:
            record_fee(int(result.get("fee", 0)))
        return result

    # ---------------------------
    # Reads
    # ---------------------------

    def get_config(self, identity: KeyLike) -> Optional[EscrowConfig]:
        return self.registry.get(identity)

    def get_escrow(self, address: KeyLike) -> Optional[Escrow]:
        return self.store.get(address)

    def find_escrows(self, config: Optional[KeyLike] = None, depositor: Optional[KeyLike] = None) -> Iterator[Escrow]:
        return self.store.find(config=config, depositor=depositor)

    # ---------------------------
    # Handlers
    # ---------------------------

    def _initialize_config(self, txn: LedgerTxn, tx: Transaction) -> Dict[str, Any]:
        args = tx.args
        cfg = self.registry.initialize(
            txn,
            payer=_arg_key(args, "payer"),
            identity=_arg_key(args, "config"),
            authority=_arg_key(args, "authority"),
            fee_recipient=_arg_key(args, "fee_recipient"),
            fee_bps=args.get("fee_bps"),
        )
        return {"config": cfg.identity.hex()}

    def _update_config(self, txn: LedgerTxn, tx: Transaction) -> Dict[str, Any]:
        args = tx.args
        cfg = self.registry.update(
            txn,
            _arg_key(args, "config"),
            _arg_key(args, "caller"),
            authority=_opt_key(args, "authority"),
            fee_recipient=_opt_key(args, "fee_recipient"),
            fee_bps=args.get("fee_bps"),
        )
        return cfg.to_dict()

    def _deposit(self, txn: LedgerTxn, tx: Transaction) -> Dict[str, Any]:
        args = tx.args
        config_id = _arg_key(args, "config")
        depositor = _arg_key(args, "depositor")
        source = _arg_key(args, "source")
        mint_key = _arg_key(args, "mint")
        beneficiary = _arg_key(args, "beneficiary")
        amount = _arg_amount(args)
        salt = _arg_salt(args)

        if not txn.signed_by(depositor):
            raise escrow_error(PWE_E_UNAUTHORIZED, "depositor must sign the deposit")
        if self.registry.load(txn, config_id) is None:
            raise escrow_error(PWE_E_NOT_FOUND, "config not found", config=config_id.hex())
        mint = txn.get_mint(mint_key)
        if mint is None:
            raise escrow_error(PWE_E_NOT_FOUND, "mint not found", mint=mint_key.hex())
        decimals = args.get("decimals", mint.decimals)

        address, bump = derive_escrow_address(beneficiary, config_id, self.ledger.program_id)
        escrow = Escrow(
            address=address,
            config=config_id,
            depositor=depositor,
            beneficiary=beneficiary,
            salt=salt,
            mint=mint_key,
            vault=associated_token_address(address, mint_key),
            amount=amount,
            bump=bump,
        )
        self.store.create(txn, depositor, escrow)
        txn.transfer_checked(source, mint_key, escrow.vault, amount, decimals, depositor)

        logger.info("deposit: escrow=%s amount=%d config=%s", address.hex(), amount, config_id.hex())
        return {"escrow": address.hex(), "vault": escrow.vault.hex(), "amount": amount, "salt": salt.hex()}

    def _withdraw(self, txn: LedgerTxn, tx: Transaction) -> Dict[str, Any]:
        args = tx.args
        address = _arg_key(args, "escrow")
        beneficiary = _arg_key(args, "beneficiary")
        destination = _arg_key(args, "destination")

        escrow = self.store.load(txn, address)
        if escrow is None:
            raise escrow_error(PWE_E_NOT_FOUND, "escrow not found", escrow=address.hex())
        if beneficiary != escrow.beneficiary or not txn.signed_by(beneficiary):
            raise escrow_error(PWE_E_UNAUTHORIZED, "withdrawal must be signed by the beneficiary", escrow=address.hex())
        if derive_escrow_address(escrow.beneficiary, escrow.config, self.ledger.program_id) != (escrow.address, escrow.bump):
            raise escrow_error(PWE_E_UNAUTHORIZED, "escrow address does not match its beneficiary", escrow=address.hex())

        dest = txn.get_token_account(destination)
        if dest is None:
            raise escrow_error(PWE_E_NOT_FOUND, "destination token account not found", destination=destination.hex())
        if dest.mint != escrow.mint:
            raise escrow_error(PWE_E_MINT_MISMATCH, "destination holds a different mint", destination=destination.hex())

        cfg = self.registry.load(txn, escrow.config)
        if cfg is None:
            raise escrow_error(PWE_E_NOT_FOUND, "config not found", config=escrow.config.hex())
        mint = txn.get_mint(escrow.mint)
        vault = txn.get_token_account(escrow.vault)
        if mint is None or vault is None:
            raise escrow_error(PWE_E_NOT_FOUND, "escrow vault or mint missing", escrow=address.hex())

        seeds = escrow_seeds(escrow.beneficiary, escrow.config) + [bytes([escrow.bump])]
        total = vault.amount
        fee = compute_fee(total, cfg.fee_bps)
        if fee > 0:
            # Fee account rent comes out of the rent released by this escrow.
            fee_account = txn.create_associated_token_account(
                escrow.address,
                cfg.fee_recipient,
                escrow.mint,
                payer_seeds=seeds,
                idempotent=True,
            )
            txn.transfer_checked(escrow.vault, escrow.mint, fee_account, fee, mint.decimals, escrow.address, signer_seeds=seeds)
        net = total - fee
        txn.transfer_checked(escrow.vault, escrow.mint, destination, net, mint.decimals, escrow.address, signer_seeds=seeds)
        refunded = self.store.delete(txn, escrow, seeds, escrow.depositor)

        logger.info("withdraw: escrow=%s net=%d fee=%d", address.hex(), net, fee)
        return {
            "escrow": address.hex(),
            "destination": destination.hex(),
            "amount": net,
            "fee": fee,
            "rent_refunded": refunded,
        }
