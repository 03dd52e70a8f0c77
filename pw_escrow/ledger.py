"""
Reference ledger (SQLite-backed).

The escrow protocol treats the ledger as an external collaborator. This module
is the in-process implementation used by the client, the HTTP API, the CLI and
the tests. It provides exactly the facilities the protocol consumes:

- account storage addressed by 32-byte keys, with rent (storage deposit)
  charged on creation and refunded on closure
- fungible tokens: mints with decimals, token accounts, `transfer_checked`
- program-derived-address signing (`signer_seeds`)
- serialized transactions: every instruction runs inside one
  `BEGIN IMMEDIATE` SQLite transaction; any exception rolls the whole
  instruction back
- Ed25519 signature verification binding a transaction to its signers
  (the verifier is injected; default `transaction.verify_signer`)
- memcmp-style filtered scans over raw account bytes
- transaction expiry and duplicate-transaction rejection

Storage Properties:
- WAL mode so scans do not block writers
- secure_delete zeroes pages of closed accounts
- a circuit breaker trips into LOCKDOWN when storage degrades (fail-closed)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .address import (
    PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    associated_token_address,
    create_program_address,
)
from .crypto import Ed25519KeyPair, KeyLike, _now_utc, require_key
from .errors import (
    EscrowError,
    PWE_E_ALREADY_EXISTS,
    PWE_E_INSUFFICIENT_FUNDS,
    PWE_E_INTERNAL,
    PWE_E_INVALID_PARAMETER,
    PWE_E_MINT_MISMATCH,
    PWE_E_NOT_FOUND,
    PWE_E_TX_DUPLICATE,
    PWE_E_TX_EXPIRED,
    PWE_E_UNAUTHORIZED,
    escrow_error,
)
from .lockdown import DbCircuitBreaker
from .transaction import MAX_TTL_SECONDS, SignerVerifier, Transaction, verify_signer

logger = logging.getLogger("pw_escrow.ledger")

T = TypeVar("T")

# Rent: two years of storage at 3480 lamports/byte-year, plus fixed per-account overhead.
ACCOUNT_STORAGE_OVERHEAD = 128
LAMPORTS_PER_BYTE = 6960
TOKEN_ACCOUNT_SIZE = 165
MINT_SIZE = 82


def rent_exempt_minimum(data_len: int) -> int:
    return (ACCOUNT_STORAGE_OVERHEAD + int(data_len)) * LAMPORTS_PER_BYTE


def _utc_key(dt: datetime) -> str:
    # Fixed-width UTC text so timestamps compare correctly as strings.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _purge_processed(conn: sqlite3.Connection, now: datetime) -> int:
    cur = conn.execute("DELETE FROM processed_transactions WHERE valid_until_utc < ?", (_utc_key(now),))
    return int(cur.rowcount or 0)


@dataclass(frozen=True)
class Account:
    address: bytes
    owner: bytes
    data: bytes
    lamports: int


@dataclass(frozen=True)
class Mint:
    address: bytes
    decimals: int
    mint_authority: bytes
    supply: int


@dataclass(frozen=True)
class TokenAccount:
    address: bytes
    mint: bytes
    owner: bytes
    amount: int


# (offset, bytes) pairs matched against raw account data
MemcmpFilter = Tuple[int, bytes]


class LedgerTxn:
    """View of the ledger bound to one open SQLite transaction.

    `signers` holds the public keys whose signatures the ledger has already
    verified for this transaction.
    """

    def __init__(self, conn: sqlite3.Connection, signers: FrozenSet[bytes] = frozenset(), program_id: bytes = PROGRAM_ID):
        self.conn = conn
        self.signers = signers
        self.program_id = program_id

    # ---------------------------
    # Authorization
    # ---------------------------

    def signed_by(self, key: bytes) -> bool:
        return bytes(key) in self.signers

    def _authorized(self, authority: bytes, signer_seeds: Optional[Sequence[bytes]]) -> bool:
        if self.signed_by(authority):
            return True
        if signer_seeds is None:
            return False
        try:
            return create_program_address(signer_seeds, self.program_id) == bytes(authority)
        except EscrowError:
            return False

    def _require_authority(self, authority: bytes, signer_seeds: Optional[Sequence[bytes]], what: str) -> None:
        if not self._authorized(authority, signer_seeds):
            raise escrow_error(
                PWE_E_UNAUTHORIZED,
                f"missing signature for {what}",
                authority=bytes(authority).hex(),
            )

    def _address_in_use(self, address: bytes) -> bool:
        h = address.hex()
        for table in ("accounts", "token_accounts", "mints"):
            row = self.conn.execute(f"SELECT 1 FROM {table} WHERE address = ?", (h,)).fetchone()
            if row is not None:
                return True
        return False

    # ---------------------------
    # Lamports
    # ---------------------------

    def lamports(self, address: bytes) -> int:
        row = self.conn.execute("SELECT lamports FROM balances WHERE address = ?", (address.hex(),)).fetchone()
        return int(row[0]) if row else 0

    def credit_lamports(self, address: bytes, amount: int) -> None:
        if amount < 0:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "lamport amount must be non-negative")
        self.conn.execute(
            "INSERT INTO balances (address, lamports) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET lamports = lamports + excluded.lamports",
            (address.hex(), int(amount)),
        )

    def debit_lamports(self, address: bytes, amount: int) -> None:
        have = self.lamports(address)
        if have < amount:
            raise escrow_error(
                PWE_E_INSUFFICIENT_FUNDS,
                "insufficient lamports for rent",
                address=address.hex(),
                required=int(amount),
                available=have,
            )
        self.conn.execute("UPDATE balances SET lamports = lamports - ? WHERE address = ?", (int(amount), address.hex()))

    def _drain_lamports(self, address: bytes, destination: bytes) -> int:
        amount = self.lamports(address)
        self.conn.execute("DELETE FROM balances WHERE address = ?", (address.hex(),))
        if amount:
            self.credit_lamports(destination, amount)
        return amount

    def _pay_rent(
        self,
        payer: bytes,
        address: bytes,
        data_len: int,
        payer_seeds: Optional[Sequence[bytes]],
    ) -> None:
        self._require_authority(payer, payer_seeds, "rent payer")
        rent = rent_exempt_minimum(data_len)
        self.debit_lamports(payer, rent)
        self.credit_lamports(address, rent)

    # ---------------------------
    # Program accounts
    # ---------------------------

    def get_account(self, address: bytes) -> Optional[Account]:
        row = self.conn.execute("SELECT owner, data FROM accounts WHERE address = ?", (address.hex(),)).fetchone()
        if row is None:
            return None
        return Account(
            address=bytes(address),
            owner=bytes.fromhex(row[0]),
            data=bytes(row[1]),
            lamports=self.lamports(address),
        )

    def create_account(
        self,
        payer: bytes,
        address: bytes,
        owner: bytes,
        data: bytes,
        *,
        payer_seeds: Optional[Sequence[bytes]] = None,
    ) -> None:
        """Allocate a program account at `address`. Fails if the address is already in use."""
        if self._address_in_use(address):
            raise escrow_error(PWE_E_ALREADY_EXISTS, "account already in use", address=address.hex())
        self._pay_rent(payer, address, len(data), payer_seeds)
        self.conn.execute(
            "INSERT INTO accounts (address, owner, data, created_at_utc) VALUES (?, ?, ?, ?)",
            (address.hex(), owner.hex(), sqlite3.Binary(bytes(data)), _now_utc().isoformat()),
        )

    def write_account(self, address: bytes, owner: bytes, data: bytes) -> None:
        """Overwrite account data; only the owning program may write, and size is fixed."""
        acct = self.get_account(address)
        if acct is None:
            raise escrow_error(PWE_E_NOT_FOUND, "account not found", address=address.hex())
        if acct.owner != owner:
            raise escrow_error(PWE_E_UNAUTHORIZED, "account is owned by another program", address=address.hex())
        if len(data) != len(acct.data):
            raise escrow_error(PWE_E_INVALID_PARAMETER, "account size is fixed", address=address.hex())
        self.conn.execute("UPDATE accounts SET data = ? WHERE address = ?", (sqlite3.Binary(bytes(data)), address.hex()))

    def close_account(self, address: bytes, owner: bytes, destination: bytes) -> int:
        """Delete a program account and move its lamports to `destination`. Returns lamports moved."""
        acct = self.get_account(address)
        if acct is None:
            raise escrow_error(PWE_E_NOT_FOUND, "account not found", address=address.hex())
        if acct.owner != owner:
            raise escrow_error(PWE_E_UNAUTHORIZED, "account is owned by another program", address=address.hex())
        self.conn.execute("DELETE FROM accounts WHERE address = ?", (address.hex(),))
        return self._drain_lamports(address, destination)

    def scan(
        self,
        owner: bytes,
        filters: Iterable[MemcmpFilter] = (),
        *,
        data_size: Optional[int] = None,
    ) -> List[Tuple[bytes, bytes]]:
        """Return (address, data) of accounts owned by `owner` whose raw bytes match every filter.

        Matching happens inside SQLite on the stored bytes; nothing is decoded.
        """
        sql = "SELECT address, data FROM accounts WHERE owner = ?"
        params: List[object] = [owner.hex()]
        if data_size is not None:
            sql += " AND length(data) = ?"
            params.append(int(data_size))
        for offset, pattern in filters:
            pattern = bytes(pattern)
            sql += " AND substr(data, ?, ?) = ?"
            params.extend([int(offset) + 1, len(pattern), sqlite3.Binary(pattern)])
        sql += " ORDER BY created_at_utc, address"
        rows = self.conn.execute(sql, params).fetchall()
        return [(bytes.fromhex(a), bytes(d)) for a, d in rows]

    # ---------------------------
    # Tokens
    # ---------------------------

    def get_mint(self, address: bytes) -> Optional[Mint]:
        row = self.conn.execute(
            "SELECT decimals, mint_authority, supply FROM mints WHERE address = ?",
            (address.hex(),),
        ).fetchone()
        if row is None:
            return None
        return Mint(address=bytes(address), decimals=int(row[0]), mint_authority=bytes.fromhex(row[1]), supply=int(row[2]))

    def create_mint(self, payer: bytes, address: bytes, mint_authority: bytes, decimals: int) -> None:
        if not 0 <= int(decimals) <= 18:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "decimals must be in [0, 18]")
        if self._address_in_use(address):
            raise escrow_error(PWE_E_ALREADY_EXISTS, "mint address already in use", address=address.hex())
        self._pay_rent(payer, address, MINT_SIZE, None)
        self.conn.execute(
            "INSERT INTO mints (address, decimals, mint_authority, supply) VALUES (?, ?, ?, 0)",
            (address.hex(), int(decimals), mint_authority.hex()),
        )

    def get_token_account(self, address: bytes) -> Optional[TokenAccount]:
        row = self.conn.execute(
            "SELECT mint, owner, amount FROM token_accounts WHERE address = ?",
            (address.hex(),),
        ).fetchone()
        if row is None:
            return None
        return TokenAccount(address=bytes(address), mint=bytes.fromhex(row[0]), owner=bytes.fromhex(row[1]), amount=int(row[2]))

    def create_token_account(
        self,
        payer: bytes,
        address: bytes,
        mint: bytes,
        owner: bytes,
        *,
        payer_seeds: Optional[Sequence[bytes]] = None,
    ) -> None:
        if self.get_mint(mint) is None:
            raise escrow_error(PWE_E_NOT_FOUND, "mint not found", mint=mint.hex())
        if self._address_in_use(address):
            raise escrow_error(PWE_E_ALREADY_EXISTS, "token account address already in use", address=address.hex())
        self._pay_rent(payer, address, TOKEN_ACCOUNT_SIZE, payer_seeds)
        self.conn.execute(
            "INSERT INTO token_accounts (address, mint, owner, amount) VALUES (?, ?, ?, 0)",
            (address.hex(), mint.hex(), owner.hex()),
        )

    def create_associated_token_account(
        self,
        payer: bytes,
        owner: bytes,
        mint: bytes,
        *,
        payer_seeds: Optional[Sequence[bytes]] = None,
        idempotent: bool = False,
    ) -> bytes:
        """Create the canonical (owner, mint) token account. Returns its address."""
        address = associated_token_address(owner, mint)
        existing = self.get_token_account(address)
        if existing is not None and idempotent:
            if existing.owner != bytes(owner) or existing.mint != bytes(mint):
                raise escrow_error(PWE_E_INVALID_PARAMETER, "associated token account has unexpected owner/mint")
            return address
        self.create_token_account(payer, address, mint, owner, payer_seeds=payer_seeds)
        return address

    def mint_to(self, mint: bytes, destination: bytes, amount: int, authority: bytes) -> None:
        m = self.get_mint(mint)
        if m is None:
            raise escrow_error(PWE_E_NOT_FOUND, "mint not found", mint=mint.hex())
        if m.mint_authority != bytes(authority):
            raise escrow_error(PWE_E_UNAUTHORIZED, "not the mint authority", mint=mint.hex())
        self._require_authority(authority, None, "mint authority")
        dst = self.get_token_account(destination)
        if dst is None:
            raise escrow_error(PWE_E_NOT_FOUND, "token account not found", address=destination.hex())
        if dst.mint != m.address:
            raise escrow_error(PWE_E_MINT_MISMATCH, "destination holds a different mint", address=destination.hex())
        if amount <= 0:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "amount must be greater than zero")
        self.conn.execute("UPDATE mints SET supply = supply + ? WHERE address = ?", (int(amount), mint.hex()))
        self.conn.execute("UPDATE token_accounts SET amount = amount + ? WHERE address = ?", (int(amount), destination.hex()))

    def transfer_checked(
        self,
        source: bytes,
        mint: bytes,
        destination: bytes,
        amount: int,
        decimals: int,
        authority: bytes,
        *,
        signer_seeds: Optional[Sequence[bytes]] = None,
    ) -> None:
        """Atomic token transfer with mint and decimals checks.

        Raises NotFound (accounts/mint), MintMismatch, InvalidParameter
        (decimals, negative amount), Unauthorized (authority is not the
        source owner or did not sign), InsufficientFunds.
        """
        if int(amount) < 0:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "amount must be non-negative")
        m = self.get_mint(mint)
        if m is None:
            raise escrow_error(PWE_E_NOT_FOUND, "mint not found", mint=mint.hex())
        src = self.get_token_account(source)
        if src is None:
            raise escrow_error(PWE_E_NOT_FOUND, "source token account not found", address=source.hex())
        dst = self.get_token_account(destination)
        if dst is None:
            raise escrow_error(PWE_E_NOT_FOUND, "destination token account not found", address=destination.hex())
        if src.mint != m.address:
            raise escrow_error(PWE_E_MINT_MISMATCH, "source holds a different mint", address=source.hex())
        if dst.mint != m.address:
            raise escrow_error(PWE_E_MINT_MISMATCH, "destination holds a different mint", address=destination.hex())
        if int(decimals) != m.decimals:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "decimals mismatch", expected=m.decimals, got=int(decimals))
        if src.owner != bytes(authority):
            raise escrow_error(PWE_E_UNAUTHORIZED, "authority does not own the source account", address=source.hex())
        self._require_authority(authority, signer_seeds, "token transfer")
        if src.amount < int(amount):
            raise escrow_error(
                PWE_E_INSUFFICIENT_FUNDS,
                "insufficient token balance",
                address=source.hex(),
                required=int(amount),
                available=src.amount,
            )
        if source == destination or int(amount) == 0:
            return
        self.conn.execute("UPDATE token_accounts SET amount = amount - ? WHERE address = ?", (int(amount), source.hex()))
        self.conn.execute("UPDATE token_accounts SET amount = amount + ? WHERE address = ?", (int(amount), destination.hex()))

    def close_token_account(
        self,
        address: bytes,
        destination: bytes,
        authority: bytes,
        *,
        signer_seeds: Optional[Sequence[bytes]] = None,
    ) -> int:
        """Close an empty token account, refunding its rent to `destination`."""
        acct = self.get_token_account(address)
        if acct is None:
            raise escrow_error(PWE_E_NOT_FOUND, "token account not found", address=address.hex())
        if acct.owner != bytes(authority):
            raise escrow_error(PWE_E_UNAUTHORIZED, "authority does not own the token account", address=address.hex())
        self._require_authority(authority, signer_seeds, "token account close")
        if acct.amount != 0:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "cannot close a token account with a balance", address=address.hex())
        self.conn.execute("DELETE FROM token_accounts WHERE address = ?", (address.hex(),))
        return self._drain_lamports(address, destination)


class Ledger:
    """SQLite-backed ledger with serialized, all-or-nothing transactions."""

    def __init__(
        self,
        db_path: str = "pw_escrow_ledger.db",
        *,
        program_id: bytes = PROGRAM_ID,
        verifier: SignerVerifier = verify_signer,
        circuit: Optional[DbCircuitBreaker] = None,
        max_ttl_seconds: int = MAX_TTL_SECONDS,
    ):
        self.db_path = str(db_path)
        self.program_id = bytes(program_id)
        self.verifier = verifier
        self.circuit = circuit or DbCircuitBreaker()
        self.max_ttl_seconds = int(max_ttl_seconds)
        self._init_db()

    @contextmanager
    def _db(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """DB connection wrapper with circuit breaker (fail-closed).

        Connections run in autocommit mode; callers that write open an
        explicit BEGIN IMMEDIATE (see `_write`).
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            try:
                yield conn
            finally:
                conn.close()
        except sqlite3.OperationalError as e:
            if self.circuit.is_degradation(str(e)):
                self.circuit.record_failure(e)
            raise escrow_error(PWE_E_INTERNAL, f"ledger storage error during {op_name}: {e}") from e
        self.circuit.record_latency((time.monotonic() - start) * 1000.0)

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA secure_delete = ON")
            conn.execute("PRAGMA synchronous = FULL")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                lamports INTEGER NOT NULL CHECK (lamports >= 0)
            )
            """)

            # Program-owned accounts (escrow configs, escrow records)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                address TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                data BLOB NOT NULL,
                created_at_utc TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_owner ON accounts (owner)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS mints (
                address TEXT PRIMARY KEY,
                decimals INTEGER NOT NULL,
                mint_authority TEXT NOT NULL,
                supply INTEGER NOT NULL DEFAULT 0
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS token_accounts (
                address TEXT PRIMARY KEY,
                mint TEXT NOT NULL,
                owner TEXT NOT NULL,
                amount INTEGER NOT NULL DEFAULT 0 CHECK (amount >= 0)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS processed_transactions (
                tx_id TEXT PRIMARY KEY,
                instruction TEXT NOT NULL,
                processed_at_utc TEXT NOT NULL,
                valid_until_utc TEXT NOT NULL
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_valid_until ON processed_transactions (valid_until_utc)"
            )

    @contextmanager
    def _write(self, op_name: str, signers: FrozenSet[bytes] = frozenset()) -> Iterator[LedgerTxn]:
        """One serialized write transaction. Commits on success, rolls back on any exception."""
        with self._db(op_name) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield LedgerTxn(conn, signers, self.program_id)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def read(self) -> Iterator[LedgerTxn]:
        """Read-only view (each statement sees the latest committed state)."""
        with self._db("read") as conn:
            yield LedgerTxn(conn, frozenset(), self.program_id)

    def execute(self, tx: Transaction, handler: Callable[[LedgerTxn, Transaction], T]) -> T:
        """Verify and run one transaction atomically.

        Order of checks: program id, expiry and validity window, every
        declared signature, then duplicate detection and the handler inside
        BEGIN IMMEDIATE. Replay records that have expired are purged in the
        same write transaction.
        """
        if tx.program_id != self.program_id.hex():
            raise escrow_error(PWE_E_INVALID_PARAMETER, "transaction targets another program", program_id=tx.program_id)
        now = _now_utc()
        if tx.is_expired(now):
            raise escrow_error(PWE_E_TX_EXPIRED, "transaction expired", valid_until_utc=tx.valid_until_utc)
        valid_until = tx.expires_at()
        if valid_until - now > timedelta(seconds=self.max_ttl_seconds):
            raise escrow_error(
                PWE_E_INVALID_PARAMETER,
                f"transaction validity window exceeds {self.max_ttl_seconds}s",
                valid_until_utc=tx.valid_until_utc,
            )

        signers = []
        for h in tx.signers:
            key = require_key(h, "signer")
            if not self.verifier(key, tx):
                raise escrow_error(PWE_E_UNAUTHORIZED, "missing or invalid signature", signer=h)
            signers.append(key)

        with self._write(tx.instruction, frozenset(signers)) as txn:
            _purge_processed(txn.conn, now)
            try:
                txn.conn.execute(
                    "INSERT INTO processed_transactions (tx_id, instruction, processed_at_utc, valid_until_utc) "
                    "VALUES (?, ?, ?, ?)",
                    (tx.tx_id, tx.instruction, _utc_key(now), _utc_key(valid_until)),
                )
            except sqlite3.IntegrityError:
                raise escrow_error(PWE_E_TX_DUPLICATE, "transaction already processed", tx_id=tx.tx_id)
            return handler(txn, tx)

    def purge_expired_transactions(self, now: Optional[datetime] = None) -> int:
        """Delete replay records whose transactions have expired. Returns number of rows deleted."""
        with self._write("purge") as txn:
            return _purge_processed(txn.conn, now or _now_utc())

    # ---------------------------
    # Queries
    # ---------------------------

    def get_account(self, address: KeyLike) -> Optional[Account]:
        with self.read() as txn:
            return txn.get_account(require_key(address, "address"))

    def get_token_account(self, address: KeyLike) -> Optional[TokenAccount]:
        with self.read() as txn:
            return txn.get_token_account(require_key(address, "address"))

    def get_mint(self, address: KeyLike) -> Optional[Mint]:
        with self.read() as txn:
            return txn.get_mint(require_key(address, "address"))

    def token_balance(self, address: KeyLike) -> int:
        acct = self.get_token_account(address)
        if acct is None:
            raise escrow_error(PWE_E_NOT_FOUND, "token account not found", address=str(address))
        return acct.amount

    def lamports(self, address: KeyLike) -> int:
        with self.read() as txn:
            return txn.lamports(require_key(address, "address"))

    def scan(
        self,
        owner: KeyLike,
        filters: Iterable[MemcmpFilter] = (),
        *,
        data_size: Optional[int] = None,
    ) -> List[Tuple[bytes, bytes]]:
        with self.read() as txn:
            return txn.scan(require_key(owner, "owner"), filters, data_size=data_size)

    # ---------------------------
    # Local administration (faucet / token setup; no signatures)
    # ---------------------------

    def airdrop(self, address: KeyLike, lamports: int) -> int:
        addr = require_key(address, "address")
        if int(lamports) <= 0:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "airdrop amount must be positive")
        with self._write("airdrop") as txn:
            txn.credit_lamports(addr, int(lamports))
            return txn.lamports(addr)

    def create_mint(self, mint_authority: KeyLike, decimals: int = 6, *, payer: Optional[KeyLike] = None) -> bytes:
        """Create a new mint at a fresh random address. Returns the mint address."""
        authority = require_key(mint_authority, "mint_authority")
        payer_key = require_key(payer, "payer") if payer is not None else authority
        mint = Ed25519KeyPair.generate().public_key_bytes
        with self._write("create_mint", frozenset({payer_key})) as txn:
            txn.create_mint(payer_key, mint, authority, decimals)
        logger.info("created mint %s (decimals=%d)", mint.hex(), decimals)
        return mint

    def create_token_account(self, owner: KeyLike, mint: KeyLike, *, payer: Optional[KeyLike] = None) -> bytes:
        """Create (or return) the associated token account of `owner` for `mint`."""
        owner_key = require_key(owner, "owner")
        mint_key = require_key(mint, "mint")
        payer_key = require_key(payer, "payer") if payer is not None else owner_key
        with self._write("create_token_account", frozenset({payer_key})) as txn:
            return txn.create_associated_token_account(payer_key, owner_key, mint_key, idempotent=True)

    def mint_to(self, mint: KeyLike, destination: KeyLike, amount: int) -> int:
        mint_key = require_key(mint, "mint")
        dst = require_key(destination, "destination")
        with self._write("mint_to") as txn:
            m = txn.get_mint(mint_key)
            if m is None:
                raise escrow_error(PWE_E_NOT_FOUND, "mint not found", mint=mint_key.hex())
            admin = LedgerTxn(txn.conn, frozenset({m.mint_authority}), self.program_id)
            admin.mint_to(mint_key, dst, int(amount), m.mint_authority)
            acct = admin.get_token_account(dst)
            return acct.amount if acct else 0


__all__ = [
    "ACCOUNT_STORAGE_OVERHEAD",
    "LAMPORTS_PER_BYTE",
    "TOKEN_ACCOUNT_SIZE",
    "TOKEN_PROGRAM_ID",
    "SYSTEM_PROGRAM_ID",
    "Account",
    "Ledger",
    "LedgerTxn",
    "Mint",
    "TokenAccount",
    "rent_exempt_minimum",
]
