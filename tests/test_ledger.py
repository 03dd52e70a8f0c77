import sqlite3
from datetime import timedelta

import pytest

from pw_escrow.address import ESCROW_SEED, PROGRAM_ID, find_program_address
from pw_escrow.crypto import Ed25519KeyPair, _now_utc
from pw_escrow.errors import (
    EscrowError,
    PWE_E_ALREADY_EXISTS,
    PWE_E_INSUFFICIENT_FUNDS,
    PWE_E_INVALID_PARAMETER,
    PWE_E_LOCKDOWN_ACTIVE,
    PWE_E_MINT_MISMATCH,
    PWE_E_TX_DUPLICATE,
    PWE_E_TX_EXPIRED,
    PWE_E_UNAUTHORIZED,
)
from pw_escrow.ledger import Ledger, TOKEN_ACCOUNT_SIZE, rent_exempt_minimum
from pw_escrow.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from pw_escrow.transaction import Transaction

from conftest import SOL, make_ledger


def _funded(ledger):
    kp = Ed25519KeyPair.generate()
    ledger.airdrop(kp.public_key_bytes, 10 * SOL)
    return kp


def test_rent_formula():
    assert rent_exempt_minimum(0) == 128 * 6960
    assert rent_exempt_minimum(TOKEN_ACCOUNT_SIZE) == 2_039_280


def test_token_setup_and_transfer_checked(tmp_path):
    ledger = make_ledger(tmp_path)
    alice, bob = _funded(ledger), _funded(ledger)
    mint = ledger.create_mint(alice.public_key_bytes, decimals=2)
    a = ledger.create_token_account(alice.public_key_bytes, mint)
    b = ledger.create_token_account(bob.public_key_bytes, mint)
    assert ledger.mint_to(mint, a, 500) == 500
    assert ledger.lamports(alice.public_key_bytes) == 10 * SOL - rent_exempt_minimum(82) - rent_exempt_minimum(165)

    with ledger._write("t", frozenset({alice.public_key_bytes})) as txn:
        txn.transfer_checked(a, mint, b, 200, 2, alice.public_key_bytes)
    assert ledger.token_balance(a) == 300
    assert ledger.token_balance(b) == 200


def test_transfer_checked_failures_roll_back(tmp_path):
    ledger = make_ledger(tmp_path)
    alice, bob = _funded(ledger), _funded(ledger)
    mint = ledger.create_mint(alice.public_key_bytes, decimals=0)
    other_mint = ledger.create_mint(alice.public_key_bytes, decimals=0)
    a = ledger.create_token_account(alice.public_key_bytes, mint)
    b = ledger.create_token_account(bob.public_key_bytes, mint)
    c = ledger.create_token_account(bob.public_key_bytes, other_mint)
    ledger.mint_to(mint, a, 10)

    cases = [
        (dict(destination=c), PWE_E_MINT_MISMATCH),
        (dict(amount=11), PWE_E_INSUFFICIENT_FUNDS),
        (dict(decimals=3), PWE_E_INVALID_PARAMETER),
        (dict(signers=frozenset()), PWE_E_UNAUTHORIZED),
        (dict(authority=bob.public_key_bytes, signers=frozenset({bob.public_key_bytes})), PWE_E_UNAUTHORIZED),
    ]
    for override, code in cases:
        kw = dict(
            destination=b,
            amount=5,
            decimals=0,
            authority=alice.public_key_bytes,
            signers=frozenset({alice.public_key_bytes}),
        )
        kw.update(override)
        with pytest.raises(EscrowError) as ei:
            with ledger._write("t", kw.pop("signers")) as txn:
                txn.transfer_checked(a, mint, kw["destination"], kw["amount"], kw["decimals"], kw["authority"])
        assert ei.value.code == code
    assert ledger.token_balance(a) == 10


def test_program_derived_signing(tmp_path):
    ledger = make_ledger(tmp_path)
    alice = _funded(ledger)
    mint = ledger.create_mint(alice.public_key_bytes, decimals=0)
    seeds = [ESCROW_SEED, b"\x01" * 32]
    pda, bump = find_program_address(seeds, PROGRAM_ID)
    ledger.airdrop(pda, SOL)
    pda_account = ledger.create_token_account(pda, mint, payer=alice.public_key_bytes)
    dest = ledger.create_token_account(alice.public_key_bytes, mint)
    ledger.mint_to(mint, pda_account, 7)

    with pytest.raises(EscrowError) as ei:
        with ledger._write("t") as txn:
            txn.transfer_checked(pda_account, mint, dest, 7, 0, pda, signer_seeds=seeds + [bytes([(bump + 1) % 256])])
    assert ei.value.code == PWE_E_UNAUTHORIZED

    with ledger._write("t") as txn:
        txn.transfer_checked(pda_account, mint, dest, 7, 0, pda, signer_seeds=seeds + [bytes([bump])])
        refunded = txn.close_token_account(pda_account, alice.public_key_bytes, pda, signer_seeds=seeds + [bytes([bump])])
    assert refunded == rent_exempt_minimum(TOKEN_ACCOUNT_SIZE)
    assert ledger.token_balance(dest) == 7
    assert ledger.get_token_account(pda_account) is None


def test_create_account_twice_fails_and_requires_rent(tmp_path):
    ledger = make_ledger(tmp_path)
    payer = _funded(ledger)
    poor = Ed25519KeyPair.generate()
    address = Ed25519KeyPair.generate().public_key_bytes

    with ledger._write("t", frozenset({payer.public_key_bytes})) as txn:
        txn.create_account(payer.public_key_bytes, address, PROGRAM_ID, b"\x00" * 10)
    with pytest.raises(EscrowError) as ei:
        with ledger._write("t", frozenset({payer.public_key_bytes})) as txn:
            txn.create_account(payer.public_key_bytes, address, PROGRAM_ID, b"\x00" * 10)
    assert ei.value.code == PWE_E_ALREADY_EXISTS

    with pytest.raises(EscrowError) as ei:
        with ledger._write("t", frozenset({poor.public_key_bytes})) as txn:
            txn.create_account(poor.public_key_bytes, b"\x05" * 32, PROGRAM_ID, b"\x00")
    assert ei.value.code == PWE_E_INSUFFICIENT_FUNDS


def test_scan_matches_raw_bytes(tmp_path):
    ledger = make_ledger(tmp_path)
    payer = _funded(ledger)
    rows = {
        b"\x01" * 32: b"AAAA" + b"x" * 4,
        b"\x02" * 32: b"AAAA" + b"y" * 4,
        b"\x03" * 32: b"BBBB" + b"x" * 4,
    }
    with ledger._write("t", frozenset({payer.public_key_bytes})) as txn:
        for addr, data in rows.items():
            txn.create_account(payer.public_key_bytes, addr, PROGRAM_ID, data)

    hits = ledger.scan(PROGRAM_ID, [(0, b"AAAA")])
    assert {a for a, _ in hits} == {b"\x01" * 32, b"\x02" * 32}
    hits = ledger.scan(PROGRAM_ID, [(0, b"AAAA"), (4, b"xx")])
    assert [a for a, _ in hits] == [b"\x01" * 32]
    assert ledger.scan(PROGRAM_ID, [(0, b"AAAA")], data_size=9) == []
    assert ledger.scan(payer.public_key_bytes) == []


def test_execute_checks_signatures_expiry_and_replay(tmp_path):
    ledger = make_ledger(tmp_path)
    kp = Ed25519KeyPair.generate()
    calls = []

    def handler(txn, tx):
        calls.append(tx.tx_id)
        return "ok"

    unsigned = Transaction.build("noop", {}, [kp.public_key_bytes])
    with pytest.raises(EscrowError) as ei:
        ledger.execute(unsigned, handler)
    assert ei.value.code == PWE_E_UNAUTHORIZED

    tx = Transaction.build("noop", {}, [kp.public_key_bytes]).sign(kp)
    assert ledger.execute(tx, handler) == "ok"
    with pytest.raises(EscrowError) as ei:
        ledger.execute(tx, handler)
    assert ei.value.code == PWE_E_TX_DUPLICATE

    expired = Transaction.build("noop", {}, [kp.public_key_bytes], ttl_seconds=-1).sign(kp)
    with pytest.raises(EscrowError) as ei:
        ledger.execute(expired, handler)
    assert ei.value.code == PWE_E_TX_EXPIRED
    assert ei.value.retryable

    foreign = Transaction.build("noop", {}, [kp.public_key_bytes], program_id=b"\x09" * 32).sign(kp)
    with pytest.raises(EscrowError) as ei:
        ledger.execute(foreign, handler)
    assert ei.value.code == PWE_E_INVALID_PARAMETER

    assert calls == [tx.tx_id]


def test_injected_verifier_decides_authorization(tmp_path):
    seen = []

    def deny_all(signer, tx):
        seen.append(signer)
        return False

    ledger = Ledger(str(tmp_path / "l.db"), verifier=deny_all, circuit=DbCircuitBreaker(CircuitBreakerConfig()))
    kp = Ed25519KeyPair.generate()
    tx = Transaction.build("noop", {}, [kp.public_key_bytes]).sign(kp)
    with pytest.raises(EscrowError) as ei:
        ledger.execute(tx, lambda txn, t: None)
    assert ei.value.code == PWE_E_UNAUTHORIZED
    assert seen == [kp.public_key_bytes]


def test_handler_failure_rolls_back_everything(tmp_path):
    ledger = make_ledger(tmp_path)
    kp = Ed25519KeyPair.generate()
    target = b"\x07" * 32

    def handler(txn, tx):
        txn.credit_lamports(target, 123)
        raise EscrowError(code=PWE_E_INVALID_PARAMETER, message="boom")

    tx = Transaction.build("noop", {}, [kp.public_key_bytes]).sign(kp)
    with pytest.raises(EscrowError):
        ledger.execute(tx, handler)
    assert ledger.lamports(target) == 0

    # A rolled-back transaction is not recorded as processed.
    assert ledger.execute(tx, lambda txn, t: "second") == "second"


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    cfg = CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60, connect_timeout_seconds=0.01)
    ledger = Ledger(str(tmp_path / "l.db"), circuit=DbCircuitBreaker(cfg))

    import pw_escrow.ledger as ledger_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ledger_mod.sqlite3, "connect", _boom)

    with pytest.raises(EscrowError):
        ledger.lamports(b"\x01" * 32)

    # Once tripped, all subsequent operations fail closed during the lockdown window.
    with pytest.raises(EscrowError) as ei:
        ledger.lamports(b"\x01" * 32)
    assert ei.value.code == PWE_E_LOCKDOWN_ACTIVE
    assert ledger.circuit.is_lockdown_active()


def _processed_ids(ledger):
    conn = sqlite3.connect(ledger.db_path)
    try:
        return {row[0] for row in conn.execute("SELECT tx_id FROM processed_transactions")}
    finally:
        conn.close()


def test_overlong_validity_window_is_rejected(tmp_path):
    ledger = make_ledger(tmp_path)
    kp = Ed25519KeyPair.generate()

    far = Transaction.build("noop", {}, [kp.public_key_bytes], ttl_seconds=10 * 365 * 86400).sign(kp)
    with pytest.raises(EscrowError) as ei:
        ledger.execute(far, lambda txn, t: "ok")
    assert ei.value.code == PWE_E_INVALID_PARAMETER
    assert _processed_ids(ledger) == set()

    strict = Ledger(str(tmp_path / "strict.db"), max_ttl_seconds=60, circuit=DbCircuitBreaker(CircuitBreakerConfig()))
    with pytest.raises(EscrowError):
        strict.execute(Transaction.build("noop", {}, [kp.public_key_bytes], ttl_seconds=120).sign(kp), lambda txn, t: 1)
    assert strict.execute(Transaction.build("noop", {}, [kp.public_key_bytes], ttl_seconds=30).sign(kp), lambda txn, t: 1) == 1


def test_expired_replay_records_are_purged(tmp_path, monkeypatch):
    import pw_escrow.ledger as ledger_mod

    ledger = make_ledger(tmp_path)
    kp = Ed25519KeyPair.generate()
    short = Transaction.build("noop", {}, [kp.public_key_bytes], ttl_seconds=5).sign(kp)
    ledger.execute(short, lambda txn, t: None)
    assert _processed_ids(ledger) == {short.tx_id}

    later = _now_utc() + timedelta(seconds=30)
    monkeypatch.setattr(ledger_mod, "_now_utc", lambda: later)
    fresh = Transaction.build("noop", {}, [kp.public_key_bytes], ttl_seconds=300).sign(kp)
    ledger.execute(fresh, lambda txn, t: None)
    assert _processed_ids(ledger) == {fresh.tx_id}

    # The purged transaction cannot come back: it is expired.
    with pytest.raises(EscrowError) as ei:
        ledger.execute(short, lambda txn, t: None)
    assert ei.value.code == PWE_E_TX_EXPIRED

    assert ledger.purge_expired_transactions(now=later + timedelta(seconds=600)) == 1
    assert _processed_ids(ledger) == set()
