from datetime import timedelta

import pytest

from pw_escrow.crypto import Ed25519KeyPair, _now_utc
from pw_escrow.errors import EscrowError, PWE_E_INVALID_PARAMETER
from pw_escrow.transaction import Transaction, verify_signer


def _tx(signers, **args):
    return Transaction.build("withdraw", args or {"escrow": "00" * 32}, [s.public_key_bytes for s in signers])


def test_signature_binds_signer_to_message():
    kp = Ed25519KeyPair.generate()
    tx = _tx([kp]).sign(kp)
    assert verify_signer(kp.public_key_bytes, tx)

    other = Ed25519KeyPair.generate()
    assert not verify_signer(other.public_key_bytes, tx)


def test_tampering_with_args_invalidates_signature():
    kp = Ed25519KeyPair.generate()
    tx = _tx([kp], destination="11" * 32).sign(kp)
    tx.args["destination"] = "22" * 32
    assert not verify_signer(kp.public_key_bytes, tx)


def test_missing_or_garbage_signature_fails_closed():
    kp = Ed25519KeyPair.generate()
    tx = _tx([kp])
    assert not verify_signer(kp.public_key_bytes, tx)
    tx.signatures[kp.public_key_hex] = "!!not-base64!!"
    assert not verify_signer(kp.public_key_bytes, tx)


def test_only_declared_signers_may_sign():
    kp, stranger = Ed25519KeyPair.generate(), Ed25519KeyPair.generate()
    tx = _tx([kp])
    with pytest.raises(EscrowError) as ei:
        tx.sign(stranger)
    assert ei.value.code == PWE_E_INVALID_PARAMETER
    assert tx.has_signer(kp.public_key_hex)
    assert not tx.has_signer(stranger.public_key_bytes)


def test_build_requires_a_signer_and_dedupes():
    with pytest.raises(EscrowError):
        Transaction.build("deposit", {}, [])
    kp = Ed25519KeyPair.generate()
    tx = Transaction.build("deposit", {}, [kp.public_key_bytes, kp.public_key_hex])
    assert tx.signers == [kp.public_key_hex]


def test_tx_id_differs_per_nonce():
    kp = Ed25519KeyPair.generate()
    assert _tx([kp]).tx_id != _tx([kp]).tx_id


def test_expiry():
    kp = Ed25519KeyPair.generate()
    past = _now_utc() - timedelta(hours=1)
    tx = Transaction.build("withdraw", {}, [kp.public_key_bytes], ttl_seconds=60, now=past)
    assert tx.is_expired()
    fresh = Transaction.build("withdraw", {}, [kp.public_key_bytes], ttl_seconds=60)
    assert not fresh.is_expired()

    fresh.valid_until_utc = "not-a-timestamp"
    assert fresh.is_expired()


def test_dict_round_trip_keeps_signatures_valid():
    kp = Ed25519KeyPair.generate()
    tx = _tx([kp]).sign(kp)
    restored = Transaction.from_dict(tx.to_dict())
    assert restored.tx_id == tx.tx_id
    assert verify_signer(kp.public_key_bytes, restored)


def test_from_dict_rejects_malformed():
    with pytest.raises(EscrowError) as ei:
        Transaction.from_dict({"instruction": "deposit"})
    assert ei.value.code == PWE_E_INVALID_PARAMETER


def test_keypair_file_format():
    kp = Ed25519KeyPair.generate()
    restored = Ed25519KeyPair.from_dict(kp.to_dict())
    assert restored == kp
    assert restored.verify(b"msg", kp.sign(b"msg"))

    public_only = Ed25519KeyPair.from_dict({"public_key_hex": kp.public_key_hex})
    assert not public_only.can_sign()
    with pytest.raises(ValueError):
        public_only.sign(b"msg")

    forged = dict(kp.to_dict(), public_key_hex=Ed25519KeyPair.generate().public_key_hex)
    with pytest.raises(EscrowError):
        Ed25519KeyPair.from_dict(forged)


def test_unencodable_message_is_invalid_parameter():
    kp = Ed25519KeyPair.generate()
    tx = _tx([kp], amount=float("nan"))
    with pytest.raises(EscrowError) as ei:
        tx.message()
    assert ei.value.code == PWE_E_INVALID_PARAMETER
    with pytest.raises(EscrowError):
        verify_signer(kp.public_key_bytes, tx)
