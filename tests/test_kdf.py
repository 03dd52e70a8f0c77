import pytest

from pw_escrow.crypto import Ed25519KeyPair
from pw_escrow.errors import EscrowError, PWE_E_INVALID_PARAMETER
from pw_escrow.kdf import (
    SALT_LEN,
    KdfParams,
    derive_beneficiary,
    derive_keypair,
    derive_seed,
    new_salt,
    normalize_password,
    rederive_keypair,
)
from pw_escrow.records import Escrow

from conftest import FAST_KDF

CONFIG_A = bytes(range(32))
CONFIG_B = bytes(range(1, 33))
SALT = b"\x07" * SALT_LEN


def test_derive_seed_is_deterministic():
    s1 = derive_seed(b"hunter2", SALT, CONFIG_A, FAST_KDF)
    s2 = derive_seed(b"hunter2", SALT, CONFIG_A, FAST_KDF)
    assert s1 == s2
    assert len(s1) == 32
    assert derive_keypair(s1).public_key_bytes == derive_keypair(s2).public_key_bytes


def test_domain_separation_yields_unrelated_keys():
    k1 = derive_keypair(derive_seed(b"hunter2", SALT, CONFIG_A, FAST_KDF))
    k2 = derive_keypair(derive_seed(b"hunter2", SALT, CONFIG_B, FAST_KDF))
    assert k1.public_key_bytes != k2.public_key_bytes


def test_salt_and_password_change_the_seed():
    base = derive_seed(b"hunter2", SALT, CONFIG_A, FAST_KDF)
    assert derive_seed(b"hunter3", SALT, CONFIG_A, FAST_KDF) != base
    assert derive_seed(b"hunter2", b"\x08" * SALT_LEN, CONFIG_A, FAST_KDF) != base


def test_cost_parameters_are_part_of_the_derivation():
    other = KdfParams(time_cost=2, memory_cost_kib=256, parallelism=1)
    assert derive_seed(b"pw", SALT, CONFIG_A, FAST_KDF) != derive_seed(b"pw", SALT, CONFIG_A, other)


def test_text_passwords_are_nfc_normalized():
    composed = "caf\u00e9"
    decomposed = "cafe\u0301"
    assert normalize_password(composed) == normalize_password(decomposed)
    assert derive_seed(composed, SALT, CONFIG_A, FAST_KDF) == derive_seed(decomposed, SALT, CONFIG_A, FAST_KDF)


@pytest.mark.parametrize("password", ["", b""])
def test_empty_password_rejected(password):
    with pytest.raises(EscrowError) as ei:
        derive_seed(password, SALT, CONFIG_A, FAST_KDF)
    assert ei.value.code == PWE_E_INVALID_PARAMETER


def test_short_salt_and_bad_domain_rejected():
    with pytest.raises(EscrowError) as ei:
        derive_seed(b"pw", b"short", CONFIG_A, FAST_KDF)
    assert ei.value.code == PWE_E_INVALID_PARAMETER

    with pytest.raises(EscrowError) as ei:
        derive_seed(b"pw", SALT, b"\x00" * 31, FAST_KDF)
    assert ei.value.code == PWE_E_INVALID_PARAMETER


def test_new_salt_is_random_16_bytes():
    a, b = new_salt(), new_salt()
    assert len(a) == SALT_LEN
    assert a != b


def test_deposit_and_withdraw_entry_points_agree():
    kp, salt = derive_beneficiary("supersecretpassword", CONFIG_A, params=FAST_KDF)
    assert len(salt) == SALT_LEN

    escrow = Escrow(
        address=b"\x01" * 32,
        config=CONFIG_A,
        depositor=b"\x02" * 32,
        beneficiary=kp.public_key_bytes,
        salt=salt,
        mint=b"\x03" * 32,
        vault=b"\x04" * 32,
        amount=1,
        bump=255,
    )
    again = rederive_keypair("supersecretpassword", escrow, FAST_KDF)
    assert again.public_key_bytes == kp.public_key_bytes
    assert again.private_key_bytes == kp.private_key_bytes

    wrong = rederive_keypair("supersecretpassw0rd", escrow, FAST_KDF)
    assert wrong.public_key_bytes != kp.public_key_bytes


def test_derived_keypair_signs_and_verifies():
    kp = derive_keypair(derive_seed(b"pw", SALT, CONFIG_A, FAST_KDF))
    assert isinstance(kp, Ed25519KeyPair)
    sig = kp.sign(b"msg")
    assert kp.verify(b"msg", sig)
    assert not kp.verify(b"other", sig)


def test_kdf_params_from_env_clamps(monkeypatch):
    monkeypatch.setenv("PWE_KDF_TIME_COST", "0")
    monkeypatch.setenv("PWE_KDF_MEMORY_KIB", "1")
    monkeypatch.setenv("PWE_KDF_PARALLELISM", "2")
    p = KdfParams.from_env()
    assert p.time_cost == 1
    assert p.parallelism == 2
    assert p.memory_cost_kib == 16


def test_kdf_params_defaults_and_garbage_env(monkeypatch):
    monkeypatch.setenv("PWE_KDF_TIME_COST", "lots")
    monkeypatch.delenv("PWE_KDF_MEMORY_KIB", raising=False)
    monkeypatch.delenv("PWE_KDF_PARALLELISM", raising=False)
    p = KdfParams.from_env()
    assert p == KdfParams()
    d = p.to_dict()
    assert d["algorithm"] == "argon2id"
    assert d["memory_cost_kib"] == 65536
    assert d["salt_len"] == SALT_LEN


@pytest.mark.parametrize(
    "kwargs",
    [
        {"memory_cost_kib": 8, "parallelism": 4},
        {"time_cost": 0},
        {"parallelism": 0},
        {"parallelism": 256, "memory_cost_kib": 4096},
        {"time_cost": True},
    ],
)
def test_kdf_params_reject_values_argon2_cannot_run(kwargs):
    with pytest.raises(EscrowError) as ei:
        KdfParams(**kwargs)
    assert ei.value.code == PWE_E_INVALID_PARAMETER
