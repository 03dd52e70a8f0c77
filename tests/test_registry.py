import pytest

from pw_escrow.crypto import Ed25519KeyPair
from pw_escrow.errors import (
    EscrowError,
    PWE_E_ALREADY_EXISTS,
    PWE_E_INVALID_PARAMETER,
    PWE_E_NOT_FOUND,
    PWE_E_UNAUTHORIZED,
)
from pw_escrow.ledger import rent_exempt_minimum
from pw_escrow.records import EscrowConfig


def test_initialize_config_stores_record_and_charges_payer(world):
    cfg = world.client.get_config(world.config)
    assert cfg == EscrowConfig(
        identity=world.config,
        authority=world.authority.public_key_bytes,
        fee_recipient=world.fee_recipient.public_key_bytes,
        fee_bps=0,
    )
    assert world.ledger.lamports(world.config) == rent_exempt_minimum(EscrowConfig.SIZE)


def test_initialize_config_twice_at_same_identity_fails(world):
    config_kp = Ed25519KeyPair.generate()
    world.client.create_config(world.payer, world.authority.public_key_bytes, world.fee_recipient.public_key_bytes, 0, config_keypair=config_kp)
    with pytest.raises(EscrowError) as ei:
        world.client.create_config(world.payer, world.authority.public_key_bytes, world.fee_recipient.public_key_bytes, 5, config_keypair=config_kp)
    assert ei.value.code == PWE_E_ALREADY_EXISTS


@pytest.mark.parametrize("fee_bps", [-1, 10_001, "100", True, 1.5])
def test_initialize_config_rejects_bad_fee(world, fee_bps):
    with pytest.raises(EscrowError) as ei:
        world.client.create_config(world.payer, world.authority.public_key_bytes, world.fee_recipient.public_key_bytes, fee_bps)
    assert ei.value.code == PWE_E_INVALID_PARAMETER


def test_update_by_authority(world):
    new_recipient = Ed25519KeyPair.generate().public_key_bytes
    cfg = world.client.update_config(world.authority, world.config, fee_bps=250, fee_recipient=new_recipient)
    assert cfg.fee_bps == 250
    assert cfg.fee_recipient == new_recipient
    assert world.client.get_config(world.config) == cfg


def test_update_by_non_authority_is_unauthorized(world):
    with pytest.raises(EscrowError) as ei:
        world.client.update_config(world.depositor, world.config, fee_bps=10_000)
    assert ei.value.code == PWE_E_UNAUTHORIZED
    assert world.client.get_config(world.config).fee_bps == 0


def test_update_missing_config_and_bad_fee(world):
    with pytest.raises(EscrowError) as ei:
        world.client.update_config(world.authority, b"\x42" * 32, fee_bps=1)
    assert ei.value.code == PWE_E_NOT_FOUND

    with pytest.raises(EscrowError) as ei:
        world.client.update_config(world.authority, world.config, fee_bps=20_000)
    assert ei.value.code == PWE_E_INVALID_PARAMETER


def test_authority_rotation(world):
    new_authority = Ed25519KeyPair.generate()
    world.client.update_config(world.authority, world.config, authority=new_authority.public_key_bytes)

    with pytest.raises(EscrowError) as ei:
        world.client.update_config(world.authority, world.config, fee_bps=1)
    assert ei.value.code == PWE_E_UNAUTHORIZED

    cfg = world.client.update_config(new_authority, world.config, fee_bps=1)
    assert cfg.authority == new_authority.public_key_bytes
    assert cfg.identity == world.config
