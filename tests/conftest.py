from dataclasses import dataclass

import pytest

from pw_escrow.client import EscrowClient
from pw_escrow.crypto import Ed25519KeyPair
from pw_escrow.kdf import KdfParams
from pw_escrow.ledger import Ledger
from pw_escrow.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from pw_escrow.protocol import EscrowProtocol

# Cheap Argon2id parameters; production defaults are far more expensive.
FAST_KDF = KdfParams(time_cost=1, memory_cost_kib=256, parallelism=1)

SOL = 1_000_000_000
INITIAL_TOKENS = 5_000_000


@dataclass
class World:
    ledger: Ledger
    protocol: EscrowProtocol
    client: EscrowClient
    payer: Ed25519KeyPair
    authority: Ed25519KeyPair
    fee_recipient: Ed25519KeyPair
    depositor: Ed25519KeyPair
    mint: bytes
    source: bytes
    config: bytes

    def funded_keypair(self) -> Ed25519KeyPair:
        kp = Ed25519KeyPair.generate()
        self.ledger.airdrop(kp.public_key_bytes, 10 * SOL)
        return kp

    def new_destination(self, mint: bytes = None) -> bytes:
        owner = self.funded_keypair()
        return self.ledger.create_token_account(owner.public_key_bytes, mint or self.mint)

    def fee_account_balance(self) -> int:
        from pw_escrow.address import associated_token_address

        acct = self.ledger.get_token_account(associated_token_address(self.fee_recipient.public_key_bytes, self.mint))
        return acct.amount if acct else 0


def make_ledger(tmp_path, name: str = "ledger.db") -> Ledger:
    return Ledger(str(tmp_path / name), circuit=DbCircuitBreaker(CircuitBreakerConfig()))


def make_world(tmp_path, fee_bps: int = 0) -> World:
    ledger = make_ledger(tmp_path)
    protocol = EscrowProtocol(ledger)
    client = EscrowClient(protocol, kdf_params=FAST_KDF)

    payer, authority, fee_recipient, depositor = (Ed25519KeyPair.generate() for _ in range(4))
    for kp in (payer, authority, fee_recipient, depositor):
        ledger.airdrop(kp.public_key_bytes, 10 * SOL)

    mint = ledger.create_mint(authority.public_key_bytes, decimals=6)
    source = ledger.create_token_account(depositor.public_key_bytes, mint)
    ledger.mint_to(mint, source, INITIAL_TOKENS)

    config = client.create_config(payer, authority.public_key_bytes, fee_recipient.public_key_bytes, fee_bps)
    return World(
        ledger=ledger,
        protocol=protocol,
        client=client,
        payer=payer,
        authority=authority,
        fee_recipient=fee_recipient,
        depositor=depositor,
        mint=mint,
        source=source,
        config=config,
    )


@pytest.fixture
def world(tmp_path):
    return make_world(tmp_path)


@pytest.fixture
def fee_world(tmp_path):
    return make_world(tmp_path, fee_bps=100)
