#!/usr/bin/env python3
"""
Password Escrow - Command Line Interface

Usage:
    pwe keygen --out KEYFILE                   Generate an Ed25519 keypair file
    pwe airdrop ADDRESS LAMPORTS               Fund an address on the local ledger
    pwe create-mint --authority KEYFILE        Create a token mint
    pwe create-token-account --owner K --mint M
    pwe mint-to --mint M --to ACCOUNT --amount N
    pwe balance ADDRESS [--lamports]
    pwe init-config --payer KEYFILE --authority K --fee-recipient K --fee-bps N
    pwe update-config --caller KEYFILE --config C [--authority K] [--fee-recipient K] [--fee-bps N]
    pwe derive --config C [--salt HEX]         Derive a beneficiary key from a password
    pwe deposit --depositor KEYFILE --config C --source S --mint M --amount N
    pwe withdraw --escrow E --destination D
    pwe show ESCROW
    pwe find [--config C] [--depositor D]
    pwe serve [--host H] [--port P]

Keys (K) may be given as 64-char hex or as a path to a keypair file written by
`pwe keygen`. Passwords are read from --password, PWE_PASSWORD, or prompted.
"""

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from pw_escrow.address import derive_escrow_address
from pw_escrow.client import EscrowClient
from pw_escrow.crypto import Ed25519KeyPair, require_key
from pw_escrow.errors import PWE_E_INVALID_PARAMETER, EscrowError, escrow_error
from pw_escrow.kdf import SALT_LEN, derive_beneficiary
from pw_escrow.ledger import Ledger
from pw_escrow.protocol import EscrowProtocol
from pw_escrow.settings import Settings, load_settings

logger = logging.getLogger("pw_escrow.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logging.getLogger("pw_escrow").setLevel(level)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def load_keypair(path: str) -> Ed25519KeyPair:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise escrow_error(PWE_E_INVALID_PARAMETER, f"cannot read keypair file: {e}", path=str(path))
    if not isinstance(data, dict) or not (data.get("private_key_hex") or data.get("public_key_hex")):
        raise escrow_error(PWE_E_INVALID_PARAMETER, "keypair file has no key", path=str(path))
    return Ed25519KeyPair.from_dict(data)


def resolve_key(value: str, name: str) -> bytes:
    """Hex public key, or the public key of a keypair file."""
    if os.path.isfile(value):
        return load_keypair(value).public_key_bytes
    return require_key(value, name)


def read_password(args) -> str:
    if getattr(args, "password", None):
        return args.password
    env = os.getenv("PWE_PASSWORD")
    if env:
        return env
    return getpass.getpass("Password: ")


def _settings(args) -> Settings:
    settings = load_settings(args.settings)
    if args.db:
        settings.db_path = args.db
    return settings


def _ledger(args) -> Ledger:
    return Ledger(_settings(args).db_path)


def _client(args) -> EscrowClient:
    settings = _settings(args)
    protocol = EscrowProtocol(Ledger(settings.db_path))
    return EscrowClient(protocol, kdf_params=settings.kdf, ttl_seconds=settings.tx_ttl_seconds)


def cmd_keygen(args):
    """Write a fresh keypair file (contains the private key)."""
    kp = Ed25519KeyPair.generate()
    out = Path(args.out)
    if out.exists() and not args.force:
        print(f"refusing to overwrite {out} (use --force)", file=sys.stderr)
        return 1
    out.write_text(json.dumps(kp.to_dict(), indent=2), encoding="utf-8")
    try:
        os.chmod(out, 0o600)
    except OSError as e:
        logger.warning("could not restrict permissions on %s: %s", out, e)
    _print_json({"public_key": kp.public_key_hex, "keyfile": str(out)})
    return 0


def cmd_airdrop(args):
    ledger = _ledger(args)
    balance = ledger.airdrop(resolve_key(args.address, "address"), args.lamports)
    _print_json({"address": resolve_key(args.address, "address").hex(), "lamports": balance})
    return 0


def cmd_create_mint(args):
    ledger = _ledger(args)
    payer = resolve_key(args.payer, "payer") if args.payer else None
    mint = ledger.create_mint(resolve_key(args.authority, "authority"), args.decimals, payer=payer)
    _print_json({"mint": mint.hex(), "decimals": args.decimals})
    return 0


def cmd_create_token_account(args):
    ledger = _ledger(args)
    payer = resolve_key(args.payer, "payer") if args.payer else None
    address = ledger.create_token_account(
        resolve_key(args.owner, "owner"),
        resolve_key(args.mint, "mint"),
        payer=payer,
    )
    _print_json({"token_account": address.hex()})
    return 0


def cmd_mint_to(args):
    ledger = _ledger(args)
    amount = ledger.mint_to(resolve_key(args.mint, "mint"), resolve_key(args.to, "destination"), args.amount)
    _print_json({"token_account": resolve_key(args.to, "destination").hex(), "amount": amount})
    return 0


def cmd_balance(args):
    ledger = _ledger(args)
    address = resolve_key(args.address, "address")
    if args.lamports:
        _print_json({"address": address.hex(), "lamports": ledger.lamports(address)})
    else:
        _print_json({"address": address.hex(), "amount": ledger.token_balance(address)})
    return 0


def cmd_init_config(args):
    client = _client(args)
    config_kp = load_keypair(args.config_keyfile) if args.config_keyfile else None
    identity = client.create_config(
        load_keypair(args.payer),
        resolve_key(args.authority, "authority"),
        resolve_key(args.fee_recipient, "fee_recipient"),
        args.fee_bps,
        config_keypair=config_kp,
    )
    _print_json(client.get_config(identity).to_dict())
    return 0


def cmd_update_config(args):
    client = _client(args)
    cfg = client.update_config(
        load_keypair(args.caller),
        resolve_key(args.config, "config"),
        authority=resolve_key(args.authority, "authority") if args.authority else None,
        fee_recipient=resolve_key(args.fee_recipient, "fee_recipient") if args.fee_recipient else None,
        fee_bps=args.fee_bps,
    )
    _print_json(cfg.to_dict())
    return 0


def cmd_derive(args):
    """Show the beneficiary public key and escrow address a password maps to."""
    settings = _settings(args)
    config = resolve_key(args.config, "config")
    salt = require_key(args.salt, "salt", length=SALT_LEN) if args.salt else None
    kp, salt = derive_beneficiary(read_password(args), config, salt=salt, params=settings.kdf)
    address, bump = derive_escrow_address(kp.public_key_bytes, config)
    _print_json({
        "beneficiary": kp.public_key_hex,
        "salt": salt.hex(),
        "escrow": address.hex(),
        "bump": bump,
    })
    return 0


def cmd_deposit(args):
    client = _client(args)
    address, salt = client.deposit(
        load_keypair(args.depositor),
        resolve_key(args.config, "config"),
        resolve_key(args.source, "source"),
        resolve_key(args.mint, "mint"),
        args.amount,
        read_password(args),
    )
    _print_json({"escrow": address.hex(), "salt": salt.hex(), "amount": args.amount})
    return 0


def cmd_withdraw(args):
    client = _client(args)
    result = client.withdraw(
        resolve_key(args.escrow, "escrow"),
        read_password(args),
        resolve_key(args.destination, "destination"),
    )
    _print_json(result)
    return 0


def cmd_show(args):
    client = _client(args)
    escrow = client.get_escrow(resolve_key(args.escrow, "escrow"))
    if escrow is None:
        print(f"escrow not found: {args.escrow}", file=sys.stderr)
        return 1
    _print_json(escrow.to_dict())
    return 0


def cmd_find(args):
    client = _client(args)
    found = client.find(
        config=resolve_key(args.config, "config") if args.config else None,
        depositor=resolve_key(args.depositor, "depositor") if args.depositor else None,
    )
    _print_json([e.to_dict() for e in found])
    return 0


def cmd_serve(args):
    from pw_escrow.server import serve

    serve(_settings(args), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pwe",
        description="Password-claimable token escrow CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Path to ledger database (overrides settings)")
    parser.add_argument("--settings", default=None, help="Path to settings JSON file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p = subparsers.add_parser("keygen", help="Generate a keypair file")
    p.add_argument("--out", required=True, help="Output keypair file")
    p.add_argument("--force", action="store_true", help="Overwrite an existing file")
    p.set_defaults(func=cmd_keygen)

    p = subparsers.add_parser("airdrop", help="Credit lamports on the local ledger")
    p.add_argument("address")
    p.add_argument("lamports", type=int)
    p.set_defaults(func=cmd_airdrop)

    p = subparsers.add_parser("create-mint", help="Create a token mint")
    p.add_argument("--authority", required=True, help="Mint authority key")
    p.add_argument("--decimals", type=int, default=6)
    p.add_argument("--payer", default=None, help="Rent payer (default: authority)")
    p.set_defaults(func=cmd_create_mint)

    p = subparsers.add_parser("create-token-account", help="Create an associated token account")
    p.add_argument("--owner", required=True)
    p.add_argument("--mint", required=True)
    p.add_argument("--payer", default=None, help="Rent payer (default: owner)")
    p.set_defaults(func=cmd_create_token_account)

    p = subparsers.add_parser("mint-to", help="Mint tokens into a token account")
    p.add_argument("--mint", required=True)
    p.add_argument("--to", required=True, help="Destination token account")
    p.add_argument("--amount", type=int, required=True)
    p.set_defaults(func=cmd_mint_to)

    p = subparsers.add_parser("balance", help="Show a token account or lamport balance")
    p.add_argument("address")
    p.add_argument("--lamports", action="store_true", help="Show lamports instead of tokens")
    p.set_defaults(func=cmd_balance)

    p = subparsers.add_parser("init-config", help="Initialize an escrow configuration")
    p.add_argument("--payer", required=True, help="Payer keypair file")
    p.add_argument("--authority", required=True)
    p.add_argument("--fee-recipient", required=True)
    p.add_argument("--fee-bps", type=int, default=0)
    p.add_argument("--config-keyfile", default=None, help="Config identity keypair (default: fresh)")
    p.set_defaults(func=cmd_init_config)

    p = subparsers.add_parser("update-config", help="Update an escrow configuration")
    p.add_argument("--caller", required=True, help="Current authority keypair file")
    p.add_argument("--config", required=True)
    p.add_argument("--authority", default=None)
    p.add_argument("--fee-recipient", default=None)
    p.add_argument("--fee-bps", type=int, default=None)
    p.set_defaults(func=cmd_update_config)

    p = subparsers.add_parser("derive", help="Derive the beneficiary key for a password")
    p.add_argument("--config", required=True)
    p.add_argument("--salt", default=None, help="Hex salt (default: fresh)")
    p.add_argument("--password", default=None)
    p.set_defaults(func=cmd_derive)

    p = subparsers.add_parser("deposit", help="Deposit tokens claimable with a password")
    p.add_argument("--depositor", required=True, help="Depositor keypair file")
    p.add_argument("--config", required=True)
    p.add_argument("--source", required=True, help="Source token account")
    p.add_argument("--mint", required=True)
    p.add_argument("--amount", type=int, required=True)
    p.add_argument("--password", default=None)
    p.set_defaults(func=cmd_deposit)

    p = subparsers.add_parser("withdraw", help="Claim an escrow with its password")
    p.add_argument("--escrow", required=True)
    p.add_argument("--destination", required=True, help="Destination token account")
    p.add_argument("--password", default=None)
    p.set_defaults(func=cmd_withdraw)

    p = subparsers.add_parser("show", help="Show an escrow record")
    p.add_argument("escrow")
    p.set_defaults(func=cmd_show)

    p = subparsers.add_parser("find", help="List escrows by config and/or depositor")
    p.add_argument("--config", default=None)
    p.add_argument("--depositor", default=None)
    p.set_defaults(func=cmd_find)

    p = subparsers.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return int(args.func(args) or 0)
    except EscrowError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
