"""Password-claimable token escrow.

A depositor locks tokens for a beneficiary identified only by a password:

- the beneficiary keypair is derived with Argon2id from (password, salt,
  configuration identity) and never transmitted
- escrow records live at deterministic, program-derived addresses bound to
  (beneficiary, configuration)
- a withdrawal must be signed by the derived key; at most one withdrawal
  per escrow

Convenience imports
------------------
Importing the package has no side effects. The main entry points are
available lazily at the top level:

    from pw_escrow import Ledger, EscrowProtocol, EscrowClient, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Version from the repo-local pyproject.toml (dev/test checkouts)."""
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "EscrowError",
    "Ed25519KeyPair",
    "KdfParams",
    "Ledger",
    "Transaction",
    "EscrowProtocol",
    "EscrowClient",
    "Escrow",
    "EscrowConfig",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "EscrowError": ("pw_escrow.errors", "EscrowError"),
    "Ed25519KeyPair": ("pw_escrow.crypto", "Ed25519KeyPair"),
    "KdfParams": ("pw_escrow.kdf", "KdfParams"),
    "Ledger": ("pw_escrow.ledger", "Ledger"),
    "Transaction": ("pw_escrow.transaction", "Transaction"),
    "EscrowProtocol": ("pw_escrow.protocol", "EscrowProtocol"),
    "EscrowClient": ("pw_escrow.client", "EscrowClient"),
    "Escrow": ("pw_escrow.records", "Escrow"),
    "EscrowConfig": ("pw_escrow.records", "EscrowConfig"),
    "create_app": ("pw_escrow.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'pw_escrow' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
