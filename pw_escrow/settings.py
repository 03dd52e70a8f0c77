"""Deployment settings.

Sources, lowest to highest precedence:
1. built-in defaults
2. a JSON settings file (path argument or PWE_SETTINGS_FILE), validated
   against SETTINGS_SCHEMA (JSON Schema Draft 2020-12)
3. environment variables: PWE_DB_PATH, PWE_TX_TTL_SECONDS, PWE_KDF_*

Example file:

    {
      "db_path": "/var/lib/pw-escrow/ledger.db",
      "tx_ttl_seconds": 120,
      "kdf": {"time_cost": 3, "memory_cost_kib": 65536, "parallelism": 1},
      "server": {"host": "127.0.0.1", "port": 8080}
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from .errors import PWE_E_INVALID_PARAMETER, escrow_error
from .kdf import MAX_LANES, KdfParams
from .transaction import DEFAULT_TTL_SECONDS, MAX_TTL_SECONDS

DEFAULT_DB_PATH = "pw_escrow_ledger.db"

_KDF_ENV = {
    "time_cost": "PWE_KDF_TIME_COST",
    "memory_cost_kib": "PWE_KDF_MEMORY_KIB",
    "parallelism": "PWE_KDF_PARALLELISM",
}

SETTINGS_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "pw_escrow settings",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "db_path": {"type": "string", "minLength": 1},
        "tx_ttl_seconds": {"type": "integer", "minimum": 1, "maximum": MAX_TTL_SECONDS},
        "kdf": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "time_cost": {"type": "integer", "minimum": 1},
                "memory_cost_kib": {"type": "integer", "minimum": 8},
                "parallelism": {"type": "integer", "minimum": 1, "maximum": MAX_LANES},
            },
        },
        "server": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "host": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
        },
    },
}


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    tx_ttl_seconds: int = DEFAULT_TTL_SECONDS
    kdf: KdfParams = field(default_factory=KdfParams)
    host: str = "127.0.0.1"
    port: int = 8080


def validate_settings(obj: Any) -> List[str]:
    """Return human-readable schema violations (empty when valid)."""
    validator = jsonschema.Draft202012Validator(SETTINGS_SCHEMA)
    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    msgs = []
    for e in errors:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        msgs.append(f"{loc}: {e.message}")
    return msgs


def _env_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise escrow_error(PWE_E_INVALID_PARAMETER, f"{name} must be an integer", value=raw)


def load_settings(path: Optional[str] = None) -> Settings:
    """Build Settings from defaults, an optional JSON file and the environment."""
    path = path or (os.getenv("PWE_SETTINGS_FILE") or "").strip() or None
    raw: Dict[str, Any] = {}
    if path:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise escrow_error(PWE_E_INVALID_PARAMETER, f"cannot read settings file: {e}", path=str(path))
        problems = validate_settings(raw)
        if problems:
            raise escrow_error(PWE_E_INVALID_PARAMETER, "invalid settings file", path=str(path), errors=problems)

    env_kdf = KdfParams.from_env()
    file_kdf = raw.get("kdf") or {}
    # Explicit env vars win over the file; the combination is validated once.
    kdf_values = {}
    for name, env_name in _KDF_ENV.items():
        if os.getenv(env_name):
            kdf_values[name] = getattr(env_kdf, name)
        else:
            kdf_values[name] = file_kdf.get(name, getattr(env_kdf, name))
    kdf = KdfParams(**kdf_values)

    server = raw.get("server") or {}
    settings = Settings(
        db_path=str(raw.get("db_path", DEFAULT_DB_PATH)),
        tx_ttl_seconds=int(raw.get("tx_ttl_seconds", DEFAULT_TTL_SECONDS)),
        kdf=kdf,
        host=str(server.get("host", "127.0.0.1")),
        port=int(server.get("port", 8080)),
    )

    env_db = (os.getenv("PWE_DB_PATH") or "").strip()
    if env_db:
        settings.db_path = env_db
    env_ttl = _env_int("PWE_TX_TTL_SECONDS")
    if env_ttl is not None:
        if not 1 <= env_ttl <= MAX_TTL_SECONDS:
            raise escrow_error(
                PWE_E_INVALID_PARAMETER, f"PWE_TX_TTL_SECONDS must be in [1, {MAX_TTL_SECONDS}]", value=env_ttl
            )
        settings.tx_ttl_seconds = env_ttl
    return settings
