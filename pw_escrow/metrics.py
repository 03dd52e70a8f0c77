"""Prometheus metrics for the password escrow.

Metrics goals:
- low-cardinality labels (instruction names and error codes only; never keys
  or addresses)
- visibility into instruction outcomes, KDF cost, fees, storage lockdown
"""
from __future__ import annotations

import os

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


INSTRUCTIONS_TOTAL = Counter(
    "pwe_instructions_total",
    "Escrow instructions executed, by outcome (ok or error code)",
    ["instruction", "outcome"],
)
KDF_SECONDS = Histogram(
    "pwe_kdf_seconds",
    "Wall time of one Argon2id password derivation",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
FEES_COLLECTED_TOTAL = Counter(
    "pwe_fees_collected_total",
    "Token units routed to fee recipients on withdrawal",
)
LOCKDOWN_ACTIVE = Gauge(
    "pwe_lockdown_active",
    "1 if the ledger store is in lockdown / fail-closed mode",
)


def record_instruction(instruction: str, outcome: str) -> None:
    INSTRUCTIONS_TOTAL.labels(instruction=str(instruction), outcome=str(outcome)).inc()


def observe_kdf_seconds(seconds: float) -> None:
    KDF_SECONDS.observe(float(seconds))


def record_fee(amount: int) -> None:
    if amount > 0:
        FEES_COLLECTED_TOTAL.inc(int(amount))


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def metrics_enabled() -> bool:
    return _env_bool("PWE_METRICS_ENABLED", True)


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and content type for a /metrics endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST
