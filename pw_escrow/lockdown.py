"""Storage circuit breaker for the ledger.

If SQLite becomes slow, locked or erroring, the ledger refuses all work for a
lockdown window rather than risk acting on half-observed state. Callers see
PWE_E_LOCKDOWN_ACTIVE, which is retryable.

One breaker is shared by every connection a Ledger opens, including those
opened concurrently from server worker threads, so its counters are guarded
by a lock.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .errors import PWE_E_LOCKDOWN_ACTIVE, escrow_error
from .metrics import set_lockdown_active

logger = logging.getLogger("pw_escrow.lockdown")

# SQLite messages that indicate storage degradation rather than a caller bug.
_DEGRADED_MARKERS = ("database is locked", "disk i/o error", "unable to open", "database or disk is full")


def _env_number(name: str, default, cast):
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("ignoring malformed %s=%r", name, raw)
        return default


@dataclass
class CircuitBreakerConfig:
    """Thresholds for DbCircuitBreaker.

    Environment variables (all optional):
    - PWE_DB_LATENCY_THRESHOLD_MS: one operation slower than this trips the breaker.
    - PWE_DB_FAILURE_THRESHOLD: storage failures tolerated before tripping.
    - PWE_DB_LOCKDOWN_SECONDS: how long the breaker stays open.
    - PWE_DB_CONNECT_TIMEOUT_SECONDS: sqlite busy timeout per connection.
    - PWE_DB_ERROR_STRICT: '1' counts every OperationalError as a failure.
    """

    latency_threshold_ms: int = 2000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 10.0
    error_strict: bool = False

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        cfg = cls(
            latency_threshold_ms=_env_number("PWE_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int),
            failure_threshold=_env_number("PWE_DB_FAILURE_THRESHOLD", cls.failure_threshold, int),
            lockdown_seconds=_env_number("PWE_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int),
            connect_timeout_seconds=_env_number("PWE_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float),
            error_strict=(os.getenv("PWE_DB_ERROR_STRICT") or "").strip().lower() in ("1", "true", "yes"),
        )
        return cfg.clamped()

    def clamped(self) -> "CircuitBreakerConfig":
        return CircuitBreakerConfig(
            latency_threshold_ms=self.latency_threshold_ms if self.latency_threshold_ms > 0 else 2000,
            failure_threshold=max(1, self.failure_threshold),
            lockdown_seconds=max(1, self.lockdown_seconds),
            connect_timeout_seconds=self.connect_timeout_seconds if self.connect_timeout_seconds > 0 else 0.01,
            error_strict=self.error_strict,
        )


class DbCircuitBreaker:
    """Counts storage failures and slow operations; opens a lockdown window when they pile up."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = (config or CircuitBreakerConfig.from_env()).clamped()
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until = 0.0

    @property
    def state(self) -> str:
        return "lockdown" if self.is_lockdown_active() else "closed"

    def is_lockdown_active(self) -> bool:
        with self._lock:
            return time.monotonic() < self._open_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise escrow_error(PWE_E_LOCKDOWN_ACTIVE, "ledger storage is in lockdown")
        set_lockdown_active(False)

    def _open(self, reason: str) -> None:
        # Caller holds self._lock.
        self._open_until = time.monotonic() + float(self.config.lockdown_seconds)
        self._failures = self.config.failure_threshold
        set_lockdown_active(True)
        logger.warning("ledger storage lockdown for %ss: %s", self.config.lockdown_seconds, reason)

    def record_success(self) -> None:
        with self._lock:
            if self._failures > 0:
                self._failures -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms < float(self.config.latency_threshold_ms):
            self.record_success()
            return
        with self._lock:
            self._open(f"operation took {elapsed_ms:.0f}ms")

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.config.failure_threshold:
                self._open(str(exc) if exc is not None else "storage failure")
            elif exc is not None:
                logger.warning("ledger storage failure (%d/%d): %s", self._failures, self.config.failure_threshold, exc)

    def is_degradation(self, message: str) -> bool:
        """Whether an sqlite3.OperationalError message should count against the breaker."""
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return any(marker in msg for marker in _DEGRADED_MARKERS)
