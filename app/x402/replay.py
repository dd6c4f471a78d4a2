"""
Replay guard for x402 payment authorizations.

Keeps an in-memory record of (payer, asset, nonce) triples the gate has
already accepted or definitively rejected, so an identical X-PAYMENT
header is never served twice and never re-verified after a rejection.
Nonce uniqueness on chain remains the facilitator's responsibility; this
guard only stops this process from acting on a replay.

Entries are kept until the authorization's validBefore (capped by
max_retention_seconds) and then dropped, since an expired authorization
fails the time-window check anyway.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

PENDING = "pending"
CONSUMED = "consumed"

ReplayKey = Tuple[str, str, str]


@dataclass
class ReplayEntry:
    state: str
    expires_at: float


def replay_key(payer: str, asset: str, nonce: str) -> ReplayKey:
    return (payer.lower(), asset.lower(), nonce.lower())


class ReplayGuard:
    """
    Thread-safe record of in-flight and consumed payment nonces.

    A nonce is reserved before the facilitator is called. It is consumed
    once the gate reaches a definitive decision (accepted, or rejected by
    the facilitator) and released again when the decision could not be
    made because of an infrastructure failure, so the payer can retry the
    same payment.
    """

    def __init__(
        self,
        max_retention_seconds: int = 86400,
        cleanup_interval_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._max_retention_seconds = max_retention_seconds
        self._cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._entries: Dict[ReplayKey, ReplayEntry] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def reserve(self, key: ReplayKey, valid_before: int) -> bool:
        """
        Reserve a nonce for one verification attempt.

        Returns:
            False if the nonce is already in flight or consumed
        """
        now = self._clock()
        expires_at = min(float(valid_before), now + self._max_retention_seconds)

        with self._lock:
            self._maybe_cleanup(now)

            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                logger.warning(f"x402: Replay rejected for payer {key[0]} nonce {key[2][:12]}... ({entry.state})")
                return False

            self._entries[key] = ReplayEntry(state=PENDING, expires_at=expires_at)
            return True

    def consume(self, key: ReplayKey) -> None:
        """Mark a reserved nonce as used for good."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.state = CONSUMED

    def release(self, key: ReplayKey) -> None:
        """Drop a pending reservation so the same payment may be retried."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.state == PENDING:
                del self._entries[key]

    def state_of(self, key: ReplayKey) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.state if entry is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def _maybe_cleanup(self, now: float) -> None:
        # Caller holds self._lock
        if now - self._last_cleanup < self._cleanup_interval_seconds:
            return
        self._last_cleanup = now

        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired replay guard entries")


# Global replay guard instance
_replay_guard: Optional[ReplayGuard] = None
_replay_guard_lock = threading.Lock()


def get_replay_guard() -> ReplayGuard:
    """Get the process-wide replay guard."""
    global _replay_guard

    if _replay_guard is None:
        with _replay_guard_lock:
            if _replay_guard is None:
                _replay_guard = ReplayGuard()

    return _replay_guard


def reset_replay_guard() -> None:
    """Reset the global replay guard (useful for testing)."""
    global _replay_guard
    with _replay_guard_lock:
        if _replay_guard is not None:
            _replay_guard.reset_all()
        _replay_guard = None
