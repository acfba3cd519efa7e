"""Per-identity message quota ledger.

The whole ledger lives under one key of the key-value store and is updated
with a plain read-modify-write. Two requests from the same identity that
arrive together can both read the same ``messageCount`` and both write
``count + 1``, so the effective limit may be exceeded by a small margin.
That approximate counting is accepted; there is no compare-and-swap here.

Storage failures fail open: the request is allowed, the fault is logged and
counted in :attr:`QuotaLedger.fault_count`.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import StorageFault
from .plans import Plan
from .store import LEDGER_KEY, KeyValueStore, read_collection

logger = logging.getLogger(__name__)


@dataclass
class QuotaRecord:
    identity: str
    message_count: int = 0
    window_start: float = 0.0
    blocked: bool = False
    last_seen: float = 0.0

    @classmethod
    def from_dict(cls, identity: str, raw: Dict[str, Any], now: float) -> "QuotaRecord":
        # Legacy records use epoch milliseconds under lastReset / lastActivity / isBlocked.
        if "windowStart" in raw:
            window_start = float(raw.get("windowStart") or now)
            last_seen = float(raw.get("lastSeen") or window_start)
        else:
            window_start = float(raw.get("lastReset") or now * 1000) / 1000.0
            last_seen = float(raw.get("lastActivity") or window_start * 1000) / 1000.0
        return cls(
            identity=identity,
            message_count=max(0, int(raw.get("messageCount") or 0)),
            window_start=window_start,
            blocked=bool(raw.get("blocked", raw.get("isBlocked", False))),
            last_seen=last_seen,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageCount": self.message_count,
            "windowStart": self.window_start,
            "blocked": self.blocked,
            "lastSeen": self.last_seen,
        }


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    retry_after_minutes: Optional[int] = None
    reason: Optional[str] = None
    indefinite: bool = False
    degraded: bool = False

    @property
    def retry_after(self) -> Optional[object]:
        """Wire form: minutes, ``"unlimited"`` for blocked identities, or None."""
        if self.indefinite:
            return "unlimited"
        return self.retry_after_minutes


class QuotaLedger:
    """Admission control over a shared, externally stored ledger."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
        key: str = LEDGER_KEY,
    ) -> None:
        self.store = store
        self.clock = clock
        self.key = key
        self.fault_count = 0

    # --------- core API ----------
    def admit(self, identity: str, plan: Plan) -> AdmissionResult:
        try:
            return self._admit(identity, plan)
        except StorageFault as e:
            self.fault_count += 1
            logger.warning("Quota ledger unavailable, allowing %s: %s", identity[:16], e)
            return AdmissionResult(allowed=True, reason="storage_fault", degraded=True)

    def _admit(self, identity: str, plan: Plan) -> AdmissionResult:
        now = self.clock()
        ledger = read_collection(self.store, self.key)
        record = QuotaRecord.from_dict(identity, ledger.get(identity) or {"windowStart": now}, now)
        record.last_seen = now

        if record.blocked:
            return AdmissionResult(allowed=False, reason="blocked", indefinite=True)

        # Reset on the first request after the window elapsed.
        if now - record.window_start >= plan.window_seconds:
            record.message_count = 0
            record.window_start = now

        if plan.unbounded:
            return AdmissionResult(allowed=True)

        if record.message_count >= plan.message_limit:
            remaining = plan.window_seconds - (now - record.window_start)
            minutes = max(1, math.ceil(remaining / 60.0))
            return AdmissionResult(allowed=False, retry_after_minutes=minutes, reason="limit_reached")

        record.message_count += 1
        ledger[identity] = record.to_dict()
        self.store.put(self.key, ledger)
        return AdmissionResult(allowed=True)

    # --------- admin / ops ----------
    def usage(self, identity: str) -> Optional[QuotaRecord]:
        raw = read_collection(self.store, self.key).get(identity)
        if raw is None:
            return None
        return QuotaRecord.from_dict(identity, raw, self.clock())

    def block(self, identity: str) -> None:
        self._set_blocked(identity, True)

    def unblock(self, identity: str) -> None:
        self._set_blocked(identity, False)

    def _set_blocked(self, identity: str, blocked: bool) -> None:
        now = self.clock()
        ledger = read_collection(self.store, self.key)
        record = QuotaRecord.from_dict(identity, ledger.get(identity) or {"windowStart": now}, now)
        record.blocked = blocked
        ledger[identity] = record.to_dict()
        self.store.put(self.key, ledger)
        logger.info("Identity %s %s", identity[:16], "blocked" if blocked else "unblocked")

    def sweep(self, max_idle_seconds: float = 24 * 60 * 60) -> int:
        """Delete records idle longer than ``max_idle_seconds``. Returns the count removed.

        Out-of-band retention job; blocked identities are kept.
        """
        now = self.clock()
        ledger = read_collection(self.store, self.key)
        stale = []
        for identity, raw in ledger.items():
            record = QuotaRecord.from_dict(identity, raw, now)
            if not record.blocked and now - record.last_seen > max_idle_seconds:
                stale.append(identity)
        if not stale:
            return 0
        for identity in stale:
            del ledger[identity]
        self.store.put(self.key, ledger)
        logger.info("Quota sweep removed %d idle record(s)", len(stale))
        return len(stale)
