"""Quota plans (tiers) and their lookup table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional


@dataclass(frozen=True)
class Plan:
    """Message allowance per window. ``message_limit=None`` means unbounded."""

    name: str
    message_limit: Optional[int]
    window_seconds: float

    @property
    def unbounded(self) -> bool:
        return self.message_limit is None

    def restrictiveness(self) -> float:
        # Allowed messages per second; lower is stricter.
        if self.message_limit is None:
            return float("inf")
        return self.message_limit / max(self.window_seconds, 1.0)


DEFAULT_PLANS = (
    Plan("free", 10, 2 * 60 * 60),
    Plan("plus", 50, 2 * 60 * 60),
    Plan("unlimited", None, 2 * 60 * 60),
)


class PlanCatalog:
    """Immutable tier name -> :class:`Plan` table.

    Unknown (or missing) tier names resolve to the most restrictive plan, so
    a typo in an account record can never grant more than the free tier.
    """

    def __init__(self, plans: Iterable[Plan]) -> None:
        self._plans: Dict[str, Plan] = {p.name: p for p in plans}
        if not self._plans:
            raise ValueError("PlanCatalog needs at least one plan")
        self._strictest = min(self._plans.values(), key=lambda p: p.restrictiveness())

    @property
    def default(self) -> Plan:
        return self._strictest

    def names(self) -> list[str]:
        return sorted(self._plans)

    def resolve(self, tier: Optional[str]) -> Plan:
        if tier is None:
            return self._strictest
        return self._plans.get(str(tier).strip().lower(), self._strictest)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "PlanCatalog":
        quota_cfg = (cfg or {}).get("quota", {}) if isinstance(cfg, dict) else {}
        raw = quota_cfg.get("plans") or {}
        if not raw:
            return cls(DEFAULT_PLANS)
        plans = []
        for name, entry in raw.items():
            entry = entry or {}
            limit = entry.get("message_limit")
            plans.append(
                Plan(
                    name=str(name).strip().lower(),
                    message_limit=None if limit is None else max(0, int(limit)),
                    window_seconds=float(entry.get("window_seconds", 7200)),
                )
            )
        return cls(plans)
