"""Billable call accounting.

Counters live in memory; persisting them is left to the caller via
``to_dict``/``from_dict``.
"""
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from . import config


@dataclass
class UsageCounters:
    places_search: int = 0
    gemini_calls: int = 0
    cost: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UsageCounters":
        data = data or {}
        return cls(
            places_search=int(data.get("places_search") or 0),
            gemini_calls=int(data.get("gemini_calls") or 0),
            cost=float(data.get("cost") or 0.0),
        )


class UsageTracker:
    """Lifetime and per-session counters, safe to update from worker threads."""

    def __init__(
        self,
        lifetime: Optional[UsageCounters] = None,
        price_places_search: Optional[float] = None,
        price_gemini_call: Optional[float] = None,
    ) -> None:
        self.lifetime = lifetime or UsageCounters()
        self.session = UsageCounters()
        self.price_places_search = (
            config.PRICE_PLACES_SEARCH if price_places_search is None else price_places_search
        )
        self.price_gemini_call = (
            config.PRICE_GEMINI_CALL if price_gemini_call is None else price_gemini_call
        )
        self._lock = threading.Lock()

    def track_places_search(self) -> None:
        with self._lock:
            for counters in (self.lifetime, self.session):
                counters.places_search += 1
                counters.cost += self.price_places_search

    def track_gemini(self) -> None:
        with self._lock:
            for counters in (self.lifetime, self.session):
                counters.gemini_calls += 1
                counters.cost += self.price_gemini_call

    def reset(self) -> None:
        with self._lock:
            self.lifetime = UsageCounters()
            self.session = UsageCounters()

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {"lifetime": asdict(self.lifetime), "session": asdict(self.session)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], **kwargs: Any) -> "UsageTracker":
        data = data or {}
        return cls(lifetime=UsageCounters.from_dict(data.get("lifetime")), **kwargs)
