"""In-scan deduplication by external id and by proximity."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Set

from . import config
from .geo import haversine_m
from .places_client import Place


@dataclass(frozen=True)
class ScanResult:
    index: int
    place: Place


class ResultDeduplicator:
    """Admits the first sighting of each real-world place.

    A candidate is rejected when its id was already seen, or when it lies closer
    than ``distance_threshold_m`` to any admitted result. Rejected sightings are
    dropped without merging fields.
    """

    def __init__(self, distance_threshold_m: Optional[float] = None) -> None:
        self.distance_threshold_m = (
            config.DEDUP_DISTANCE_M if distance_threshold_m is None else float(distance_threshold_m)
        )
        self.results: List[ScanResult] = []
        self.seen_place_ids: Set[str] = set()
        self.rejected_by_id = 0
        self.rejected_by_distance = 0

    def __len__(self) -> int:
        return len(self.results)

    def admit(self, place: Place) -> bool:
        if place.place_id and place.place_id in self.seen_place_ids:
            self.rejected_by_id += 1
            return False
        if self._nearest_within_threshold(place) is not None:
            self.rejected_by_distance += 1
            return False

        if place.place_id:
            self.seen_place_ids.add(place.place_id)
        self.results.append(ScanResult(index=len(self.results), place=place))
        return True

    @property
    def last_result(self) -> ScanResult:
        return self.results[-1]

    def _nearest_within_threshold(self, place: Place) -> Optional[ScanResult]:
        for existing in self.results:
            other = existing.place
            if haversine_m(place.lat, place.lon, other.lat, other.lon) < self.distance_threshold_m:
                return existing
        return None
