"""Region store backed by a GeoJSON FeatureCollection of Indian states."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from . import config
from .config import ConfigurationError
from .geo import Region, find_region_for_point

logger = logging.getLogger(__name__)

# stateId values must match properties.stateId in the regions GeoJSON.
INDIA_STATES: List[Dict[str, str]] = [
    {"id": "andaman-and-nicobar", "name": "Andaman and Nicobar"},
    {"id": "andhra-pradesh", "name": "Andhra Pradesh"},
    {"id": "arunachal-pradesh", "name": "Arunachal Pradesh"},
    {"id": "assam", "name": "Assam"},
    {"id": "bihar", "name": "Bihar"},
    {"id": "chandigarh", "name": "Chandigarh"},
    {"id": "chhattisgarh", "name": "Chhattisgarh"},
    {"id": "dadra-and-nagar-haveli", "name": "Dadra and Nagar Haveli"},
    {"id": "daman-and-diu", "name": "Daman and Diu"},
    {"id": "delhi", "name": "Delhi"},
    {"id": "goa", "name": "Goa"},
    {"id": "gujarat", "name": "Gujarat"},
    {"id": "haryana", "name": "Haryana"},
    {"id": "himachal-pradesh", "name": "Himachal Pradesh"},
    {"id": "jammu-and-kashmir", "name": "Jammu and Kashmir"},
    {"id": "jharkhand", "name": "Jharkhand"},
    {"id": "karnataka", "name": "Karnataka"},
    {"id": "kerala", "name": "Kerala"},
    {"id": "lakshadweep", "name": "Lakshadweep"},
    {"id": "madhya-pradesh", "name": "Madhya Pradesh"},
    {"id": "maharashtra", "name": "Maharashtra"},
    {"id": "manipur", "name": "Manipur"},
    {"id": "meghalaya", "name": "Meghalaya"},
    {"id": "mizoram", "name": "Mizoram"},
    {"id": "nagaland", "name": "Nagaland"},
    {"id": "odisha", "name": "Odisha"},
    {"id": "puducherry", "name": "Puducherry"},
    {"id": "punjab", "name": "Punjab"},
    {"id": "rajasthan", "name": "Rajasthan"},
    {"id": "sikkim", "name": "Sikkim"},
    {"id": "tamil-nadu", "name": "Tamil Nadu"},
    {"id": "tripura", "name": "Tripura"},
    {"id": "uttar-pradesh", "name": "Uttar Pradesh"},
    {"id": "uttarakhand", "name": "Uttarakhand"},
    {"id": "west-bengal", "name": "West Bengal"},
]

_STATE_NAMES = {state["id"]: state["name"] for state in INDIA_STATES}


def get_state_name(state_id: str) -> str:
    return _STATE_NAMES.get(state_id, state_id)


class RegionStore:
    def __init__(self, regions: Optional[List[Region]] = None) -> None:
        self._regions: Dict[str, Region] = {}
        for region in regions or []:
            self._regions[region.region_id] = region

    def __contains__(self, region_id: object) -> bool:
        return region_id in self._regions

    def __iter__(self) -> Iterator[Region]:
        return iter(self._regions.values())

    def __len__(self) -> int:
        return len(self._regions)

    def get(self, region_id: str) -> Region:
        region = self._regions.get(region_id)
        if region is None:
            raise ConfigurationError(f"Unknown region id: {region_id}")
        return region

    def find_region_for_point(self, lat: float, lon: float) -> Optional[Region]:
        return find_region_for_point(lat, lon, self._regions.values())

    @classmethod
    def from_feature_collection(
        cls,
        data: Dict[str, Any],
        id_property: str = config.REGION_ID_PROPERTY,
        name_property: str = config.REGION_NAME_PROPERTY,
    ) -> "RegionStore":
        regions: List[Region] = []
        for feature in data.get("features") or []:
            props = feature.get("properties") or {}
            geometry = feature.get("geometry") or {}
            region_id = props.get(id_property)
            if not region_id:
                logger.warning("Skipping feature without %s property", id_property)
                continue
            if geometry.get("type") not in ("Polygon", "MultiPolygon"):
                logger.warning("Skipping region %s with geometry type %s", region_id, geometry.get("type"))
                continue
            name = props.get(name_property) or get_state_name(region_id)
            regions.append(Region.from_geometry(region_id, geometry, name=name))
        return cls(regions)

    @classmethod
    def from_geojson_file(cls, path: Optional[str] = None) -> "RegionStore":
        geojson_path = Path(path or config.REGIONS_GEOJSON_PATH)
        if not geojson_path.exists():
            raise ConfigurationError(f"Regions file not found: {geojson_path}")
        with open(geojson_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        store = cls.from_feature_collection(data)
        logger.info("Loaded %s regions from %s", len(store), geojson_path)
        return store
