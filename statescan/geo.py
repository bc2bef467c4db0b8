"""Geospatial helpers.

Geometries follow GeoJSON conventions: positions are ``[lon, lat]`` pairs, a
Polygon is a list of rings (outer ring first, then holes) and a MultiPolygon is
a list of Polygons.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

EARTH_RADIUS_M = 6371000.0

Ring = Sequence[Sequence[float]]


@dataclass(frozen=True)
class BBox:
    south: float
    north: float
    west: float
    east: float

    @property
    def is_degenerate(self) -> bool:
        return not (self.north > self.south and self.east > self.west)


@dataclass(frozen=True)
class Region:
    region_id: str
    name: str
    geometry: Dict[str, Any]
    bbox: BBox

    @classmethod
    def from_geometry(cls, region_id: str, geometry: Dict[str, Any], name: Optional[str] = None) -> "Region":
        return cls(
            region_id=region_id,
            name=name or region_id,
            geometry=geometry,
            bbox=geometry_bbox(geometry),
        )


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def point_in_ring(lat: float, lon: float, ring: Ring) -> bool:
    """Ray-casting test along the point's latitude line.

    An edge counts only when it strictly straddles ``lat`` (one endpoint above,
    one at or below), so horizontal edges never count and a vertex shared by
    two edges is counted once.
    """
    inside = False
    n = len(ring)
    if n < 3:
        return False
    j = n - 1
    for i in range(n):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > lat) != (yj > lat):
            cross_lon = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < cross_lon:
                inside = not inside
        j = i
    return inside


def point_in_polygon(lat: float, lon: float, rings: Sequence[Ring]) -> bool:
    if not rings:
        return False
    if not point_in_ring(lat, lon, rings[0]):
        return False
    for hole in rings[1:]:
        if point_in_ring(lat, lon, hole):
            return False
    return True


def point_in_geometry(lat: float, lon: float, geometry: Dict[str, Any]) -> bool:
    geom_type = geometry.get("type")
    coordinates = geometry.get("coordinates") or []
    if geom_type == "Polygon":
        return point_in_polygon(lat, lon, coordinates)
    if geom_type == "MultiPolygon":
        return any(point_in_polygon(lat, lon, polygon) for polygon in coordinates)
    return False


def point_in_region(lat: float, lon: float, region: Region) -> bool:
    bbox = region.bbox
    if not (bbox.south <= lat <= bbox.north and bbox.west <= lon <= bbox.east):
        return False
    return point_in_geometry(lat, lon, region.geometry)


def _outer_rings(geometry: Dict[str, Any]) -> List[Ring]:
    geom_type = geometry.get("type")
    coordinates = geometry.get("coordinates") or []
    if geom_type == "Polygon":
        return [coordinates[0]] if coordinates else []
    if geom_type == "MultiPolygon":
        return [polygon[0] for polygon in coordinates if polygon]
    return []


def geometry_bbox(geometry: Dict[str, Any]) -> BBox:
    lons: List[float] = []
    lats: List[float] = []
    for ring in _outer_rings(geometry):
        for position in ring:
            lons.append(float(position[0]))
            lats.append(float(position[1]))
    if not lons:
        return BBox(south=0.0, north=0.0, west=0.0, east=0.0)
    return BBox(south=min(lats), north=max(lats), west=min(lons), east=max(lons))


def find_region_for_point(lat: float, lon: float, regions: Iterable[Region]) -> Optional[Region]:
    for region in regions:
        if point_in_region(lat, lon, region):
            return region
    return None
