"""Search grid generation over a region's bounding box."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Tuple

from .config import ConfigurationError
from .geo import Region, point_in_region

# Guards against float drift producing a zero-width trailing row or column.
_EDGE_EPSILON = 1e-9


@dataclass(frozen=True)
class Cell:
    south: float
    north: float
    west: float
    east: float

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.south + self.north) / 2, (self.west + self.east) / 2)


SamplePoints = Callable[[Cell], List[Tuple[float, float]]]


def cell_sample_points(cell: Cell) -> List[Tuple[float, float]]:
    """Center, 4 corners, 4 edge midpoints and 4 center-corner quarter points.

    Catches narrow strips and concave boundaries that a corners+center test
    misses. Territory touching none of these 13 points is not detected.
    """
    south, north, west, east = cell.south, cell.north, cell.west, cell.east
    mid_lat, mid_lon = cell.center
    return [
        (mid_lat, mid_lon),
        (south, west),
        (south, east),
        (north, west),
        (north, east),
        (mid_lat, west),
        (mid_lat, east),
        (south, mid_lon),
        (north, mid_lon),
        ((south + mid_lat) / 2, (west + mid_lon) / 2),
        ((south + mid_lat) / 2, (mid_lon + east) / 2),
        ((mid_lat + north) / 2, (west + mid_lon) / 2),
        ((mid_lat + north) / 2, (mid_lon + east) / 2),
    ]


def cell_overlaps_region(
    cell: Cell,
    region: Region,
    sampler: SamplePoints = cell_sample_points,
) -> bool:
    return any(point_in_region(lat, lon, region) for lat, lon in sampler(cell))


def _steps(start: float, stop: float, step: float) -> List[Tuple[float, float]]:
    spans: List[Tuple[float, float]] = []
    i = 0
    while True:
        low = start + i * step
        if low >= stop - _EDGE_EPSILON:
            break
        spans.append((low, min(low + step, stop)))
        i += 1
    return spans


def generate_grid(
    region: Region,
    cell_size_deg: float,
    sampler: SamplePoints = cell_sample_points,
) -> List[Cell]:
    if not cell_size_deg > 0:
        raise ConfigurationError(f"Cell size must be > 0, got {cell_size_deg}")
    bbox = region.bbox
    if bbox.is_degenerate:
        return []

    cells: List[Cell] = []
    lon_spans = _steps(bbox.west, bbox.east, cell_size_deg)
    for south, north in _steps(bbox.south, bbox.north, cell_size_deg):
        for west, east in lon_spans:
            cell = Cell(south=south, north=north, west=west, east=east)
            if cell_overlaps_region(cell, region, sampler):
                cells.append(cell)
    return cells
