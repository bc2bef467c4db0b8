import threading
import time

import pytest

from statescan.config import ConfigurationError
from statescan.geo import Region
from statescan.http import PlacesApiError, RateLimitedError
from statescan.places_client import Place
from statescan.regions import RegionStore
from statescan.scanner import (
    Scanner,
    ScanState,
    build_scan_summary,
    render_scan_summary,
)


def box_region(west, south, east, north, region_id="test"):
    ring = [[west, south], [east, south], [east, north], [west, north], [west, south]]
    return Region.from_geometry(region_id, {"type": "Polygon", "coordinates": [ring]})


def center_place(cell, place_id=None):
    lat, lon = cell.center
    return Place(place_id=place_id, name=f"place-{lat:.2f}-{lon:.2f}", lat=lat, lon=lon)


class FakePlacesClient:
    """Answers each cell via ``handler(cell, attempt)`` and records calls."""

    def __init__(self, handler, delay=0.0):
        self.handler = handler
        self.delay = delay
        self.calls = []
        self._attempts = {}
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def search_cell(self, query, cell, cancel_event=None):
        with self._lock:
            self.calls.append((query, cell))
            attempt = self._attempts.get(cell, 0) + 1
            self._attempts[cell] = attempt
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay and cancel_event is not None:
                cancel_event.wait(self.delay)
            elif self.delay:
                time.sleep(self.delay)
            return self.handler(cell, attempt)
        finally:
            with self._lock:
                self.in_flight -= 1


def make_scanner(client, store=None, **kwargs):
    kwargs.setdefault("batch_pause_seconds", 0)
    kwargs.setdefault("rate_limit_retry_delay_seconds", 0)
    return Scanner(client, region_store=store, **kwargs)


def test_single_cell_scan_completes():
    region = box_region(0.0, 0.0, 1.0, 1.0)
    places = [
        Place(place_id="a", name="A", lat=0.2, lon=0.2),
        Place(place_id="b", name="B", lat=0.5, lon=0.5),
        Place(place_id="c", name="C", lat=0.8, lon=0.8),
    ]
    client = FakePlacesClient(lambda cell, attempt: places)
    scanner = make_scanner(client)

    session = scanner.scan(region, "cafes", cell_size_deg=1.0, concurrency=5)

    assert session.state == ScanState.COMPLETED
    assert [r.place.place_id for r in session.results] == ["a", "b", "c"]
    assert session.completed_cells == session.total_cells == 1
    assert session.error_count == 0
    assert client.calls[0][0] == "cafes"


def test_adjacent_cells_same_spot_without_id_dedupes():
    region = box_region(0.0, 0.0, 2.0, 1.0)
    spot = Place(place_id=None, name="Shared", lat=0.5, lon=1.0)
    client = FakePlacesClient(lambda cell, attempt: [spot])
    scanner = make_scanner(client)

    session = scanner.scan(region, "cafes", cell_size_deg=1.0, concurrency=2)

    assert session.total_cells == 2
    assert len(session.results) == 1
    assert session.dedup.rejected_by_distance == 1


def test_rate_limited_cell_recovers_on_retry():
    region = box_region(0.0, 0.0, 1.0, 1.0)

    def handler(cell, attempt):
        if attempt == 1:
            raise RateLimitedError("https://example.test")
        return [
            Place(place_id="a", name="A", lat=0.2, lon=0.2),
            Place(place_id="b", name="B", lat=0.7, lon=0.7),
        ]

    scanner = make_scanner(FakePlacesClient(handler))
    session = scanner.scan(region, "cafes", cell_size_deg=1.0)

    assert session.state == ScanState.COMPLETED
    assert len(session.results) == 2
    assert session.error_count == 0
    assert session.rate_limit_retries == 1


def test_persistent_rate_limit_counts_as_error():
    region = box_region(0.0, 0.0, 1.0, 1.0)

    def handler(cell, attempt):
        raise RateLimitedError("https://example.test")

    client = FakePlacesClient(handler)
    session = make_scanner(client).scan(region, "cafes", cell_size_deg=1.0)

    assert len(client.calls) == 2
    assert session.error_count == 1
    assert session.completed_cells == 1
    assert session.state == ScanState.COMPLETED
    assert session.results == []


def test_abort_after_first_batch_keeps_first_batch_results():
    region = box_region(0.0, 0.0, 4.0, 1.0)
    client = FakePlacesClient(lambda cell, attempt: [center_place(cell)])
    scanner = make_scanner(client)
    seen = []

    def on_progress(progress):
        seen.append(progress)
        if progress.completed_cells >= 1:
            assert scanner.abort_scan()

    scanner.subscribe(on_progress=on_progress)
    session = scanner.scan(region, "cafes", cell_size_deg=1.0, concurrency=1)

    assert session.total_cells == 4
    assert session.state == ScanState.ABORTED
    assert session.completed_cells == 1 < session.total_cells
    assert len(session.results) == 1
    assert session.results[0].place.lon == pytest.approx(0.5)
    assert len(client.calls) == 1
    assert [p.completed_cells for p in seen] == [0, 1]


def test_abort_during_batch_discards_in_flight_cells():
    region = box_region(0.0, 0.0, 2.0, 1.0)
    client = FakePlacesClient(lambda cell, attempt: [center_place(cell)], delay=2.0)
    scanner = make_scanner(client)
    timer = threading.Timer(0.1, scanner.abort_scan)

    started = time.monotonic()
    timer.start()
    try:
        session = scanner.scan(region, "cafes", cell_size_deg=1.0, concurrency=2)
    finally:
        timer.cancel()
    elapsed = time.monotonic() - started

    assert len(client.calls) == 2
    assert session.state == ScanState.ABORTED
    assert session.completed_cells == 0
    assert session.cancelled_cells == 2
    assert session.results == []
    assert session.error_count == 0
    assert elapsed < 1.5


def test_cell_failure_after_abort_is_not_an_error():
    region = box_region(0.0, 0.0, 1.0, 1.0)
    scanner = make_scanner(None)

    def handler(cell, attempt):
        scanner.abort_scan()
        raise PlacesApiError(503, "unavailable")

    scanner.places_client = FakePlacesClient(handler)
    session = scanner.scan(region, "cafes", cell_size_deg=1.0)

    assert session.state == ScanState.ABORTED
    assert session.error_count == 0
    assert session.cancelled_cells == 1


def test_concurrency_bounds_in_flight_requests():
    region = box_region(0.0, 0.0, 7.0, 1.0)
    client = FakePlacesClient(lambda cell, attempt: [], delay=0.02)
    session = make_scanner(client).scan(region, "cafes", cell_size_deg=1.0, concurrency=3)

    assert session.total_cells == 7
    assert len(client.calls) == 7
    assert 1 <= client.max_in_flight <= 3


def test_result_order_follows_cell_order_not_completion():
    region = box_region(0.0, 0.0, 3.0, 1.0)

    def handler(cell, attempt):
        # Earlier cells answer last.
        time.sleep(0.03 * (3 - cell.west))
        return [center_place(cell, place_id=f"p{int(cell.west)}")]

    session = make_scanner(FakePlacesClient(handler)).scan(region, "cafes", cell_size_deg=1.0, concurrency=3)

    assert [r.place.place_id for r in session.results] == ["p0", "p1", "p2"]
    assert [r.index for r in session.results] == [0, 1, 2]


def test_failed_cells_are_counted_and_scan_continues():
    region = box_region(0.0, 0.0, 3.0, 1.0)

    def handler(cell, attempt):
        if cell.west == 1.0:
            raise PlacesApiError(500, "backend error")
        return [center_place(cell)]

    session = make_scanner(FakePlacesClient(handler)).scan(region, "cafes", cell_size_deg=1.0, concurrency=2)

    assert session.state == ScanState.COMPLETED
    assert session.error_count == 1
    assert session.completed_cells == 3
    assert len(session.results) == 2


def test_places_outside_region_are_dropped():
    # L-shaped region; the upper-right square of its bbox is outside.
    ring = [[0, 0], [2, 0], [2, 1], [1, 1], [1, 2], [0, 2], [0, 0]]
    region = Region.from_geometry("l", {"type": "Polygon", "coordinates": [ring]})
    stray = Place(place_id="stray", name="Stray", lat=1.5, lon=1.5)
    inside = Place(place_id="in", name="In", lat=0.5, lon=0.5)

    session = make_scanner(FakePlacesClient(lambda cell, attempt: [stray, inside])).scan(
        region, "cafes", cell_size_deg=2.0
    )

    assert [r.place.place_id for r in session.results] == ["in"]
    assert session.outside_region == 1


def test_listener_failures_do_not_stop_scan():
    region = box_region(0.0, 0.0, 2.0, 1.0)
    scanner = make_scanner(FakePlacesClient(lambda cell, attempt: [center_place(cell)]))
    received = []

    def broken(_item):
        raise RuntimeError("listener bug")

    scanner.subscribe(on_result=broken, on_progress=broken)
    scanner.subscribe(on_result=received.append)
    session = scanner.scan(region, "cafes", cell_size_deg=1.0)

    assert session.state == ScanState.COMPLETED
    assert [r.index for r in received] == [0, 1]


def test_region_without_cells_completes_immediately():
    flat = Region.from_geometry("flat", {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [0, 0]]]})
    client = FakePlacesClient(lambda cell, attempt: [])
    progress = []
    scanner = make_scanner(client)
    scanner.subscribe(on_progress=progress.append)

    session = scanner.scan(flat, "cafes")

    assert session.no_cells
    assert session.state == ScanState.COMPLETED
    assert client.calls == []
    assert len(progress) == 1 and progress[0].total_cells == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"query": "cafes", "cell_size_deg": 0},
        {"query": "cafes", "cell_size_deg": -1.0},
        {"query": "cafes", "concurrency": 0},
        {"query": "   "},
    ],
)
def test_invalid_scan_parameters(kwargs):
    scanner = make_scanner(FakePlacesClient(lambda cell, attempt: []))
    with pytest.raises(ConfigurationError):
        scanner.scan(box_region(0.0, 0.0, 1.0, 1.0), **kwargs)
    assert scanner.state == ScanState.IDLE


def test_start_scan_resolves_region_ids():
    goa = box_region(0.0, 0.0, 1.0, 1.0, region_id="goa")
    client = FakePlacesClient(lambda cell, attempt: [])
    scanner = make_scanner(client, store=RegionStore([goa]))

    assert scanner.start_scan("goa", "cafes", cell_size_deg=1.0).region is goa
    with pytest.raises(ConfigurationError, match="Unknown region id"):
        scanner.start_scan("atlantis", "cafes")
    with pytest.raises(ConfigurationError):
        make_scanner(client).start_scan("goa", "cafes")


def test_each_scan_gets_a_fresh_session():
    region = box_region(0.0, 0.0, 1.0, 1.0)
    scanner = make_scanner(FakePlacesClient(lambda cell, attempt: [center_place(cell, "a")]))

    assert scanner.state == ScanState.IDLE
    assert not scanner.abort_scan()
    first = scanner.scan(region, "cafes", cell_size_deg=1.0)
    second = scanner.scan(region, "cafes", cell_size_deg=1.0)

    assert first is not second
    assert [r.index for r in second.results] == [0]
    assert scanner.get_progress().completed_cells == 1

    scanner.clear_results()
    assert scanner.state == ScanState.IDLE
    assert scanner.get_results() == []


def test_scan_summary_lines():
    region = box_region(0.0, 0.0, 2.0, 1.0, region_id="goa")
    session = make_scanner(FakePlacesClient(lambda cell, attempt: [center_place(cell)])).scan(
        region, "cafes", cell_size_deg=1.0
    )

    summary = build_scan_summary(session)
    assert summary["state"] == "completed"
    assert summary["results"] == 2
    assert summary["total_cells"] == 2
    lines = render_scan_summary(summary)
    assert lines[0] == "Region: goa (goa)"
    assert "Unique places: 2" in lines
