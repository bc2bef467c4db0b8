import csv
import json

from statescan.dedup import ScanResult
from statescan.places_client import Place
from statescan.reporting import (
    ProgressReporter,
    atomic_write_text,
    build_result_row,
    write_results_csv,
)
from statescan.scanner import ScanProgress


def test_atomic_write_text(tmp_path):
    path = tmp_path / "atomic.txt"

    atomic_write_text(str(path), "first")
    assert path.read_text(encoding="utf-8") == "first"

    atomic_write_text(str(path), "second")
    assert path.read_text(encoding="utf-8") == "second"

    leftovers = [p for p in tmp_path.iterdir() if p.name != "atomic.txt"]
    assert not leftovers


def test_results_csv_has_header_and_json_types(tmp_path):
    place = Place(place_id="p1", name="Café Goa", lat=15.5, lon=73.8, types=["cafe", "food"], rating=4.5)
    rows = [build_result_row(ScanResult(index=0, place=place), category="Cafes")]
    path = tmp_path / "results.csv"

    write_results_csv(str(path), rows)

    with open(path, newline="", encoding="utf-8") as f:
        read = list(csv.DictReader(f))
    assert read[0]["name"] == "Café Goa"
    assert json.loads(read[0]["types"]) == ["cafe", "food"]
    assert read[0]["category"] == "Cafes"

    write_results_csv(str(path), [])
    assert path.read_text(encoding="utf-8").startswith("index,place_id,name")


def test_progress_reporter_writes_snapshot(tmp_path):
    path = tmp_path / "progress.json"
    reporter = ProgressReporter(str(path), log_every=1, write_interval_seconds=3600)

    reporter(ScanProgress(completed_cells=0, total_cells=4, results_found=0, error_count=0))
    first = json.loads(path.read_text(encoding="utf-8"))
    reporter(ScanProgress(completed_cells=2, total_cells=4, results_found=3, error_count=1))
    assert json.loads(path.read_text(encoding="utf-8"))["completed_cells"] == first["completed_cells"] == 0

    reporter(ScanProgress(completed_cells=4, total_cells=4, results_found=5, error_count=1))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["completed_cells"] == 4
    assert data["results_found"] == 5
