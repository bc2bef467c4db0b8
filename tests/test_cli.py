import json

import pytest

import run
from statescan import config
from statescan.places_client import Place


class FakePlacesClient:
    def __init__(self):
        self.calls = 0

    def search_cell(self, query, cell, cancel_event=None):
        self.calls += 1
        lat, lon = cell.center
        return [Place(place_id=f"p{self.calls}", name="Beach Shack", lat=lat, lon=lon, types=["bar"])]


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setattr(run, "load_env", lambda *args, **kwargs: None)
    monkeypatch.setattr(config, "USAGE_PATH", str(tmp_path / "usage.json"))
    monkeypatch.setattr(config, "BATCH_PAUSE_SECONDS", 0.0)
    regions = tmp_path / "states.geojson"
    ring = [[0.0, 0.0], [2.0, 0.0], [2.0, 1.0], [0.0, 1.0], [0.0, 0.0]]
    regions.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "features": [
                    {
                        "type": "Feature",
                        "properties": {"stateId": "goa", "name": "Goa"},
                        "geometry": {"type": "Polygon", "coordinates": [ring]},
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    return tmp_path, str(regions)


def test_list_states(capsys, cli_env):
    assert run.main(["--list-states"]) == 0
    assert "goa\tGoa" in capsys.readouterr().out


def test_scan_requires_api_key(monkeypatch, cli_env):
    _tmp, regions = cli_env
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    assert run.main(["--state", "goa", "--query", "bars", "--regions", regions]) == 1


def test_unknown_state_is_rejected(monkeypatch, cli_env):
    _tmp, regions = cli_env
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
    monkeypatch.setattr(run, "build_places_client", lambda api_key, usage=None: FakePlacesClient())
    assert run.main(["--state", "atlantis", "--query", "bars", "--regions", regions, "--no-write"]) == 1


def test_scan_writes_outputs(monkeypatch, cli_env):
    tmp_path, regions = cli_env
    out_dir = tmp_path / "out"
    client = FakePlacesClient()
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
    monkeypatch.setattr(run, "build_places_client", lambda api_key, usage=None: client)

    code = run.main(
        [
            "--state",
            "goa",
            "--query",
            "bars",
            "--regions",
            regions,
            "--cell-size",
            "1.0",
            "--out",
            str(out_dir),
        ]
    )

    assert code == 0
    assert client.calls == 2
    results = json.loads((out_dir / "results.json").read_text(encoding="utf-8"))
    assert [r["index"] for r in results] == [0, 1]
    summary = json.loads((out_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["state"] == "completed"
    assert summary["region_name"] == "Goa"
    assert (out_dir / "results.csv").exists()
    assert (out_dir / "summary.txt").exists()
    progress = json.loads((out_dir / "progress.json").read_text(encoding="utf-8"))
    assert progress["completed_cells"] == 2
    assert not (out_dir / "categories.json").exists()
    assert (out_dir / "usage.json").exists()
    assert not (tmp_path / "usage.json").exists()


def test_usage_reset(capsys, cli_env):
    tmp_path, _regions = cli_env
    (tmp_path / "usage.json").write_text(
        json.dumps({"lifetime": {"places_search": 7, "gemini_calls": 1, "cost": 0.2}}),
        encoding="utf-8",
    )
    assert run.main(["--usage"]) == 0
    assert "places_search=7" in capsys.readouterr().out

    assert run.main(["--usage-reset"]) == 0
    data = json.loads((tmp_path / "usage.json").read_text(encoding="utf-8"))
    assert data["lifetime"]["places_search"] == 0


def test_no_write_leaves_usage_untouched(monkeypatch, cli_env):
    tmp_path, regions = cli_env
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
    monkeypatch.setattr(run, "build_places_client", lambda api_key, usage=None: FakePlacesClient())

    code = run.main(
        ["--state", "goa", "--query", "bars", "--regions", regions, "--cell-size", "1.0", "--no-write"]
    )

    assert code == 0
    assert list(tmp_path.iterdir()) == [tmp_path / "states.geojson"]


def test_locate_point(capsys, cli_env):
    _tmp, regions = cli_env
    assert run.main(["--locate", "0.5,1.5", "--regions", regions]) == 0
    assert capsys.readouterr().out.strip() == "goa\tGoa"

    assert run.main(["--locate", "5.0,5.0", "--regions", regions]) == 1
    assert run.main(["--locate", "nowhere", "--regions", regions]) == 1
