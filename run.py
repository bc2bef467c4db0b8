"""CLI entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv as _load_dotenv

from statescan import config
from statescan.categorize import CategorizationError, categorize_results, group_results
from statescan.config import ConfigurationError
from statescan.gemini_client import GeminiClient
from statescan.places_client import build_places_client
from statescan.regions import INDIA_STATES, RegionStore
from statescan.reporting import (
    ProgressReporter,
    build_result_row,
    ensure_dir,
    read_json_object,
    write_json_object,
    write_results_csv,
    write_results_json,
    write_summary,
)
from statescan.scanner import Scanner, ScanSession, ScanState, build_scan_summary, render_scan_summary
from statescan.usage import UsageTracker


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _env_len(name: str) -> int:
    return len((os.environ.get(name) or "").strip())


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Exhaustively scan an Indian state for places")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--preflight", action="store_true", help="Run offline checks only")
    group.add_argument("--list-states", action="store_true", help="List known state ids and exit")
    group.add_argument("--usage", action="store_true", help="Print usage counters and exit")
    group.add_argument("--usage-reset", action="store_true", help="Reset usage counters and exit")
    group.add_argument(
        "--locate", type=str, default=None, metavar="LAT,LON", help="Print the state containing a point"
    )
    parser.add_argument("--state", type=str, default=None, help="State id to scan (e.g. goa)")
    parser.add_argument("--query", type=str, default=None, help="Free-text place query")
    parser.add_argument("--cell-size", type=float, default=None, help="Grid cell size in degrees")
    parser.add_argument("--concurrency", type=int, default=None, help="Cells queried per batch")
    parser.add_argument("--regions", type=str, default=None, help="GeoJSON FeatureCollection of states")
    parser.add_argument("--config", type=str, default=None, help="Optional scan_config.json path")
    parser.add_argument("--categorize", action="store_true", help="Group results with Gemini after the scan")
    parser.add_argument("--out", type=str, default=None, help="Output directory (also holds usage.json when given)")
    parser.add_argument("--no-write", action="store_true", help="Do not write output files, usage.json included")
    return parser.parse_args(argv)


def load_usage(path: str) -> UsageTracker:
    return UsageTracker.from_dict(read_json_object(path))


def save_usage(path: str, usage: UsageTracker) -> None:
    ensure_dir(os.path.dirname(path) or ".")
    write_json_object(path, usage.to_dict())


def print_usage(usage: UsageTracker) -> None:
    data = usage.to_dict()
    for scope in ("lifetime", "session"):
        counters = data[scope]
        print(
            f"{scope}: places_search={counters['places_search']:,} "
            f"gemini_calls={counters['gemini_calls']:,} cost=${counters['cost']:.2f}"
        )


def run_preflight(regions_path: str) -> int:
    ok = True
    print(f"GOOGLE_MAPS_API_KEY length: {_env_len('GOOGLE_MAPS_API_KEY')}")
    print(f"GEMINI_API_KEY length: {_env_len('GEMINI_API_KEY')}")
    if not _env_len("GOOGLE_MAPS_API_KEY"):
        print("Places API key: MISSING")
        ok = False
    try:
        store = RegionStore.from_geojson_file(regions_path)
        print(f"Regions: OK ({len(store)} loaded)")
        missing = [s["id"] for s in INDIA_STATES if s["id"] not in store]
        if missing:
            print(f"Regions without geometry: {', '.join(missing)}")
    except (ConfigurationError, ValueError) as exc:
        print(f"Regions: FAIL ({exc})")
        ok = False
    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def run_locate(point: str, regions_path: str) -> int:
    try:
        lat_text, lon_text = point.split(",")
        lat, lon = float(lat_text), float(lon_text)
    except ValueError:
        print(f"--locate expects LAT,LON, got {point!r}", file=sys.stderr)
        return 1
    try:
        store = RegionStore.from_geojson_file(regions_path)
    except ConfigurationError as exc:
        print(f"Regions: {exc}", file=sys.stderr)
        return 1
    region = store.find_region_for_point(lat, lon)
    if region is None:
        print(f"No state contains {lat},{lon}")
        return 1
    print(f"{region.region_id}\t{region.name}")
    return 0


def write_outputs(
    out_dir: str,
    session: ScanSession,
    categories: Optional[Dict[str, Any]] = None,
    category_by_index: Optional[Dict[int, str]] = None,
) -> None:
    ensure_dir(out_dir)
    category_by_index = category_by_index or {}
    rows = [build_result_row(r, category_by_index.get(r.index)) for r in session.results]
    write_results_csv(f"{out_dir}/results.csv", rows)
    write_results_json(f"{out_dir}/results.json", rows)
    summary = build_scan_summary(session)
    write_json_object(f"{out_dir}/summary.json", summary)
    write_summary(f"{out_dir}/summary.txt", render_scan_summary(summary))
    if categories is not None:
        write_json_object(f"{out_dir}/categories.json", categories)


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        config.load_scan_config(args.config)
    except (ConfigurationError, ValueError) as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 1

    regions_path = args.regions or config.REGIONS_GEOJSON_PATH
    out_dir = args.out or config.OUTPUT_DIR

    if args.list_states:
        for state in INDIA_STATES:
            print(f"{state['id']}\t{state['name']}")
        return 0

    if args.preflight:
        return run_preflight(regions_path)

    if args.locate:
        return run_locate(args.locate, regions_path)

    usage_path = os.path.join(args.out, "usage.json") if args.out else config.USAGE_PATH
    usage = load_usage(usage_path)
    if args.usage:
        print_usage(usage)
        return 0
    if args.usage_reset:
        usage.reset()
        save_usage(usage_path, usage)
        print("Usage stats reset")
        return 0

    if not args.state or not (args.query or "").strip():
        print("--state and --query are required for a scan", file=sys.stderr)
        return 1

    api_key = (os.environ.get("GOOGLE_MAPS_API_KEY") or "").strip()
    if not api_key:
        print("Missing GOOGLE_MAPS_API_KEY in environment", file=sys.stderr)
        return 1

    try:
        store = RegionStore.from_geojson_file(regions_path)
        scanner = Scanner(build_places_client(api_key, usage=usage), region_store=store)
        reporter = ProgressReporter(
            None if args.no_write else f"{out_dir}/progress.json",
            log_every=config.PROGRESS_LOG_EVERY,
            write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
        )
        if not args.no_write:
            ensure_dir(out_dir)
        scanner.subscribe(on_progress=reporter)

        previous_handler = signal.signal(signal.SIGINT, lambda _sig, _frame: scanner.abort_scan())
        try:
            session = scanner.start_scan(args.state, args.query, args.cell_size, args.concurrency)
        finally:
            signal.signal(signal.SIGINT, previous_handler)
            if not args.no_write:
                save_usage(usage_path, usage)
        reporter.flush()
    except ConfigurationError as exc:
        print(f"Scan not started: {exc}", file=sys.stderr)
        return 1

    if session.no_cells:
        print("No grid cells generated for this state")
    elif session.state == ScanState.ABORTED:
        print(f"Scan stopped: {len(session.dedup)} places kept from {session.completed_cells} cells")
    else:
        print(f"Scan complete: {len(session.dedup)} places found")

    categories: Optional[Dict[str, Any]] = None
    category_by_index: Dict[int, str] = {}
    exit_code = 0
    if args.categorize and session.results:
        try:
            categorization = categorize_results(
                session.results, session.query, GeminiClient.from_env(usage=usage)
            )
            view = group_results(session.results, categorization)
            categories = view.to_dict()
            category_by_index = view.category_by_index()
            print(view.summary)
            for group_item in view.groups:
                print(f"- {group_item.name}: {len(group_item.results)}")
        except CategorizationError as exc:
            print(f"AI categorization failed: {exc}", file=sys.stderr)
            exit_code = 1
        finally:
            if not args.no_write:
                save_usage(usage_path, usage)

    if not args.no_write:
        write_outputs(out_dir, session, categories, category_by_index)
        print(f"Results written to {out_dir}/results.csv and {out_dir}/results.json")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
