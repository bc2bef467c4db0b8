"""Grid scan orchestration.

A scan tiles a region into cells, queries the place-search client for each
cell in fixed-size concurrent batches and streams every hit that falls inside
the region through a :class:`ResultDeduplicator`.

Lifecycle: ``idle -> running -> completed | aborted``. A ``Scanner`` owns at
most one :class:`ScanSession`; starting a new scan replaces it.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import config
from .config import ConfigurationError, validate_scan_params
from .dedup import ResultDeduplicator, ScanResult
from .geo import Region, point_in_region
from .grid import Cell, generate_grid
from .http import RateLimitedError, RequestCancelled
from .places_client import Place, PlacesClient
from .regions import RegionStore
from .reporting import utc_now_iso

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ScanCancelled(Exception):
    """Raised inside a cell worker when the scan was aborted mid-flight."""


@dataclass(frozen=True)
class ScanProgress:
    completed_cells: int
    total_cells: int
    results_found: int
    error_count: int


@dataclass
class CellOutcome:
    cell: Cell
    places: List[Place] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False
    attempts: int = 0
    rate_limit_retries: int = 0
    outside_region: int = 0


@dataclass
class ScanSession:
    region: Region
    query: str
    cell_size_deg: float
    concurrency: int
    dedup: ResultDeduplicator
    state: ScanState = ScanState.IDLE
    cells: List[Cell] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    completed_cells: int = 0
    cancelled_cells: int = 0
    error_count: int = 0
    rate_limit_retries: int = 0
    outside_region: int = 0
    no_cells: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def total_cells(self) -> int:
        return len(self.cells)

    @property
    def results(self) -> List[ScanResult]:
        return list(self.dedup.results)

    def progress(self) -> ScanProgress:
        return ScanProgress(
            completed_cells=self.completed_cells,
            total_cells=self.total_cells,
            results_found=len(self.dedup),
            error_count=self.error_count,
        )


ResultListener = Callable[[ScanResult], None]
ProgressListener = Callable[[ScanProgress], None]


class Scanner:
    def __init__(
        self,
        places_client: PlacesClient,
        region_store: Optional[RegionStore] = None,
        batch_pause_seconds: Optional[float] = None,
        rate_limit_retry_delay_seconds: Optional[float] = None,
        max_rate_limit_retries: Optional[int] = None,
        dedup_distance_m: Optional[float] = None,
    ) -> None:
        self.places_client = places_client
        self.region_store = region_store
        self.batch_pause_seconds = (
            config.BATCH_PAUSE_SECONDS if batch_pause_seconds is None else batch_pause_seconds
        )
        self.rate_limit_retry_delay_seconds = (
            config.RATE_LIMIT_RETRY_DELAY_SECONDS
            if rate_limit_retry_delay_seconds is None
            else rate_limit_retry_delay_seconds
        )
        self.max_rate_limit_retries = (
            config.RATE_LIMIT_MAX_RETRIES if max_rate_limit_retries is None else max_rate_limit_retries
        )
        self.dedup_distance_m = dedup_distance_m
        self.session: Optional[ScanSession] = None
        self._result_listeners: List[ResultListener] = []
        self._progress_listeners: List[ProgressListener] = []

    # --- Subscriptions ---

    def subscribe(
        self,
        on_result: Optional[ResultListener] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> None:
        if on_result is not None:
            self._result_listeners.append(on_result)
        if on_progress is not None:
            self._progress_listeners.append(on_progress)

    # --- Queries ---

    @property
    def state(self) -> ScanState:
        if self.session is None:
            return ScanState.IDLE
        return self.session.state

    def get_results(self) -> List[ScanResult]:
        if self.session is None:
            return []
        return self.session.results

    def get_progress(self) -> ScanProgress:
        if self.session is None:
            return ScanProgress(0, 0, 0, 0)
        return self.session.progress()

    # --- Commands ---

    def start_scan(
        self,
        region_id: str,
        query: str,
        cell_size_deg: Optional[float] = None,
        concurrency: Optional[int] = None,
    ) -> ScanSession:
        if self.region_store is None:
            raise ConfigurationError("No region store configured")
        region = self.region_store.get(region_id)
        return self.scan(region, query, cell_size_deg=cell_size_deg, concurrency=concurrency)

    def abort_scan(self) -> bool:
        session = self.session
        if session is None or session.state != ScanState.RUNNING:
            return False
        if not session.cancel_event.is_set():
            logger.info("Abort requested for scan of %s", session.region.region_id)
            session.cancel_event.set()
        return True

    def clear_results(self) -> None:
        if self.state == ScanState.RUNNING:
            raise RuntimeError("Cannot clear results while a scan is running")
        self.session = None

    def scan(
        self,
        region: Region,
        query: str,
        cell_size_deg: Optional[float] = None,
        concurrency: Optional[int] = None,
    ) -> ScanSession:
        cell_size_deg = config.DEFAULT_CELL_SIZE_DEG if cell_size_deg is None else cell_size_deg
        concurrency = config.DEFAULT_CONCURRENCY if concurrency is None else concurrency
        validate_scan_params(cell_size_deg, concurrency)
        query = (query or "").strip()
        if not query:
            raise ConfigurationError("Query must not be empty")
        if self.state == ScanState.RUNNING:
            raise RuntimeError("A scan is already running")

        session = ScanSession(
            region=region,
            query=query,
            cell_size_deg=float(cell_size_deg),
            concurrency=int(concurrency),
            dedup=ResultDeduplicator(self.dedup_distance_m),
        )
        self.session = session

        logger.info("Stage 1: grid (%s, cell=%s deg)", region.region_id, session.cell_size_deg)
        session.cells = generate_grid(region, session.cell_size_deg)
        session.state = ScanState.RUNNING
        session.started_at = utc_now_iso()

        if not session.cells:
            logger.warning("No grid cells generated for %s", region.region_id)
            session.no_cells = True
            self._emit_progress(session)
            self._finish(session)
            return session

        logger.info(
            "Stage 2: scan %s cells for %r (concurrency=%s)",
            session.total_cells,
            query,
            session.concurrency,
        )
        self._emit_progress(session)
        self._run_batches(session)
        self._finish(session)
        return session

    # --- Internals ---

    def _run_batches(self, session: ScanSession) -> None:
        cells = session.cells
        size = session.concurrency
        with ThreadPoolExecutor(max_workers=size, thread_name_prefix="scan-cell") as executor:
            for start in range(0, len(cells), size):
                if session.cancel_event.is_set():
                    break
                batch = cells[start : start + size]
                futures = [executor.submit(self._search_cell, session, cell) for cell in batch]
                # Absorb in batch order so indices do not depend on completion order.
                for future in futures:
                    self._absorb(session, future.result())
                self._emit_progress(session)

                if start + size < len(cells) and not session.cancel_event.is_set():
                    session.cancel_event.wait(self.batch_pause_seconds)

    def _search_cell(self, session: ScanSession, cell: Cell) -> CellOutcome:
        outcome = CellOutcome(cell=cell)
        cancel_event = session.cancel_event
        try:
            while True:
                if cancel_event.is_set():
                    raise ScanCancelled()
                outcome.attempts += 1
                try:
                    places = self.places_client.search_cell(session.query, cell, cancel_event=cancel_event)
                    break
                except RateLimitedError:
                    if outcome.rate_limit_retries >= self.max_rate_limit_retries:
                        raise
                    outcome.rate_limit_retries += 1
                    logger.info(
                        "Rate limited on cell %s, retrying in %ss",
                        _cell_label(cell),
                        self.rate_limit_retry_delay_seconds,
                    )
                    if cancel_event.wait(self.rate_limit_retry_delay_seconds):
                        raise ScanCancelled()
        except (ScanCancelled, RequestCancelled):
            outcome.cancelled = True
            return outcome
        except RateLimitedError as exc:
            logger.warning(
                "Cell %s still rate limited after %s attempts: %s", _cell_label(cell), outcome.attempts, exc
            )
            outcome.error = "rate_limited"
            return outcome
        except Exception as exc:
            if cancel_event.is_set():
                outcome.cancelled = True
                return outcome
            # Per-cell failures are counted, never raised to the caller.
            logger.warning("Cell search failed (%s): %s: %s", _cell_label(cell), type(exc).__name__, exc)
            outcome.error = f"{type(exc).__name__}: {exc}"
            return outcome

        # Calls that return after an abort do not count as processed cells.
        if cancel_event.is_set():
            outcome.cancelled = True
            return outcome
        for place in places:
            if point_in_region(place.lat, place.lon, session.region):
                outcome.places.append(place)
            else:
                outcome.outside_region += 1
        return outcome

    def _absorb(self, session: ScanSession, outcome: CellOutcome) -> None:
        session.rate_limit_retries += outcome.rate_limit_retries
        if outcome.cancelled:
            session.cancelled_cells += 1
            return
        session.completed_cells += 1
        if outcome.error is not None:
            session.error_count += 1
            return
        session.outside_region += outcome.outside_region
        for place in outcome.places:
            if session.dedup.admit(place):
                self._emit_result(session.dedup.last_result)

    def _finish(self, session: ScanSession) -> None:
        if session.completed_cells < session.total_cells:
            session.state = ScanState.ABORTED
        else:
            session.state = ScanState.COMPLETED
        session.finished_at = utc_now_iso()
        logger.info(
            "Scan %s: %s/%s cells, %s results, %s errors",
            session.state.value,
            session.completed_cells,
            session.total_cells,
            len(session.dedup),
            session.error_count,
        )

    def _emit_result(self, result: ScanResult) -> None:
        for listener in self._result_listeners:
            try:
                listener(result)
            except Exception:
                logger.exception("Result listener failed")

    def _emit_progress(self, session: ScanSession) -> None:
        progress = session.progress()
        for listener in self._progress_listeners:
            try:
                listener(progress)
            except Exception:
                logger.exception("Progress listener failed")


def _cell_label(cell: Cell) -> str:
    return f"{cell.south:.4f},{cell.west:.4f}..{cell.north:.4f},{cell.east:.4f}"


def build_scan_summary(session: ScanSession) -> Dict[str, Any]:
    dedup = session.dedup
    return {
        "region_id": session.region.region_id,
        "region_name": session.region.name,
        "query": session.query,
        "state": session.state.value,
        "cell_size_deg": session.cell_size_deg,
        "concurrency": session.concurrency,
        "total_cells": session.total_cells,
        "completed_cells": session.completed_cells,
        "cancelled_cells": session.cancelled_cells,
        "no_cells": session.no_cells,
        "results": len(dedup),
        "error_count": session.error_count,
        "rate_limit_retries": session.rate_limit_retries,
        "outside_region": session.outside_region,
        "dedup_rejected_by_id": dedup.rejected_by_id,
        "dedup_rejected_by_distance": dedup.rejected_by_distance,
        "dedup_distance_m": dedup.distance_threshold_m,
        "started_at": session.started_at,
        "finished_at": session.finished_at,
    }


def render_scan_summary(summary: Dict[str, Any]) -> List[str]:
    lines = []
    lines.append(f"Region: {summary.get('region_name', '')} ({summary.get('region_id', '')})")
    lines.append(f"Query: {summary.get('query', '')}")
    lines.append(f"State: {summary.get('state', '')}")
    lines.append(
        "Cells: {completed}/{total} (cell={cell} deg, concurrency={conc})".format(
            completed=summary.get("completed_cells", 0),
            total=summary.get("total_cells", 0),
            cell=summary.get("cell_size_deg"),
            conc=summary.get("concurrency"),
        )
    )
    if summary.get("no_cells"):
        lines.append("No grid cells generated for this region")
    lines.append(f"Unique places: {summary.get('results', 0)}")
    lines.append(
        "Errors: {errors} (rate-limit retries={retries})".format(
            errors=summary.get("error_count", 0),
            retries=summary.get("rate_limit_retries", 0),
        )
    )
    lines.append(
        "Dropped: outside_region={outside}, duplicate_id={dup_id}, within_{dist:g}m={dup_dist}".format(
            outside=summary.get("outside_region", 0),
            dup_id=summary.get("dedup_rejected_by_id", 0),
            dist=summary.get("dedup_distance_m") or 0,
            dup_dist=summary.get("dedup_rejected_by_distance", 0),
        )
    )
    return lines
