"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, TextIO


class ProgressSnapshot(Protocol):
    completed_cells: int
    total_cells: int
    results_found: int
    error_count: int


RESULT_FIELDNAMES = [
    "index",
    "place_id",
    "name",
    "address",
    "lat",
    "lon",
    "types",
    "rating",
    "rating_count",
    "maps_uri",
    "photo_ref",
    "category",
]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


def build_result_row(result: Any, category: Optional[str] = None) -> Dict[str, Any]:
    row = {"index": result.index}
    row.update(result.place.to_row())
    row["category"] = category or ""
    return row


def write_results_csv(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=RESULT_FIELDNAMES, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            out = dict(row)
            out["types"] = json.dumps(out.get("types", []), ensure_ascii=False)
            writer.writerow(out)


def write_results_json(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(list(rows), f, ensure_ascii=False, indent=2)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def read_json_object(path: str) -> Optional[Dict[str, Any]]:
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return data if isinstance(data, dict) else None


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines))


class ProgressReporter:
    """Scan progress listener: periodic log lines plus an optional JSON snapshot."""

    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 10,
        write_interval_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(1, int(log_every)) if log_every else 0
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.updates = 0
        self.last: Optional[ProgressSnapshot] = None
        self._last_write: Optional[float] = None

    def __call__(self, progress: ProgressSnapshot) -> None:
        self.updates += 1
        self.last = progress
        done = progress.total_cells > 0 and progress.completed_cells >= progress.total_cells
        if self.log_every and (self.updates % self.log_every == 0 or done):
            pct = round(100 * progress.completed_cells / progress.total_cells) if progress.total_cells else 0
            self.logger.info(
                "Progress: %s/%s cells (%s%%) results=%s errors=%s",
                progress.completed_cells,
                progress.total_cells,
                pct,
                progress.results_found,
                progress.error_count,
            )
        self._write_if_due(force=done)

    def flush(self) -> None:
        self._write_if_due(force=True)

    def _write_if_due(self, force: bool = False) -> None:
        if not self.output_path or self.last is None:
            return
        now = time.monotonic()
        if not force and self._last_write is not None:
            if (now - self._last_write) < self.write_interval_seconds:
                return
        payload = {
            "completed_cells": self.last.completed_cells,
            "total_cells": self.last.total_cells,
            "results_found": self.last.results_found,
            "error_count": self.last.error_count,
            "timestamp": utc_now_iso(),
        }
        with atomic_writer(self.output_path, mode="w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        self._last_write = now
