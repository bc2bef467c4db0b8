"""Project configuration.

Loads user-defined scan parameters from scan_config.json when available,
falling back to sensible defaults. Keep API request shapes centralized here.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

_REPO_ROOT = Path(__file__).resolve().parent.parent


class ConfigurationError(ValueError):
    """Raised for scan parameters that are rejected before a scan starts."""


# --- API endpoints ---

PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"

# --- Field masks ---

PLACES_FIELD_MASK_SCAN = (
    "places.id,places.displayName,places.formattedAddress,places.location,"
    "places.types,places.rating,places.userRatingCount,places.googleMapsUri,"
    "places.photos"
)

# --- Places API request shape ---

PLACES_LANGUAGE_CODE = "en"
PLACES_MAX_RESULT_COUNT = 20
PLACES_TEXT_SEARCH_BODY_EXTRA: Dict[str, Any] = {}

# --- Regions ---

REGIONS_GEOJSON_PATH = str(_REPO_ROOT / "data" / "india-states.geojson")
REGION_ID_PROPERTY = "stateId"
REGION_NAME_PROPERTY = "name"

# --- Scan defaults ---

DEFAULT_CELL_SIZE_DEG = 0.1
DEFAULT_CONCURRENCY = 5
BATCH_PAUSE_SECONDS = 0.2
RATE_LIMIT_RETRY_DELAY_SECONDS = 2.0
RATE_LIMIT_MAX_RETRIES = 1

# Heuristics, not accuracy guarantees.
DEDUP_DISTANCE_M = 50.0

# --- Pricing (USD per call) ---

PRICE_PLACES_SEARCH = 0.032
PRICE_GEMINI_CALL = 0.0

# --- Gemini categorization ---

GEMINI_CATEGORIZE_MODEL = "gemini-2.0-flash-lite"
GEMINI_CATEGORIZE_TEMPERATURE = 0.3
GEMINI_CATEGORIZE_MAX_OUTPUT_TOKENS = 4096
CATEGORIZE_MIN_CATEGORIES = 3
CATEGORIZE_MAX_CATEGORIES = 8

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0

# --- Outputs ---

OUTPUT_DIR = "out"
USAGE_PATH = "out/usage.json"
PROGRESS_LOG_EVERY = 10
PROGRESS_WRITE_INTERVAL_SECONDS = 5.0

_FLOAT_KEYS = {
    "cell_size_deg": "DEFAULT_CELL_SIZE_DEG",
    "batch_pause_seconds": "BATCH_PAUSE_SECONDS",
    "rate_limit_retry_delay_seconds": "RATE_LIMIT_RETRY_DELAY_SECONDS",
    "dedup_distance_m": "DEDUP_DISTANCE_M",
    "price_places_search": "PRICE_PLACES_SEARCH",
    "price_gemini_call": "PRICE_GEMINI_CALL",
}
_INT_KEYS = {
    "concurrency": "DEFAULT_CONCURRENCY",
    "max_result_count": "PLACES_MAX_RESULT_COUNT",
    "http_timeout_seconds": "HTTP_TIMEOUT_SECONDS",
    "http_retry_max": "HTTP_RETRY_MAX",
}
_STR_KEYS = {
    "regions_path": "REGIONS_GEOJSON_PATH",
    "language_code": "PLACES_LANGUAGE_CODE",
    "gemini_model": "GEMINI_CATEGORIZE_MODEL",
    "output_dir": "OUTPUT_DIR",
    "usage_path": "USAGE_PATH",
}


def validate_scan_params(cell_size_deg: float, concurrency: int) -> None:
    try:
        cell_size = float(cell_size_deg)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Cell size must be a number, got {cell_size_deg!r}")
    if not cell_size > 0:
        raise ConfigurationError(f"Cell size must be > 0, got {cell_size_deg}")
    if isinstance(concurrency, bool) or not isinstance(concurrency, int):
        raise ConfigurationError(f"Concurrency must be an integer, got {concurrency!r}")
    if concurrency < 1:
        raise ConfigurationError(f"Concurrency must be >= 1, got {concurrency}")


def load_scan_config(path: Optional[str] = None) -> bool:
    """Load scan configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "scan_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a JSON object")

    globals_ref = globals()

    try:
        for key, name in _FLOAT_KEYS.items():
            if data.get(key) is not None:
                globals_ref[name] = float(data[key])
        for key, name in _INT_KEYS.items():
            if data.get(key) is not None:
                globals_ref[name] = int(data[key])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value in {config_path}: {exc}") from exc
    for key, name in _STR_KEYS.items():
        if data.get(key):
            globals_ref[name] = str(data[key])

    body_extra = data.get("text_search_body_extra")
    if isinstance(body_extra, dict):
        globals_ref["PLACES_TEXT_SEARCH_BODY_EXTRA"] = dict(body_extra)

    return True
