"""Places API client and response parsing for per-cell text searches."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import config
from .grid import Cell
from .http import HttpClient
from .usage import UsageTracker


@dataclass(frozen=True)
class Place:
    place_id: Optional[str]
    name: str
    lat: float
    lon: float
    address: str = ""
    types: List[str] = field(default_factory=list)
    rating: Optional[float] = None
    rating_count: int = 0
    maps_uri: str = ""
    photo_ref: str = ""

    def to_row(self) -> Dict[str, Any]:
        return {
            "place_id": self.place_id or "",
            "name": self.name,
            "address": self.address,
            "lat": self.lat,
            "lon": self.lon,
            "types": list(self.types),
            "rating": self.rating,
            "rating_count": self.rating_count,
            "maps_uri": self.maps_uri,
            "photo_ref": self.photo_ref,
        }


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        field_mask: str = config.PLACES_FIELD_MASK_SCAN,
    ) -> None:
        self.http = http_client
        self.field_mask = field_mask

    def search_cell(
        self,
        query: str,
        cell: Cell,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Place]:
        body = build_text_search_body(query, cell)
        response = self.http.post_json(
            config.PLACES_TEXT_SEARCH_URL,
            body,
            self.field_mask,
            cancel_event=cancel_event,
        )
        return parse_places_response(response)


def build_places_client(api_key: str, usage: Optional[UsageTracker] = None) -> PlacesClient:
    """Wire an HTTP client whose every answered request is billed to ``usage``."""

    def on_response(_url: str, _status: int) -> None:
        if usage is not None:
            usage.track_places_search()

    http_client = HttpClient(
        api_key,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
        on_response=on_response,
    )
    return PlacesClient(http_client)


def build_text_search_body(query: str, cell: Cell) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "textQuery": query,
        "languageCode": config.PLACES_LANGUAGE_CODE,
        "maxResultCount": config.PLACES_MAX_RESULT_COUNT,
        "locationBias": {
            "rectangle": {
                "low": {"latitude": cell.south, "longitude": cell.west},
                "high": {"latitude": cell.north, "longitude": cell.east},
            }
        },
    }
    if config.PLACES_TEXT_SEARCH_BODY_EXTRA:
        body.update(config.PLACES_TEXT_SEARCH_BODY_EXTRA)
    return body


# Adapter/mapper for Places response fields

def parse_places_response(response: Dict[str, Any]) -> List[Place]:
    places = response.get("places") or []
    if not isinstance(places, list):
        raise ValueError(f"Malformed places payload: {type(places).__name__}")
    parsed: List[Place] = []
    for p in places:
        if not isinstance(p, dict):
            continue
        location = p.get("location") or p.get("latLng") or {}
        lat = location.get("latitude", location.get("lat"))
        lon = location.get("longitude", location.get("lng", location.get("lon")))
        if lat is None or lon is None:
            continue
        display = p.get("displayName")
        if isinstance(display, dict):
            name = display.get("text") or display.get("value")
        else:
            name = display
        photos = p.get("photos") or []
        photo_ref = ""
        if photos and isinstance(photos[0], dict):
            photo_ref = photos[0].get("name") or ""
        rating = p.get("rating")
        rating_count = p.get("userRatingCount") or p.get("user_ratings_total") or 0
        parsed.append(
            Place(
                place_id=p.get("id") or p.get("placeId") or None,
                name=name or "Unknown",
                lat=float(lat),
                lon=float(lon),
                address=p.get("formattedAddress") or "",
                types=list(p.get("types") or []),
                rating=float(rating) if rating else None,
                rating_count=int(rating_count),
                maps_uri=p.get("googleMapsUri") or "",
                photo_ref=photo_ref,
            )
        )
    return parsed
