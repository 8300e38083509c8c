"""SerpAPI Google Maps helpers used as an alternative keyword place search."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Iterable, Optional

from serpapi import GoogleSearch

from centermap.models import PlaceMatch

logger = logging.getLogger(__name__)

RETRY_LIMIT = 1
RETRY_DELAY_SECONDS = 1.2


def build_serpapi_params(query: str, api_key: str, ll: Optional[str] = None) -> Dict[str, Any]:
    """Construct SerpAPI request parameters for the Google Maps engine."""
    if not query or not query.strip():
        raise ValueError("Query must be provided for SerpAPI lookups.")

    params: Dict[str, Any] = {
        "engine": "google_maps",
        "q": query.strip(),
        "api_key": api_key,
        "type": "search",
        "hl": "ko",
    }
    if ll:
        params["ll"] = ll
    return params


def fetch_from_serpapi(
    query: str,
    api_key: str,
    ll: Optional[str] = None,
    retry_limit: int = RETRY_LIMIT,
) -> Dict[str, Any]:
    """Call SerpAPI Google Maps and return the raw JSON response with retry logic."""
    params = build_serpapi_params(query, api_key, ll)

    attempt = 0
    while True:
        attempt += 1
        try:
            logger.info("Calling SerpAPI (attempt %s) for query=%s", attempt, query)
            data = GoogleSearch(params).get_dict()
            if not data:
                raise ValueError("SerpAPI returned an empty payload.")
            if "error" in data:
                raise RuntimeError(f"SerpAPI returned an error response: {data.get('error') or data}")
            return data
        except Exception as exc:  # noqa: BLE001
            logger.warning("SerpAPI request failed (attempt %s/%s): %s", attempt, retry_limit + 1, exc)
            if attempt > retry_limit:
                raise
            time.sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))


def _extract_items(data: Dict[str, Any]) -> Iterable[Any]:
    """SerpAPI returns a list under local_results, or a single place under place_results."""
    local_results = data.get("local_results")
    if isinstance(local_results, list):
        return local_results
    if isinstance(local_results, dict):
        for maybe in (local_results.get("places"), local_results.get("results")):
            if isinstance(maybe, list):
                return maybe
    place_results = data.get("place_results")
    if isinstance(place_results, list):
        return place_results
    if isinstance(place_results, dict):
        return [place_results]
    return []


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_first_place(data: Optional[Dict[str, Any]]) -> Optional[PlaceMatch]:
    if not data:
        return None
    for raw in _extract_items(data):
        if not isinstance(raw, dict):
            continue
        gps = raw.get("gps_coordinates") or {}
        lat = _safe_float(gps.get("latitude"))
        lng = _safe_float(gps.get("longitude"))
        if lat is None or lng is None:
            continue
        return PlaceMatch(
            lat=lat,
            lng=lng,
            title=(raw.get("title") or raw.get("name") or "").strip() or None,
            url=raw.get("website"),
        )
    return None


class SerpPlaceSearch:
    """Keyword place search over SerpAPI; errors degrade to a miss.

    Each call is a single request. Retrying is left to the resolver.
    """

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def search_keyword(self, keyword: str) -> Optional[PlaceMatch]:
        query = (keyword or "").strip()
        if not query or not self.api_key:
            return None
        try:
            return parse_first_place(fetch_from_serpapi(query, self.api_key, retry_limit=0))
        except Exception as exc:  # noqa: BLE001
            logger.warning("SerpAPI keyword search failed for %s: %s", query, exc)
            return None
