"""Client utilities for the Kakao Local REST API (address geocoding and keyword place search)."""

import logging
import math
from typing import Any, Dict, List, Optional

import requests

from centermap.models import PlaceMatch

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://dapi.kakao.com/v2/local/search"


class KakaoLocalError(RuntimeError):
    """Raised when the Local API returns a non-successful response."""


def _get(path: str, params: Dict[str, Any], api_key: str) -> Dict[str, Any]:
    headers = {"Authorization": f"KakaoAK {api_key}"}
    response = _SESSION.get(f"{_BASE_URL}/{path}", params=params, headers=headers, timeout=10)
    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        message = payload.get("message") or payload.get("errorType") or f"HTTP {response.status_code}"
        logger.error("%s failed: status=%s, message=%s", path, response.status_code, message)
        raise KakaoLocalError(message)
    return response.json()


def address_search(query: str, api_key: str) -> List[Dict[str, Any]]:
    payload = _get("address.json", {"query": query}, api_key)
    return payload.get("documents") or []


def keyword_search(query: str, api_key: str, size: int = 1) -> List[Dict[str, Any]]:
    payload = _get("keyword.json", {"query": query, "size": size}, api_key)
    return payload.get("documents") or []


def first_match(documents: List[Dict[str, Any]], fallback_title: Optional[str] = None) -> Optional[PlaceMatch]:
    """Read the first document's ``x``/``y`` strings into a match."""
    if not documents:
        return None
    document = documents[0]
    try:
        lat = float(document.get("y"))
        lng = float(document.get("x"))
    except (TypeError, ValueError):
        return None
    if not math.isfinite(lat) or not math.isfinite(lng):
        return None
    place_url = document.get("place_url")
    return PlaceMatch(
        lat=lat,
        lng=lng,
        title=document.get("place_name") or fallback_title,
        url=place_url if isinstance(place_url, str) else None,
    )


class KakaoGeocoder:
    """Geocoder backed by Kakao Local; every failure is reported as a miss."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def geocode_address(self, address: str) -> Optional[PlaceMatch]:
        query = (address or "").strip()
        if not query or not self.api_key:
            return None
        try:
            return first_match(address_search(query, self.api_key), fallback_title=query)
        except (KakaoLocalError, requests.RequestException, ValueError) as exc:
            logger.warning("Address geocode failed for %s: %s", query, exc)
            return None

    def search_keyword(self, keyword: str) -> Optional[PlaceMatch]:
        query = (keyword or "").strip()
        if not query or not self.api_key:
            return None
        try:
            return first_match(keyword_search(query, self.api_key), fallback_title=query)
        except (KakaoLocalError, requests.RequestException, ValueError) as exc:
            logger.warning("Keyword search failed for %s: %s", query, exc)
            return None
