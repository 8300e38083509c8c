"""Extract map points and geocode work from arbitrary external JSON feeds."""

from __future__ import annotations

import re
from typing import Any, Callable, List, Optional, TypeVar

from centermap.etl.sources import (
    Record,
    collect_sources,
    find_number,
    find_number_by_pattern,
    find_string,
    find_string_by_pattern,
    rows_from_any_json,
)
from centermap.models import GeocodeTask, StreamMarkerPoint

T = TypeVar("T")

DEFAULT_MARKER_TITLE = "OpenAPI"

MARKER_LAT_KEYS = ["WGS84위도", "WGS84 위도", "위도", "lat", "latitude", "y", "REFINE_WGS84_LAT"]
MARKER_LNG_KEYS = ["WGS84경도", "WGS84 경도", "경도", "lng", "lon", "longitude", "x", "REFINE_WGS84_LOGT", "REFINE_WGS84_LONG"]
MARKER_TITLE_KEYS = ["name", "title", "place_name", "상담소명", "시설명", "기관명", "센터명"]
TASK_TITLE_KEYS = MARKER_TITLE_KEYS + ["사업장명"]
TASK_ADDRESS_KEYS = [
    "주소",
    "소재지도로명주소",
    "소재지지번주소",
    "도로명주소",
    "지번주소",
    "소재지",
    "roadAddress",
    "address",
    "rdnmadr",
    "lnmadr",
    "REFINE_ROADNM_ADDR",
    "REFINE_LOTNO_ADDR",
]
LINK_KEYS = ["url", "URI", "uri", "homepage", "homePage", "place_url", "홈페이지", "홈페이지URL", "홈페이지 URL"]

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)
_BLOG_SUFFIXES = (
    re.compile(r"\s*[:：]\s*네이버\s*블로그\s*$", re.IGNORECASE),
    re.compile(r"\s*-\s*네이버\s*블로그\s*$", re.IGNORECASE),
    re.compile(r"\s*[:：]\s*NAVER\s*Blog\s*$", re.IGNORECASE),
    re.compile(r"\s*-\s*NAVER\s*Blog\s*$", re.IGNORECASE),
    re.compile(r"\s*\|\s*.*$"),
)
_HOST = re.compile(r"^(?:https?://)?([^/?#]+)", re.IGNORECASE)
_MAP_SDK_URL = re.compile(r"dapi\.kakao\.com/v2/maps/sdk\.js", re.IGNORECASE)
_HTTP_URL_IN_TEXT = re.compile(r"https?://[^\s\"'`<>()\[\]{}]+", re.IGNORECASE)
_WWW_URL_IN_TEXT = re.compile(r"\bwww\.[^\s\"'`<>()\[\]{}]+", re.IGNORECASE)
_UNICODE_DOMAIN = re.compile(r"^(?:[^\W_]|[.-])+\.[^\W\d_]{2,}(/.*)?$")


def _link(sources: List[Record]) -> Optional[str]:
    raw = find_string(sources, LINK_KEYS) or find_string_by_pattern(sources, r"홈페이지|home\s?page|website|url")
    if raw and _ABSOLUTE_URL.match(raw.strip()):
        return raw.strip()
    return None


def marker_from_record(record: Record) -> Optional[StreamMarkerPoint]:
    """A point when the record carries an in-range coordinate pair, else ``None``."""
    sources = collect_sources(record)
    lat = find_number(sources, MARKER_LAT_KEYS)
    if lat is None:
        lat = find_number_by_pattern(sources, r"위도|lat|latitude")
    lng = find_number(sources, MARKER_LNG_KEYS)
    if lng is None:
        lng = find_number_by_pattern(sources, r"경도|lng|lon|longitude|logt|^x$")
    if lat is None or lng is None or not -90 <= lat <= 90 or not -180 <= lng <= 180:
        return None

    title = find_string(sources, MARKER_TITLE_KEYS) or DEFAULT_MARKER_TITLE
    return StreamMarkerPoint(lat=float(lat), lng=float(lng), title=title, url=_link(sources))


def geocode_task_from_record(record: Record) -> Optional[GeocodeTask]:
    """An address task for a record that has an address but no usable coordinates."""
    if marker_from_record(record) is not None:
        return None
    sources = collect_sources(record)
    address = (find_string(sources, TASK_ADDRESS_KEYS) or find_string_by_pattern(sources, r"주소|addr") or "").strip()
    if not address:
        return None

    title = find_string(sources, TASK_TITLE_KEYS) or address
    return GeocodeTask(
        entity_id=f"feed:{address.lower()}",
        address=address,
        title=title,
        source="feed",
        url=_link(sources),
    )


def _collect(document: Any, builder: Callable[[Record], Optional[T]]) -> List[T]:
    rows = rows_from_any_json(document)
    candidates = rows if rows else [document]
    found: List[T] = []
    for item in candidates:
        if not isinstance(item, dict):
            continue
        value = builder(item)
        if value is not None:
            found.append(value)
    return found


def extract_markers(document: Any) -> List[StreamMarkerPoint]:
    return _collect(document, marker_from_record)


def extract_geocode_tasks(document: Any) -> List[GeocodeTask]:
    return _collect(document, geocode_task_from_record)


def clean_keyword(raw: Optional[str]) -> str:
    """Normalise a page title into a place-search keyword (blog suffixes and ``| site`` tails removed)."""
    text = re.sub(r"\s+", " ", (raw or "").replace("\u00a0", " ")).strip()
    for suffix in _BLOG_SUFFIXES:
        text = suffix.sub("", text)
    return text.strip()


def keyword_from_url(url: str) -> str:
    compact = re.sub(r"\s+", "", url.strip())
    match = _HOST.match(compact)
    host = re.sub(r"^www\.", "", match.group(1) if match else compact, flags=re.IGNORECASE)
    return host or compact


def normalize_input_url(raw: str) -> Optional[str]:
    """Clean a pasted URL (quotes, brackets, trailing punctuation, inner spaces) and make it absolute."""
    value = (raw or "").strip()
    if not value:
        return None
    value = re.sub(r"^[\s\"'`(\[{<]+", "", value)
    value = re.sub(r"[\s\"'`)\]}>]+$", "", value)
    while value and value[-1] in ".,;:)]":
        value = value[:-1]
    value = re.sub(r"\s+", "", value)
    if not value:
        return None

    if _ABSOLUTE_URL.match(value):
        return value
    if value.startswith("//"):
        return f"https:{value}"
    if value.startswith("www."):
        return f"https://{value}"
    if _UNICODE_DOMAIN.match(value):
        return f"https://{value}"
    return None


def parse_urls_from_text(text: str) -> List[str]:
    """Every distinct feed URL in a free-form paste, in discovery order."""
    urls: List[str] = []
    seen = set()

    def add(raw: str) -> None:
        url = normalize_input_url(raw)
        if not url or _MAP_SDK_URL.search(url):
            return
        key = url.lower()
        if key in seen:
            return
        seen.add(key)
        urls.append(url)

    for match in _HTTP_URL_IN_TEXT.finditer(text):
        add(match.group(0))
    for match in _WWW_URL_IN_TEXT.finditer(text):
        add(match.group(0))
    for token in text.split():
        for part in re.split(r"[,;]", token):
            add(part)
    return urls
