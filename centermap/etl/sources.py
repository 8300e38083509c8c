"""Schema-agnostic field lookup over raw dataset rows.

Public datasets name the same concept in many ways ("주소", "도로명주소",
"address", "REFINE_ROADNM_ADDR" ...) and often bury fields inside nested
sub-objects.  Every lookup here walks an ordered list of candidate maps built
by :func:`collect_sources` and returns the first value that coerces to
something non-empty.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Union

Record = Dict[str, Any]
KeyPattern = Union[str, Pattern[str]]

NESTED_CONTAINER_KEYS = (
    "기본정보",
    "기본 정보",
    "basicInfo",
    "baseInfo",
    "BASE_INFO",
    "후기_평점",
    "후기평점",
    "후기 평점",
    "예약_및_이용신청",
    "예약 및 이용신청",
    "예약정보",
    "공식홈페이지_및_상담연결",
    "공식홈페이지 및 상담연결",
    "공식홈페이지",
    "공식 홈페이지",
    "공식_홈페이지",
    "상담소_연결_페이지",
    "상담소 연결 페이지",
    "상담소연결페이지",
    "상담소_연결페이지",
    "상담소연결_페이지",
    "전문가소개",
    "전문가 소개",
)

DEEP_CONTAINER_KEYS = (
    "공통_자원",
    "공통 자원",
    "공통자원",
    "commonResources",
    "지역_상담기관_홈페이지",
    "지역 상담기관 홈페이지",
    "지역상담기관_홈페이지",
    "홈페이지",
    "홈페이지명",
)

ROW_WRAPPER_KEYS = ("data", "records", "items", "rows")
ANY_ROW_WRAPPER_KEYS = ROW_WRAPPER_KEYS + ("documents", "results", "result")

NESTED_COUNSELING_ROWS = re.compile(r"주변.*상담소|near.*counsel", re.IGNORECASE)

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def as_record(value: Any) -> Optional[Record]:
    return value if isinstance(value, dict) else None


def collect_sources(record: Record) -> List[Record]:
    """Return the record followed by its known nested containers, in lookup priority order."""
    sources: List[Record] = [record]
    for key in NESTED_CONTAINER_KEYS:
        nested = as_record(record.get(key))
        if nested is None:
            continue
        sources.append(nested)
        for deep_key in DEEP_CONTAINER_KEYS:
            deep = as_record(nested.get(deep_key))
            if deep is not None:
                sources.append(deep)
    return sources


# ---------- Coercion ----------


def format_number(value: float) -> str:
    """Render a number the way the datasets display it (``30`` rather than ``30.0``)."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_text(value: Any) -> Optional[str]:
    """Coerce a scalar or list to display text; ``None`` when nothing remains."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value) if math.isfinite(value) else None
    if isinstance(value, list):
        parts = [text for text in (to_text(item) for item in value) if text]
        return ", ".join(parts) if parts else None
    return None


def format_summary(value: Any) -> Optional[str]:
    """Like :func:`to_text` but also renders a nested map as ``"key: value / key: value"``."""
    text = to_text(value)
    if text:
        return text
    record = as_record(value)
    if record is None:
        return None
    parts = []
    for key, item in record.items():
        item_text = to_text(item)
        if item_text:
            parts.append(f"{key}: {item_text}")
    return " / ".join(parts) if parts else None


def parse_number(value: Any) -> Optional[float]:
    """Finite numbers pass through; strings are read by their leading numeric prefix."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if not match:
            return None
        number = float(match.group(0))
        return number if math.isfinite(number) else None
    return None


# ---------- Single-map pickers ----------


def _compile(pattern: KeyPattern) -> Pattern[str]:
    if isinstance(pattern, str):
        return re.compile(pattern, re.IGNORECASE)
    return pattern


def _matching_keys(record: Record, pattern: KeyPattern) -> Iterable[str]:
    regex = _compile(pattern)
    return [key for key in record if regex.search(key)]


def pick_string(record: Record, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def pick_number(record: Record, keys: Sequence[str]) -> Optional[float]:
    for key in keys:
        number = parse_number(record.get(key))
        if number is not None:
            return number
    return None


def pick_text(record: Record, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        text = to_text(record.get(key))
        if text:
            return text
    return None


def pick_string_by_pattern(record: Record, pattern: KeyPattern) -> Optional[str]:
    return pick_string(record, list(_matching_keys(record, pattern)))


def pick_number_by_pattern(record: Record, pattern: KeyPattern) -> Optional[float]:
    return pick_number(record, list(_matching_keys(record, pattern)))


def pick_text_by_pattern(record: Record, pattern: KeyPattern) -> Optional[str]:
    return pick_text(record, list(_matching_keys(record, pattern)))


# ---------- Candidate-list lookups ----------


def _first(candidates: Sequence[Record], picker, selector) -> Any:
    for candidate in candidates:
        value = picker(candidate, selector)
        if value is not None:
            return value
    return None


def extract(candidates: Sequence[Record], keys: Sequence[str]) -> Union[str, float, None]:
    """First coercible value for ``keys`` across ``candidates``.

    Numbers are returned as numbers; every other shape comes back as display
    text (lists joined, nested maps summarised).
    """
    for candidate in candidates:
        for key in keys:
            value = candidate.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                if math.isfinite(value):
                    return value
                continue
            text = format_summary(value)
            if text:
                return text
    return None


def extract_by_pattern(candidates: Sequence[Record], pattern: KeyPattern) -> Union[str, float, None]:
    for candidate in candidates:
        value = extract([candidate], list(_matching_keys(candidate, pattern)))
        if value is not None:
            return value
    return None


def find_string(candidates: Sequence[Record], keys: Sequence[str]) -> Optional[str]:
    return _first(candidates, pick_string, keys)


def find_number(candidates: Sequence[Record], keys: Sequence[str]) -> Optional[float]:
    return _first(candidates, pick_number, keys)


def find_text(candidates: Sequence[Record], keys: Sequence[str]) -> Optional[str]:
    return _first(candidates, pick_text, keys)


def find_string_by_pattern(candidates: Sequence[Record], pattern: KeyPattern) -> Optional[str]:
    return _first(candidates, pick_string_by_pattern, pattern)


def find_number_by_pattern(candidates: Sequence[Record], pattern: KeyPattern) -> Optional[float]:
    return _first(candidates, pick_number_by_pattern, pattern)


def find_text_by_pattern(candidates: Sequence[Record], pattern: KeyPattern) -> Optional[str]:
    return _first(candidates, pick_text_by_pattern, pattern)


def find_summary(candidates: Sequence[Record], keys: Sequence[str]) -> Optional[str]:
    for candidate in candidates:
        for key in keys:
            text = format_summary(candidate.get(key))
            if text:
                return text
    return None


# ---------- Row discovery ----------


def rows_from_json(document: Any, wrapper_keys: Sequence[str] = ROW_WRAPPER_KEYS) -> List[Any]:
    """Return the row array of a dataset document, unwrapping common container keys."""
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        for key in wrapper_keys:
            rows = document.get(key)
            if isinstance(rows, list):
                return rows
    return []


def rows_from_any_json(document: Any) -> List[Any]:
    return rows_from_json(document, ANY_ROW_WRAPPER_KEYS)


def expand_rows_for_kind(document: Any, kind: str) -> List[Any]:
    """Counseling datasets sometimes nest the real offices under a "주변 ... 상담소" array per row."""
    base = rows_from_json(document)
    if kind != "counseling":
        return base

    nested: List[Any] = []
    for row in base:
        if not isinstance(row, dict):
            continue
        for key, value in row.items():
            if NESTED_COUNSELING_ROWS.search(key) and isinstance(value, list):
                nested.extend(value)
    return nested or base
