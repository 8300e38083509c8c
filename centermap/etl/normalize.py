"""Transform raw dataset rows into canonical Center entities."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from centermap.etl.rules import NormalizerRules
from centermap.etl.sources import (
    Record,
    as_record,
    collect_sources,
    find_number,
    find_number_by_pattern,
    find_string,
    find_string_by_pattern,
    find_summary,
    find_text,
    find_text_by_pattern,
    format_number,
    format_summary,
)
from centermap.models import Center, Extra

logger = logging.getLogger(__name__)

MAX_SPECIALTIES = 24
MAX_META_LINES = 8
NO_HOURS_LABEL = "운영시간 정보 없음"
NO_DISTANCE_LABEL = "거리 정보 없음"

ROAD_ADDRESS_KEYS = [
    "사업장도로명주소",
    "소재지도로명주소",
    "도로명주소",
    "소재지",
    "rdnmadr",
    "roadAddress",
    "REFINE_ROADNM_ADDR",
    "ROADNM_ADDR",
]
JIBUN_ADDRESS_KEYS = [
    "사업장지번주소",
    "소재지지번주소",
    "지번주소",
    "lnmadr",
    "address",
    "REFINE_LOTNO_ADDR",
    "LOTNO_ADDR",
]
NAME_KEYS = [
    "시설명",
    "시설명칭",
    "센터명칭",
    "기관명칭",
    "제공기관명",
    "기관명",
    "센터명",
    "상담소명",
    "사업장명",
    "상호명",
    "name",
    "FACLT_NM",
    "INST_NM",
    "BIZPLC_NM",
    "CMPNY_NM",
]
PHONE_KEYS = ["전화번호", "전화", "기관연락번호", "연락처", "phone", "telno", "TELNO", "REFINE_TELNO", "WELFARE_FACLT_TELNO"]
HOMEPAGE_KEYS = [
    "홈페이지URL",
    "홈페이지_URL",
    "홈페이지 URL",
    "홈페이지 url",
    "홈페이지",
    "홈페이지주소",
    "홈페이지 주소",
    "homepage",
    "homepageUrl",
    "homePage",
    "home_page",
    "HOMEPAGE",
    "HOMEPAGE_URL",
    "WEB_SITE",
    "WEBSITE",
    "website",
    "url",
    "URL",
]
EXPERT_KEYS = ["전문가소개", "전문가 소개", "전문가_소개", "상담사소개", "상담사 소개"]
RESERVATION_KEYS = ["예약링크", "예약 링크", "예약URL", "예약 URL", "예약", "예약방법"]
HOURS_KEYS = ["운영시간", "이용시간", "영업시간", "hours", "HOURS", "OPENING_HOURS"]
RATING_KEYS = ["평점", "후기평점", "별점", "rating", "RATE", "SCORE"]
REVIEW_COUNT_KEYS = ["리뷰수", "후기수", "평가수", "reviewCount", "REVIEWS"]
DISTANCE_KEYS = ["거리", "distance", "DISTANCE", "distanceKm", "distance_km"]
SPECIALTY_KEYS = ["전문분야", "상담분야", "치료분야", "프로그램", "서비스내용", "주요서비스", "specialties"]
LAT_KEYS = ["WGS84위도", "WGS84 위도", "위도", "lat", "latitude", "REFINE_WGS84_LAT"]
LNG_KEYS = ["WGS84경도", "WGS84 경도", "경도", "lng", "longitude", "lon", "REFINE_WGS84_LOGT", "REFINE_WGS84_LONG"]
ID_KEYS = ("관리번호", "id", "번호", "연번", "순번")
INTRO_KEYS = ["시설소개", "시설 소개", "기관소개", "센터소개", "소개"]
PROGRAM_KEYS = ["주요_프로그램", "주요 프로그램", "주요프로그램", "프로그램", "프로그램내용"]
APPLY_METHOD_KEYS = ["이용_신청_방법", "이용 신청 방법", "이용신청방법", "신청방법", "신청절차", "신청 절차", "이용방법"]

HOMEPAGE_KEY_PATTERN = re.compile(r"홈페이지|home\s?page|website|url", re.IGNORECASE)
COORDINATE_KEY_PATTERN = re.compile(r"위도|경도|lat|lng|lon|longitude|latitude|wgs84|refine_wgs84|logt", re.IGNORECASE)
LONG_TEXT_KEY_PATTERN = re.compile(r"시설\s*소개|주요[_\s]*프로그램|이용[_\s]*신청[_\s]*방법", re.IGNORECASE)
SURFACED_KEY_PATTERN = re.compile(
    r"시설명칭?|센터명칭?|기관명칭?|기관명|제공기관명|상호명|사업장명|name|roadAddress|address|도로명주소|지번주소"
    r"|소재지도로명주소|소재지지번주소|소재지|^주소$|전화번호|전화|연락처|기관연락번호|tel|phone|운영시간|영업시간"
    r"|이용시간|hours|평점|후기평점|별점|rating|리뷰|review|거리|distance|전문분야|상담분야|치료분야|specialties"
    r"|전문가\s*소개|예약\s*링크|예약링크|예약\s*url|reservation|booking|place_id|place\s*id",
    re.IGNORECASE,
)
RESERVATION_PLACEHOLDER = re.compile(r"문의\s*필요|미정|없음|없습니다|제공\s*안함|준비\s*중", re.IGNORECASE)
BARE_DOMAIN = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}(/.*)?$", re.IGNORECASE)
SPECIALTY_SEPARATORS = re.compile(r"[,/|·ㆍ•\n\r\t]+")
URL_PLACEHOLDERS = {"www.", "www", "http://", "https://"}

# (label, string keys, string pattern) or numeric with a unit suffix; rendered in this order
META_FIELDS = [
    ("지역", "str", ["SIGUN_NM", "시군명", "시군구명", "SIGUNGU_NM", "시도명", "SIDO_NM"], r"시군|시군구|시도|sigun", ""),
    ("정원", "num", ["FACLT_PSN_CAPA", "정원수", "정원", "수용인원", "수용정원"], r"정원|수용|capa", "명"),
    ("현원", "num", ["현원수", "현원"], r"현원", "명"),
    ("종사자", "num", ["종사자수", "종사자"], r"종사자", "명"),
    ("운영", "str", ["운영기관유형", "운영기관 유형", "운영기관유형명", "OPRTR_SE"], r"운영.*유형|운영\s*기관", ""),
    ("대표", "str", ["대표자명", "대표자"], r"대표자", ""),
    ("면적", "num", ["면적", "면적(m2)", "면적(㎡)", "AREA"], r"면적|area", "㎡"),
    ("기준일", "str", ["데이터기준일자", "데이터 기준일자", "기준일자", "데이터기준일", "DATA_STD_DE"], r"기준일|data\s*std", ""),
    ("제공", "str", ["제공기관명", "제공기관"], r"제공기관", ""),
    ("우편", "str", ["소재지우편번호", "우편번호", "POST_NO", "zip", "zipcode"], r"우편|zip", ""),
]


def normalize_homepage_url(raw: Optional[str]) -> Optional[str]:
    """Turn a dataset homepage value into an absolute URL, or ``None`` for placeholders and junk."""
    if not raw:
        return None
    value = raw.strip()
    if not value or value.lower() in URL_PLACEHOLDERS:
        return None
    if re.match(r"^https?://", value, re.IGNORECASE):
        return value
    if value.startswith("//"):
        return f"https:{value}"
    if value.startswith("www."):
        return f"https://{value}"
    if BARE_DOMAIN.match(value):
        return f"https://{value}"
    return None


def strip_coordinates(value: Any) -> Any:
    """Copy of ``value`` with coordinate-like keys removed at every depth."""
    if isinstance(value, list):
        return [strip_coordinates(item) for item in value]
    if isinstance(value, dict):
        return {
            key: strip_coordinates(item)
            for key, item in value.items()
            if not COORDINATE_KEY_PATTERN.search(key)
        }
    return value


def build_extras(record: Record) -> List[Extra]:
    """Everything not surfaced as a named field, deduplicated by (label, value)."""
    extras: List[Extra] = []
    seen = set()
    for source in collect_sources(record):
        for key, value in source.items():
            if not key or key == "__dataset":
                continue
            if (
                COORDINATE_KEY_PATTERN.search(key)
                or LONG_TEXT_KEY_PATTERN.search(key)
                or HOMEPAGE_KEY_PATTERN.search(key)
                or SURFACED_KEY_PATTERN.search(key)
            ):
                continue
            text = format_summary(value)
            if not text:
                continue
            signature = (key, text)
            if signature in seen:
                continue
            seen.add(signature)
            extras.append(Extra(label=key, value=text))
    return extras


def split_list(value: str) -> List[str]:
    return [part.strip() for part in SPECIALTY_SEPARATORS.split(value) if part.strip()]


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


def _in_range(value: Optional[float], bound: float) -> Optional[float]:
    if value is None or value < -bound or value > bound:
        return None
    return float(value)


def _build_id(record: Record, ordinal: int, dataset_tag: Optional[str]) -> str:
    row_tag = record.get("__dataset")
    row_tag = row_tag.strip() if isinstance(row_tag, str) else ""
    dataset = (dataset_tag or "").strip() or row_tag

    base_id = None
    for key in ID_KEYS:
        if record.get(key) is not None:
            base_id = record[key]
            break
    if base_id is None:
        base_id = f"openapi-{ordinal}"
    elif isinstance(base_id, float):
        base_id = format_number(base_id)

    prefix = f"{dataset}:{base_id}" if dataset else str(base_id)
    return f"{prefix}:{ordinal}"


def _meta_lines(sources: List[Record]) -> List[str]:
    lines: List[str] = []
    for label, value_type, keys, pattern, unit in META_FIELDS:
        if value_type == "num":
            number = find_number(sources, keys)
            if number is None:
                number = find_number_by_pattern(sources, pattern)
            if number is not None:
                lines.append(f"{label}: {format_number(number)}{unit}")
        else:
            text = find_string(sources, keys) or find_string_by_pattern(sources, pattern)
            if text:
                lines.append(f"{label}: {text}")
    return lines[:MAX_META_LINES]


def _reservation(sources: List[Record]) -> Dict[str, Optional[str]]:
    raw = find_string(sources, RESERVATION_KEYS) or find_string_by_pattern(
        sources, r"예약\s*(?:링크|url|방법|문의)"
    )
    url = normalize_homepage_url(raw)
    text = None
    if raw and not url and not RESERVATION_PLACEHOLDER.search(raw):
        text = raw.strip()
    return {"url": url, "text": text}


def _expert_intro(record: Record, sources: List[Record]) -> Optional[str]:
    text = find_string(sources, EXPERT_KEYS) or find_string_by_pattern(sources, r"전문가\s*소개|상담사\s*소개")
    if text:
        return text
    for key in EXPERT_KEYS:
        nested = as_record(record.get(key))
        if nested is not None:
            return format_summary(nested)
    return None


def _distance_label(sources: List[Record]) -> str:
    number = find_number(sources, DISTANCE_KEYS)
    if number is None:
        number = find_number_by_pattern(sources, r"거리|distance")
    if number is not None:
        return f"{format_number(number)}km"
    return find_string(sources, ["거리", "distance", "DISTANCE"]) or NO_DISTANCE_LABEL


def normalize(
    raw: Any,
    ordinal: int,
    kind: str,
    dataset_tag: Optional[str] = None,
    rules: Optional[NormalizerRules] = None,
) -> Optional[Center]:
    """Build a Center from one raw row; ``None`` when the row has neither address nor coordinates."""
    if not isinstance(raw, dict):
        return None
    rules = rules or NormalizerRules()
    sources = collect_sources(raw)

    address = (
        find_string(sources, ROAD_ADDRESS_KEYS)
        or find_string(sources, JIBUN_ADDRESS_KEYS)
        or find_string(sources, ["주소"])
        or ""
    )
    name = find_string(sources, NAME_KEYS) or address or f"센터 {ordinal + 1}"
    phone = find_string(sources, PHONE_KEYS) or ""

    if rules.is_denied(name, phone, address):
        logger.debug("Dropping denylisted row %s (%s)", name, address)
        return None

    lat = find_number(sources, LAT_KEYS)
    if lat is None:
        lat = find_number_by_pattern(sources, r"위도|lat|latitude")
    lng = find_number(sources, LNG_KEYS)
    if lng is None:
        lng = find_number_by_pattern(sources, r"경도|lng|lon|longitude|logt")
    lat = _in_range(lat, 90)
    lng = _in_range(lng, 180)
    has_coordinates = lat is not None and lng is not None

    if not address and not has_coordinates:
        return None

    homepage_raw = find_string(sources, HOMEPAGE_KEYS) or find_string_by_pattern(sources, HOMEPAGE_KEY_PATTERN)

    hours = (
        find_string(sources, HOURS_KEYS)
        or find_string_by_pattern(sources, r"운영\s*시간|영업\s*시간|이용\s*시간")
        or find_summary(sources, HOURS_KEYS)
        or NO_HOURS_LABEL
    )

    rating = find_number(sources, RATING_KEYS)
    review_count = find_number(sources, REVIEW_COUNT_KEYS)

    specialties_raw = find_text(sources, SPECIALTY_KEYS) or find_text_by_pattern(
        sources, r"(전문|분야|치료|프로그램|서비스)"
    )
    specialties = split_list(specialties_raw) if specialties_raw else []
    if not specialties:
        specialties = rules.infer_specialties(kind, " ".join([name, address, specialties_raw or ""]))
    if not specialties:
        specialties = [rules.fallback_specialty(kind)]

    reservation = _reservation(sources)

    return Center(
        id=_build_id(raw, ordinal, dataset_tag),
        name=name,
        address=address,
        phone=phone,
        hours=hours,
        rating=rating if rating is not None else 0,
        review_count=int(review_count) if review_count is not None else 0,
        distance_label=_distance_label(sources),
        specialties=_unique(specialties)[:MAX_SPECIALTIES],
        homepage_url=normalize_homepage_url(homepage_raw),
        lat=lat if has_coordinates else None,
        lng=lng if has_coordinates else None,
        meta_lines=_meta_lines(sources),
        intro=find_string(sources, INTRO_KEYS) or find_string_by_pattern(sources, r"(시설|기관|센터)\s*소개|^소개$"),
        programs=find_string(sources, PROGRAM_KEYS) or find_string_by_pattern(sources, r"주요.*프로그램|프로그램"),
        apply_method=find_string(sources, APPLY_METHOD_KEYS)
        or find_string_by_pattern(sources, r"이용.*신청.*방법|신청.*(방법|절차)"),
        expert_intro=_expert_intro(raw, sources),
        reservation_url=reservation["url"],
        reservation_text=reservation["text"],
        extras=build_extras(raw),
        raw=strip_coordinates(raw),
    )


def normalize_rows(
    rows: List[Any],
    kind: str,
    dataset_tag: Optional[str] = None,
    rules: Optional[NormalizerRules] = None,
) -> List[Center]:
    centers: List[Center] = []
    for ordinal, row in enumerate(rows):
        center = normalize(row, ordinal, kind, dataset_tag=dataset_tag, rules=rules)
        if center is not None:
            centers.append(center)
    return centers
