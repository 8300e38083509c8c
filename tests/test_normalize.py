import pytest

from centermap.etl import normalize as normalize_module
from centermap.etl.normalize import NO_DISTANCE_LABEL, NO_HOURS_LABEL, normalize, normalize_homepage_url, normalize_rows
from centermap.etl.rules import DenyRule, NormalizerRules, load_rules
from centermap.models import Extra


@pytest.fixture
def counseling_row():
    return {
        "시설명": "해솔 아동발달센터",
        "도로명주소": "서울특별시 강남구 테헤란로 1",
        "전화번호": "02-123-4567",
        "위도": "37.5",
        "경도": "127.03",
        "홈페이지": "www.haesol.kr",
        "관리번호": 17,
        "정원": 30,
        "비고": "주차 가능",
    }


def test_normalize_maps_core_fields(counseling_row):
    center = normalize(counseling_row, 0, "counseling", dataset_tag="아동심리상담")

    assert center.id == "아동심리상담:17:0"
    assert center.name == "해솔 아동발달센터"
    assert center.address == "서울특별시 강남구 테헤란로 1"
    assert center.phone == "02-123-4567"
    assert (center.lat, center.lng) == (37.5, 127.03)
    assert center.homepage_url == "https://www.haesol.kr"
    assert center.hours == NO_HOURS_LABEL
    assert center.distance_label == NO_DISTANCE_LABEL
    assert center.specialties == ["발달검사"]
    assert center.meta_lines == ["정원: 30명"]
    assert center.rating == 0
    assert center.review_count == 0


def test_normalize_extras_and_raw_skip_surfaced_and_coordinate_keys(counseling_row):
    center = normalize(counseling_row, 0, "counseling")

    assert [extra.label for extra in center.extras] == ["관리번호", "정원", "비고"]
    assert Extra(label="비고", value="주차 가능") in center.extras
    assert "위도" not in center.raw and "경도" not in center.raw
    assert center.raw["시설명"] == "해솔 아동발달센터"


def test_row_without_address_or_coordinates_is_discarded():
    assert normalize({"시설명": "주소없는 센터"}, 0, "counseling") is None
    assert normalize("not a row", 0, "counseling") is None


def test_coordinates_alone_are_enough():
    center = normalize({"name": "좌표만", "lat": 37.1, "lng": 127.1}, 2, "child")

    assert center is not None
    assert center.address == ""
    assert center.has_coordinates
    assert center.id == "openapi-2:2"


def test_out_of_range_coordinates_are_dropped():
    center = normalize({"name": "a", "주소": "서울", "lat": 200, "lng": 127.0}, 0, "counseling")

    assert center.lat is None and center.lng is None


def test_nested_containers_and_numeric_fields():
    row = {
        "기본정보": {"기관명": "나무상담소", "주소": "대전 서구"},
        "후기_평점": {"평점": "4.7", "리뷰수": "12"},
    }

    center = normalize(row, 0, "counseling")

    assert center.name == "나무상담소"
    assert center.address == "대전 서구"
    assert center.rating == 4.7
    assert center.review_count == 12
    assert isinstance(center.review_count, int)


def test_explicit_specialties_are_split_and_deduplicated():
    row = {"name": "a", "주소": "b", "전문분야": "놀이치료, 미술치료/놀이치료"}

    assert normalize(row, 0, "counseling").specialties == ["놀이치료", "미술치료"]


def test_fallback_specialty_per_kind():
    row = {"시설명": "행복센터", "주소": "부산시"}

    assert normalize(row, 0, "child").specialties == ["방과후돌봄"]
    assert normalize(row, 0, "counseling").specialties == ["심리상담"]


def test_specialties_never_exceed_limit():
    tags = ", ".join(f"분야{i}" for i in range(40))
    center = normalize({"name": "a", "주소": "b", "전문분야": tags}, 0, "counseling")

    assert len(center.specialties) == normalize_module.MAX_SPECIALTIES


def test_denylisted_row_is_dropped():
    row = {"시설명": "?라지역아동센터", "전화번호": "031-875-3009", "주소": "경기 의정부시"}

    assert normalize(row, 0, "child") is None
    assert normalize(row, 0, "child", rules=NormalizerRules(denylist=())) is not None


def test_deny_rule_matches_on_collapsed_address():
    rule = DenyRule(name="가센터", address_contains="평화로 449")

    assert rule.matches("가센터", "", "경기  평화로   449 1층")
    assert not rule.matches("나센터", "", "경기 평화로 449")


def test_reservation_placeholder_and_text():
    placeholder = normalize({"name": "a", "주소": "b", "예약링크": "문의 필요"}, 0, "counseling")
    assert placeholder.reservation_url is None
    assert placeholder.reservation_text is None

    text = normalize({"name": "a", "주소": "b", "예약방법": "전화 예약"}, 0, "counseling")
    assert text.reservation_text == "전화 예약"

    link = normalize({"name": "a", "주소": "b", "예약링크": "booking.naver.com/x"}, 0, "counseling")
    assert link.reservation_url == "https://booking.naver.com/x"


def test_normalize_homepage_url_variants():
    assert normalize_homepage_url("http://a.kr") == "http://a.kr"
    assert normalize_homepage_url("//a.kr") == "https://a.kr"
    assert normalize_homepage_url("naver.com/x") == "https://naver.com/x"
    assert normalize_homepage_url("www.") is None
    assert normalize_homepage_url("연락처 참조") is None


def test_normalize_rows_assigns_ordinals_and_skips_invalid():
    rows = [{"name": "a", "주소": "1"}, {"name": "skip"}, {"name": "b", "주소": "2"}]

    centers = normalize_rows(rows, "counseling", dataset_tag="ds")

    assert [center.id for center in centers] == ["ds:openapi-0:0", "ds:openapi-2:2"]


def test_load_rules_overrides_sections(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        '{"default_specialty": {"child": "돌봄"}, "denylist": [], '
        '"specialty_rules": {"counseling": [["모래", "모래놀이"]]}}',
        encoding="utf-8",
    )

    rules = load_rules(str(path))

    assert rules.fallback_specialty("child") == "돌봄"
    assert rules.fallback_specialty("counseling") == "심리상담"
    assert rules.denylist == ()
    assert rules.infer_specialties("counseling", "모래놀이 미술") == ["모래놀이"]
