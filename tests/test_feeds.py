from centermap.etl import feeds


FEED = {
    "data": [
        {"name": "A", "lat": "37.1", "lng": "127.2", "url": "https://a.kr"},
        {"title": "B", "y": 35, "x": 129},
        {"name": "C", "주소": "서울 마포구 1", "homepage": "not-a-link"},
        "ignored",
    ]
}


def test_extract_markers_reads_direct_coordinates():
    markers = feeds.extract_markers(FEED)

    assert [(m.title, m.lat, m.lng) for m in markers] == [("A", 37.1, 127.2), ("B", 35.0, 129.0)]
    assert markers[0].url == "https://a.kr"
    assert markers[1].url is None


def test_extract_geocode_tasks_only_for_rows_without_coordinates():
    tasks = feeds.extract_geocode_tasks(FEED)

    assert len(tasks) == 1
    task = tasks[0]
    assert task.address == "서울 마포구 1"
    assert task.title == "C"
    assert task.entity_id == "feed:서울 마포구 1"
    assert task.source == "feed"
    assert task.url is None


def test_single_object_document_and_default_title():
    markers = feeds.extract_markers({"lat": 1, "lng": 2})

    assert len(markers) == 1
    assert markers[0].title == feeds.DEFAULT_MARKER_TITLE


def test_longitude_pattern_does_not_match_arbitrary_x_keys():
    assert feeds.extract_markers({"name": "a", "lat": 37, "max_count": 5}) == []


def test_out_of_range_pair_is_not_a_marker():
    document = {"items": [{"name": "a", "lat": 137, "lng": 37, "address": "부산"}]}

    assert feeds.extract_markers(document) == []
    assert feeds.extract_geocode_tasks(document)[0].address == "부산"


def test_clean_keyword_strips_platform_suffixes():
    assert feeds.clean_keyword("가람센터 : 네이버 블로그") == "가람센터"
    assert feeds.clean_keyword("가람센터 - NAVER Blog") == "가람센터"
    assert feeds.clean_keyword("A\u00a0  B | 사이트") == "A B"
    assert feeds.clean_keyword(None) == ""


def test_keyword_from_url_uses_host():
    assert feeds.keyword_from_url("https://www.garam.kr/path?x=1") == "garam.kr"
    assert feeds.keyword_from_url("blog.naver.com/garam") == "blog.naver.com"


def test_normalize_input_url():
    assert feeds.normalize_input_url("(https://a.kr/x),") == "https://a.kr/x"
    assert feeds.normalize_input_url("<https://a.kr/x>") == "https://a.kr/x"
    assert feeds.normalize_input_url("//a.kr") == "https://a.kr"
    assert feeds.normalize_input_url("www.a.kr") == "https://www.a.kr"
    assert feeds.normalize_input_url("가람.한국") == "https://가람.한국"
    assert feeds.normalize_input_url("hello") is None
    assert feeds.normalize_input_url("  ") is None


def test_parse_urls_from_text_dedupes_and_skips_map_sdk():
    text = (
        "feeds: https://a.kr/x, https://A.kr/x\n"
        "www.b.kr https://dapi.kakao.com/v2/maps/sdk.js?appkey=1"
    )

    assert feeds.parse_urls_from_text(text) == ["https://a.kr/x", "https://www.b.kr"]
