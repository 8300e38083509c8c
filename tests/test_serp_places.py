from unittest.mock import Mock, patch

import pytest

from centermap.core.resolver import CoordinateResolver
from centermap.vendors import serp_places


def test_build_serpapi_params():
    params = serp_places.build_serpapi_params(" 가람센터 ", "key", ll="@37.5,127,14z")

    assert params == {
        "engine": "google_maps",
        "q": "가람센터",
        "api_key": "key",
        "type": "search",
        "hl": "ko",
        "ll": "@37.5,127,14z",
    }
    with pytest.raises(ValueError):
        serp_places.build_serpapi_params("  ", "key")


def test_parse_first_place_skips_results_without_coordinates():
    data = {
        "local_results": [
            {"title": "no gps"},
            {"title": "가람센터", "gps_coordinates": {"latitude": 37.5, "longitude": 127.0}, "website": "https://g.kr"},
        ]
    }

    match = serp_places.parse_first_place(data)

    assert (match.lat, match.lng) == (37.5, 127.0)
    assert match.title == "가람센터"
    assert match.url == "https://g.kr"


def test_parse_first_place_handles_single_place_results():
    data = {"place_results": {"title": "단일", "gps_coordinates": {"latitude": "35.1", "longitude": "129.0"}}}

    assert serp_places.parse_first_place(data).coordinate.lat == 35.1
    assert serp_places.parse_first_place({}) is None


@patch("centermap.vendors.serp_places.time.sleep")
@patch("centermap.vendors.serp_places.GoogleSearch")
def test_fetch_retries_once_then_raises(mock_search, mock_sleep):
    mock_search.return_value.get_dict.return_value = {"error": "quota"}

    with pytest.raises(RuntimeError):
        serp_places.fetch_from_serpapi("가람센터", "key")

    assert mock_search.call_count == serp_places.RETRY_LIMIT + 1
    assert mock_sleep.call_count == serp_places.RETRY_LIMIT


@patch("centermap.vendors.serp_places.GoogleSearch")
def test_search_keyword_returns_first_place(mock_search):
    mock_search.return_value = Mock(
        get_dict=Mock(return_value={"local_results": [{"title": "A", "gps_coordinates": {"latitude": 1, "longitude": 2}}]})
    )

    match = serp_places.SerpPlaceSearch("key").search_keyword("A")

    assert (match.lat, match.lng) == (1.0, 2.0)
    assert mock_search.call_args[0][0]["q"] == "A"


@patch("centermap.vendors.serp_places.fetch_from_serpapi")
def test_search_keyword_failure_is_a_miss(mock_fetch, caplog):
    mock_fetch.side_effect = RuntimeError("down")

    with caplog.at_level("WARNING"):
        assert serp_places.SerpPlaceSearch("key").search_keyword("A") is None

    assert "SerpAPI keyword search failed" in " ".join(caplog.messages)
    assert serp_places.SerpPlaceSearch("").search_keyword("A") is None


@patch("centermap.vendors.serp_places.time.sleep")
@patch("centermap.vendors.serp_places.GoogleSearch")
def test_resolver_keyword_step_makes_at_most_two_requests(mock_search, mock_sleep):
    mock_search.return_value.get_dict.side_effect = RuntimeError("429 Too Many Requests")
    resolver = CoordinateResolver(None, serp_places.SerpPlaceSearch("key"), retry_delay=0)

    assert resolver.search_keyword("가람센터") is None

    assert mock_search.call_count == 2
