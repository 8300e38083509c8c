import pytest
import requests

from centermap.vendors import kakao_local


class DummyResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


class DummySession:
    def __init__(self):
        self.calls = []
        self.response = DummyResponse()

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, params, headers, timeout))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.fixture(autouse=True)
def patch_session(monkeypatch):
    session = DummySession()
    monkeypatch.setattr(kakao_local, "_SESSION", session)
    return session


def test_address_search_sends_auth_header(patch_session):
    patch_session.response = DummyResponse(payload={"documents": [{"x": "127.0", "y": "37.5"}]})

    documents = kakao_local.address_search("서울 마포구 1", "key")

    assert documents == [{"x": "127.0", "y": "37.5"}]
    url, params, headers, timeout = patch_session.calls[0]
    assert url.endswith("/address.json")
    assert params == {"query": "서울 마포구 1"}
    assert headers == {"Authorization": "KakaoAK key"}
    assert timeout == 10


def test_error_status_raises(patch_session):
    patch_session.response = DummyResponse(status_code=401, payload={"errorType": "AccessDeniedError"})

    with pytest.raises(kakao_local.KakaoLocalError, match="AccessDeniedError"):
        kakao_local.keyword_search("가람센터", "bad-key")


def test_first_match_reads_first_document():
    match = kakao_local.first_match(
        [
            {"x": "126.9", "y": "37.55", "place_name": "가람센터", "place_url": "http://place.map.kakao.com/1"},
            {"x": "0", "y": "0"},
        ]
    )

    assert (match.lat, match.lng) == (37.55, 126.9)
    assert match.title == "가람센터"
    assert match.url == "http://place.map.kakao.com/1"
    assert kakao_local.first_match([]) is None
    assert kakao_local.first_match([{"x": "abc", "y": "1"}]) is None


def test_geocoder_returns_match(patch_session):
    patch_session.response = DummyResponse(payload={"documents": [{"x": "127.1", "y": "37.2"}]})

    match = kakao_local.KakaoGeocoder("key").geocode_address("서울 어딘가")

    assert match.coordinate.lat == 37.2
    assert match.title == "서울 어딘가"


def test_geocoder_turns_failures_into_misses(patch_session, caplog):
    geocoder = kakao_local.KakaoGeocoder("key")
    patch_session.response = DummyResponse(status_code=500, payload={"message": "boom"})

    with caplog.at_level("WARNING"):
        assert geocoder.search_keyword("가람센터") is None

    patch_session.response = requests.ConnectionError("offline")
    assert geocoder.geocode_address("서울") is None
    assert "Keyword search failed" in " ".join(caplog.messages)


def test_geocoder_skips_without_key_or_query(patch_session):
    assert kakao_local.KakaoGeocoder("").geocode_address("서울") is None
    assert kakao_local.KakaoGeocoder("key").search_keyword("  ") is None
    assert patch_session.calls == []
