import threading

import requests

from centermap.core import feed_fetcher
from centermap.core.feed_fetcher import FetchResult


class DummyResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class DummySession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, headers=None, timeout=None, allow_redirects=True):
        with self._lock:
            self.calls.append((url, headers, timeout))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


def test_clamps():
    assert feed_fetcher.clamp_number(None, 8000, 1000, 30000) == 8000
    assert feed_fetcher.clamp_number(50, 8000, 1000, 30000) == 1000
    assert feed_fetcher.clamp_number(99999, 8000, 1000, 30000) == 30000
    assert feed_fetcher.clamp_int(500.7, 40, 1, 200) == 200
    assert feed_fetcher.clamp_int(True, 40, 1, 200) == 40
    assert feed_fetcher.clamp_int("12", 40, 1, 200) == 40


def test_extract_html_title_prefers_og_title():
    html = (
        '<html><head><meta property="og:title" content="가람센터 : 네이버 블로그">'
        "<title>other</title></head></html>"
    )

    assert feed_fetcher.extract_html_title(html) == "가람센터"
    assert feed_fetcher.extract_html_title("<title> 제목 | 블로그 </title>") == "제목"
    assert feed_fetcher.extract_html_title("") is None
    assert feed_fetcher.extract_html_title("{}") is None


def test_fetch_json_rejects_bad_urls():
    session = DummySession({})

    assert feed_fetcher.fetch_json(session, "").error == "Empty url"
    assert feed_fetcher.fetch_json(session, "not a url").error == "Invalid url"
    assert feed_fetcher.fetch_json(session, "ftp://a.kr/x").error == "Only http/https are supported"
    assert session.calls == []


def test_fetch_json_success_strips_bom_and_sends_headers():
    session = DummySession({"https://a.kr/x": DummyResponse(text='\ufeff{"data": [1]}')})

    result = feed_fetcher.fetch_json(session, "https://a.kr/x", 2000)

    assert result.ok is True
    assert result.json == {"data": [1]}
    _, headers, timeout = session.calls[0]
    assert headers["Accept"] == feed_fetcher.ACCEPT
    assert timeout == 2.0


def test_fetch_json_failures_carry_page_title():
    session = DummySession(
        {
            "https://a.kr/404": DummyResponse(404, "<title>없는 페이지</title>"),
            "https://a.kr/html": DummyResponse(200, "<title>가람센터</title>"),
            "https://a.kr/slow": requests.Timeout("slow"),
            "https://a.kr/down": requests.ConnectionError("refused"),
        }
    )

    not_found = feed_fetcher.fetch_json(session, "https://a.kr/404")
    assert (not_found.ok, not_found.status, not_found.error, not_found.title) == (False, 404, "HTTP 404", "없는 페이지")

    html = feed_fetcher.fetch_json(session, "https://a.kr/html")
    assert html.error == "Response is not valid JSON"
    assert html.title == "가람센터"

    assert feed_fetcher.fetch_json(session, "https://a.kr/slow").error == "Timeout"
    assert "refused" in feed_fetcher.fetch_json(session, "https://a.kr/down").error


def test_to_dict_shapes():
    assert FetchResult(url="u", ok=True, status=200, json=[1]).to_dict() == {
        "url": "u",
        "ok": True,
        "status": 200,
        "json": [1],
    }
    assert FetchResult(url="u", ok=False, error="Invalid url").to_dict() == {
        "url": "u",
        "ok": False,
        "error": "Invalid url",
    }


def test_fetch_all_keeps_input_order():
    urls = [f"https://a.kr/{i}" for i in range(8)] + ["https://a.kr/0"]
    session = DummySession({url: DummyResponse(text=f'{{"n": "{url}"}}') for url in urls})

    results = feed_fetcher.fetch_all(urls, concurrency=4, session=session)

    assert [result.url for result in results] == urls
    assert all(result.ok for result in results)


def test_iter_stream_frames_protocol():
    session = DummySession({"https://a.kr/x": DummyResponse(text="[]"), "https://a.kr/y": DummyResponse(500, "")})

    frames = list(feed_fetcher.iter_stream_frames(["https://a.kr/x", "https://a.kr/y"], 8000, 2, session))

    assert frames[0] == feed_fetcher.STREAM_COMMENT
    assert frames[1].startswith("event: meta\n")
    assert '"total": 2' in frames[1]
    assert sum(1 for frame in frames if frame.startswith("event: result\n")) == 2
    assert frames[-1] == "event: done\ndata: {}\n\n"
    assert all(frame.endswith("\n\n") for frame in frames)
