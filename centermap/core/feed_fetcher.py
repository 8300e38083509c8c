"""Fan-out fetcher for external JSON feeds (server side of the streaming ingestion protocol)."""

from __future__ import annotations

import json
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from centermap.etl.feeds import clean_keyword

logger = logging.getLogger(__name__)

USER_AGENT = "CenterMapFeedFetcher/1.0 (+https://github.com/centermap)"
ACCEPT = "application/json, text/json, */*"
DEFAULT_TIMEOUT_MS = 8000
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30000
DEFAULT_CONCURRENCY = 40
MAX_CONCURRENCY = 200
STREAM_COMMENT = ": openapi-fetch stream\n\n"


@dataclass
class FetchResult:
    url: str
    ok: bool
    status: Optional[int] = None
    json: Any = None
    error: Optional[str] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"url": self.url, "ok": True, "status": self.status, "json": self.json}
        payload: Dict[str, Any] = {"url": self.url, "ok": False, "error": self.error}
        if self.status is not None:
            payload["status"] = self.status
        if self.title:
            payload["title"] = self.title
        return payload


def clamp_number(value: Any, fallback: float, minimum: float, maximum: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return fallback
    return min(maximum, max(minimum, value))


def clamp_int(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return fallback
    return int(min(maximum, max(minimum, int(value))))


def extract_html_title(html: str) -> Optional[str]:
    """``og:title`` if present, else ``<title>``, cleaned of blog-platform suffixes."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    og = soup.find("meta", attrs={"property": "og:title"})
    if og is not None and og.get("content"):
        title = clean_keyword(og["content"])
        if title:
            return title
    if soup.title is not None:
        title = clean_keyword(soup.title.get_text()[:200])
        if title:
            return title
    return None


def fetch_json(session: requests.Session, url: str, timeout_ms: float = DEFAULT_TIMEOUT_MS) -> FetchResult:
    """GET one feed and parse it as JSON; every failure is reported on the result."""
    target = (url or "").strip()
    if not target:
        return FetchResult(url=url, ok=False, error="Empty url")
    parsed = urlparse(target)
    if not parsed.scheme or not parsed.netloc:
        return FetchResult(url=url, ok=False, error="Invalid url")
    if parsed.scheme not in {"http", "https"}:
        return FetchResult(url=url, ok=False, error="Only http/https are supported")

    headers = {"Accept": ACCEPT, "User-Agent": USER_AGENT}
    try:
        response = session.get(target, headers=headers, timeout=timeout_ms / 1000.0, allow_redirects=True)
    except requests.Timeout:
        return FetchResult(url=url, ok=False, error="Timeout")
    except requests.RequestException as exc:
        return FetchResult(url=url, ok=False, error=str(exc))

    status = response.status_code
    text = response.text or ""
    if not (200 <= status < 300):
        return FetchResult(url=url, ok=False, status=status, error=f"HTTP {status}", title=extract_html_title(text))

    try:
        document = json.loads(text.lstrip("\ufeff").strip())
    except ValueError:
        return FetchResult(
            url=url,
            ok=False,
            status=status,
            error="Response is not valid JSON",
            title=extract_html_title(text),
        )
    return FetchResult(url=url, ok=True, status=status, json=document)


def iter_fetch_results(
    urls: List[str],
    timeout_ms: float = DEFAULT_TIMEOUT_MS,
    concurrency: int = DEFAULT_CONCURRENCY,
    session: Optional[requests.Session] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[FetchResult]:
    """Yield results in completion order. Closing the iterator drops fetches not yet started."""
    if not urls:
        return
    session = session or requests.Session()
    workers = max(1, min(concurrency, len(urls)))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="feed-fetch")
    try:
        futures = [executor.submit(fetch_json, session, url, timeout_ms) for url in urls]
        for future in as_completed(futures):
            if cancel_event is not None and cancel_event.is_set():
                break
            yield future.result()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def fetch_all(
    urls: List[str],
    timeout_ms: float = DEFAULT_TIMEOUT_MS,
    concurrency: int = DEFAULT_CONCURRENCY,
    session: Optional[requests.Session] = None,
) -> List[FetchResult]:
    """Fetch every URL; results keep input order."""
    position = {}
    for index, url in enumerate(urls):
        position.setdefault(url, []).append(index)
    results: List[Optional[FetchResult]] = [None] * len(urls)
    for result in iter_fetch_results(urls, timeout_ms, concurrency, session):
        results[position[result.url].pop(0)] = result
    return [result for result in results if result is not None]


def format_frame(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def iter_stream_frames(
    urls: List[str],
    timeout_ms: float = DEFAULT_TIMEOUT_MS,
    concurrency: int = DEFAULT_CONCURRENCY,
    session: Optional[requests.Session] = None,
) -> Iterator[str]:
    """Event-stream body: comment, ``meta``, one ``result`` per URL, then ``done`` (or ``error``)."""
    yield STREAM_COMMENT
    yield format_frame("meta", {"total": len(urls), "timeoutMs": timeout_ms, "concurrency": concurrency})
    try:
        for result in iter_fetch_results(urls, timeout_ms, concurrency, session):
            yield format_frame("result", result.to_dict())
    except Exception as exc:  # noqa: BLE001
        logger.exception("Feed fan-out failed: %s", exc)
        yield format_frame("error", {"error": str(exc)})
        return
    yield format_frame("done", {})
