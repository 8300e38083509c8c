"""Client for the streaming feed fan-out endpoint.

One POST fans out server-side to every feed URL; results come back as an
event stream. Each ``result`` frame becomes direct map points, address
geocode tasks, or (when neither is present) a keyword place-search task.
Both fallback queues are drained by worker threads while the stream is still
being read, then for at most ``drain_timeout`` seconds after it ends.
"""

from __future__ import annotations

import codecs
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Optional, Set, Union

import requests

from centermap.core.resolver import CoordinateResolver
from centermap.etl.feeds import clean_keyword, extract_geocode_tasks, extract_markers, keyword_from_url
from centermap.models import GeocodeTask, KeywordTask, PlaceMatch, StreamMarkerPoint

logger = logging.getLogger(__name__)

MAX_STREAM_CONCURRENCY = 200
ADDRESS_WORKERS = 10
KEYWORD_WORKERS = 20
ADDRESS_PACING_SECONDS = 0.07
KEYWORD_PACING_SECONDS = 0.06
IDLE_WAIT_SECONDS = 0.2
POINT_FLUSH_DELAY_SECONDS = 0.08
DRAIN_TIMEOUT_SECONDS = 5.0
NO_POINTS_MESSAGE = "No coordinates found (feed coordinates, address geocoding and place search all failed)"

PointsCallback = Callable[[List[StreamMarkerPoint]], None]


class StreamError(RuntimeError):
    """Raised when the ingestion stream fails or ends without a ``done`` frame."""


@dataclass
class StreamFrame:
    event: str
    data: str


def iter_frames(chunks: Iterable[Union[bytes, str]]) -> Iterator[StreamFrame]:
    """Parse an event stream whose frames may be split across arbitrary chunk boundaries."""
    decoder = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        buffer = buffer.replace("\r\n", "\n")
        while "\n\n" in buffer:
            raw, buffer = buffer.split("\n\n", 1)
            frame = _parse_frame(raw)
            if frame is not None:
                yield frame


def _parse_frame(raw: str) -> Optional[StreamFrame]:
    event = "message"
    data_lines: List[str] = []
    for line in raw.split("\n"):
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if not data_lines and event == "message":
        return None
    return StreamFrame(event=event, data="\n".join(data_lines))


@dataclass
class IngestReport:
    points: List[StreamMarkerPoint] = field(default_factory=list)
    direct_count: int = 0
    geocode_tasks: List[GeocodeTask] = field(default_factory=list)
    keyword_tasks: List[KeywordTask] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    results_seen: int = 0
    error: Optional[str] = None
    timed_out: bool = False
    cancelled: bool = False


class _IngestRun:
    """State for one ``ingest`` call."""

    def __init__(self, client: "StreamIngestClient", on_points: Optional[PointsCallback]) -> None:
        self.client = client
        self.on_points = on_points
        self.report = IngestReport()
        self.cancel_event = threading.Event()
        self.stream_done = threading.Event()
        self.response: Optional[requests.Response] = None
        self._lock = threading.Lock()
        self._seen_points: Set[str] = set()
        self._pending: List[StreamMarkerPoint] = []
        self._timer: Optional[threading.Timer] = None
        self._deliver_lock = threading.Lock()
        self._address_queue: Deque[GeocodeTask] = deque()
        self._address_seen: Set[str] = set()
        self._keyword_queue: Deque[KeywordTask] = deque()
        self._keyword_seen: Set[str] = set()

    # ---------- Points ----------

    def add_points(self, points: List[StreamMarkerPoint]) -> None:
        with self._lock:
            if self.cancel_event.is_set():
                return
            for point in points:
                key = point.dedup_key
                if key in self._seen_points:
                    continue
                self._seen_points.add(key)
                self._pending.append(point)
                self.report.points.append(point)
            if self._pending and self._timer is None:
                self._timer = threading.Timer(self.client.point_flush_delay, self._flush_from_timer)
                self._timer.daemon = True
                self._timer.start()

    def _flush_from_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.flush_points()

    def flush_points(self) -> None:
        # serialised so the final flush returns only after any timer delivery has finished
        with self._deliver_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                batch, self._pending = self._pending, []
                if self.report.cancelled:
                    return
            if batch and self.on_points is not None:
                try:
                    self.on_points(batch)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Point callback failed: %s", exc)

    # ---------- Queues ----------

    def enqueue_address_task(self, task: GeocodeTask) -> None:
        address = (task.address or "").strip()
        if not address:
            return
        with self._lock:
            key = address.lower()
            if key in self._address_seen:
                return
            self._address_seen.add(key)
            queued = GeocodeTask(
                entity_id=task.entity_id,
                address=address,
                title=clean_keyword(task.title) or address,
                source=task.source,
                url=task.url,
            )
            self._address_queue.append(queued)
            self.report.geocode_tasks.append(queued)

    def enqueue_keyword_task(self, url: str, title_hint: Optional[str] = None) -> None:
        target = (url or "").strip()
        if not target:
            return
        with self._lock:
            key = target.lower()
            if key in self._keyword_seen:
                return
            self._keyword_seen.add(key)
            task = KeywordTask(url=target, keyword=clean_keyword(title_hint) or keyword_from_url(target))
            self._keyword_queue.append(task)
            self.report.keyword_tasks.append(task)

    def _pop(self, queue: Deque[Any]) -> Any:
        with self._lock:
            return queue.popleft() if queue else None

    def pending_work(self) -> int:
        with self._lock:
            return len(self._address_queue) + len(self._keyword_queue)

    # ---------- Frames ----------

    def handle_result(self, result: Any) -> None:
        if not isinstance(result, dict):
            return
        self.report.results_seen += 1
        url = result.get("url") if isinstance(result.get("url"), str) else ""
        title = result.get("title") if isinstance(result.get("title"), str) else ""

        if result.get("ok") is not True:
            if url:
                self.enqueue_keyword_task(url, title)
            return

        document = result.get("json")
        markers = extract_markers(document)
        if markers:
            self.report.direct_count += len(markers)
            self.add_points(markers)
        tasks = extract_geocode_tasks(document)
        for task in tasks:
            self.enqueue_address_task(task)
        if not markers and not tasks and url:
            self.enqueue_keyword_task(url, title)

    def handle_frame(self, frame: StreamFrame) -> None:
        if frame.event == "done":
            self.stream_done.set()
            return
        if frame.event not in {"result", "error", "meta"} or not frame.data:
            return
        try:
            payload = json.loads(frame.data)
        except ValueError:
            logger.debug("Ignoring malformed %s frame", frame.event)
            return
        if frame.event == "result":
            self.handle_result(payload)
        elif frame.event == "error":
            if isinstance(payload, dict) and payload.get("error"):
                self.report.error = str(payload["error"])
        elif isinstance(payload, dict):
            self.report.meta = payload

    # ---------- Workers ----------

    def _wait(self, seconds: float) -> bool:
        return self.cancel_event.wait(seconds)

    def address_worker(self) -> None:
        resolver = self.client.resolver
        while not self.cancel_event.is_set():
            task = self._pop(self._address_queue)
            if task is None:
                if self.stream_done.is_set():
                    break
                self._wait(self.client.idle_wait)
                continue
            match = _safe_lookup(lambda: resolver.resolve(task.title, task.address, self.cancel_event))
            if match is not None:
                self.add_points([StreamMarkerPoint(lat=match.lat, lng=match.lng, title=task.title, url=task.url)])
            if self._wait(self.client.address_pacing):
                break

    def keyword_worker(self) -> None:
        resolver = self.client.resolver
        while not self.cancel_event.is_set():
            task = self._pop(self._keyword_queue)
            if task is None:
                if self.stream_done.is_set():
                    break
                self._wait(self.client.idle_wait)
                continue
            match = _safe_lookup(lambda: resolver.search_keyword(task.keyword, self.cancel_event))
            if match is not None:
                self.add_points(
                    [StreamMarkerPoint(lat=match.lat, lng=match.lng, title=match.title or task.keyword, url=match.url)]
                )
            if self._wait(self.client.keyword_pacing):
                break

    def cancel(self) -> None:
        self.cancel_event.set()
        self.stream_done.set()
        self.report.cancelled = True
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = []
        response = self.response
        if response is not None:
            try:
                response.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Closing stream response failed: %s", exc)


def _safe_lookup(lookup: Callable[[], Optional[PlaceMatch]]) -> Optional[PlaceMatch]:
    try:
        return lookup()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Fallback lookup failed: %s", exc)
        return None


class StreamIngestClient:
    def __init__(
        self,
        base_url: str,
        resolver: CoordinateResolver,
        session: Optional[requests.Session] = None,
        address_workers: int = ADDRESS_WORKERS,
        keyword_workers: int = KEYWORD_WORKERS,
        address_pacing: float = ADDRESS_PACING_SECONDS,
        keyword_pacing: float = KEYWORD_PACING_SECONDS,
        idle_wait: float = IDLE_WAIT_SECONDS,
        point_flush_delay: float = POINT_FLUSH_DELAY_SECONDS,
        drain_timeout: float = DRAIN_TIMEOUT_SECONDS,
        connect_timeout: float = 10,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.resolver = resolver
        self.session = session or requests.Session()
        self.address_workers = address_workers
        self.keyword_workers = keyword_workers
        self.address_pacing = address_pacing
        self.keyword_pacing = keyword_pacing
        self.idle_wait = idle_wait
        self.point_flush_delay = point_flush_delay
        self.drain_timeout = drain_timeout
        self.connect_timeout = connect_timeout
        self._lock = threading.Lock()
        self._current: Optional[_IngestRun] = None

    def cancel(self) -> None:
        """Abort the in-flight ingest, closing its stream."""
        with self._lock:
            run = self._current
        if run is not None:
            run.cancel()

    def ingest(
        self,
        urls: List[str],
        concurrency: Optional[int] = None,
        on_points: Optional[PointsCallback] = None,
    ) -> IngestReport:
        """Stream every feed and return all points found. A newer call cancels this one."""
        run = _IngestRun(self, on_points)
        with self._lock:
            previous, self._current = self._current, run
        if previous is not None:
            previous.cancel()

        if concurrency is None:
            concurrency = min(MAX_STREAM_CONCURRENCY, max(1, len(urls)))

        workers = [
            threading.Thread(target=run.address_worker, name=f"ingest-address-{i}", daemon=True)
            for i in range(self.address_workers)
        ] + [
            threading.Thread(target=run.keyword_worker, name=f"ingest-keyword-{i}", daemon=True)
            for i in range(self.keyword_workers)
        ]
        for worker in workers:
            worker.start()

        try:
            self._consume(run, urls, concurrency)
        except (StreamError, requests.RequestException) as exc:
            # an error frame already carries the server's reason
            if not run.cancel_event.is_set() and not run.report.error:
                run.report.error = str(exc)
        finally:
            run.stream_done.set()
            self._drain(run, workers)
            run.flush_points()
            with self._lock:
                if self._current is run:
                    self._current = None

        report = run.report
        if not report.points and not report.error and not report.cancelled:
            report.error = NO_POINTS_MESSAGE
        logger.info(
            "Ingest finished: results=%d points=%d direct=%d address_tasks=%d keyword_tasks=%d error=%s",
            report.results_seen,
            len(report.points),
            report.direct_count,
            len(report.geocode_tasks),
            len(report.keyword_tasks),
            report.error,
        )
        return report

    def _consume(self, run: _IngestRun, urls: List[str], concurrency: int) -> None:
        response = self.session.post(
            f"{self.base_url}/openapi-fetch",
            params={"stream": "1"},
            json={"urls": urls, "concurrency": concurrency},
            headers={"Accept": "text/event-stream", "Content-Type": "application/json"},
            stream=True,
            timeout=(self.connect_timeout, None),
        )
        run.response = response
        if run.cancel_event.is_set():
            response.close()
            return
        if not (200 <= response.status_code < 300):
            try:
                payload = response.json()
            except ValueError:
                payload = None
            finally:
                response.close()
            message = payload.get("error") if isinstance(payload, dict) else None
            raise StreamError(message or f"HTTP {response.status_code}")

        saw_done = False
        try:
            for frame in iter_frames(response.iter_content(chunk_size=None)):
                if run.cancel_event.is_set():
                    return
                run.handle_frame(frame)
                if frame.event == "done":
                    saw_done = True
        except (requests.RequestException, AttributeError, ValueError) as exc:
            if run.cancel_event.is_set():
                return
            raise StreamError(f"Stream interrupted: {exc}") from exc
        finally:
            response.close()

        if not saw_done and not run.cancel_event.is_set():
            raise StreamError("Stream ended before completion")

    def _drain(self, run: _IngestRun, workers: List[threading.Thread]) -> None:
        deadline = time.monotonic() + self.drain_timeout
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
        if any(worker.is_alive() for worker in workers):
            run.report.timed_out = True
            logger.warning("Fallback queues did not drain in %.1fs; %d tasks dropped", self.drain_timeout, run.pending_work())
            run.cancel_event.set()
