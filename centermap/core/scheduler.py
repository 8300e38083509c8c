"""Background worker pool that resolves coordinates for centers that lack them."""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from centermap.core.resolver import CoordinateResolver
from centermap.models import Center, Coordinate, GeocodeTask

logger = logging.getLogger(__name__)

MAX_WORKERS = 6
PACING_SECONDS = 0.09
FLUSH_DELAY_SECONDS = 0.12

ProgressCallback = Callable[[int, int], None]


class EntityStore:
    """Thread-safe id -> Center map; coordinates are the only field updated after load."""

    def __init__(self, centers: Iterable[Center] = ()) -> None:
        self._lock = threading.Lock()
        self._centers: Dict[str, Center] = {center.id: center for center in centers}
        self.batches_applied = 0

    def replace(self, centers: Iterable[Center]) -> None:
        with self._lock:
            self._centers = {center.id: center for center in centers}

    def get(self, entity_id: str) -> Optional[Center]:
        with self._lock:
            return self._centers.get(entity_id)

    def centers(self) -> List[Center]:
        with self._lock:
            return list(self._centers.values())

    def apply_coordinates(self, updates: Dict[str, Coordinate]) -> int:
        applied = 0
        with self._lock:
            for entity_id, coordinate in updates.items():
                center = self._centers.get(entity_id)
                if center is None:
                    continue
                center.lat = coordinate.lat
                center.lng = coordinate.lng
                applied += 1
            if updates:
                self.batches_applied += 1
        return applied


@dataclass
class TaskOutcome:
    entity_id: str
    coordinate: Optional[Coordinate] = None
    skipped: bool = False


@dataclass
class GeocodeRunResult:
    total: int
    outcomes: List[TaskOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def resolved(self) -> Dict[str, Coordinate]:
        return {o.entity_id: o.coordinate for o in self.outcomes if o.coordinate is not None}

    @property
    def unresolved(self) -> List[str]:
        return [o.entity_id for o in self.outcomes if o.coordinate is None and not o.skipped]


def default_concurrency(task_count: int, max_workers: int = MAX_WORKERS) -> int:
    """Scale workers with queue size but stay low; geocoding backends rate-limit aggressively."""
    return max(1, min(max_workers, max(2, math.ceil(task_count / 400))))


class GeocodeRun:
    """One scheduling pass over a task queue. Created by :meth:`GeocodeScheduler.start`."""

    def __init__(self, scheduler: "GeocodeScheduler", tasks: List[GeocodeTask], concurrency: int) -> None:
        self.scheduler = scheduler
        self.concurrency = concurrency
        self.cancel_event = threading.Event()
        self.result = GeocodeRunResult(total=len(tasks))
        self._queue: Deque[GeocodeTask] = deque(tasks)
        self._buffer: Dict[str, Coordinate] = {}
        self._claimed: Set[str] = set()
        self._applied: Set[str] = set()
        self._misses: Set[str] = set()
        self._done = 0
        self._timer: Optional[threading.Timer] = None
        self._finished = threading.Event()
        self._thread = threading.Thread(target=self._run, name="geocode-run", daemon=True)

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def start(self) -> "GeocodeRun":
        self._thread.start()
        return self

    def wait(self, timeout: Optional[float] = None) -> GeocodeRunResult:
        self._finished.wait(timeout)
        return self.result

    def cancel(self) -> None:
        """Stop workers, drop unflushed results, and release claims that were never applied."""
        lock = self.scheduler._lock
        with lock:
            if self.cancel_event.is_set() or self._finished.is_set():
                return
            self.cancel_event.set()
            self.result.cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._buffer.clear()
            self._misses.clear()
            self._queue.clear()
            released = self._claimed - self._applied
            self.scheduler._claimed.difference_update(released)
        logger.info("Geocode run cancelled; released %d unfinished claims", len(released))

    # ---------- Internals ----------

    def _next_task(self) -> Optional[GeocodeTask]:
        with self.scheduler._lock:
            if self.cancel_event.is_set() or not self._queue:
                return None
            return self._queue.popleft()

    def _claim(self, entity_id: str) -> Optional[bool]:
        """True when claimed, False when another worker or run owns it, None when cancelled."""
        with self.scheduler._lock:
            if self.cancel_event.is_set():
                return None
            if entity_id in self.scheduler._claimed:
                self.result.outcomes.append(TaskOutcome(entity_id=entity_id, skipped=True))
                self._done += 1
                return False
            self.scheduler._claimed.add(entity_id)
            self._claimed.add(entity_id)
            return True

    def _record(self, entity_id: str, coordinate: Optional[Coordinate]) -> bool:
        with self.scheduler._lock:
            if self.cancel_event.is_set():
                return False
            self.result.outcomes.append(TaskOutcome(entity_id=entity_id, coordinate=coordinate))
            self._done += 1
            if coordinate is not None:
                self._buffer[entity_id] = coordinate
            else:
                self._misses.add(entity_id)
            self._schedule_flush()
            return True

    def _schedule_flush(self) -> None:
        if self._timer is not None:
            return
        self._timer = threading.Timer(self.scheduler.flush_delay, self._flush_from_timer)
        self._timer.daemon = True
        self._timer.start()

    def _flush_from_timer(self) -> None:
        with self.scheduler._lock:
            self._timer = None
        self._flush()

    def _flush(self) -> None:
        with self.scheduler._lock:
            if self.cancel_event.is_set():
                return
            batch = dict(self._buffer)
            self._buffer.clear()
            if batch:
                self.scheduler.store.apply_coordinates(batch)
                self._applied.update(batch)
            self._applied.update(self._misses)
            self._misses.clear()
            done, total = self._done, self.result.total
        if self.scheduler.on_progress is not None:
            self.scheduler.on_progress(done, total)

    def _worker(self) -> None:
        resolver = self.scheduler.resolver
        pacing = self.scheduler.pacing
        while not self.cancel_event.is_set():
            task = self._next_task()
            if task is None:
                break
            claimed = self._claim(task.entity_id)
            if claimed is None:
                break
            if not claimed:
                continue

            try:
                match = resolver.resolve(task.title, task.address, self.cancel_event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Geocode failed for %s: %s", task.entity_id, exc)
                match = None

            if not self._record(task.entity_id, match.coordinate if match is not None else None):
                break
            if self.cancel_event.wait(pacing):
                break

    def _run(self) -> None:
        try:
            workers = [
                threading.Thread(target=self._worker, name=f"geocode-worker-{index}", daemon=True)
                for index in range(self.concurrency)
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()

            with self.scheduler._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
            self._flush()
            if not self.cancel_event.is_set():
                result = self.result
                logger.info(
                    "Geocode run finished: %d resolved, %d unresolved, %d skipped",
                    len(result.resolved),
                    len(result.unresolved),
                    sum(1 for o in result.outcomes if o.skipped),
                )
        finally:
            self.scheduler._run_finished(self)
            self._finished.set()


class GeocodeScheduler:
    """Drains geocode task queues with a small pool of paced worker threads.

    A scheduler-wide claimed set keeps overlapping runs from resolving the
    same entity twice. Starting a run cancels the one in flight.
    """

    def __init__(
        self,
        resolver: CoordinateResolver,
        store: EntityStore,
        max_workers: int = MAX_WORKERS,
        pacing: float = PACING_SECONDS,
        flush_delay: float = FLUSH_DELAY_SECONDS,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.max_workers = max_workers
        self.pacing = pacing
        self.flush_delay = flush_delay
        self.on_progress = on_progress
        self._lock = threading.RLock()
        self._claimed: Set[str] = set()
        self._current: Optional[GeocodeRun] = None

    def is_claimed(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._claimed

    def reset_claims(self) -> None:
        """Forget every claim, e.g. after the entity store is reloaded."""
        with self._lock:
            self._claimed.clear()

    @property
    def current(self) -> Optional[GeocodeRun]:
        with self._lock:
            return self._current

    def start(self, tasks: List[GeocodeTask], concurrency: Optional[int] = None) -> GeocodeRun:
        self.cancel()
        workers = concurrency if concurrency is not None else default_concurrency(len(tasks), self.max_workers)
        run = GeocodeRun(self, list(tasks), max(1, workers))
        with self._lock:
            self._current = run
        logger.info("Starting geocode run: tasks=%d workers=%d", len(tasks), run.concurrency)
        return run.start()

    def run(
        self,
        tasks: List[GeocodeTask],
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> GeocodeRunResult:
        return self.start(tasks, concurrency).wait(timeout)

    def cancel(self) -> None:
        with self._lock:
            run = self._current
        if run is not None:
            run.cancel()

    def _run_finished(self, run: GeocodeRun) -> None:
        with self._lock:
            if self._current is run:
                self._current = None
