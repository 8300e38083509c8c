"""Durable geocode cache keyed by (name, address)."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from typing import Dict, Iterable, Optional, Protocol

from centermap.etl.sources import parse_number
from centermap.models import Center, Coordinate

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "centermap:geocode-cache:v1"
CACHE_FLUSH_DELAY_SECONDS = 0.8


class KeyValueStore(Protocol):
    def get(self, namespace: str) -> Optional[str]:
        ...

    def set(self, namespace: str, value: str) -> None:
        ...


class MemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})
        self.writes = 0

    def get(self, namespace: str) -> Optional[str]:
        return self.values.get(namespace)

    def set(self, namespace: str, value: str) -> None:
        self.values[namespace] = value
        self.writes += 1


class SqliteKeyValueStore:
    """One JSON blob per namespace in a single-table SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            self._conn.commit()

    def get(self, namespace: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE namespace = ?", (namespace,)).fetchone()
        return row[0] if row else None

    def set(self, namespace: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO kv (namespace, value) VALUES (?, ?) "
                "ON CONFLICT(namespace) DO UPDATE SET value = excluded.value",
                (namespace, value),
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def cache_key(name: str, address: str) -> str:
    return f"{(name or '').strip()}|{(address or '').strip()}".lower()


def _coordinate_from_json(value: object) -> Optional[Coordinate]:
    if not isinstance(value, dict):
        return None
    lat = parse_number(value.get("lat"))
    lng = parse_number(value.get("lng"))
    if lat is None or lng is None:
        return None
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        return None
    return Coordinate(lat=float(lat), lng=float(lng))


class GeocodeCache:
    """In-memory map of resolved coordinates mirrored to a :class:`KeyValueStore`.

    Entries are loaded once, never expire, and are written back as one JSON
    blob on a debounce so a burst of resolutions costs a single store write.
    """

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str = CACHE_NAMESPACE,
        flush_delay: float = CACHE_FLUSH_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.flush_delay = flush_delay
        self._entries: Dict[str, Coordinate] = {}
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._loaded = False

    def load(self) -> int:
        """Read the persisted blob; invalid or out-of-range entries are skipped."""
        with self._lock:
            if self._loaded:
                return len(self._entries)
            self._loaded = True
            raw = self.store.get(self.namespace)
            if not raw:
                return 0
            try:
                payload = json.loads(raw)
            except ValueError:
                logger.warning("Geocode cache %s is not valid JSON; starting empty.", self.namespace)
                return 0
            if not isinstance(payload, dict):
                return 0
            for key, value in payload.items():
                if not key:
                    continue
                coordinate = _coordinate_from_json(value)
                if coordinate is not None:
                    self._entries[key] = coordinate
            logger.info("Loaded %d geocode cache entries", len(self._entries))
            return len(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, name: str, address: str) -> Optional[Coordinate]:
        if not self._loaded:
            self.load()
        with self._lock:
            return self._entries.get(cache_key(name, address))

    def put(self, name: str, address: str, coordinate: Coordinate) -> bool:
        """Store a coordinate; entries without an address are not cached."""
        if not (address or "").strip():
            return False
        if not self._loaded:
            self.load()
        with self._lock:
            self._entries[cache_key(name, address)] = coordinate
            self._schedule_flush()
        return True

    def apply_to(self, centers: Iterable[Center]) -> int:
        """Fill coordinates in place for cached centers that lack them."""
        if not self._loaded:
            self.load()
        applied = 0
        with self._lock:
            if not self._entries:
                return 0
            for center in centers:
                if center.has_coordinates:
                    continue
                hit = self._entries.get(cache_key(center.name, center.address))
                if hit is not None:
                    center.lat = hit.lat
                    center.lng = hit.lng
                    applied += 1
        return applied

    def _schedule_flush(self) -> None:
        if self._timer is not None:
            return
        self._timer = threading.Timer(self.flush_delay, self._flush_from_timer)
        self._timer.daemon = True
        self._timer.start()

    def _flush_from_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.flush()

    def flush(self) -> None:
        # snapshot and write together so an older snapshot never lands last
        with self._write_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                payload = json.dumps(
                    {key: {"lat": value.lat, "lng": value.lng} for key, value in self._entries.items()},
                    ensure_ascii=False,
                )
            try:
                self.store.set(self.namespace, payload)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to persist geocode cache: %s", exc)

    def close(self) -> None:
        """Cancel any pending debounce and write the final state."""
        if self._loaded:
            self.flush()
