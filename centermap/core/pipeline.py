"""Wiring shared by the CLI job and the HTTP server: load, cache, resolve, stream."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from centermap.core.cache import GeocodeCache, SqliteKeyValueStore
from centermap.core.config import Settings, get_settings
from centermap.core.resolver import CoordinateResolver, PlaceSearch
from centermap.core.scheduler import EntityStore, GeocodeRun, GeocodeRunResult, GeocodeScheduler, ProgressCallback
from centermap.core.stream_client import IngestReport, PointsCallback, StreamIngestClient
from centermap.etl.datasets import DatasetSource, HttpDatasetSource, LoadResult, LocalDatasetSource, load_centers
from centermap.etl.rules import NormalizerRules, load_rules
from centermap.models import Center, GeocodeTask
from centermap.vendors.kakao_local import KakaoGeocoder
from centermap.vendors.serp_places import SerpPlaceSearch

logger = logging.getLogger(__name__)


def build_resolver(settings: Settings, cache: Optional[GeocodeCache] = None) -> CoordinateResolver:
    kakao = KakaoGeocoder(settings.kakao_rest_api_key)
    place_search: PlaceSearch = kakao
    if settings.keyword_search_provider == "serpapi":
        place_search = SerpPlaceSearch(settings.require_serpapi_key())
    return CoordinateResolver(
        geocoder=kakao,
        place_search=place_search,
        cache=cache,
        retry_delay=settings.geocode_retry_delay_seconds,
    )


def build_source(settings: Settings) -> DatasetSource:
    """Remote dataset API when configured, else the local dataset directory."""
    if settings.api_base_url:
        return HttpDatasetSource(settings.api_base_url)
    return LocalDatasetSource(settings.dataset_dir)


class CenterPipeline:
    def __init__(
        self,
        source: DatasetSource,
        resolver: CoordinateResolver,
        cache: Optional[GeocodeCache] = None,
        rules: Optional[NormalizerRules] = None,
        settings: Optional[Settings] = None,
        on_progress: Optional[ProgressCallback] = None,
        stream_client: Optional[StreamIngestClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.source = source
        self.resolver = resolver
        self.cache = cache
        self.rules = rules
        self.store = EntityStore()
        self.scheduler = GeocodeScheduler(
            resolver,
            self.store,
            max_workers=self.settings.geocode_max_workers,
            pacing=self.settings.geocode_pacing_seconds,
            flush_delay=self.settings.geocode_flush_delay_seconds,
            on_progress=on_progress,
        )
        self._stream_client = stream_client
        self.api_base_url = self.settings.api_base_url
        self.kind: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "CenterPipeline":
        settings = settings or get_settings()
        cache = GeocodeCache(SqliteKeyValueStore(settings.cache_path), flush_delay=settings.cache_flush_delay_seconds)
        return cls(
            source=build_source(settings),
            resolver=build_resolver(settings, cache),
            cache=cache,
            rules=load_rules(settings.rules_path),
            settings=settings,
            **kwargs,
        )

    def load(self, kind: str) -> LoadResult:
        """Replace the entity store with the centers of ``kind``; cached coordinates are applied first."""
        if self.kind is not None and kind != self.kind:
            self.scheduler.cancel()
        result = load_centers(self.source, kind, rules=self.rules)
        if self.cache is not None:
            hits = self.cache.apply_to(result.centers)
            logger.info("Applied %d cached coordinates", hits)
        self.store.replace(result.centers)
        self.scheduler.reset_claims()
        self.kind = kind
        return result

    def centers(self) -> List[Center]:
        return self.store.centers()

    def pending_tasks(self, visible_ids: Optional[Iterable[str]] = None) -> List[GeocodeTask]:
        """Geocode work for centers without coordinates, limited to ``visible_ids`` when given."""
        wanted = set(visible_ids) if visible_ids is not None else None
        tasks = []
        for center in self.store.centers():
            if center.has_coordinates or not center.address:
                continue
            if wanted is not None and center.id not in wanted:
                continue
            if self.scheduler.is_claimed(center.id):
                continue
            tasks.append(GeocodeTask(entity_id=center.id, address=center.address, title=center.name))
        return tasks

    def start_resolving(
        self,
        visible_ids: Optional[Iterable[str]] = None,
        concurrency: Optional[int] = None,
    ) -> GeocodeRun:
        return self.scheduler.start(self.pending_tasks(visible_ids), concurrency)

    def resolve_coordinates(
        self,
        visible_ids: Optional[Iterable[str]] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> GeocodeRunResult:
        return self.start_resolving(visible_ids, concurrency).wait(timeout)

    @property
    def stream_client(self) -> StreamIngestClient:
        if self._stream_client is None:
            if not self.api_base_url:
                raise ValueError("CENTERMAP_API_URL is required for feed ingestion")
            workers = max(1, self.settings.stream_workers)
            self._stream_client = StreamIngestClient(
                self.api_base_url,
                self.resolver,
                address_workers=workers,
                keyword_workers=workers * 2,
                drain_timeout=self.settings.stream_drain_timeout_seconds,
            )
        return self._stream_client

    def ingest_feeds(
        self,
        urls: List[str],
        concurrency: Optional[int] = None,
        on_points: Optional[PointsCallback] = None,
    ) -> IngestReport:
        return self.stream_client.ingest(urls, concurrency=concurrency, on_points=on_points)

    def close(self) -> None:
        self.scheduler.cancel()
        if self._stream_client is not None:
            self._stream_client.cancel()
        if self.cache is not None:
            self.cache.close()
