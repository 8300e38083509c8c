"""Coordinate fallback chain: cache, address geocoding, then keyword place search."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Protocol

from centermap.core.cache import GeocodeCache
from centermap.models import Center, Coordinate, PlaceMatch

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 0.14


class AddressGeocoder(Protocol):
    def geocode_address(self, address: str) -> Optional[PlaceMatch]:
        ...


class PlaceSearch(Protocol):
    def search_keyword(self, keyword: str) -> Optional[PlaceMatch]:
        ...


class CoordinateResolver:
    """Resolve one (name, address) pair to a coordinate.

    Order: cache hit, then the address geocoder, then keyword search for
    ``"{name} {address}"``, then keyword search for ``name`` alone. Each
    network step is retried once after ``retry_delay`` seconds. Successful
    lookups are written through to the cache. Misses return ``None``.
    """

    def __init__(
        self,
        geocoder: Optional[AddressGeocoder],
        place_search: Optional[PlaceSearch],
        cache: Optional[GeocodeCache] = None,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> None:
        self.geocoder = geocoder
        self.place_search = place_search
        self.cache = cache
        self.retry_delay = retry_delay

    def _with_retry(
        self,
        lookup: Callable[[str], Optional[PlaceMatch]],
        query: str,
        cancel_event: Optional[threading.Event],
    ) -> Optional[PlaceMatch]:
        query = (query or "").strip()
        if not query:
            return None
        match = lookup(query)
        if match is not None:
            return match
        if cancel_event is not None:
            if cancel_event.wait(self.retry_delay):
                return None
        else:
            time.sleep(self.retry_delay)
        return lookup(query)

    def geocode_address(self, address: str, cancel_event: Optional[threading.Event] = None) -> Optional[PlaceMatch]:
        if self.geocoder is None:
            return None
        return self._with_retry(self.geocoder.geocode_address, address, cancel_event)

    def search_keyword(self, keyword: str, cancel_event: Optional[threading.Event] = None) -> Optional[PlaceMatch]:
        if self.place_search is None:
            return None
        return self._with_retry(self.place_search.search_keyword, keyword, cancel_event)

    def resolve(
        self,
        name: str,
        address: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[PlaceMatch]:
        name = (name or "").strip()
        address = (address or "").strip()

        if address and self.cache is not None:
            cached = self.cache.get(name, address)
            if cached is not None:
                return PlaceMatch(lat=cached.lat, lng=cached.lng)

        steps = []
        if address:
            steps.append(lambda: self.geocode_address(address, cancel_event))
        keyword = " ".join(part for part in (name, address) if part)
        steps.append(lambda: self.search_keyword(keyword, cancel_event))
        if name and name != keyword:
            steps.append(lambda: self.search_keyword(name, cancel_event))

        for step in steps:
            if cancel_event is not None and cancel_event.is_set():
                return None
            match = step()
            if match is not None:
                if self.cache is not None:
                    self.cache.put(name, address, match.coordinate)
                return match

        logger.debug("Unresolved: %s | %s", name, address)
        return None

    def resolve_center(
        self,
        center: Center,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Coordinate]:
        """Coordinate for ``center``; one that already has coordinates triggers no lookups."""
        if center.has_coordinates:
            return center.coordinate
        match = self.resolve(center.name, center.address, cancel_event)
        return match.coordinate if match is not None else None
