"""Keeps a map marker layer in sync with the visible centers and streamed points."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Set

import folium
from folium.plugins import MarkerCluster

from centermap.models import Center, StreamMarkerPoint

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = (37.5665, 126.9780)
DEFAULT_ZOOM = 11


@dataclass
class MarkerItem:
    id: str
    lat: float
    lng: float
    title: str
    popup_html: str = ""


def marker_from_center(center: Center) -> Optional[MarkerItem]:
    if not center.has_coordinates:
        return None
    lines = [f"<strong>{html.escape(center.name)}</strong>"]
    if center.address:
        lines.append(html.escape(center.address))
    if center.phone:
        lines.append(html.escape(center.phone))
    if center.specialties:
        lines.append(html.escape(", ".join(center.specialties[:4])))
    if center.homepage_url:
        href = html.escape(center.homepage_url, quote=True)
        lines.append(f'<a href="{href}" target="_blank" rel="noopener">{href}</a>')
    return MarkerItem(
        id=center.id,
        lat=float(center.lat),
        lng=float(center.lng),
        title=center.name,
        popup_html="<br>".join(lines),
    )


def marker_from_point(point: StreamMarkerPoint, index: int) -> MarkerItem:
    popup = f"<strong>{html.escape(point.title)}</strong>"
    if point.url:
        href = html.escape(point.url, quote=True)
        popup += f'<br><a href="{href}" target="_blank" rel="noopener">{href}</a>'
    return MarkerItem(id=f"openapi-{index}", lat=point.lat, lng=point.lng, title=point.title, popup_html=popup)


class MarkerSurface(Protocol):
    def add_marker(self, item: MarkerItem) -> None:
        ...

    def rebuild(self, items: Sequence[MarkerItem]) -> None:
        ...

    def fit_bounds(self, items: Sequence[MarkerItem]) -> None:
        ...


class FoliumMarkerSurface:
    """A clustered marker layer drawn onto a folium map when saved.

    Markers are held as items, so a rebuild only swaps the list. Several
    surfaces can be saved onto one map as separate clusters.
    """

    def __init__(self, name: str = "centers") -> None:
        self.name = name
        self.items: List[MarkerItem] = []
        self.bounds: Optional[List[List[float]]] = None

    @property
    def count(self) -> int:
        return len(self.items)

    def add_marker(self, item: MarkerItem) -> None:
        self.items.append(item)

    def rebuild(self, items: Sequence[MarkerItem]) -> None:
        self.items = list(items)

    def fit_bounds(self, items: Sequence[MarkerItem]) -> None:
        if not items:
            return
        lats = [item.lat for item in items]
        lngs = [item.lng for item in items]
        self.bounds = [[min(lats), min(lngs)], [max(lats), max(lngs)]]

    def draw(self, map_: folium.Map) -> MarkerCluster:
        cluster = MarkerCluster(name=self.name).add_to(map_)
        for item in self.items:
            folium.Marker(
                location=[item.lat, item.lng],
                tooltip=item.title,
                popup=folium.Popup(item.popup_html, max_width=320) if item.popup_html else None,
            ).add_to(cluster)
        return cluster

    def to_map(self, *others: Optional["FoliumMarkerSurface"]) -> folium.Map:
        surfaces = [self] + [other for other in others if other is not None]
        map_ = folium.Map(location=list(DEFAULT_LOCATION), zoom_start=DEFAULT_ZOOM)
        for surface in surfaces:
            surface.draw(map_)
        bounds = next((surface.bounds for surface in surfaces if surface.bounds), None)
        if bounds:
            map_.fit_bounds(bounds)
        return map_

    def save(self, path: str, *others: Optional["FoliumMarkerSurface"]) -> None:
        self.to_map(*others).save(path)
        logger.info("Saved map with %d %s markers to %s", self.count, self.name, path)


class MarkerRenderer:
    """Reconcile a surface against the visible set without redrawing unchanged markers.

    When the set of visible ids changes the layer is rebuilt and the view is
    fitted to it. Otherwise only centers that gained coordinates since the
    last render are added.
    """

    def __init__(self, surface: MarkerSurface, point_surface: Optional[MarkerSurface] = None) -> None:
        self.surface = surface
        self.point_surface = point_surface if point_surface is not None else surface
        self.rendered_ids: Set[str] = set()
        self._visible_ids: Optional[frozenset] = None
        self._point_count = 0

    def render(self, visible: Sequence[Center]) -> int:
        """Returns the number of markers drawn by this call."""
        visible_ids = frozenset(center.id for center in visible)
        if visible_ids != self._visible_ids:
            self._visible_ids = visible_ids
            items = [item for item in (marker_from_center(c) for c in visible) if item is not None]
            self.surface.rebuild(items)
            if self.point_surface is self.surface:
                # the rebuild dropped any stream markers sharing this surface
                self._point_count = 0
            self.rendered_ids = {item.id for item in items}
            if items:
                self.surface.fit_bounds(items)
            return len(items)

        added = 0
        for center in visible:
            if center.id in self.rendered_ids:
                continue
            item = marker_from_center(center)
            if item is None:
                continue
            self.surface.add_marker(item)
            self.rendered_ids.add(item.id)
            added += 1
        return added

    def render_points(self, points: Sequence[StreamMarkerPoint]) -> int:
        if len(points) < self._point_count:
            items = [marker_from_point(point, index + 1) for index, point in enumerate(points)]
            self.point_surface.rebuild(items)
            if self.point_surface is self.surface:
                self._visible_ids = None
            self._point_count = len(items)
            return len(items)

        added = 0
        for index in range(self._point_count, len(points)):
            self.point_surface.add_marker(marker_from_point(points[index], index + 1))
            added += 1
        self._point_count = len(points)
        return added
