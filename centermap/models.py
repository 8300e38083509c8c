"""Core data models shared by the center location pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

CenterKind = Literal["counseling", "child"]
CENTER_KINDS = ("counseling", "child")


@dataclass(slots=True)
class Extra:
    label: str
    value: str


@dataclass(frozen=True, slots=True)
class Coordinate:
    lat: float
    lng: float


@dataclass(slots=True)
class Center:
    """Canonical service-location entity built from one raw dataset row."""

    id: str
    name: str
    address: str
    phone: str = ""
    hours: str = ""
    rating: float = 0
    review_count: int = 0
    distance_label: str = ""
    specialties: List[str] = field(default_factory=list)
    homepage_url: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    meta_lines: List[str] = field(default_factory=list)
    intro: Optional[str] = None
    programs: Optional[str] = None
    apply_method: Optional[str] = None
    expert_intro: Optional[str] = None
    reservation_url: Optional[str] = None
    reservation_text: Optional[str] = None
    extras: List[Extra] = field(default_factory=list)
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if not self.has_coordinates:
            return None
        return Coordinate(lat=self.lat, lng=self.lng)


@dataclass(slots=True)
class GeocodeTask:
    entity_id: str
    address: str
    title: str
    source: str = "dataset"
    url: Optional[str] = None


@dataclass(slots=True)
class KeywordTask:
    """Last-resort place search for a feed URL that yielded nothing mappable."""

    url: str
    keyword: str


@dataclass(slots=True)
class StreamMarkerPoint:
    lat: float
    lng: float
    title: str
    url: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.lat:.6f},{self.lng:.6f},{self.title}"


@dataclass(frozen=True, slots=True)
class PlaceMatch:
    """First result of a geocoding or place-search lookup."""

    lat: float
    lng: float
    title: Optional[str] = None
    url: Optional[str] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(lat=self.lat, lng=self.lng)
