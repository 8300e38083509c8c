"""Dataset listing, fetching and per-kind selection."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from centermap.etl.dedup import dedup
from centermap.etl.normalize import normalize_rows
from centermap.etl.rules import NormalizerRules
from centermap.etl.sources import expand_rows_for_kind, pick_string
from centermap.models import Center

logger = logging.getLogger(__name__)

COUNSELING_FILE = re.compile(r"아동[\s_]*심리[\s_]*상담", re.IGNORECASE)
CHILD_CENTER_EXCLUDE = re.compile(r"아동\s*센터|아동센터|지역아동센터", re.IGNORECASE)
CHILD_CENTER_FILE = re.compile(r"아동\s*센터|지역\s*아동\s*센터|아동센터|지역아동센터", re.IGNORECASE)
NATIONAL_CHILD_FILE = re.compile(r"지역아동센터_전국통합_enriched\.json$", re.IGNORECASE)
DUPLICATE_COPY = re.compile(r"\(\d+\)\.json$", re.IGNORECASE)
ENRICHED_SUFFIX = re.compile(r"_enriched\.json$", re.IGNORECASE)
JSON_FILE = re.compile(r"\.json$", re.IGNORECASE)

ROW_TYPE_KEYS = ["기관유형", "시설유형", "구분", "type", "TYPE"]
COUNSELING_TYPE = re.compile(r"심리|상담", re.IGNORECASE)
CHILD_TYPE = re.compile(r"아동|지역아동", re.IGNORECASE)


class DatasetLoadError(RuntimeError):
    """Raised when a dataset file is missing or is not valid JSON."""


@dataclass(frozen=True)
class DatasetRef:
    file: str
    tag: str


@dataclass
class LoadResult:
    centers: List[Center] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class DatasetSource(Protocol):
    def list_files(self) -> List[str]:
        ...

    def fetch(self, name: str) -> Any:
        ...


def is_valid_dataset_name(name: str) -> bool:
    if not name or not JSON_FILE.search(name):
        return False
    return ".." not in name and "/" not in name and "\\" not in name


class LocalDatasetSource:
    """Reads ``*.json`` datasets from a directory, caching parsed documents by mtime."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @property
    def exists(self) -> bool:
        return self.directory.is_dir()

    def list_files(self) -> List[str]:
        if not self.exists:
            logger.warning("Dataset directory %s not found; no datasets available.", self.directory)
            return []
        return sorted(
            entry.name for entry in self.directory.iterdir() if entry.is_file() and JSON_FILE.search(entry.name)
        )

    def fetch(self, name: str) -> Any:
        if not is_valid_dataset_name(name):
            raise DatasetLoadError(f"invalid dataset name: {name}")

        path = self.directory / name
        try:
            mtime = os.stat(path).st_mtime
            with self._lock:
                cached = self._cache.get(name)
            if cached and cached[0] == mtime:
                return cached[1]
            document = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, ValueError) as exc:
            with self._lock:
                self._cache.pop(name, None)
            raise DatasetLoadError(f"[{name}] failed to load: {exc}") from exc

        with self._lock:
            self._cache[name] = (mtime, document)
        return document


class HttpDatasetSource:
    """Fetches datasets from a running ingest server (``GET /datasets``, ``GET /datasets/<file>``)."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: int = 30) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or _retrying_session()

    def list_files(self) -> List[str]:
        response = self.session.get(f"{self.base_url}/datasets", timeout=self.timeout)
        response.raise_for_status()
        payload = response.json() or {}
        if payload.get("missing"):
            logger.warning("Remote dataset directory is missing: %s", payload.get("message"))
        return [str(name) for name in payload.get("files") or []]

    def fetch(self, name: str) -> Any:
        try:
            response = self.session.get(f"{self.base_url}/datasets/{quote(name)}", timeout=self.timeout)
        except requests.RequestException as exc:
            raise DatasetLoadError(f"[{name}] failed to load: {exc}") from exc
        if not (200 <= response.status_code < 300):
            raise DatasetLoadError(f"[{name}] failed to load (HTTP {response.status_code})")
        try:
            return response.json()
        except ValueError as exc:
            raise DatasetLoadError(f"[{name}] is not valid JSON") from exc


def _retrying_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


def dataset_tag(file: str) -> str:
    return ENRICHED_SUFFIX.sub("", file)


def select_datasets(files: List[str], kind: str) -> List[DatasetRef]:
    """Pick the dataset files that feed one center kind."""
    if kind == "child":
        national = next((name for name in files if NATIONAL_CHILD_FILE.search(name)), None)
        if national:
            return [DatasetRef(file=national, tag=dataset_tag(national))]
        chosen = [name for name in files if not DUPLICATE_COPY.search(name) and CHILD_CENTER_FILE.search(name)]
    else:
        chosen = [
            name
            for name in files
            if not DUPLICATE_COPY.search(name)
            and COUNSELING_FILE.search(name)
            and not CHILD_CENTER_EXCLUDE.search(name)
        ]
    return [DatasetRef(file=name, tag=dataset_tag(name)) for name in chosen]


def _is_child_row(row: Any) -> bool:
    if not isinstance(row, dict):
        return False
    row_type = pick_string(row, ROW_TYPE_KEYS)
    if row_type and COUNSELING_TYPE.search(row_type) and not CHILD_TYPE.search(row_type):
        return False
    return True


def rows_for_kind(document: Any, kind: str) -> List[Any]:
    rows = expand_rows_for_kind(document, kind)
    if kind == "child":
        rows = [row for row in rows if _is_child_row(row)]
    return rows


def load_centers(
    source: DatasetSource,
    kind: str,
    rules: Optional[NormalizerRules] = None,
    files: Optional[List[str]] = None,
) -> LoadResult:
    """Load, normalize and deduplicate every dataset for ``kind``.

    A dataset that fails to load contributes zero centers and one entry in
    ``errors``; the remaining datasets still load.
    """
    result = LoadResult()
    names = files if files is not None else source.list_files()
    refs = select_datasets(names, kind)
    if not refs:
        message = f"No {kind} datasets found"
        logger.warning(message)
        result.errors.append(message)
        return result

    merged: List[Center] = []
    for ref in refs:
        try:
            document = source.fetch(ref.file)
        except DatasetLoadError as exc:
            logger.warning("Skipping dataset %s: %s", ref.file, exc)
            result.errors.append(str(exc))
            continue
        rows = rows_for_kind(document, kind)
        centers = normalize_rows(rows, kind, dataset_tag=ref.tag, rules=rules)
        logger.info("Loaded %d/%d rows from %s", len(centers), len(rows), ref.file)
        merged.extend(centers)

    result.centers = dedup(merged)
    logger.info("Loaded %d %s centers (%d before dedup)", len(result.centers), kind, len(merged))
    return result
