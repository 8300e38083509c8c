"""HTTP entrypoint serving center datasets and the streaming feed fan-out."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

import requests
from flask import Flask, Response, jsonify, request

from centermap.core.config import get_settings
from centermap.core.feed_fetcher import (
    DEFAULT_CONCURRENCY,
    DEFAULT_TIMEOUT_MS,
    MAX_CONCURRENCY,
    MAX_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
    clamp_int,
    clamp_number,
    fetch_all,
    iter_stream_frames,
)
from centermap.etl.datasets import DatasetLoadError, LocalDatasetSource, is_valid_dataset_name

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & shared clients ----------
app = Flask(__name__)
_session = requests.Session()

EXPECTED_BODY = "Expected: { urls: string[] }"
STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _dataset_source() -> LocalDatasetSource:
    return LocalDatasetSource(get_settings().dataset_dir)


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": getattr(settings, "worker_port", None),
                "dataset_dir": settings.dataset_dir,
            }
        ),
        200,
    )


@app.get("/datasets")
def list_datasets() -> Any:
    source = _dataset_source()
    if not source.exists:
        return jsonify(
            {
                "files": [],
                "count": 0,
                "missing": True,
                "message": f"Dataset directory {source.directory} does not exist",
            }
        )
    files = source.list_files()
    return jsonify({"files": files, "count": len(files)})


@app.get("/datasets/<path:name>")
def get_dataset(name: str) -> Any:
    if not is_valid_dataset_name(name):
        return jsonify({"error": "invalid dataset name"}), 400
    try:
        document = _dataset_source().fetch(name)
    except DatasetLoadError as exc:
        logger.warning("Dataset request failed: %s", exc)
        return jsonify({"error": str(exc)}), 404
    return jsonify(document)


@app.post("/openapi-fetch")
def openapi_fetch() -> Any:
    """
    Fetch many JSON feeds concurrently.
    Required JSON fields: urls (list of strings)
    Optional: timeoutMs (1000..30000), concurrency (1..200)
    ``?stream=1`` or ``Accept: text/event-stream`` switches to an event stream.
    """
    wants_stream = request.args.get("stream") == "1" or "text/event-stream" in (
        request.headers.get("Accept") or ""
    )

    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({"error": f"Invalid JSON body. {EXPECTED_BODY}"}), 400

    raw_urls = payload.get("urls") if isinstance(payload, dict) else None
    urls: List[str] = [url for url in raw_urls if isinstance(url, str)] if isinstance(raw_urls, list) else []
    if not urls:
        return jsonify({"error": f"Missing urls. {EXPECTED_BODY}"}), 400

    options: Dict[str, Any] = payload if isinstance(payload, dict) else {}
    timeout_ms = clamp_number(options.get("timeoutMs"), DEFAULT_TIMEOUT_MS, MIN_TIMEOUT_MS, MAX_TIMEOUT_MS)
    concurrency = clamp_int(options.get("concurrency"), DEFAULT_CONCURRENCY, 1, MAX_CONCURRENCY)

    logger.info("Fetching %d feeds (stream=%s, concurrency=%d)", len(urls), wants_stream, concurrency)

    if not wants_stream:
        results = fetch_all(urls, timeout_ms, concurrency, _session)
        return jsonify(
            {
                "results": [result.to_dict() for result in results],
                "count": len(results),
                "timeoutMs": timeout_ms,
                "concurrency": concurrency,
            }
        )

    return Response(
        iter_stream_frames(urls, timeout_ms, concurrency, _session),
        mimetype="text/event-stream",
        headers=STREAM_HEADERS,
    )


def main() -> None:
    env_port = os.getenv("PORT")
    logger.info("[BOOT] ENV PORT=%s", env_port)

    port = int(env_port or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)

    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
