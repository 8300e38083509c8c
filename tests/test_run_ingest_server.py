import json

import pytest

from centermap.core import config
from centermap.core.feed_fetcher import FetchResult
from centermap.jobs import run_ingest_server


@pytest.fixture(autouse=True)
def dataset_dir(tmp_path, monkeypatch):
    directory = tmp_path / "openapi"
    monkeypatch.setenv("CENTERMAP_DATASET_DIR", str(directory))
    config.get_settings.cache_clear()
    yield directory
    config.get_settings.cache_clear()


@pytest.fixture
def client():
    return run_ingest_server.app.test_client()


def test_health_endpoint(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
    assert client.get("/").status_code == 200


def test_datasets_reports_missing_directory(client):
    payload = client.get("/datasets").get_json()

    assert payload["missing"] is True
    assert payload["files"] == []
    assert "does not exist" in payload["message"]


def test_datasets_list_and_fetch(client, dataset_dir):
    dataset_dir.mkdir()
    (dataset_dir / "아동심리상담_서울_enriched.json").write_text(
        json.dumps({"data": [{"시설명": "가람"}]}, ensure_ascii=False), encoding="utf-8"
    )
    (dataset_dir / "readme.txt").write_text("x", encoding="utf-8")

    listing = client.get("/datasets").get_json()
    assert listing == {"files": ["아동심리상담_서울_enriched.json"], "count": 1}

    document = client.get("/datasets/아동심리상담_서울_enriched.json")
    assert document.status_code == 200
    assert document.get_json() == {"data": [{"시설명": "가람"}]}


def test_dataset_fetch_errors(client, dataset_dir):
    dataset_dir.mkdir()

    assert client.get("/datasets/readme.txt").status_code == 400
    assert client.get("/datasets/a..b.json").status_code == 400
    missing = client.get("/datasets/missing.json")
    assert missing.status_code == 404
    assert "missing.json" in missing.get_json()["error"]


def test_openapi_fetch_validates_payload(client):
    invalid = client.post("/openapi-fetch", data="not json", content_type="application/json")
    assert invalid.status_code == 400
    assert invalid.get_json()["error"] == "Invalid JSON body. Expected: { urls: string[] }"

    for body in ({}, {"urls": []}, {"urls": [1, None]}, ["https://a.kr"]):
        response = client.post("/openapi-fetch", json=body)
        assert response.status_code == 400
        assert response.get_json()["error"] == "Missing urls. Expected: { urls: string[] }"


def test_openapi_fetch_batch_mode_clamps_options(client, monkeypatch):
    captured = {}

    def fake_fetch_all(urls, timeout_ms, concurrency, session):
        captured.update(urls=urls, timeout_ms=timeout_ms, concurrency=concurrency)
        return [FetchResult(url=url, ok=True, status=200, json={"n": i}) for i, url in enumerate(urls)]

    monkeypatch.setattr(run_ingest_server, "fetch_all", fake_fetch_all)

    response = client.post(
        "/openapi-fetch", json={"urls": ["https://a.kr", 5, "https://b.kr"], "timeoutMs": 50, "concurrency": 999}
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert captured == {"urls": ["https://a.kr", "https://b.kr"], "timeout_ms": 1000, "concurrency": 200}
    assert payload["count"] == 2
    assert payload["timeoutMs"] == 1000
    assert payload["concurrency"] == 200
    assert payload["results"][1] == {"url": "https://b.kr", "ok": True, "status": 200, "json": {"n": 1}}


@pytest.mark.parametrize(
    "query,headers", [("?stream=1", {}), ("", {"Accept": "text/event-stream"})]
)
def test_openapi_fetch_stream_mode(client, monkeypatch, query, headers):
    def fake_frames(urls, timeout_ms, concurrency, session):
        yield ": openapi-fetch stream\n\n"
        yield f"event: meta\ndata: {json.dumps({'total': len(urls)})}\n\n"
        yield "event: done\ndata: {}\n\n"

    monkeypatch.setattr(run_ingest_server, "iter_stream_frames", fake_frames)

    response = client.post(f"/openapi-fetch{query}", json={"urls": ["https://a.kr"]}, headers=headers)

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert response.headers["Cache-Control"] == "no-cache, no-transform"
    body = response.get_data(as_text=True)
    assert body.startswith(": openapi-fetch stream")
    assert body.endswith("event: done\ndata: {}\n\n")
