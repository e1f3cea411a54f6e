from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import PUBLIC_BASE, build_harness, png_bytes
from heroframe.config import (
    DatabaseConfig,
    InferenceConfig,
    RetryConfig,
    Settings,
    StorageConfig,
    UploadConfig,
)
from heroframe.errors import RateLimited
from heroframe.main import create_app
from heroframe.schemas import JobSnapshot
from heroframe.services.container import ServiceContainer

OUTPUT_URL = "https://replicate.delivery/pbxt/api-hero.jpg"


def _settings(max_bytes: int = 1024 * 1024) -> Settings:
    return Settings(
        environment="test",
        allowed_origins=["*"],
        storage=StorageConfig(),
        database=DatabaseConfig(),
        inference=InferenceConfig(),
        upload=UploadConfig(max_bytes=max_bytes),
        retry=RetryConfig(),
    )


@pytest.fixture()
def api(tmp_path):
    harness = build_harness(tmp_path / "frames")
    container = ServiceContainer(
        registry=harness.registry,
        orchestrator=harness.orchestrator,
        poller=harness.poller,
    )
    app = create_app(container=container, settings=_settings())
    with TestClient(app) as client:
        yield client, harness


def _upload(client, frame_type: str = "ikhwan", user_id: str | None = "user-1", data: bytes | None = None):
    form = {"frameType": frame_type}
    if user_id:
        form["userId"] = user_id
    return client.post(
        "/api/generations",
        files={"image": ("selfie.jpg", data or png_bytes((320, 240)), "image/jpeg")},
        data=form,
    )


def test_root_and_health(api) -> None:
    client, _ = api

    assert client.get("/").json() == {"service": "heroframe", "ok": True}
    assert client.get("/health").json() == {"ok": True}


def test_frames_listing(api) -> None:
    client, _ = api

    response = client.get("/api/frames")

    assert response.status_code == 200
    frames = {item["frame_type"]: item for item in response.json()}
    assert set(frames) == {"ikhwan", "akhwat"}
    assert frames["ikhwan"]["width"] == 800


def test_generation_flow_over_http(api) -> None:
    client, harness = api

    started = _upload(client)
    assert started.status_code == 200, started.text
    body = started.json()
    assert body["job_id"] == "job-1"
    assert body["status"] == "starting"
    record_id = body["record_id"]

    harness.jobs.snapshots["job-1"] = JobSnapshot(job_id="job-1", status="succeeded", output_url=OUTPUT_URL)
    harness.fetcher.images[OUTPUT_URL] = png_bytes((900, 1200))
    check = client.get("/api/generations/check", params={"id": "job-1", "generationId": record_id})
    assert check.status_code == 200, check.text
    snapshot = check.json()
    assert snapshot["record_status"] == "completed"
    assert snapshot["composite_url"].startswith(f"{PUBLIC_BASE}/user-1/composites/{record_id}-ikhwan-")

    history = client.get("/api/generations", params={"userId": "user-1"}).json()["history"]
    assert [item["id"] for item in history] == [record_id]
    assert history[0]["display_url"] == snapshot["composite_url"]
    assert history[0]["status"] == "completed"

    deleted = client.delete(f"/api/generations/{record_id}")
    assert deleted.json() == {"success": True}
    missing = client.delete(f"/api/generations/{record_id}")
    assert missing.status_code == 404
    assert missing.json()["error"]["kind"] == "record_not_found"


def test_unknown_frame_is_bad_request(api) -> None:
    client, harness = api

    response = _upload(client, frame_type="superman")

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["kind"] == "unknown_frame"
    assert error["details"]["allowed"] == ["akhwat", "ikhwan"]
    assert harness.s3.calls == []
    assert harness.jobs.submissions == []


def test_missing_image_is_bad_request(api) -> None:
    client, _ = api

    response = client.post("/api/generations", data={"frameType": "ikhwan"})

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "no_image_provided"


def test_rate_limit_sets_retry_after(api) -> None:
    client, harness = api
    harness.jobs.submit_error = RateLimited(retry_after=5)

    response = _upload(client)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "5"
    assert response.json()["error"]["kind"] == "rate_limited"


def test_composite_endpoint_accepts_legacy_field_names(api) -> None:
    client, harness = api
    harness.fetcher.images[OUTPUT_URL] = png_bytes((600, 600))

    response = client.post(
        "/api/composites",
        json={"superheroImage": OUTPUT_URL, "frameType": "akhwat", "userId": "user-7"},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["storage_path"].startswith("user-7/")
    assert body["storage_path"] in harness.s3.objects


def test_composite_endpoint_rejects_inline_images(api) -> None:
    client, harness = api

    response = client.post(
        "/api/composites",
        json={"portraitUrl": "data:image/png;base64,iVBORw0KGgo=", "frameType": "ikhwan"},
    )

    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "inline_image_rejected"
    assert harness.fetcher.fetched == []


def test_check_requires_job_id(api) -> None:
    client, _ = api

    response = client.get("/api/generations/check")

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "invalid_input"


def test_oversized_upload_is_rejected_early(tmp_path) -> None:
    harness = build_harness(tmp_path / "frames")
    container = ServiceContainer(
        registry=harness.registry,
        orchestrator=harness.orchestrator,
        poller=harness.poller,
    )
    client = TestClient(create_app(container=container, settings=_settings(max_bytes=1024)))

    response = _upload(client, data=b"x" * (80 * 1024))

    assert response.status_code == 413
    assert response.json()["error"]["kind"] == "image_too_large"
    assert harness.s3.calls == []


def test_composite_endpoint_reports_oversized_portrait(api, monkeypatch) -> None:
    from PIL import Image

    client, harness = api
    harness.fetcher.images[OUTPUT_URL] = png_bytes((1200, 1200))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 800 * 800)

    response = client.post(
        "/api/composites",
        json={"portraitUrl": OUTPUT_URL, "frameType": "ikhwan", "userId": "user-7"},
    )

    assert response.status_code == 422
    assert response.json()["error"]["kind"] == "decode_error"
    assert harness.s3.puts() == []


def test_upload_handler_is_synchronous() -> None:
    import inspect

    from heroframe.routes.generations import start_generation

    assert not inspect.iscoroutinefunction(start_generation)
