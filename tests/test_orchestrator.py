from __future__ import annotations

from datetime import timedelta
from io import BytesIO

import pytest
from PIL import Image

from conftest import PUBLIC_BASE, build_harness, client_error, png_bytes
from heroframe.config import UploadConfig
from heroframe.errors import (
    ImageTooLarge,
    NoImageProvided,
    RateLimited,
    StorageUnavailable,
    TransientNetworkError,
    UnknownFrame,
    UnsupportedMediaType,
    UpstreamUnavailable,
)
from heroframe.models import GenerationStatus
from heroframe.models.records import utcnow
from heroframe.schemas import JobSnapshot
from heroframe.services.orchestrator import NO_OUTPUT_MESSAGE, STALE_MESSAGE, composite_key

OUTPUT_URL = "https://replicate.delivery/pbxt/hero.jpg"


def _start(harness, frame_type: str = "ikhwan", owner: str | None = "user-1"):
    return harness.orchestrator.start_generation(
        png_bytes((640, 480)),
        frame_type,
        owner,
        filename="selfie.jpg",
        content_type="image/jpeg",
    )


def _succeed(harness, job_id: str, output_url: str | None = OUTPUT_URL, portrait=None) -> None:
    harness.jobs.snapshots[job_id] = JobSnapshot(job_id=job_id, status="succeeded", output_url=output_url)
    if output_url and portrait is not False:
        harness.fetcher.images[output_url] = portrait or png_bytes((1024, 1024), (10, 120, 200))


def test_ikhwan_generation_end_to_end(harness) -> None:
    started = _start(harness)

    assert started.status == "starting"
    assert started.record_id
    assert started.original_image_url == f"{PUBLIC_BASE}/{started.original_storage_path}"
    assert started.original_storage_path.startswith("user-1/")
    assert harness.jobs.submissions == [
        (started.original_image_url, harness.registry.prompt_for("ikhwan"))
    ]

    harness.jobs.snapshots[started.job_id] = JobSnapshot(job_id=started.job_id, status="processing")
    in_flight = harness.poller.check_once(started.job_id, started.record_id)
    assert in_flight.status == "processing"
    assert in_flight.record_status is None
    assert harness.store.get_record(started.record_id).status is GenerationStatus.PROCESSING

    _succeed(harness, started.job_id)
    done = harness.poller.check_once(started.job_id, started.record_id)

    record = harness.store.get_record(started.record_id)
    expected_key = composite_key(record, "ikhwan", OUTPUT_URL)
    assert expected_key.startswith(f"user-1/composites/{started.record_id}-ikhwan-")
    assert done.status == "succeeded"
    assert done.output_url == OUTPUT_URL
    assert done.record_status is GenerationStatus.COMPLETED
    assert done.storage_path == expected_key
    assert done.composite_url == f"{PUBLIC_BASE}/{expected_key}"
    assert expected_key in harness.s3.objects

    assert record.status is GenerationStatus.COMPLETED
    assert record.generated_image_url == OUTPUT_URL
    assert record.display_url == done.composite_url
    assert [item.id for item in harness.orchestrator.list_history("user-1")] == [record.id]


def test_completion_is_idempotent(harness) -> None:
    started = _start(harness)
    _succeed(harness, started.job_id)

    first = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)
    puts_after_first = list(harness.s3.puts())
    second = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)
    third = harness.poller.check_once(started.job_id, started.record_id)

    assert second == first
    assert harness.s3.puts() == puts_after_first
    assert harness.fetcher.fetched == [OUTPUT_URL]
    assert third.composite_url == first.composite_image_url


def test_nsfw_failure_marks_record_failed(harness) -> None:
    started = _start(harness, "akhwat", owner=None)
    harness.jobs.snapshots[started.job_id] = JobSnapshot(
        job_id=started.job_id, status="failed", error="NSFW content detected"
    )

    snapshot = harness.poller.check_once(started.job_id, started.record_id)

    assert snapshot.status == "failed"
    assert snapshot.error == "NSFW content detected"
    assert snapshot.record_status is GenerationStatus.FAILED
    record = harness.store.get_record(started.record_id)
    assert record.error_message == "NSFW content detected"
    assert record.composite_image_url is None
    assert harness.s3.puts() == [started.original_storage_path]
    assert started.original_storage_path.startswith("anonymous/")

    # a failed record never moves back
    _succeed(harness, started.job_id)
    after = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)
    assert after.status is GenerationStatus.FAILED
    assert after.generated_image_url is None


def test_unknown_frame_has_no_side_effects(harness) -> None:
    with pytest.raises(UnknownFrame):
        _start(harness, "superman")

    assert harness.s3.calls == []
    assert harness.jobs.submissions == []


@pytest.mark.parametrize(
    "photo,content_type,error",
    [
        (None, "image/jpeg", NoImageProvided),
        (b"", "image/jpeg", NoImageProvided),
        (b"x" * 64, "image/jpeg", ImageTooLarge),
        (b"x" * 8, "application/pdf", UnsupportedMediaType),
    ],
)
def test_invalid_submissions_are_rejected_before_upload(tmp_path, photo, content_type, error) -> None:
    harness = build_harness(tmp_path, upload=UploadConfig(max_bytes=32))

    with pytest.raises(error):
        harness.orchestrator.start_generation(photo, "ikhwan", "user-1", content_type=content_type)

    assert harness.s3.calls == []
    assert harness.jobs.submissions == []


def test_upload_failure_aborts_before_submission(harness) -> None:
    harness.s3.put_failures = [client_error("AccessDenied", 403)]

    with pytest.raises(StorageUnavailable):
        _start(harness)

    assert harness.jobs.submissions == []


def test_submit_failure_reports_stored_original(harness) -> None:
    harness.jobs.submit_error = TransientNetworkError("connection reset")

    with pytest.raises(UpstreamUnavailable) as excinfo:
        _start(harness)

    details = excinfo.value.details
    assert details["original_storage_path"] in harness.s3.objects
    assert details["original_image_url"].startswith(PUBLIC_BASE)
    assert details["cause"] == "transient_network_error"


def test_rate_limit_is_surfaced_as_is(harness) -> None:
    harness.jobs.submit_error = RateLimited(retry_after=3)

    with pytest.raises(RateLimited) as excinfo:
        _start(harness)

    assert excinfo.value.retry_after == 3
    assert "original_image_url" in excinfo.value.details


def test_record_failure_degrades_but_returns_job(harness, monkeypatch) -> None:
    def broken_create(fields):
        raise StorageUnavailable("Database unavailable")

    monkeypatch.setattr(harness.records, "create", broken_create)

    started = _start(harness)

    assert started.job_id == "job-1"
    assert started.record_id is None
    assert started.warnings
    assert len(harness.jobs.submissions) == 1


def test_composite_failure_still_completes(harness) -> None:
    started = _start(harness)
    _succeed(harness, started.job_id, portrait=False)

    snapshot = harness.poller.check_once(started.job_id, started.record_id)

    assert snapshot.record_status is GenerationStatus.COMPLETED
    assert snapshot.composite_url is None
    record = harness.store.get_record(started.record_id)
    assert record.generated_image_url == OUTPUT_URL
    assert record.display_url == OUTPUT_URL

    # a later completion retries the composite
    harness.fetcher.images[OUTPUT_URL] = png_bytes((512, 512))
    retried = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)
    assert retried.composite_storage_path == composite_key(record, "ikhwan", OUTPUT_URL)


def test_success_without_output_fails_record(harness) -> None:
    started = _start(harness)

    record = harness.orchestrator.complete_generation(started.record_id, None)

    assert record.status is GenerationStatus.FAILED
    assert record.error_message == NO_OUTPUT_MESSAGE


def test_fail_generation_ignores_terminal_records(harness) -> None:
    started = _start(harness)
    first = harness.orchestrator.fail_generation(started.record_id, "first reason")

    second = harness.orchestrator.fail_generation(started.record_id, "second reason")

    assert second.error_message == "first reason"
    assert second.updated_at == first.updated_at


def test_composite_image_without_record(harness) -> None:
    harness.fetcher.images[OUTPUT_URL] = png_bytes((700, 900))

    response = harness.orchestrator.composite_image(OUTPUT_URL, "akhwat", owner_scope="user-2")

    assert response.success
    assert response.record_id is None
    assert response.frame_type == "akhwat"
    assert response.storage_path.startswith("user-2/")
    assert response.storage_path.endswith(".png")
    assert response.composite_url == f"{PUBLIC_BASE}/{response.storage_path}"


def test_composite_image_for_record_reuses_deterministic_key(harness) -> None:
    started = _start(harness)
    harness.fetcher.images[OUTPUT_URL] = png_bytes((800, 600))

    first = harness.orchestrator.composite_image(OUTPUT_URL, "ikhwan", record_id=started.record_id)
    second = harness.orchestrator.composite_image(OUTPUT_URL, "ikhwan", record_id=started.record_id)

    record = harness.store.get_record(started.record_id)
    assert first.storage_path == second.storage_path == composite_key(record, "ikhwan", OUTPUT_URL)
    assert record.status is GenerationStatus.COMPLETED
    assert record.generated_image_url == OUTPUT_URL
    assert record.composite_image_url == first.composite_url


def test_composite_image_rejects_unknown_frame_before_fetch(harness) -> None:
    with pytest.raises(UnknownFrame):
        harness.orchestrator.composite_image(OUTPUT_URL, "batman")

    assert harness.fetcher.fetched == []


def test_delete_generation_removes_owned_blobs(harness) -> None:
    started = _start(harness)
    _succeed(harness, started.job_id)
    record = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)

    assert harness.orchestrator.delete_generation(record.id) is True

    deleted = [key for op, key in harness.s3.calls if op == "delete"]
    assert sorted(deleted) == sorted([record.original_storage_path, record.composite_storage_path])
    assert harness.orchestrator.list_history("user-1") == []
    assert harness.orchestrator.delete_generation(record.id) is False


def test_sweep_stale_fails_old_processing_records(harness) -> None:
    pending = _start(harness)
    finished = _start(harness)
    harness.orchestrator.fail_generation(finished.record_id, "nsfw")
    harness.orchestrator._clock = lambda: utcnow() + timedelta(hours=7)

    swept = harness.orchestrator.sweep_stale(timedelta(hours=6))

    assert [record.id for record in swept] == [pending.record_id]
    assert swept[0].status is GenerationStatus.FAILED
    assert swept[0].error_message == STALE_MESSAGE
    assert harness.orchestrator.sweep_stale(timedelta(hours=6)) == []


def test_recomposite_with_another_portrait_stores_the_new_image(harness) -> None:
    started = _start(harness)
    red_url = "https://replicate.delivery/pbxt/red.png"
    green_url = "https://replicate.delivery/pbxt/green.png"
    harness.fetcher.images[red_url] = png_bytes((400, 400), (255, 0, 0))
    harness.fetcher.images[green_url] = png_bytes((400, 400), (0, 255, 0))

    first = harness.orchestrator.composite_image(red_url, "ikhwan", record_id=started.record_id)
    second = harness.orchestrator.composite_image(green_url, "ikhwan", record_id=started.record_id)

    assert first.storage_path != second.storage_path
    image = Image.open(BytesIO(harness.s3.objects[second.storage_path][0])).convert("RGBA")
    assert image.getpixel((400, 400)) == (0, 255, 0, 255)
    record = harness.store.get_record(started.record_id)
    assert record.composite_storage_path == second.storage_path
    assert record.generated_image_url == red_url


def test_late_completion_with_other_output_leaves_record_alone(harness) -> None:
    started = _start(harness)
    _succeed(harness, started.job_id)
    done = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)
    late_url = "https://replicate.delivery/pbxt/late.jpg"
    harness.fetcher.images[late_url] = png_bytes((400, 400), (0, 255, 0))

    late = harness.orchestrator.complete_generation(started.record_id, late_url)

    assert late == done
    assert late.generated_image_url == OUTPUT_URL
    assert late_url not in harness.fetcher.fetched
    assert harness.store.get_record(started.record_id) == done


def test_interleaved_completions_share_one_composite(harness, monkeypatch) -> None:
    started = _start(harness)
    _succeed(harness, started.job_id)
    put_at = harness.store.put_object_at
    entered: list[str] = []
    other: list = []

    def put_at_after_other_completion(data, key, content_type):
        if not entered:
            entered.append(key)
            # a second poller finishes the same record before this write lands
            other.append(harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL))
        return put_at(data, key, content_type)

    monkeypatch.setattr(harness.store, "put_object_at", put_at_after_other_completion)

    first = harness.orchestrator.complete_generation(started.record_id, OUTPUT_URL)

    key = entered[0]
    assert harness.s3.puts().count(key) == 2
    assert list(harness.s3.objects).count(key) == 1
    assert other[0].status is GenerationStatus.COMPLETED
    assert first.status is GenerationStatus.COMPLETED
    assert first.composite_storage_path == other[0].composite_storage_path == key
    assert first.composite_image_url == other[0].composite_image_url == f"{PUBLIC_BASE}/{key}"


def test_oversized_output_completes_without_composite(harness, monkeypatch) -> None:
    started = _start(harness)
    _succeed(harness, started.job_id, portrait=png_bytes((1200, 1200)))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 800 * 800)

    snapshot = harness.poller.check_once(started.job_id, started.record_id)

    assert snapshot.record_status is GenerationStatus.COMPLETED
    assert snapshot.composite_url is None
    assert snapshot.warnings == []
    record = harness.store.get_record(started.record_id)
    assert record.generated_image_url == OUTPUT_URL
    assert record.display_url == OUTPUT_URL
