from __future__ import annotations

from unittest.mock import MagicMock

from heroframe.errors import RecordNotFound
from heroframe.schemas import JobSnapshot
from heroframe.services.poller import StatusPoller


def test_check_once_polls_exactly_once(harness) -> None:
    harness.jobs.snapshots["job-9"] = JobSnapshot(job_id="job-9", status="starting")

    snapshot = harness.poller.check_once("job-9")

    assert harness.jobs.polls == ["job-9"]
    assert snapshot.status == "starting"
    assert snapshot.record_id is None


def test_terminal_job_without_record_only_reports(harness) -> None:
    harness.jobs.snapshots["job-9"] = JobSnapshot(
        job_id="job-9", status="succeeded", output_url="https://out.example.com/a.jpg"
    )
    orchestrator = MagicMock()
    poller = StatusPoller(harness.jobs, orchestrator)

    snapshot = poller.check_once("job-9")

    assert snapshot.output_url == "https://out.example.com/a.jpg"
    orchestrator.complete_generation.assert_not_called()
    orchestrator.fail_generation.assert_not_called()


def test_failed_job_uses_default_reason(harness) -> None:
    orchestrator = MagicMock()
    harness.jobs.snapshots["job-9"] = JobSnapshot(job_id="job-9", status="failed")
    poller = StatusPoller(harness.jobs, orchestrator)

    poller.check_once("job-9", "rec-1")

    orchestrator.fail_generation.assert_called_once_with("rec-1", "Generation failed")


def test_transition_errors_become_warnings(harness) -> None:
    harness.jobs.snapshots["job-9"] = JobSnapshot(
        job_id="job-9", status="succeeded", output_url="https://out.example.com/a.jpg"
    )
    orchestrator = MagicMock()
    orchestrator.complete_generation.side_effect = RecordNotFound(details={"record_id": "gone"})
    poller = StatusPoller(harness.jobs, orchestrator)

    snapshot = poller.check_once("job-9", "gone")

    assert snapshot.status == "succeeded"
    assert snapshot.output_url == "https://out.example.com/a.jpg"
    assert snapshot.record_status is None
    assert snapshot.warnings and "not updated" in snapshot.warnings[0]


def test_unknown_record_is_reported_not_raised(harness) -> None:
    harness.jobs.snapshots["job-9"] = JobSnapshot(job_id="job-9", status="failed", error="boom")

    snapshot = harness.poller.check_once("job-9", "missing-record")

    assert snapshot.error == "boom"
    assert snapshot.warnings
    assert snapshot.record_status is None
    assert harness.store.get_record("missing-record") is None
