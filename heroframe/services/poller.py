from __future__ import annotations

import logging
from typing import Optional

from heroframe.errors import HeroFrameError
from heroframe.schemas import GenerationRecord, GenerationStatusSnapshot
from heroframe.services.job_client import JobClient
from heroframe.services.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


class StatusPoller:
    """One remote status query per call; cadence is up to the caller."""

    def __init__(self, jobs: JobClient, orchestrator: GenerationOrchestrator) -> None:
        self.jobs = jobs
        self.orchestrator = orchestrator

    def check_once(self, job_id: str, record_id: str | None = None) -> GenerationStatusSnapshot:
        snapshot = self.jobs.poll(job_id)
        result = GenerationStatusSnapshot(
            job_id=snapshot.job_id,
            status=snapshot.status,
            output_url=snapshot.output_url,
            error=snapshot.error,
            record_id=record_id,
        )
        if not (snapshot.is_terminal and record_id):
            return result

        record: Optional[GenerationRecord] = None
        try:
            if snapshot.status == "succeeded":
                record = self.orchestrator.complete_generation(record_id, snapshot.output_url)
            else:
                record = self.orchestrator.fail_generation(
                    record_id, snapshot.error or "Generation failed"
                )
        except HeroFrameError as exc:
            # the job output stays reachable even when the record cannot be updated
            logger.warning(
                "poll.transition_failed",
                extra={"job_id": job_id, "record_id": record_id, "kind": exc.kind, "error": exc.message},
            )
            result.warnings.append(f"Generation record was not updated: {exc.message}")
            return result

        result.record_status = record.status
        result.composite_url = record.composite_image_url
        result.storage_path = record.composite_storage_path
        return result


__all__ = ["StatusPoller"]
