"""Generation lifecycle: upload → submit → record → composite → finalize.

Every sub-step returns a :class:`StepResult` and the decisions about which
failures are fatal live in this module only:

* upload of the original fails → abort, nothing was submitted;
* job submission fails → surface the error together with the stored original;
* record creation fails → keep going, the job output is still reachable;
* compositing fails → the record completes with the generated image only.

Terminal records (``completed`` / ``failed``) are never moved back. Repeating a
transition with the same inputs leaves the record unchanged.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from heroframe.config import UploadConfig
from heroframe.errors import (
    AuthenticationError,
    HeroFrameError,
    ImageTooLarge,
    NoImageProvided,
    RateLimited,
    RecordNotFound,
    StepResult,
    StorageConflict,
    StorageUnavailable,
    UnsupportedMediaType,
    UpstreamUnavailable,
)
from heroframe.models import GenerationStatus
from heroframe.models.records import utcnow
from heroframe.schemas import (
    CompositeResponse,
    GenerationRecord,
    JobHandle,
    StartGenerationResponse,
)
from heroframe.services.artifact_store import ArtifactStore
from heroframe.services.blob_store import StoredObject, scope_segment
from heroframe.services.compositor import compose_portrait
from heroframe.services.image_fetch import ImageFetcher
from heroframe.services.job_client import JobClient
from heroframe.templates.frames import FrameDescriptor, FrameRegistry

logger = logging.getLogger(__name__)

PROCESSING_ONLY = frozenset({GenerationStatus.PROCESSING})
NOT_FAILED = frozenset({GenerationStatus.PROCESSING, GenerationStatus.COMPLETED})
NO_OUTPUT_MESSAGE = "Generation finished without an output image"
STALE_MESSAGE = "Generation timed out before completion"


def composite_key(record: GenerationRecord, frame_type: str, portrait_url: str) -> str:
    """Deterministic key per record, frame and portrait.

    Repeated completions with the same portrait reuse one object; a different
    portrait never lands on an existing composite.
    """

    digest = hashlib.sha256(portrait_url.encode("utf-8")).hexdigest()[:16]
    return f"{scope_segment(record.user_id)}/composites/{record.id}-{frame_type}-{digest}.png"


class GenerationOrchestrator:
    def __init__(
        self,
        store: ArtifactStore,
        jobs: JobClient,
        fetcher: ImageFetcher,
        registry: FrameRegistry,
        *,
        asset_dir: Path,
        upload: UploadConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.jobs = jobs
        self.fetcher = fetcher
        self.registry = registry
        self.asset_dir = Path(asset_dir)
        self.upload = upload or UploadConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Created → Submitted → Processing
    # ------------------------------------------------------------------

    def validate_submission(
        self, photo: bytes | None, frame_type: str | None, content_type: str | None
    ) -> FrameDescriptor:
        """Reject bad input before any side effect happens."""

        if not photo:
            raise NoImageProvided()
        descriptor = self.registry.resolve(frame_type)
        if self.upload.max_bytes and len(photo) > self.upload.max_bytes:
            raise ImageTooLarge(
                f"File size too large. Please choose an image under "
                f"{self.upload.max_bytes // (1024 * 1024)}MB.",
                details={"bytes": len(photo), "max_bytes": self.upload.max_bytes},
            )
        if self.upload.allowed_mime and (content_type or "") not in self.upload.allowed_mime:
            raise UnsupportedMediaType(
                f"content_type not allowed: {content_type}",
                details={"allowed": sorted(self.upload.allowed_mime)},
            )
        return descriptor

    def _upload_original(
        self, photo: bytes, filename: str, content_type: str, owner_scope: str | None
    ) -> StepResult[StoredObject]:
        try:
            return StepResult.success(
                self.store.put_object(photo, filename, content_type, owner_scope)
            )
        except HeroFrameError as exc:
            return StepResult.failure(exc)

    def _submit_job(self, source_url: str, prompt: str) -> StepResult[JobHandle]:
        try:
            return StepResult.success(self.jobs.submit(source_url, prompt))
        except HeroFrameError as exc:
            return StepResult.failure(exc)

    def _create_record(
        self,
        original: StoredObject,
        descriptor: FrameDescriptor,
        job: JobHandle,
        owner_scope: str | None,
    ) -> StepResult[GenerationRecord]:
        try:
            return StepResult.success(
                self.store.create_record(
                    {
                        "user_id": owner_scope or None,
                        "original_image_url": original.url,
                        "original_storage_path": original.path,
                        "frame_type": descriptor.frame_type,
                        "job_id": job.job_id,
                    }
                )
            )
        except HeroFrameError as exc:
            return StepResult.failure(exc)

    def start_generation(
        self,
        photo: bytes | None,
        frame_type: str | None,
        owner_scope: str | None = None,
        *,
        filename: str | None = None,
        content_type: str | None = "image/jpeg",
    ) -> StartGenerationResponse:
        descriptor = self.validate_submission(photo, frame_type, content_type)
        content_type = content_type or "image/jpeg"

        upload = self._upload_original(photo, filename or "photo.jpg", content_type, owner_scope)
        if not upload.ok:
            error = upload.error
            logger.error("generation.upload_failed", extra={"error": error.message if error else None})
            raise StorageUnavailable(
                "Could not upload image", details={"cause": error.kind if error else None}
            ) from error
        original = upload.unwrap()
        original_details = {
            "original_image_url": original.url,
            "original_storage_path": original.path,
        }

        submitted = self._submit_job(original.url, descriptor.prompt)
        if not submitted.ok:
            error = submitted.error or UpstreamUnavailable()
            logger.error(
                "generation.submit_failed",
                extra={**original_details, "kind": error.kind, "error": error.message},
            )
            if isinstance(error, (AuthenticationError, RateLimited)):
                error.details.update(original_details)
                raise error
            raise UpstreamUnavailable(
                f"Generation could not be started: {error.message}",
                details={**original_details, "cause": error.kind},
            ) from error
        job = submitted.unwrap()

        warnings: list[str] = []
        created = self._create_record(original, descriptor, job, owner_scope)
        record_id: Optional[str] = None
        if created.ok:
            record_id = created.unwrap().id
        else:
            # degraded path: the job runs, history/print features are unavailable
            logger.error(
                "generation.record_failed",
                extra={
                    **original_details,
                    "job_id": job.job_id,
                    "error": created.error.message if created.error else None,
                },
            )
            warnings.append("Generation record could not be saved; history is unavailable for this generation.")

        logger.info(
            "generation.started",
            extra={"job_id": job.job_id, "record_id": record_id, "frame_type": descriptor.frame_type},
        )
        return StartGenerationResponse(
            job_id=job.job_id,
            record_id=record_id,
            status=job.status,
            frame_type=descriptor.frame_type,
            original_image_url=original.url,
            original_storage_path=original.path,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Processing → Completed / Failed
    # ------------------------------------------------------------------

    def _require_record(self, record_id: str) -> GenerationRecord:
        record = self.store.get_record(record_id)
        if record is None:
            raise RecordNotFound(details={"record_id": record_id})
        return record

    def _render_and_store(
        self,
        portrait_url: str,
        descriptor: FrameDescriptor,
        *,
        key: str | None = None,
        owner_scope: str | None = None,
    ) -> StoredObject:
        portrait = self.fetcher.fetch(portrait_url)
        image = compose_portrait(
            portrait, descriptor.frame_type, registry=self.registry, asset_dir=self.asset_dir
        )
        if key is None:
            name = f"composite-{descriptor.frame_type}.png"
            return self.store.put_object(image.data, name, image.content_type, owner_scope)
        try:
            return self.store.put_object_at(image.data, key, image.content_type)
        except StorageConflict:
            logger.info("composite.already_stored", extra={"key": key})
            return StoredObject(url=self.store.url_for(key), path=key, content_type=image.content_type)

    def _composite_for_record(
        self, record: GenerationRecord, portrait_url: str
    ) -> StepResult[StoredObject]:
        try:
            descriptor = self.registry.resolve(record.frame_type)
            stored = self._render_and_store(
                portrait_url, descriptor, key=composite_key(record, descriptor.frame_type, portrait_url)
            )
        except HeroFrameError as exc:
            return StepResult.failure(exc)
        return StepResult.success(stored)

    def complete_generation(self, record_id: str, output_url: str | None) -> GenerationRecord:
        record = self._require_record(record_id)
        if record.status is GenerationStatus.FAILED:
            logger.info("generation.complete.skipped_failed", extra={"record_id": record_id})
            return record
        if not output_url:
            return self.fail_generation(record_id, NO_OUTPUT_MESSAGE)
        if (
            record.status is GenerationStatus.COMPLETED
            and record.generated_image_url == output_url
            and record.composite_image_url
        ):
            return record
        if (
            record.status is GenerationStatus.COMPLETED
            and record.generated_image_url
            and record.generated_image_url != output_url
        ):
            # completed output is immutable; a late poll cannot swap it
            logger.warning(
                "generation.complete.output_mismatch",
                extra={
                    "record_id": record_id,
                    "stored_url": record.generated_image_url,
                    "output_url": output_url,
                },
            )
            return record

        if record.generated_image_url != output_url:
            record = self.store.update_record(
                record_id, {"generated_image_url": output_url}, allowed_from=NOT_FAILED
            )
            if record.status is GenerationStatus.FAILED:
                return record

        composite = self._composite_for_record(record, output_url)
        if composite.ok:
            stored = composite.unwrap()
            fields = {
                "composite_image_url": stored.url,
                "composite_storage_path": stored.path,
                "status": GenerationStatus.COMPLETED,
            }
        else:
            error = composite.error
            # degraded success: consumers fall back to the generated image
            logger.warning(
                "generation.composite_failed",
                extra={
                    "record_id": record_id,
                    "generated_url": output_url,
                    "kind": error.kind if error else None,
                    "error": error.message if error else None,
                },
            )
            fields = {"status": GenerationStatus.COMPLETED}

        record = self.store.update_record(record_id, fields, allowed_from=NOT_FAILED)
        logger.info(
            "generation.completed",
            extra={
                "record_id": record_id,
                "composite_url": record.composite_image_url,
                "composite_path": record.composite_storage_path,
            },
        )
        return record

    def fail_generation(self, record_id: str, message: str | None) -> GenerationRecord:
        record = self._require_record(record_id)
        if record.is_terminal:
            return record
        record = self.store.update_record(
            record_id,
            {"status": GenerationStatus.FAILED, "error_message": message or "Generation failed"},
            allowed_from=PROCESSING_ONLY,
        )
        logger.info(
            "generation.failed",
            extra={"record_id": record_id, "error": record.error_message},
        )
        return record

    # ------------------------------------------------------------------
    # Direct compositing, history, deletion
    # ------------------------------------------------------------------

    def composite_image(
        self,
        portrait_url: str,
        frame_type: str,
        record_id: str | None = None,
        owner_scope: str | None = None,
    ) -> CompositeResponse:
        descriptor = self.registry.resolve(frame_type)
        record = self.store.get_record(record_id) if record_id else None
        if record_id and record is None:
            logger.warning("composite.record_missing", extra={"record_id": record_id})

        key = composite_key(record, descriptor.frame_type, portrait_url) if record is not None else None
        stored = self._render_and_store(portrait_url, descriptor, key=key, owner_scope=owner_scope)

        warnings: list[str] = []
        if record is not None:
            fields = {
                "composite_image_url": stored.url,
                "composite_storage_path": stored.path,
                "status": GenerationStatus.COMPLETED,
            }
            if not record.generated_image_url:
                fields["generated_image_url"] = portrait_url
            try:
                self.store.update_record(record.id, fields, allowed_from=NOT_FAILED)
            except HeroFrameError as exc:
                logger.warning(
                    "composite.record_update_failed",
                    extra={"record_id": record.id, "key": stored.path, "error": exc.message},
                )
                warnings.append("Composite saved but the generation record was not updated.")

        return CompositeResponse(
            composite_url=stored.url,
            storage_path=stored.path,
            frame_type=descriptor.frame_type,
            record_id=record.id if record is not None else None,
            warnings=warnings,
        )

    def list_history(self, owner_scope: str | None = None, limit: int | None = None) -> list[GenerationRecord]:
        return self.store.query_records(owner_scope, limit)

    def delete_generation(self, record_id: str) -> bool:
        return self.store.delete_record(record_id)

    def sweep_stale(self, max_age: timedelta) -> list[GenerationRecord]:
        """Fail records stuck in ``processing`` longer than ``max_age``."""

        cutoff = self._clock() - max_age
        swept: list[GenerationRecord] = []
        for record in self.store.stale_records(cutoff):
            swept.append(self.fail_generation(record.id, STALE_MESSAGE))
        if swept:
            logger.info("generation.stale_swept", extra={"count": len(swept)})
        return swept


__all__ = ["GenerationOrchestrator", "composite_key"]
