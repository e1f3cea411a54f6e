"""Explicit wiring of the service graph; owned by the process entry point."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List

from heroframe.config import Settings
from heroframe.services.artifact_store import ArtifactStore
from heroframe.services.blob_store import BlobStore, build_s3_client
from heroframe.services.image_fetch import ImageFetcher
from heroframe.services.job_client import JobClient, build_http_client
from heroframe.services.orchestrator import GenerationOrchestrator
from heroframe.services.poller import StatusPoller
from heroframe.services.record_store import RecordStore, build_engine, init_db
from heroframe.templates.frames import FrameRegistry, load_frame_registry, missing_overlays

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    registry: FrameRegistry
    orchestrator: GenerationOrchestrator
    poller: StatusPoller
    closers: List[Callable[[], None]] = field(default_factory=list)

    def close(self) -> None:
        while self.closers:
            closer = self.closers.pop()
            try:
                closer()
            except Exception as exc:  # noqa: BLE001 - shutdown must finish
                logger.warning("Service shutdown step failed: %s", exc)


def build_container(settings: Settings) -> ServiceContainer:
    closers: List[Callable[[], None]] = []

    engine = build_engine(settings.database)
    init_db(engine)
    closers.append(engine.dispose)
    records = RecordStore.from_engine(engine, retry=settings.retry)

    s3 = build_s3_client(settings.storage)
    if hasattr(s3, "close"):
        closers.append(s3.close)
    blobs = BlobStore(s3, settings.storage, retry=settings.retry)

    http = build_http_client(settings.inference)
    closers.append(http.close)
    jobs = JobClient(http, settings.inference)

    fetcher = ImageFetcher(timeout=settings.upload.fetch_timeout)
    closers.append(fetcher.close)

    registry = load_frame_registry()
    missing = missing_overlays(registry, settings.frame_asset_dir)
    if missing:
        # composites for these frames will fail until the artwork is rendered
        logger.warning(
            "Frame overlays missing for %s in %s; run scripts/render_frame_assets.py",
            ", ".join(missing),
            settings.frame_asset_dir,
        )
    orchestrator = GenerationOrchestrator(
        ArtifactStore(blobs, records),
        jobs,
        fetcher,
        registry,
        asset_dir=settings.frame_asset_dir,
        upload=settings.upload,
    )
    logger.info(
        "Services ready",
        extra={
            "database": engine.url.render_as_string(hide_password=True),
            "bucket": settings.storage.bucket,
            "model": settings.inference.model,
            "frames": sorted(registry),
        },
    )
    return ServiceContainer(
        registry=registry,
        orchestrator=orchestrator,
        poller=StatusPoller(jobs, orchestrator),
        closers=closers,
    )


__all__ = ["ServiceContainer", "build_container"]
