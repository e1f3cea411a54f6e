from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from heroframe.config import RetryConfig, StorageConfig, UploadConfig
from heroframe.errors import TransientNetworkError
from heroframe.schemas import JobHandle, JobSnapshot
from heroframe.services.artifact_store import ArtifactStore
from heroframe.services.blob_store import BlobStore
from heroframe.services.orchestrator import GenerationOrchestrator
from heroframe.services.poller import StatusPoller
from heroframe.services.record_store import RecordStore, init_db
from heroframe.templates.artwork import write_default_overlay
from heroframe.templates.frames import FrameRegistry, load_frame_registry

PUBLIC_BASE = "https://cdn.example.com"
NO_RETRY_DELAY = RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0)


def png_bytes(size: tuple[int, int] = (64, 64), color: Any = (255, 0, 0), mode: str = "RGB") -> bytes:
    image = Image.new(mode, size, color)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeS3:
    """In-memory stand-in for the boto3 S3 client calls BlobStore makes."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.put_failures: list[Exception] = []
        self.delete_failures: dict[str, Exception] = {}

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        key = kwargs["Key"]
        self.calls.append(("put", key))
        if self.put_failures:
            raise self.put_failures.pop(0)
        if kwargs.get("IfNoneMatch") == "*" and key in self.objects:
            raise client_error("PreconditionFailed", 412)
        self.objects[key] = (kwargs["Body"], kwargs.get("ContentType", ""))
        return {"ETag": '"fake"'}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.calls.append(("delete", Key))
        if Key in self.delete_failures:
            raise self.delete_failures[Key]
        self.objects.pop(Key, None)
        return {}

    def generate_presigned_url(self, ClientMethod: str, Params: dict, ExpiresIn: int, HttpMethod: str) -> str:
        return f"https://signed.example.com/{Params['Key']}?expires={ExpiresIn}"

    def puts(self) -> list[str]:
        return [key for op, key in self.calls if op == "put"]


class FakeJobs:
    def __init__(self) -> None:
        self.submissions: list[tuple[str, str]] = []
        self.polls: list[str] = []
        self.snapshots: dict[str, JobSnapshot] = {}
        self.submit_error: Exception | None = None
        self._counter = 0

    def submit(self, source_image_url: str, prompt: str) -> JobHandle:
        self.submissions.append((source_image_url, prompt))
        if self.submit_error is not None:
            raise self.submit_error
        self._counter += 1
        return JobHandle(job_id=f"job-{self._counter}", status="starting")

    def poll(self, job_id: str) -> JobSnapshot:
        self.polls.append(job_id)
        return self.snapshots[job_id]


class FakeFetcher:
    def __init__(self) -> None:
        self.images: dict[str, bytes] = {}
        self.fetched: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.fetched.append(url)
        if url not in self.images:
            raise TransientNetworkError("Failed to fetch image", details={"url": url})
        return self.images[url]

    def close(self) -> None:
        pass


def memory_record_store() -> RecordStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return RecordStore.from_engine(engine, retry=NO_RETRY_DELAY, sleep=lambda _: None)


def write_frame_assets(registry: FrameRegistry, asset_dir: Path) -> Path:
    for descriptor in registry.values():
        write_default_overlay(descriptor, asset_dir)
    return asset_dir


@dataclass
class Harness:
    s3: FakeS3
    blobs: BlobStore
    records: RecordStore
    store: ArtifactStore
    jobs: FakeJobs
    fetcher: FakeFetcher
    registry: FrameRegistry
    orchestrator: GenerationOrchestrator
    poller: StatusPoller
    asset_dir: Path


def build_harness(asset_dir: Path, *, upload: UploadConfig | None = None) -> Harness:
    registry = load_frame_registry()
    write_frame_assets(registry, asset_dir)
    s3 = FakeS3()
    blobs = BlobStore(
        s3,
        StorageConfig(bucket="heroframe", public_base=PUBLIC_BASE),
        retry=NO_RETRY_DELAY,
        sleep=lambda _: None,
    )
    records = memory_record_store()
    store = ArtifactStore(blobs, records)
    jobs = FakeJobs()
    fetcher = FakeFetcher()
    orchestrator = GenerationOrchestrator(
        store,
        jobs,  # type: ignore[arg-type]
        fetcher,  # type: ignore[arg-type]
        registry,
        asset_dir=asset_dir,
        upload=upload,
    )
    return Harness(
        s3=s3,
        blobs=blobs,
        records=records,
        store=store,
        jobs=jobs,
        fetcher=fetcher,
        registry=registry,
        orchestrator=orchestrator,
        poller=StatusPoller(jobs, orchestrator),  # type: ignore[arg-type]
        asset_dir=asset_dir,
    )


@pytest.fixture()
def harness(tmp_path) -> Harness:
    return build_harness(tmp_path / "frames")
