from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse

DEFAULT_FRAME_ASSET_DIR = Path(__file__).resolve().parent / "templates" / "frames"


def _as_bool(value: str | None, default: bool) -> bool:
    """Interpret common truthy / falsy strings while providing a default."""

    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    try:
        return max(int(value), minimum) if value is not None else default
    except (TypeError, ValueError):
        return default


def _as_float(value: str | None, default: float, *, minimum: float = 0.0) -> float:
    try:
        return max(float(value), minimum) if value is not None else default
    except (TypeError, ValueError):
        return default


def _env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        text = value.strip()
        if text:
            return text
    return None


def _parse_allowed_origins(raw: str | None) -> List[str]:
    """Normalise comma-separated origins into values accepted by CORSMiddleware."""

    if not raw:
        return ["*"]

    cleaned: List[str] = []
    for origin in raw.split(","):
        value = origin.strip()
        if not value:
            continue
        if value == "*":
            return ["*"]

        parsed = urlparse(value)
        if parsed.scheme and parsed.netloc:
            normalised = f"{parsed.scheme}://{parsed.netloc}"
        else:
            normalised = value.rstrip("/")

        if normalised not in cleaned:
            cleaned.append(normalised)

    return cleaned or ["*"]


@dataclass
class StorageConfig:
    endpoint: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "auto"
    bucket: str | None = None
    public_base: str | None = None
    connect_timeout: float = 10.0
    read_timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key and self.secret_key)

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            endpoint=_env("R2_ENDPOINT", "S3_ENDPOINT"),
            access_key=_env("R2_ACCESS_KEY_ID", "S3_ACCESS_KEY"),
            secret_key=_env("R2_SECRET_ACCESS_KEY", "S3_SECRET_KEY"),
            region=_env("R2_REGION", "S3_REGION") or "auto",
            bucket=_env("R2_BUCKET", "S3_BUCKET"),
            public_base=_env("R2_PUBLIC_BASE", "S3_PUBLIC_BASE"),
            connect_timeout=_as_float(_env("S3_CONNECT_TIMEOUT"), 10.0, minimum=1.0),
            read_timeout=_as_float(_env("S3_READ_TIMEOUT"), 30.0, minimum=1.0),
        )


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./heroframe.db"
    echo: bool = False

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        return cls(
            url=_env("DATABASE_URL") or "sqlite:///./heroframe.db",
            echo=_as_bool(_env("DATABASE_ECHO"), False),
        )


@dataclass
class InferenceConfig:
    api_token: str | None = None
    api_base: str = "https://api.replicate.com/v1"
    model: str = "black-forest-labs/flux-kontext-pro"
    output_format: str = "jpg"
    timeout: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    @classmethod
    def from_env(cls) -> "InferenceConfig":
        return cls(
            api_token=_env("REPLICATE_API_TOKEN"),
            api_base=(_env("REPLICATE_API_BASE") or "https://api.replicate.com/v1").rstrip("/"),
            model=_env("REPLICATE_MODEL") or "black-forest-labs/flux-kontext-pro",
            output_format=_env("REPLICATE_OUTPUT_FORMAT") or "jpg",
            timeout=_as_float(_env("INFERENCE_TIMEOUT_SECONDS"), 30.0, minimum=1.0),
        )


@dataclass
class UploadConfig:
    max_bytes: int = 10 * 1024 * 1024
    allowed_mime: frozenset[str] = field(
        default_factory=lambda: frozenset({"image/png", "image/jpeg", "image/webp"})
    )
    fetch_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "UploadConfig":
        raw_mime = _env("UPLOAD_ALLOWED_MIME") or "image/png,image/jpeg,image/webp"
        allowed = frozenset(item.strip() for item in raw_mime.split(",") if item.strip())
        return cls(
            max_bytes=_as_int(_env("UPLOAD_MAX_BYTES"), 10 * 1024 * 1024),
            allowed_mime=allowed,
            fetch_timeout=_as_float(_env("IMAGE_FETCH_TIMEOUT_SECONDS"), 30.0, minimum=1.0),
        )


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0

    @classmethod
    def from_env(cls) -> "RetryConfig":
        return cls(
            max_attempts=_as_int(_env("STORAGE_MAX_ATTEMPTS"), 3, minimum=1),
            base_delay=_as_float(_env("STORAGE_RETRY_BASE_DELAY"), 0.5),
            max_delay=_as_float(_env("STORAGE_RETRY_MAX_DELAY"), 4.0),
        )


@dataclass
class Settings:
    environment: str
    allowed_origins: List[str]
    storage: StorageConfig
    database: DatabaseConfig
    inference: InferenceConfig
    upload: UploadConfig
    retry: RetryConfig
    frame_asset_dir: Path = DEFAULT_FRAME_ASSET_DIR
    stale_after_hours: float = 6.0


@lru_cache()
def get_settings() -> Settings:
    asset_dir = _env("FRAME_ASSET_DIR")
    return Settings(
        environment=_env("ENVIRONMENT") or "development",
        allowed_origins=_parse_allowed_origins(_env("ALLOWED_ORIGINS")),
        storage=StorageConfig.from_env(),
        database=DatabaseConfig.from_env(),
        inference=InferenceConfig.from_env(),
        upload=UploadConfig.from_env(),
        retry=RetryConfig.from_env(),
        frame_asset_dir=Path(asset_dir) if asset_dir else DEFAULT_FRAME_ASSET_DIR,
        stale_after_hours=_as_float(_env("STALE_GENERATION_HOURS"), 6.0, minimum=0.0),
    )
