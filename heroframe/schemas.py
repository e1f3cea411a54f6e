from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator

from heroframe.models import GenerationStatus

JobStatus = Literal["starting", "processing", "succeeded", "failed"]
TERMINAL_JOB_STATUSES = frozenset({"succeeded", "failed"})


class _CompatModel(BaseModel):
    """Base model configured to ignore unknown fields (Pydantic v2 only)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _strip_optional(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


class GenerationRecord(_CompatModel):
    """Read model of a persisted generation."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    user_id: Optional[str] = None
    original_image_url: str
    original_storage_path: Optional[str] = None
    generated_image_url: Optional[str] = None
    composite_image_url: Optional[str] = None
    composite_storage_path: Optional[str] = None
    frame_type: str
    status: GenerationStatus
    job_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[misc]
    @property
    def display_url(self) -> str:
        """Best available image: composite, then generated, then original."""

        return self.composite_image_url or self.generated_image_url or self.original_image_url

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# -----------------------------------------------------------------------------
# Inference jobs
# -----------------------------------------------------------------------------


class JobHandle(_CompatModel):
    job_id: str
    status: JobStatus


class JobSnapshot(_CompatModel):
    job_id: str
    status: JobStatus
    output_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# -----------------------------------------------------------------------------
# Lifecycle results
# -----------------------------------------------------------------------------


class StartGenerationResponse(_CompatModel):
    job_id: str
    record_id: Optional[str] = None
    status: JobStatus
    frame_type: str
    original_image_url: str
    original_storage_path: str
    warnings: List[str] = Field(default_factory=list)


class GenerationStatusSnapshot(_CompatModel):
    job_id: str
    status: JobStatus
    output_url: Optional[str] = None
    error: Optional[str] = None
    record_id: Optional[str] = None
    record_status: Optional[GenerationStatus] = None
    composite_url: Optional[str] = None
    storage_path: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class CompositeRequest(_CompatModel):
    portrait_url: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("portrait_url", "portraitUrl", "superheroImage"),
        description="URL of the AI generated portrait to frame",
    )
    frame_type: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("frame_type", "frameType"),
    )
    generation_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("generation_id", "generationId")
    )
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))

    @field_validator("portrait_url", "frame_type", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("generation_id", "user_id", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Optional[str]:
        return _strip_optional(value)


class CompositeResponse(_CompatModel):
    success: bool = True
    composite_url: str
    storage_path: str
    frame_type: str
    record_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class HistoryResponse(_CompatModel):
    history: List[GenerationRecord]


class DeleteResponse(_CompatModel):
    success: bool


class FrameSummary(_CompatModel):
    frame_type: str
    label: str
    description: str
    width: int
    height: int


class ErrorBody(_CompatModel):
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(_CompatModel):
    error: ErrorBody


__all__ = [
    "CompositeRequest",
    "CompositeResponse",
    "DeleteResponse",
    "ErrorBody",
    "ErrorResponse",
    "FrameSummary",
    "GenerationRecord",
    "GenerationStatusSnapshot",
    "HistoryResponse",
    "JobHandle",
    "JobSnapshot",
    "JobStatus",
    "StartGenerationResponse",
    "TERMINAL_JOB_STATUSES",
]
