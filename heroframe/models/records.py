"""SQLAlchemy table for generation records."""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Index, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_record_id() -> str:
    return uuid.uuid4().hex


class GenerationStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not GenerationStatus.PROCESSING


class GenerationRow(Base):
    """One row per submitted photo."""
    __tablename__ = "generations"

    id = Column(String(32), primary_key=True, default=new_record_id)
    user_id = Column(String(255), nullable=True, index=True)

    # Source photo
    original_image_url = Column(String(2048), nullable=False)
    original_storage_path = Column(String(1024), nullable=True)

    # Outputs
    generated_image_url = Column(String(2048), nullable=True)
    composite_image_url = Column(String(2048), nullable=True)
    composite_storage_path = Column(String(1024), nullable=True)

    frame_type = Column(String(64), nullable=False)
    status = Column(
        Enum(GenerationStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        default=GenerationStatus.PROCESSING,
        nullable=False,
    )
    job_id = Column(String(255), nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_generations_user_created", "user_id", "created_at"),)
