"""Metadata store for generation records (SQLAlchemy)."""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from heroframe.config import DatabaseConfig, RetryConfig
from heroframe.errors import RecordNotFound, StorageUnavailable
from heroframe.models import Base, GenerationRow, GenerationStatus
from heroframe.models.records import utcnow
from heroframe.schemas import GenerationRecord
from heroframe.services.retry import call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100

MUTABLE_FIELDS = frozenset(
    {
        "generated_image_url",
        "composite_image_url",
        "composite_storage_path",
        "status",
        "job_id",
        "error_message",
    }
)
CREATE_FIELDS = frozenset(
    {"user_id", "original_image_url", "original_storage_path", "frame_type", "job_id"}
)


def build_engine(config: DatabaseConfig) -> Engine:
    connect_args: dict[str, Any] = {}
    if config.url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(config.url, echo=config.echo, pool_pre_ping=True, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create the generations table if it does not exist yet."""

    Base.metadata.create_all(bind=engine)


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_HISTORY_LIMIT
    return max(1, min(int(limit), MAX_HISTORY_LIMIT))


class _TransientDatabaseFailure(StorageUnavailable):
    retriable = True


class RecordStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.retry = retry or RetryConfig()
        self._sleep = sleep

    @classmethod
    def from_engine(cls, engine: Engine, **kwargs: Any) -> "RecordStore":
        factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
        return cls(factory, **kwargs)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except OperationalError as exc:
            session.rollback()
            raise _TransientDatabaseFailure(f"Database unavailable: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageUnavailable(f"Database error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _run(self, label: str, func: Callable[[Session], T]) -> T:
        def _attempt() -> T:
            with self._session() as session:
                return func(session)

        return call_with_retry(
            _attempt,
            policy=self.retry,
            retry_on=(_TransientDatabaseFailure,),
            label=label,
            sleep=self._sleep,
        )

    # -- operations --------------------------------------------------------

    def create(self, fields: Mapping[str, Any]) -> GenerationRecord:
        unknown = set(fields) - CREATE_FIELDS
        if unknown:
            raise ValueError(f"unsupported record fields: {sorted(unknown)}")

        def _create(session: Session) -> GenerationRecord:
            now = utcnow()
            row = GenerationRow(
                **dict(fields),
                status=GenerationStatus.PROCESSING,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return GenerationRecord.model_validate(row)

        record = self._run("record create", _create)
        logger.info(
            "record.created",
            extra={
                "record_id": record.id,
                "job_id": record.job_id,
                "original_url": record.original_image_url,
                "frame_type": record.frame_type,
            },
        )
        return record

    def get(self, record_id: str) -> Optional[GenerationRecord]:
        def _get(session: Session) -> Optional[GenerationRecord]:
            row = session.get(GenerationRow, record_id)
            return GenerationRecord.model_validate(row) if row is not None else None

        return self._run("record get", _get)

    def update(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        *,
        allowed_from: Iterable[GenerationStatus] | None = None,
    ) -> GenerationRecord:
        """Merge ``fields`` and refresh ``updated_at``.

        With ``allowed_from`` the write only happens while the stored status is
        one of those; otherwise the current record is returned untouched.
        """

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported record fields: {sorted(unknown)}")
        gate = frozenset(allowed_from) if allowed_from is not None else None

        def _update(session: Session) -> GenerationRecord:
            row = session.get(GenerationRow, record_id, with_for_update=True)
            if row is None:
                raise RecordNotFound(details={"record_id": record_id})
            if gate is not None and row.status not in gate:
                logger.info(
                    "record.update.skipped",
                    extra={"record_id": record_id, "status": row.status.value},
                )
                return GenerationRecord.model_validate(row)
            for name, value in fields.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            session.flush()
            return GenerationRecord.model_validate(row)

        record = self._run("record update", _update)
        logger.info(
            "record.updated",
            extra={"record_id": record_id, "fields": sorted(fields), "status": record.status.value},
        )
        return record

    def query(self, owner_scope: str | None, limit: int | None = None) -> list[GenerationRecord]:
        bounded = clamp_limit(limit)

        def _query(session: Session) -> list[GenerationRecord]:
            stmt = select(GenerationRow)
            if owner_scope:
                stmt = stmt.where(GenerationRow.user_id == owner_scope)
            else:
                stmt = stmt.where(GenerationRow.user_id.is_(None))
            stmt = stmt.order_by(GenerationRow.created_at.desc(), GenerationRow.id.desc()).limit(bounded)
            return [GenerationRecord.model_validate(row) for row in session.scalars(stmt)]

        return self._run("record query", _query)

    def delete(self, record_id: str) -> bool:
        def _delete(session: Session) -> bool:
            row = session.get(GenerationRow, record_id)
            if row is None:
                return False
            session.delete(row)
            return True

        deleted = self._run("record delete", _delete)
        if deleted:
            logger.info("record.deleted", extra={"record_id": record_id})
        return deleted

    def stale(self, older_than: datetime, limit: int = MAX_HISTORY_LIMIT) -> list[GenerationRecord]:
        def _stale(session: Session) -> list[GenerationRecord]:
            stmt = (
                select(GenerationRow)
                .where(GenerationRow.status == GenerationStatus.PROCESSING)
                .where(GenerationRow.created_at < older_than)
                .order_by(GenerationRow.created_at.asc())
                .limit(limit)
            )
            return [GenerationRecord.model_validate(row) for row in session.scalars(stmt)]

        return self._run("record stale scan", _stale)


__all__ = [
    "DEFAULT_HISTORY_LIMIT",
    "MAX_HISTORY_LIMIT",
    "RecordStore",
    "build_engine",
    "clamp_limit",
    "init_db",
]
