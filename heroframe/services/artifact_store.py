"""Blob + metadata storage behind one adapter.

The two backends are not transactional with each other; every write path logs
the URLs and keys involved so an inconsistent pair can be reconciled later.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from heroframe.errors import StorageUnavailable
from heroframe.models import GenerationStatus
from heroframe.schemas import GenerationRecord
from heroframe.services.blob_store import BlobStore, StoredObject
from heroframe.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class ArtifactStore:
    def __init__(self, blobs: BlobStore, records: RecordStore) -> None:
        self.blobs = blobs
        self.records = records

    # -- blobs --------------------------------------------------------------

    def put_object(
        self,
        data: bytes,
        suggested_name: str | None,
        content_type: str,
        owner_scope: str | None = None,
    ) -> StoredObject:
        return self.blobs.put_object(data, suggested_name, content_type, owner_scope)

    def put_object_at(self, data: bytes, key: str, content_type: str) -> StoredObject:
        return self.blobs.put_object_at(data, key, content_type)

    def url_for(self, key: str) -> str:
        return self.blobs.url_for(key)

    # -- records ------------------------------------------------------------

    def create_record(self, fields: Mapping[str, Any]) -> GenerationRecord:
        return self.records.create(fields)

    def update_record(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        *,
        allowed_from: Iterable[GenerationStatus] | None = None,
    ) -> GenerationRecord:
        return self.records.update(record_id, fields, allowed_from=allowed_from)

    def get_record(self, record_id: str) -> Optional[GenerationRecord]:
        return self.records.get(record_id)

    def query_records(self, owner_scope: str | None, limit: int | None = None) -> list[GenerationRecord]:
        return self.records.query(owner_scope, limit)

    def stale_records(self, older_than: datetime) -> list[GenerationRecord]:
        return self.records.stale(older_than)

    def referenced_keys(self, record: GenerationRecord) -> list[str]:
        """Storage keys written for ``record``: its original and its composite.

        The generated URL is left alone; it may name another record's object.
        """

        keys: list[str] = []
        candidates = (
            record.original_storage_path or self.blobs.key_for_url(record.original_image_url),
            record.composite_storage_path or self.blobs.key_for_url(record.composite_image_url),
        )
        for key in candidates:
            if key and key not in keys:
                keys.append(key)
        return keys

    def delete_record(self, record_id: str) -> bool:
        record = self.records.get(record_id)
        if record is None:
            return False

        for key in self.referenced_keys(record):
            try:
                self.blobs.delete_object(key)
            except StorageUnavailable as exc:
                logger.warning(
                    "record.delete.blob_failed",
                    extra={"record_id": record_id, "key": key, "error": exc.message},
                )

        return self.records.delete(record_id)


__all__ = ["ArtifactStore"]
