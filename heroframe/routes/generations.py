from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, File, Form, Query, Request, UploadFile

from heroframe.errors import RecordNotFound
from heroframe.schemas import (
    CompositeRequest,
    CompositeResponse,
    DeleteResponse,
    FrameSummary,
    GenerationStatusSnapshot,
    HistoryResponse,
    StartGenerationResponse,
)
from heroframe.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["generations"])


def _services(request: Request) -> ServiceContainer:
    return request.app.state.services


@router.get("/frames", response_model=list[FrameSummary])
def list_frames(request: Request) -> list[FrameSummary]:
    registry = _services(request).registry
    return [
        FrameSummary(
            frame_type=item.frame_type,
            label=item.label,
            description=item.description,
            width=item.canvas.width,
            height=item.canvas.height,
        )
        for item in registry.values()
    ]


@router.post("/generations", response_model=StartGenerationResponse)
def start_generation(
    request: Request,
    image: Optional[UploadFile] = File(None),
    frame_type: Optional[str] = Form(None, alias="frameType"),
    user_id: Optional[str] = Form(None, alias="userId"),
) -> StartGenerationResponse:
    photo = image.file.read() if image is not None else None
    filename = image.filename if image is not None else None
    content_type = image.content_type if image is not None else None
    logger.info(
        "[generate] frame=%s user=%s bytes=%s type=%s",
        frame_type,
        user_id,
        len(photo) if photo else 0,
        content_type,
    )
    return _services(request).orchestrator.start_generation(
        photo,
        frame_type,
        (user_id or "").strip() or None,
        filename=filename,
        content_type=content_type,
    )


@router.get("/generations/check", response_model=GenerationStatusSnapshot)
def check_generation(
    request: Request,
    job_id: str = Query(..., alias="id", min_length=1),
    generation_id: Optional[str] = Query(None, alias="generationId"),
) -> GenerationStatusSnapshot:
    return _services(request).poller.check_once(job_id, generation_id or None)


@router.post("/composites", response_model=CompositeResponse)
def composite_image(request: Request, payload: CompositeRequest) -> CompositeResponse:
    return _services(request).orchestrator.composite_image(
        payload.portrait_url,
        payload.frame_type,
        record_id=payload.generation_id,
        owner_scope=payload.user_id,
    )


@router.get("/generations", response_model=HistoryResponse)
def list_history(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(20, ge=1, le=100),
) -> HistoryResponse:
    history = _services(request).orchestrator.list_history((user_id or "").strip() or None, limit)
    logger.info("[history] user=%s records=%d", user_id, len(history))
    return HistoryResponse(history=history)


@router.delete("/generations/{record_id}", response_model=DeleteResponse)
def delete_generation(request: Request, record_id: str) -> DeleteResponse:
    if not _services(request).orchestrator.delete_generation(record_id):
        raise RecordNotFound(details={"record_id": record_id})
    return DeleteResponse(success=True)


__all__ = ["router"]
