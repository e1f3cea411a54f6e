from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# multipart framing on top of the photo itself
MULTIPART_OVERHEAD = 64 * 1024

DATA_URL_RE = re.compile(r"data:image/(?:png|jpe?g|webp|gif);base64,", re.I)


class BodyGuardMiddleware(BaseHTTPMiddleware):
    """Reject oversized uploads and inline base64 images in JSON bodies."""

    WATCH_PATH_PREFIXES = ("/api/",)

    def __init__(self, app, *, max_upload_bytes: int | None = None, **_: Any) -> None:  # type: ignore[override]
        self.max_body_bytes = (max_upload_bytes + MULTIPART_OVERHEAD) if max_upload_bytes else None
        super().__init__(app)

    def _too_large(self, content_length: int | None) -> bool:
        if self.max_body_bytes is None or content_length is None:
            return False
        return content_length > self.max_body_bytes

    @staticmethod
    def _blocked(status_code: int, kind: str, message: str, **details: Any) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"kind": kind, "message": message, "details": details}},
        )

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method not in {"POST", "PUT", "PATCH"}:
            return await call_next(request)

        path = request.url.path
        if not any(path.startswith(prefix) for prefix in self.WATCH_PATH_PREFIXES):
            return await call_next(request)

        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        start = time.time()

        content_length_header = request.headers.get("content-length")
        try:
            content_length = int(content_length_header) if content_length_header else None
        except (TypeError, ValueError):
            content_length = None

        if self._too_large(content_length):
            logger.info("[guard] rid=%s path=%s blocked oversize cl=%s", rid, path, content_length)
            return self._blocked(
                413,
                "image_too_large",
                "File size too large.",
                max_bytes=self.max_body_bytes,
            )

        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            body = await request.body()
            if DATA_URL_RE.search(body.decode(errors="ignore")):
                logger.info("[guard] rid=%s path=%s blocked inline base64", rid, path)
                return self._blocked(
                    422,
                    "inline_image_rejected",
                    "Inline base64 images are not accepted; pass an image URL instead.",
                )

            async def receive() -> dict[str, Any]:
                return {"type": "http.request", "body": body, "more_body": False}

            request = Request(request.scope, receive)

        response = await call_next(request)
        logger.info(
            "[guard] rid=%s path=%s status=%s dur_ms=%s",
            rid,
            path,
            response.status_code,
            int((time.time() - start) * 1000),
        )
        return response


__all__ = ["BodyGuardMiddleware"]
