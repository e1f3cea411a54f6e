from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from heroframe.config import Settings, get_settings
from heroframe.errors import HeroFrameError, RateLimited
from heroframe.middlewares.body_guard import BodyGuardMiddleware
from heroframe.routes.generations import router as generations_router
from heroframe.services.container import ServiceContainer, build_container

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# uvicorn loggers follow the service level
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("uvicorn").setLevel(LOG_LEVEL)
logging.getLogger("uvicorn.error").setLevel(LOG_LEVEL)
logging.getLogger("uvicorn.access").setLevel(LOG_LEVEL)
logging.getLogger("heroframe").setLevel(LOG_LEVEL)

logger = logging.getLogger("heroframe")


def _error_response(status_code: int, kind: str, message: str, details: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"kind": kind, "message": message, "details": details or {}}},
    )


async def handle_heroframe_error(request: Request, exc: HeroFrameError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "Request failed",
            extra={"path": request.url.path, "kind": exc.kind, "details": exc.details},
        )
    response = JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        response.headers["Retry-After"] = str(int(exc.retry_after))
    return response


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(item.get("loc", ())), "msg": item.get("msg", "")}
        for item in exc.errors()
    ]
    return _error_response(400, "invalid_input", "Request validation failed", {"errors": errors})


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API; an injected container is used as-is and not closed."""

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = container is None
        services = container or build_container(settings)
        app.state.services = services
        try:
            yield
        finally:
            if owned:
                services.close()
                logger.info("Services closed")

    app = FastAPI(title="HeroFrame API", version="1.0.0", lifespan=lifespan)
    if container is not None:
        app.state.services = container

    app.add_middleware(BodyGuardMiddleware, max_upload_bytes=settings.upload.max_bytes)

    allow_all = "*" in settings.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    app.add_exception_handler(HeroFrameError, handle_heroframe_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    @app.get("/", include_in_schema=False)
    def root() -> dict[str, Any]:
        return {"service": "heroframe", "ok": True}

    @app.head("/", include_in_schema=False)
    def root_head() -> Response:
        return Response(status_code=200)

    @app.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    app.include_router(generations_router)
    logger.info(
        "API configured",
        extra={
            "environment": settings.environment,
            "allowed_origins": settings.allowed_origins,
            "max_upload_bytes": settings.upload.max_bytes,
        },
    )
    return app


app = create_app()
