from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1 import api_router
from app.core.config import settings
from app.core.exceptions import LifecycleError
from app.core.logging_config import configure_logging
from app.core.sentry import init_sentry
from app.middleware import RequestLoggingMiddleware
from app.schemas.error import ErrorResponse
from app.services import post_lifecycle_scheduler, storage

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    post_lifecycle_scheduler.start(app)
    try:
        yield
    finally:
        await post_lifecycle_scheduler.stop(app)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "assets", "description": "Image upload, metadata and on-demand resize"},
        {"name": "posts", "description": "Feed and post deletion"},
        {"name": "lifecycle", "description": "Expiration sweep administration"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    media_prefix = (settings.media_url_prefix or "/media").rstrip("/")
    app.add_middleware(RequestLoggingMiddleware, skip_prefixes=(media_prefix + "/",))
    media_root = storage.ensure_media_root()
    app.include_router(api_router, prefix="/api/v1")
    app.mount(media_prefix, StaticFiles(directory=media_root), name="media")

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        if exc.status_code >= 500:
            logger.error("request_failed", extra={"path": request.url.path, "code": exc.code, "error": exc.detail})
        return JSONResponse(status_code=exc.status_code, content=ErrorResponse.from_error(exc).model_dump())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
