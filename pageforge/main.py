import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from pageforge.config import settings
from pageforge.errors import (
    CollaboratorError,
    DuplicateKeyError,
    JobStateError,
    NotFoundError,
    PatchError,
    PreconditionFailed,
    StepFailedError,
    StoreConfigError,
    ValidationFailed,
)
from pageforge.routers import dashboard, documents, pipeline, public
from pageforge.storage import get_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Pick the backend once at startup; an unconfigured store is reported per request.
    try:
        store = get_store()
        logger.info("app.store_ready", extra={"backend": store.backend_name})
    except StoreConfigError as exc:
        logger.error("app.store_unavailable", extra={"error": str(exc)})
    yield


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found(_request: Request, exc: NotFoundError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ValidationFailed)
    async def validation_failed(_request: Request, exc: ValidationFailed) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(JobStateError)
    async def job_state(_request: Request, exc: JobStateError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(PreconditionFailed)
    async def precondition_failed(_request: Request, exc: PreconditionFailed) -> ORJSONResponse:
        logger.info(
            "api.write_conflict",
            extra={"collection": exc.collection, "record_id": exc.record_id},
        )
        return ORJSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "retryable": True},
        )

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key(_request: Request, exc: DuplicateKeyError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "field": exc.field},
        )

    @app.exception_handler(PatchError)
    async def patch_error(_request: Request, exc: PatchError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "summary": str(exc),
                "tier": exc.tier,
                "tokensUsed": exc.tokens_used,
                "guidance": "Be specific: quote the exact text to change, or name the section and the new value.",
            },
        )

    @app.exception_handler(StepFailedError)
    async def step_failed(_request: Request, exc: StepFailedError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "jobId": exc.job_id, "step": exc.step, "error": exc.message},
        )

    @app.exception_handler(CollaboratorError)
    async def collaborator_error(_request: Request, exc: CollaboratorError) -> ORJSONResponse:
        logger.warning("api.collaborator_error", extra={"service": exc.service, "error": exc.message})
        return ORJSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc), "service": exc.service, "retryable": exc.retryable},
        )

    @app.exception_handler(StoreConfigError)
    async def store_config(_request: Request, exc: StoreConfigError) -> ORJSONResponse:
        return ORJSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("api.unhandled_error", extra={"path": request.url.path})
        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )


def create_app() -> FastAPI:
    app = FastAPI(title="Pageforge API", default_response_class=ORJSONResponse, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/store")
    def health_store() -> dict[str, str]:
        try:
            return {"store": get_store().backend_name}
        except StoreConfigError as exc:
            return {"store": f"error: {exc}"}

    _register_exception_handlers(app)

    app.include_router(pipeline.router)
    app.include_router(documents.router)
    app.include_router(public.router)
    app.include_router(dashboard.router)

    return app


app = create_app()
