"""
FastAPI application factory.

``create_app()`` wires the controller service, routers, error handlers and
lifespan events into a single ``FastAPI`` instance. The lifespan starts the
reconciliation loop and the ack consumer and stops them on shutdown.

Tags:
    jobcontroller, api, app-factory, FastAPI

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jobcontroller import __version__
from jobcontroller.api.deps import get_settings
from jobcontroller.api.schemas import ProblemDetail
from jobcontroller.controller.service import JobControllerService
from jobcontroller.core.errors import ControllerError, JobNotFoundError
from jobcontroller.core.logging import get_logger
from jobcontroller.core.settings import ControllerSettings

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start and stop the controller service with the application."""
    service: JobControllerService = app.state.service
    if app.state.manage_service:
        await service.start()
    logger.info("jobcontroller_api_starting", version=app.version)
    yield
    if app.state.manage_service:
        await service.stop()
    logger.info("jobcontroller_api_shutting_down")


def problem_response(request: Request, *, status: int, title: str, detail: str = "") -> JSONResponse:
    body = ProblemDetail(title=title, status=status, detail=detail, instance=str(request.url.path))
    return JSONResponse(status_code=status, content=body.model_dump())


async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return problem_response(request, status=404, title="Job not found", detail=exc.message)


async def controller_error_handler(request: Request, exc: ControllerError) -> JSONResponse:
    status = 503 if exc.retryable else 500
    logger.warning("api_controller_error", path=request.url.path, **exc.to_dict())
    return problem_response(request, status=status, title=exc.category.value, detail=exc.message)


def create_app(
    *,
    settings: ControllerSettings | None = None,
    service: JobControllerService | None = None,
    manage_service: bool = True,
) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    Parameters
    ----------
    settings : ControllerSettings | None
        Override settings (useful for testing).
    service : JobControllerService | None
        Pre-built service; built from *settings* when omitted.
    manage_service : bool
        Start/stop the service in the application lifespan.
    """
    settings = settings or get_settings()
    service = service or JobControllerService(settings)

    app = FastAPI(
        title="jobcontroller",
        version=__version__,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )
    app.state.settings = settings
    app.state.service = service
    app.state.manage_service = manage_service
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_exception_handler(JobNotFoundError, job_not_found_handler)
    app.add_exception_handler(ControllerError, controller_error_handler)

    from jobcontroller.api.routers import health, jobs

    app.include_router(jobs.router, prefix=settings.api_prefix, tags=["jobs"])
    app.include_router(health.router, prefix=settings.api_prefix, tags=["health"])
    return app
