"""
FastAPI dependency injection -- settings singleton and the controller service.

Usage in routers::

    from jobcontroller.api.deps import Service

    @router.get("/jobs")
    def list_jobs(service: Service):
        ...
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request

from jobcontroller.controller.service import JobControllerService
from jobcontroller.core.settings import ControllerSettings


@lru_cache(maxsize=1)
def get_settings() -> ControllerSettings:
    """Cached settings -- loaded once per process."""
    return ControllerSettings()


def get_service(request: Request) -> JobControllerService:
    return request.app.state.service


Settings = Annotated[ControllerSettings, Depends(get_settings)]
Service = Annotated[JobControllerService, Depends(get_service)]
