"""Health router -- loop liveness and reconciliation counters."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from jobcontroller.api.deps import Service
from jobcontroller.api.schemas import HealthSchema

router = APIRouter(prefix="/health")


@router.get("", response_model=HealthSchema)
def health(service: Service):
    """Returns 503 when the reconciliation loop is not running."""
    body = HealthSchema(**service.health())
    status_code = 503 if body.status == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
