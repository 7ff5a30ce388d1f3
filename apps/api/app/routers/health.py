from collections.abc import Callable
from typing import Literal

from fastapi import APIRouter, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.db.session import SessionLocal
from app.schemas.health import HealthResponse, ReadinessDependency, ReadinessResponse

DependencyStatus = Literal["ok", "error", "unconfigured"]

router = APIRouter(tags=["health"])


@router.get("/health", summary="Liveness check", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", service=settings.app_name)


@router.get(
    "/ready",
    summary="Readiness check",
    response_model=ReadinessResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
def readiness(response: Response) -> ReadinessResponse:
    dependencies = [
        ReadinessDependency(name="database", status=_database_status(SessionLocal)),
        ReadinessDependency(name="payment_gateway", status=_payment_gateway_status()),
    ]
    # Without gateway credentials checkout cannot work, but tracking still can
    healthy = all(dep.status != "error" for dep in dependencies)
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(status="ok" if healthy else "degraded", dependencies=dependencies)


def _database_status(session_factory: Callable[[], Session]) -> DependencyStatus:
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return "error"
    return "ok"


def _payment_gateway_status() -> DependencyStatus:
    if not settings.stripe_api_key.strip():
        return "unconfigured"
    return "ok"
