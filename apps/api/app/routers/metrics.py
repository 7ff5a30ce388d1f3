from fastapi import APIRouter, Depends

from app.auth.dependencies import BACKOFFICE_ROLES, AuthContext, require_roles
from app.observability import metrics_store
from app.schemas.metrics import MetricsResponse, TimingMetricStats

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", summary="Engine counters and timings", response_model=MetricsResponse)
def metrics_endpoint(
    _auth: AuthContext = Depends(require_roles(*BACKOFFICE_ROLES)),
) -> MetricsResponse:
    """Settlement, tracking and realtime counters for OPS/ADMIN dashboards."""
    snapshot = metrics_store.snapshot()
    return MetricsResponse(
        counters=snapshot.counters or {},
        timings={
            name: TimingMetricStats(**stats) for name, stats in (snapshot.timings or {}).items()
        },
    )
