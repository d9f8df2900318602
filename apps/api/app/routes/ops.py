from fastapi import APIRouter

from app.services.observability import get_ops_metrics

router = APIRouter()


@router.get("/api/ops/metrics")
def ops_metrics() -> dict:
    """Counters for matching runs since process start."""
    return {"ok": True, "data": get_ops_metrics(), "error": None}
