"""Prometheus exposition under the API prefix."""
from fastapi import APIRouter

from pdfqa.utils.metrics import metrics_response

router = APIRouter()


@router.get("/metrics")
async def api_metrics():
    """Ingestion, retrieval tier, similarity and stream error counters."""
    return metrics_response()
