"""
GET /metrics: Prometheus scrape endpoint (text exposition format 0.0.4).
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from launchpad.core.metrics import metrics

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def get_metrics() -> PlainTextResponse:
    return PlainTextResponse(metrics.to_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
