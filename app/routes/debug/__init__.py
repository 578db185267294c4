"""Debug route aggregation."""

from fastapi import APIRouter

from app.routes.debug import health, queue_metrics

router = APIRouter()

router.include_router(health.router)
router.include_router(queue_metrics.router)
