from fastapi import APIRouter

from .endpoints import (
    batches,
    health,
    lineage,
    market,
    notifications,
    observability,
    orders,
    payments,
    sweeps,
    webhooks,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(batches.router)
router.include_router(sweeps.router)
router.include_router(market.router)
router.include_router(webhooks.router)
router.include_router(notifications.router)
router.include_router(payments.router)
router.include_router(lineage.router)
router.include_router(orders.router)
router.include_router(observability.router)
