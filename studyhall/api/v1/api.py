"""API routes for the FastAPI application."""

from fastapi import Depends

from studyhall.api import deps
from studyhall.api.router import TrailingSlashRouter
from studyhall.api.v1.endpoints import billing, health

# Use our custom router that handles trailing slashes
api_router = TrailingSlashRouter()
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(
    billing.router,
    prefix="/billing",
    tags=["billing"],
    dependencies=[Depends(deps.require_billing_enabled)],
)
