"""Health check endpoint — no auth required."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from feedpulse.api.container import ServiceContainer, get_container
from feedpulse.api.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    settings = container.settings
    return HealthResponse(
        status="ok",
        version="0.1.0",
        environment=settings.feedpulse_env,
        storage=settings.storage_backend,
    )
