"""Main API router for v1."""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from launchpad_engine.api.v1.endpoints import capabilities, jobs
from launchpad_engine.core.config import settings


async def require_api_key(x_api_key: Optional[str] = Header(None)) -> None:
    """Reject requests without the configured key. Open when API_KEY is unset."""
    expected = settings.API_KEY
    if not expected:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid API key")


api_router = APIRouter(dependencies=[Depends(require_api_key)])

# Include all endpoint routers
api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
api_router.include_router(capabilities.router, tags=["System"])
