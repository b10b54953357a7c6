"""
API v1 Router

Organization membership endpoints live under /orgs.
"""

from fastapi import APIRouter
from . import organizations

router = APIRouter()

router.include_router(organizations.router)


@router.get("/", tags=["API"])
async def api_root():
    """API root — returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/orgs",
            "/orgs/join",
            "/orgs/{org_id}",
            "/orgs/{org_id}/current",
            "/orgs/{org_id}/membership",
            "/orgs/{org_id}/reconcile",
        ],
    }
