"""
Organization membership API endpoints.

GET    /api/v1/orgs                          — List the caller's orgs
POST   /api/v1/orgs                          — Create an org (caller becomes admin)
POST   /api/v1/orgs/join                     — Join an org by join code
GET    /api/v1/orgs/{org_id}                 — Get org details (members only)
PUT    /api/v1/orgs/{org_id}/current         — Make an org the caller's current one
DELETE /api/v1/orgs/{org_id}/membership      — Leave an org
POST   /api/v1/orgs/{org_id}/reconcile       — Repair one-sided memberships (admin only)
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response

from app.core.auth import get_authenticated_user
from app.core.database import get_membership_service
from app.core.exceptions import NotAMemberError
from app.services.membership import MembershipService
from foundly_shared.schemas.common import MemberRole, MessageResponse
from foundly_shared.schemas.organizations import (
    OrgCreateRequest,
    OrgJoinRequest,
    OrgJoinResponse,
    OrgListResponse,
    OrgResponse,
    RepairReport,
)
from foundly_shared.schemas.users import UserSnapshot

log = structlog.get_logger()

router = APIRouter()


@router.get("/orgs", response_model=OrgListResponse, tags=["Organizations"])
async def list_orgs(
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """List orgs the authenticated user belongs to."""
    items = await service.list_user_organizations(user.id)
    current = next((item.id for item in items if item.is_current), None)
    return OrgListResponse(data=items, current_organization=current)


@router.post("/orgs", response_model=OrgResponse, status_code=201, tags=["Organizations"])
async def create_org(
    body: OrgCreateRequest,
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """Create a new organization. The creator becomes its admin and it
    becomes their current organization."""
    org = await service.create_with_owner(user.id, body.to_attributes())
    return OrgResponse.from_snapshot(org)


@router.post("/orgs/join", response_model=OrgJoinResponse, tags=["Organizations"])
async def join_org(
    body: OrgJoinRequest,
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """Join by code. Joining twice is not an error; ``outcome`` says which happened."""
    result = await service.join(user.id, body.join_code)
    return OrgJoinResponse(
        outcome=result.outcome,
        organization=OrgResponse.from_snapshot(result.organization),
    )


@router.get("/orgs/{org_id}", response_model=OrgResponse, tags=["Organizations"])
async def get_org(
    org_id: uuid.UUID,
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """Get org details including members. Only visible to members."""
    if user.entry_for(org_id) is None:
        raise NotAMemberError(user_id=str(user.id), organization_id=str(org_id))
    org = await service.get_organization(org_id)
    return OrgResponse.from_snapshot(org)


@router.put("/orgs/{org_id}/current", response_model=MessageResponse, tags=["Organizations"])
async def switch_current_org(
    org_id: uuid.UUID,
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """Switch the caller's current organization."""
    await service.set_current(user.id, org_id)
    return MessageResponse(message="Organization switched successfully")


@router.delete("/orgs/{org_id}/membership", status_code=204, tags=["Organizations"])
async def leave_org(
    org_id: uuid.UUID,
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """Leave an organization. Leaving one you are not in is a no-op."""
    await service.leave(user.id, org_id)
    return Response(status_code=204)


@router.post("/orgs/{org_id}/reconcile", response_model=RepairReport, tags=["Organizations"])
async def reconcile_org(
    org_id: uuid.UUID,
    user: UserSnapshot = Depends(get_authenticated_user),
    service: MembershipService = Depends(get_membership_service),
):
    """Repair one-sided memberships for an org (Admin only)."""
    org = await service.get_organization(org_id)
    member = org.member_for(user.id)
    if member is None or member.role != MemberRole.ADMIN:
        raise HTTPException(status_code=403, detail="Administrator access required")
    report = await service.reconcile(org_id)
    log.info("api.reconcile", org_id=str(org_id), by=str(user.id), repaired=report.repaired)
    return report
