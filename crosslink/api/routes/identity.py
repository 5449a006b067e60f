"""
Identity API Routes

HTTP surface of the identity graph:
- Resolving a platform account to its identity
- Issuing and redeeming link verification codes
- Probabilistic analysis and message observations
- Unlinking, search, and operator-only merge / audit / room clustering
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from crosslink.api.middleware import require_admin
from crosslink.identity import IdentityService, get_identity_service
from crosslink.identity.types import (
    AnalysisResult,
    AuditLogEntry,
    LinkRequestResult,
    PlatformProfile,
    ProfileAttributes,
    ResolvedIdentity,
    RoomRef,
    SearchResult,
    UnlinkResult,
    VerificationResult,
)
from crosslink.jobs.link_request_reaper import LinkRequestReaperJob, get_link_request_reaper

logger = structlog.get_logger()

router = APIRouter(prefix="/identity", tags=["identity"])


# =============================================================================
# Request Models
# =============================================================================


class LinkRequestBody(BaseModel):
    platform: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    target_platform: str = Field(..., min_length=1)
    target_identifier: str = Field(..., min_length=1)
    profile: ProfileAttributes | None = None


class VerifyBody(BaseModel):
    platform: str = Field(..., min_length=1, description="Platform the code was sent from")
    user_id: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
    profile: ProfileAttributes | None = None


class AnalyzeBody(BaseModel):
    platform: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    profile: ProfileAttributes | None = None


class ObservationBody(BaseModel):
    platform: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    sent_at: datetime | None = None
    profile: ProfileAttributes | None = None
    room: RoomRef | None = None


class UnlinkBody(BaseModel):
    platform: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    target_platform: str = Field(..., min_length=1)


class MergeBody(BaseModel):
    keep_id: UUID
    merge_id: UUID


class RoomKey(BaseModel):
    platform: str = Field(..., min_length=1)
    platform_room_id: str = Field(..., min_length=1)
    room_name: str | None = None
    room_type: str | None = None


class ClusterRoomsBody(BaseModel):
    rooms: list[RoomKey] = Field(..., min_length=1)


class MergeResponse(BaseModel):
    identity_id: UUID


class ClusterResponse(BaseModel):
    cluster_id: UUID
    rooms: int


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/profiles/{platform}/{user_id}", response_model=ResolvedIdentity)
async def resolve_profile(
    platform: str,
    user_id: str,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.resolve(platform, user_id)


@router.post("/link-requests", response_model=LinkRequestResult, status_code=201)
async def create_link_request(
    body: LinkRequestBody,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.request_link(
        body.platform,
        body.user_id,
        body.target_platform,
        body.target_identifier,
        body.profile,
    )


@router.post("/verify", response_model=VerificationResult)
async def verify_link(
    body: VerifyBody,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.verify(body.platform, body.user_id, body.code, body.profile)


@router.post("/analyze", response_model=AnalysisResult)
async def analyze_profile(
    body: AnalyzeBody,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.analyze(body.platform, body.user_id, body.profile)


@router.post("/observations", response_model=PlatformProfile, status_code=202)
async def observe_message(
    body: ObservationBody,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.observe_message(
        body.platform,
        body.user_id,
        body.profile,
        body.sent_at,
        body.room,
    )


@router.post("/unlink", response_model=UnlinkResult)
async def unlink_profile(
    body: UnlinkBody,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.unlink(body.platform, body.user_id, body.target_platform)


@router.get("/search", response_model=SearchResult)
async def search_profiles(
    q: str = Query(..., min_length=1, max_length=100),
    service: IdentityService = Depends(get_identity_service),
):
    return await service.search(q)


@router.post("/merge", response_model=MergeResponse, dependencies=[Depends(require_admin)])
async def merge_identities(
    body: MergeBody,
    service: IdentityService = Depends(get_identity_service),
):
    logger.info("Admin merge requested", keep_id=str(body.keep_id), merge_id=str(body.merge_id))
    identity_id = await service.merge(body.keep_id, body.merge_id)
    return MergeResponse(identity_id=identity_id)


@router.get(
    "/identities/{identity_id}/audit",
    response_model=list[AuditLogEntry],
    dependencies=[Depends(require_admin)],
)
async def identity_audit_trail(
    identity_id: UUID,
    service: IdentityService = Depends(get_identity_service),
):
    return await service.audit_trail(identity_id)


@router.post("/rooms/cluster", response_model=ClusterResponse, dependencies=[Depends(require_admin)])
async def cluster_rooms(
    body: ClusterRoomsBody,
    service: IdentityService = Depends(get_identity_service),
):
    rooms = [
        (
            room.platform,
            RoomRef(
                platform_room_id=room.platform_room_id,
                room_name=room.room_name,
                room_type=room.room_type,
            ),
        )
        for room in body.rooms
    ]
    cluster_id = await service.cluster_rooms(rooms)
    return ClusterResponse(cluster_id=cluster_id, rooms=len(rooms))


@router.post("/admin/reap", dependencies=[Depends(require_admin)])
async def reap_link_requests(
    dry_run: bool = Query(default=False),
    limit: int = Query(default=500, ge=1, le=10000),
    job: LinkRequestReaperJob = Depends(get_link_request_reaper),
) -> dict[str, Any]:
    return await job.run(dry_run=dry_run, limit=limit)
