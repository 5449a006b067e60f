"""
Identity Graph Type Definitions

Types for cross-platform identity linking, matching and verification.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class LinkType(str, Enum):
    """Why two profiles are believed to be the same person."""

    MANUAL = "manual"
    AUTO_USERNAME = "auto_username"
    AUTO_TEMPORAL = "auto_temporal"
    AUTO_SOCIAL = "auto_social"


class LinkStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class LinkRequestStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    REJECTED = "rejected"


class AuditAction(str, Enum):
    LINK_CREATED = "link_created"
    LINK_REMOVED = "link_removed"
    MERGE = "merge"
    SPLIT = "split"
    VERIFICATION = "verification"


class FactorType(str, Enum):
    """Signals contributing to an identity's aggregate confidence."""

    USERNAME_SIMILARITY = "username_similarity"
    TEMPORAL_CORRELATION = "temporal_correlation"
    SOCIAL_GRAPH = "social_graph"


class ProfileAttributes(BaseModel):
    """Mutable profile attributes reported by a platform adapter.

    Fields left as None are not overwritten on upsert.
    """

    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    platform_verified: bool | None = None
    raw_data: dict[str, Any] | None = None


class Identity(BaseModel):
    """A hypothesized real-world person."""

    id: UUID
    master_id: UUID
    primary_platform: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    verified: bool = False
    confidence_score: float = 50.0
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlatformProfile(BaseModel):
    """A user as seen on one specific platform."""

    id: UUID
    identity_id: UUID | None = None
    platform: str
    platform_user_id: str
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    platform_verified: bool = False
    raw_data: dict[str, Any] = Field(default_factory=dict)
    message_count: int = 0
    activity_histogram: dict[str, int] = Field(default_factory=dict)
    first_seen: datetime | None = None
    last_seen: datetime | None = None


class IdentityLink(BaseModel):
    """Edge between two platform profiles, unique per unordered pair."""

    id: UUID
    source_profile_id: UUID
    target_profile_id: UUID
    link_type: LinkType
    confidence: float
    evidence: dict[str, Any] = Field(default_factory=dict)
    status: LinkStatus = LinkStatus.PENDING
    verified_by: str | None = None
    verified_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def touches(self, profile_id: UUID) -> bool:
        return profile_id in (self.source_profile_id, self.target_profile_id)


class ConfidenceFactor(BaseModel):
    identity_id: UUID
    factor_type: FactorType
    factor_value: float
    evidence: dict[str, Any] = Field(default_factory=dict)
    calculated_at: datetime


class LinkRequest(BaseModel):
    """A user-initiated verification attempt."""

    id: UUID
    requester_profile_id: UUID
    target_platform: str
    target_identifier: str
    verification_code: str
    status: LinkRequestStatus = LinkRequestStatus.PENDING
    created_at: datetime
    expires_at: datetime
    verified_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class AuditLogEntry(BaseModel):
    id: UUID
    identity_id: UUID | None = None
    action: AuditAction
    actor_profile_id: UUID | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class Room(BaseModel):
    id: UUID
    room_cluster_id: UUID
    platform: str
    platform_room_id: str
    room_name: str | None = None
    room_type: str | None = None


class RoomRef(BaseModel):
    """Room the observed message was posted in."""

    platform_room_id: str
    room_name: str | None = None
    room_type: str | None = None


# =============================================================================
# Operation results
# =============================================================================


class MatchCandidate(BaseModel):
    """A profile on another platform that may be the same person."""

    profile: PlatformProfile
    confidence: float
    link_type: LinkType
    signals: list[FactorType] = Field(default_factory=list)
    evidence: dict[str, Any] = Field(default_factory=dict)


class ResolvedIdentity(BaseModel):
    profile: PlatformProfile
    identity: Identity | None = None
    linked_profiles: list[PlatformProfile] = Field(default_factory=list)
    links: list[IdentityLink] = Field(default_factory=list)
    confidence: float = 0.0


class LinkRequestResult(BaseModel):
    request_id: UUID
    verification_code: str
    target_platform: str
    target_identifier: str
    expires_at: datetime
    instructions: str


class VerificationResult(BaseModel):
    success: bool
    identity_id: UUID
    link_id: UUID
    merged_identity_id: UUID | None = None


class AnalysisResult(BaseModel):
    profile_id: UUID
    identity_id: UUID
    candidates: list[MatchCandidate] = Field(default_factory=list)
    auto_linked: int = 0


class UnlinkResult(BaseModel):
    detached_profile_id: UUID
    detached_platform: str
    original_identity_id: UUID
    new_identity_id: UUID
    removed_links: int = 0


class SearchGroup(BaseModel):
    identity: Identity | None = None
    profiles: list[PlatformProfile] = Field(default_factory=list)


class SearchResult(BaseModel):
    results: list[SearchGroup] = Field(default_factory=list)
    count: int = 0
