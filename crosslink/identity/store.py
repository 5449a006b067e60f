"""Identity Graph Store port.

Every identity-affecting operation runs against an `IdentityStore` obtained
from a transaction factory:

    async with transaction() as store:
        profile = await store.upsert_profile(...)

Leaving the block commits; any exception rolls back everything written inside
it. Invariants (unique profile key, one link per unordered pair, one factor per
identity and type, single consumption of a code) are enforced by the store
through conditional writes, never by callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Protocol
from uuid import UUID

from crosslink.identity.types import (
    AuditAction,
    AuditLogEntry,
    ConfidenceFactor,
    FactorType,
    Identity,
    IdentityLink,
    LinkRequest,
    LinkRequestStatus,
    LinkStatus,
    LinkType,
    PlatformProfile,
    ProfileAttributes,
    Room,
    RoomRef,
)

DEFAULT_CONFIDENCE = 50.0


class IdentityStore(Protocol):
    """Transaction-scoped access to the identity graph."""

    # Profiles -----------------------------------------------------------------

    async def upsert_profile(
        self,
        platform: str,
        platform_user_id: str,
        attrs: ProfileAttributes,
        seen_at: datetime,
    ) -> PlatformProfile: ...

    async def get_profile(self, platform: str, platform_user_id: str) -> PlatformProfile | None: ...

    async def get_profile_by_id(self, profile_id: UUID, *, for_update: bool = False) -> PlatformProfile | None: ...

    async def get_linked_profiles(self, identity_id: UUID) -> list[PlatformProfile]: ...

    async def search_profiles(self, term: str, limit: int) -> list[PlatformProfile]: ...

    # Identities ---------------------------------------------------------------

    async def get_identity(self, identity_id: UUID, *, for_update: bool = False) -> Identity | None: ...

    async def create_identity(self, seed: PlatformProfile, *, verified: bool = False) -> Identity: ...

    async def ensure_identity(self, profile: PlatformProfile) -> Identity: ...

    async def assign_profile(self, profile_id: UUID, identity_id: UUID) -> None: ...

    async def update_identity(self, identity_id: UUID, **fields: Any) -> Identity: ...

    async def delete_identity(self, identity_id: UUID) -> None: ...

    async def move_profiles(self, from_identity_id: UUID, to_identity_id: UUID) -> list[UUID]: ...

    # Links --------------------------------------------------------------------

    async def record_link(
        self,
        source_profile_id: UUID,
        target_profile_id: UUID,
        link_type: LinkType,
        confidence: float,
        evidence: dict[str, Any],
        status: LinkStatus = LinkStatus.PENDING,
        verified_by: str | None = None,
        verified_at: datetime | None = None,
    ) -> IdentityLink: ...

    async def list_links(self, profile_ids: list[UUID]) -> list[IdentityLink]: ...

    async def delete_links_for_profile(self, profile_id: UUID) -> int: ...

    # Confidence factors -------------------------------------------------------

    async def upsert_factor(
        self,
        identity_id: UUID,
        factor_type: FactorType,
        value: float,
        evidence: dict[str, Any],
        calculated_at: datetime,
    ) -> ConfidenceFactor: ...

    async def list_factors(self, identity_id: UUID) -> list[ConfidenceFactor]: ...

    async def move_factors(self, from_identity_id: UUID, to_identity_id: UUID) -> int: ...

    async def recompute_confidence(self, identity_id: UUID) -> float: ...

    # Audit --------------------------------------------------------------------

    async def append_audit(
        self,
        identity_id: UUID | None,
        action: AuditAction,
        actor_profile_id: UUID | None,
        details: dict[str, Any],
    ) -> AuditLogEntry: ...

    async def list_audit(self, identity_id: UUID) -> list[AuditLogEntry]: ...

    # Link requests ------------------------------------------------------------

    async def create_link_request(
        self,
        requester_profile_id: UUID,
        target_platform: str,
        target_identifier: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> LinkRequest | None: ...

    async def find_link_request(
        self,
        target_platform: str,
        code: str,
        *,
        for_update: bool = False,
    ) -> LinkRequest | None: ...

    async def transition_link_request(
        self,
        request_id: UUID,
        from_status: LinkRequestStatus,
        to_status: LinkRequestStatus,
        at: datetime,
    ) -> bool: ...

    async def expire_link_requests(self, now: datetime, limit: int) -> int: ...

    async def purge_link_requests(self, older_than: datetime, limit: int) -> int: ...

    async def count_overdue_link_requests(self, now: datetime) -> int: ...

    async def count_purgeable_link_requests(self, older_than: datetime) -> int: ...

    # Evidence inputs ----------------------------------------------------------

    async def record_activity(self, profile_id: UUID, bucket: int, seen_at: datetime) -> None: ...

    async def upsert_room(self, platform: str, room: RoomRef) -> Room: ...

    async def record_room_participation(self, room_id: UUID, profile_id: UUID, seen_at: datetime) -> None: ...

    async def set_room_cluster(self, room_ids: list[UUID], cluster_id: UUID) -> int: ...

    # Matching queries ---------------------------------------------------------

    async def find_username_candidates(
        self,
        username: str,
        exclude_platform: str,
        trigram_floor: float,
        limit: int,
    ) -> list[PlatformProfile]: ...

    async def find_activity_candidates(
        self,
        exclude_platform: str,
        min_messages: int,
        limit: int,
    ) -> list[PlatformProfile]: ...

    async def count_shared_rooms(
        self,
        profile_id: UUID,
        exclude_platform: str,
        min_shared: int,
    ) -> list[tuple[PlatformProfile, int]]: ...


TransactionFactory = Callable[[], AsyncContextManager[IdentityStore]]
