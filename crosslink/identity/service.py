"""
Identity Service

Entry point for callers (bots, HTTP routes, jobs). Every method maps to one
transaction against the identity graph store and returns typed results;
failures surface as `CrosslinkError` subclasses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable
from uuid import UUID

import structlog

from crosslink.config import Settings, get_settings
from crosslink.identity.matching import MatchingEngine
from crosslink.identity.merge import IdentityMerger
from crosslink.identity.postgres_store import postgres_transaction
from crosslink.identity.similarity import hour_of_week_bucket
from crosslink.identity.store import TransactionFactory
from crosslink.identity.types import (
    AnalysisResult,
    AuditLogEntry,
    LinkRequestResult,
    PlatformProfile,
    ProfileAttributes,
    ResolvedIdentity,
    RoomRef,
    SearchGroup,
    SearchResult,
    UnlinkResult,
    VerificationResult,
)
from crosslink.identity.verification import VerificationWorkflow, generate_code
from crosslink.kernel.errors import NotFoundError, ValidationError
from crosslink.kernel.time import Clock, coerce_utc, utc_now

logger = structlog.get_logger()

SEARCH_LIMIT = 20

# Global instance
_identity_service: "IdentityService | None" = None


def _profile_not_found(platform: str, user_id: str) -> NotFoundError:
    return NotFoundError(
        message="Platform profile not found",
        code="identity.profile_not_found",
        meta={"platform": platform, "user_id": user_id},
    )


class IdentityService:
    """
    Cross-platform identity graph operations.

    Wires the matching engine, verification workflow and merge operations to a
    single transaction factory.
    """

    def __init__(
        self,
        transaction: TransactionFactory | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        code_generator: Callable[[int], str] = generate_code,
    ):
        self._transaction = transaction or postgres_transaction
        self.settings = settings or get_settings()
        self._clock = clock
        self.matching = MatchingEngine(self.settings, clock)
        self.merger = IdentityMerger(self._transaction)
        self.verification = VerificationWorkflow(
            self._transaction,
            merger=self.merger,
            settings=self.settings,
            clock=clock,
            code_generator=code_generator,
        )

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(self, platform: str, user_id: str) -> ResolvedIdentity:
        """Return the profile, its identity and everything linked to it."""
        async with self._transaction() as store:
            profile = await store.get_profile(platform, user_id)
            if profile is None:
                raise _profile_not_found(platform, user_id)
            if profile.identity_id is None:
                return ResolvedIdentity(profile=profile)

            identity = await store.get_identity(profile.identity_id)
            if identity is None:
                return ResolvedIdentity(profile=profile)

            linked = await store.get_linked_profiles(identity.id)
            links = await store.list_links([p.id for p in linked])
            return ResolvedIdentity(
                profile=profile,
                identity=identity,
                linked_profiles=linked,
                links=links,
                confidence=identity.confidence_score,
            )

    async def search(self, term: str) -> SearchResult:
        """Case-insensitive substring search over usernames and display names."""
        term = (term or "").strip()
        if not term:
            raise ValidationError(
                message="Search term is required",
                code="identity.search_term_required",
            )

        async with self._transaction() as store:
            profiles = await store.search_profiles(term, SEARCH_LIMIT)

            groups: list[SearchGroup] = []
            by_identity: dict[UUID, SearchGroup] = {}
            for profile in profiles:
                if profile.identity_id is None:
                    groups.append(SearchGroup(profiles=[profile]))
                    continue
                group = by_identity.get(profile.identity_id)
                if group is None:
                    identity = await store.get_identity(profile.identity_id)
                    group = SearchGroup(identity=identity)
                    by_identity[profile.identity_id] = group
                    groups.append(group)
                group.profiles.append(profile)

        return SearchResult(results=groups, count=len(groups))

    async def audit_trail(self, identity_id: UUID) -> list[AuditLogEntry]:
        async with self._transaction() as store:
            return await store.list_audit(identity_id)

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def request_link(
        self,
        platform: str,
        user_id: str,
        target_platform: str,
        target_identifier: str,
        attrs: ProfileAttributes | None = None,
    ) -> LinkRequestResult:
        return await self.verification.request_link(
            platform,
            user_id,
            target_platform,
            target_identifier,
            attrs,
        )

    async def verify(
        self,
        target_platform: str,
        target_user_id: str,
        code: str,
        attrs: ProfileAttributes | None = None,
    ) -> VerificationResult:
        return await self.verification.verify_code(target_platform, target_user_id, code, attrs)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    async def analyze(
        self,
        platform: str,
        user_id: str,
        attrs: ProfileAttributes | None = None,
    ) -> AnalysisResult:
        async with self._transaction() as store:
            profile = await store.upsert_profile(
                platform,
                user_id,
                attrs or ProfileAttributes(),
                self._clock(),
            )
            return await self.matching.analyze(store, profile)

    async def observe_message(
        self,
        platform: str,
        user_id: str,
        attrs: ProfileAttributes | None = None,
        sent_at: datetime | None = None,
        room: RoomRef | None = None,
    ) -> PlatformProfile:
        """Record one message as evidence for the temporal and social signals."""
        sent_at = coerce_utc(sent_at) if sent_at else self._clock()

        async with self._transaction() as store:
            first_sight = await store.get_profile(platform, user_id) is None
            profile = await store.upsert_profile(platform, user_id, attrs or ProfileAttributes(), sent_at)
            await store.record_activity(profile.id, hour_of_week_bucket(sent_at), sent_at)
            if room is not None:
                stored_room = await store.upsert_room(platform, room)
                await store.record_room_participation(stored_room.id, profile.id, sent_at)
            profile = await store.get_profile_by_id(profile.id)

        if first_sight and self.settings.analyze_on_first_sight:
            logger.debug("Analyzing profile on first sight", platform=platform)
            await self.analyze(platform, user_id)

        return profile

    async def cluster_rooms(self, rooms: list[tuple[str, RoomRef]]) -> UUID:
        """Declare rooms on different platforms to be one community.

        Rooms adopt the cluster of the first room listed, so a cluster can be
        grown one room at a time.
        """
        if not rooms:
            raise ValidationError(
                message="At least one room is required",
                code="identity.rooms_required",
            )

        async with self._transaction() as store:
            stored = [await store.upsert_room(platform, room) for platform, room in rooms]
            cluster_id = stored[0].room_cluster_id
            await store.set_room_cluster([room.id for room in stored], cluster_id)

        logger.info("Rooms clustered", cluster_id=str(cluster_id), rooms=len(stored))
        return cluster_id

    # -------------------------------------------------------------------------
    # Merge / unlink
    # -------------------------------------------------------------------------

    async def merge(self, keep_id: UUID, merge_id: UUID) -> UUID:
        identity = await self.merger.merge_identities(keep_id, merge_id)
        return identity.id

    async def unlink(self, platform: str, user_id: str, target_platform: str) -> UnlinkResult:
        """Detach the caller's profile on `target_platform` from their identity."""
        async with self._transaction() as store:
            caller = await store.get_profile(platform, user_id)
            if caller is None:
                raise _profile_not_found(platform, user_id)
            if caller.identity_id is None:
                raise NotFoundError(
                    message="Profile is not linked to an identity",
                    code="identity.not_linked",
                    meta={"platform": platform},
                )

            linked = await store.get_linked_profiles(caller.identity_id)
            target = next(
                (p for p in linked if p.platform == target_platform and p.id != caller.id),
                None,
            )
            if target is None:
                raise NotFoundError(
                    message=f"No linked {target_platform} account",
                    code="identity.link_not_found",
                    meta={"target_platform": target_platform},
                )

            return await self.merger.unlink_in(store, target.id, actor_profile_id=caller.id)


# =============================================================================
# Factory Functions
# =============================================================================


async def get_identity_service() -> IdentityService:
    """Get or create the global identity service instance."""
    global _identity_service

    if _identity_service is None:
        _identity_service = IdentityService()

    return _identity_service
