"""
Identity merge and unlink operations.

Both run as a single transaction. The `*_in` variants operate on a store the
caller already holds so verification can fold a merge into its own
transaction.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog

from crosslink.identity.store import IdentityStore, TransactionFactory
from crosslink.identity.types import (
    AuditAction,
    Identity,
    PlatformProfile,
    UnlinkResult,
)
from crosslink.kernel.errors import NotFoundError, ValidationError

logger = structlog.get_logger()


def _earliest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return min(a, b)


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return max(a, b)


class IdentityMerger:
    """Merges identities and detaches profiles from them."""

    def __init__(self, transaction: TransactionFactory):
        self._transaction = transaction

    async def merge_identities(
        self,
        keep_id: UUID,
        away_id: UUID,
        actor_profile_id: UUID | None = None,
    ) -> Identity:
        async with self._transaction() as store:
            return await self.merge_in(store, keep_id, away_id, actor_profile_id)

    async def unlink_profile(
        self,
        profile_id: UUID,
        actor_profile_id: UUID | None = None,
    ) -> UnlinkResult:
        async with self._transaction() as store:
            return await self.unlink_in(store, profile_id, actor_profile_id)

    async def merge_in(
        self,
        store: IdentityStore,
        keep_id: UUID,
        away_id: UUID,
        actor_profile_id: UUID | None = None,
    ) -> Identity:
        """Fold `away` into `keep` and delete `away`."""
        if keep_id == away_id:
            raise ValidationError(
                message="Cannot merge an identity into itself",
                code="identity.merge_self",
                meta={"identity_id": str(keep_id)},
            )

        # Lock in id order so two opposite merges cannot deadlock.
        locked: dict[UUID, Identity] = {}
        for identity_id in sorted((keep_id, away_id)):
            identity = await store.get_identity(identity_id, for_update=True)
            if identity is None:
                raise NotFoundError(
                    message="Identity not found",
                    code="identity.not_found",
                    meta={"identity_id": str(identity_id)},
                )
            locked[identity_id] = identity
        keep, away = locked[keep_id], locked[away_id]

        moved_profiles = await store.move_profiles(away.id, keep.id)
        moved_factors = await store.move_factors(away.id, keep.id)

        merged_master_ids = list(keep.metadata.get("merged_master_ids", []))
        for master_id in [str(away.master_id), *away.metadata.get("merged_master_ids", [])]:
            if master_id not in merged_master_ids:
                merged_master_ids.append(master_id)

        merged = await store.update_identity(
            keep.id,
            verified=keep.verified or away.verified,
            display_name=keep.display_name or away.display_name,
            avatar_url=keep.avatar_url or away.avatar_url,
            primary_platform=keep.primary_platform or away.primary_platform,
            first_seen=_earliest(keep.first_seen, away.first_seen),
            last_seen=_latest(keep.last_seen, away.last_seen),
            metadata={
                **away.metadata,
                **keep.metadata,
                "merged_master_ids": merged_master_ids,
            },
        )
        confidence = await store.recompute_confidence(keep.id)

        await store.append_audit(
            keep.id,
            AuditAction.MERGE,
            actor_profile_id,
            {
                "merged_from": str(away.id),
                "merged_master_id": str(away.master_id),
                "moved_profiles": [str(pid) for pid in moved_profiles],
                "moved_factors": moved_factors,
            },
        )
        await store.delete_identity(away.id)

        logger.info(
            "Identities merged",
            keep_id=str(keep.id),
            away_id=str(away.id),
            moved_profiles=len(moved_profiles),
            confidence=round(confidence, 2),
        )

        return merged.model_copy(update={"confidence_score": confidence})

    async def unlink_in(
        self,
        store: IdentityStore,
        profile_id: UUID,
        actor_profile_id: UUID | None = None,
    ) -> UnlinkResult:
        """Detach a profile from its identity into a fresh identity of its own."""
        profile: PlatformProfile | None = await store.get_profile_by_id(profile_id, for_update=True)
        if profile is None:
            raise NotFoundError(
                message="Platform profile not found",
                code="identity.profile_not_found",
                meta={"profile_id": str(profile_id)},
            )
        if profile.identity_id is None:
            raise NotFoundError(
                message="Profile is not linked to an identity",
                code="identity.not_linked",
                meta={"profile_id": str(profile_id)},
            )

        original_identity_id = profile.identity_id
        removed_links = await store.delete_links_for_profile(profile.id)
        new_identity = await store.create_identity(profile)
        await store.assign_profile(profile.id, new_identity.id)

        await store.append_audit(
            original_identity_id,
            AuditAction.SPLIT,
            actor_profile_id,
            {
                "unlinked_platform": profile.platform,
                "unlinked_profile_id": str(profile.id),
                "removed_links": removed_links,
                "new_identity_id": str(new_identity.id),
            },
        )

        logger.info(
            "Profile unlinked",
            profile_id=str(profile.id),
            platform=profile.platform,
            original_identity_id=str(original_identity_id),
            new_identity_id=str(new_identity.id),
            removed_links=removed_links,
        )

        return UnlinkResult(
            detached_profile_id=profile.id,
            detached_platform=profile.platform,
            original_identity_id=original_identity_id,
            new_identity_id=new_identity.id,
            removed_links=removed_links,
        )
