"""
PostgreSQL Identity Graph Store

Explicit SQL over a SQLAlchemy async session. Every invariant of the graph is
expressed as an atomic conditional write:

- profiles:       INSERT ... ON CONFLICT (platform, platform_user_id) DO UPDATE
- links:          INSERT ... ON CONFLICT (LEAST(a, b), GREATEST(a, b)) DO UPDATE
- factors:        INSERT ... ON CONFLICT (identity_id, factor_type) DO UPDATE
- link requests:  UPDATE ... WHERE status = :from_status
- identities:     row locks (SELECT ... FOR UPDATE) around create/merge
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Mapping
from uuid import UUID, uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from crosslink.db.client import get_db_session
from crosslink.identity.store import DEFAULT_CONFIDENCE
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
from crosslink.kernel.errors import (
    IntegrityViolationError,
    NotFoundError,
    StorageUnavailableError,
)
from crosslink.kernel.serialization import from_jsonb, to_jsonb_param

logger = structlog.get_logger()

PROFILE_COLUMNS = """
    id, identity_id, platform, platform_user_id, username, display_name,
    avatar_url, bio, platform_verified, raw_data, message_count,
    activity_histogram, first_seen, last_seen
"""

IDENTITY_COLUMNS = """
    id, master_id, primary_platform, display_name, avatar_url, verified,
    confidence_score, first_seen, last_seen, metadata
"""

LINK_COLUMNS = """
    id, source_profile_id, target_profile_id, link_type, confidence, evidence,
    status, verified_by, verified_at, created_at, updated_at
"""

LINK_REQUEST_COLUMNS = """
    id, requester_profile_id, target_platform, target_identifier,
    verification_code, status, created_at, expires_at, verified_at
"""

_IDENTITY_UPDATABLE = {
    "primary_platform",
    "display_name",
    "avatar_url",
    "verified",
    "first_seen",
    "last_seen",
    "metadata",
}


def _profile(row: Mapping[str, Any]) -> PlatformProfile:
    data = dict(row)
    data["raw_data"] = from_jsonb(data.get("raw_data"))
    data["activity_histogram"] = {
        str(k): int(v) for k, v in from_jsonb(data.get("activity_histogram")).items()
    }
    return PlatformProfile.model_validate(data)


def _identity(row: Mapping[str, Any]) -> Identity:
    data = dict(row)
    data["metadata"] = from_jsonb(data.get("metadata"))
    return Identity.model_validate(data)


def _link(row: Mapping[str, Any]) -> IdentityLink:
    data = dict(row)
    data["evidence"] = from_jsonb(data.get("evidence"))
    return IdentityLink.model_validate(data)


def _factor(row: Mapping[str, Any]) -> ConfidenceFactor:
    data = dict(row)
    data["evidence"] = from_jsonb(data.get("evidence"))
    return ConfidenceFactor.model_validate(data)


def _audit(row: Mapping[str, Any]) -> AuditLogEntry:
    data = dict(row)
    data["details"] = from_jsonb(data.get("details"))
    return AuditLogEntry.model_validate(data)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresIdentityStore:
    """IdentityStore bound to one database transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _fetch_one(self, sql: str, params: dict[str, Any]) -> Mapping[str, Any] | None:
        result = await self.session.execute(text(sql), params)
        return result.mappings().first()

    async def _fetch_all(self, sql: str, params: dict[str, Any]) -> list[Mapping[str, Any]]:
        result = await self.session.execute(text(sql), params)
        return list(result.mappings().all())

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    async def upsert_profile(
        self,
        platform: str,
        platform_user_id: str,
        attrs: ProfileAttributes,
        seen_at: datetime,
    ) -> PlatformProfile:
        row = await self._fetch_one(
            f"""
            INSERT INTO platform_profiles (
                id, platform, platform_user_id, username, display_name,
                avatar_url, bio, platform_verified, raw_data, message_count,
                activity_histogram, first_seen, last_seen, created_at, updated_at
            ) VALUES (
                :id, :platform, :platform_user_id, :username, :display_name,
                :avatar_url, :bio, COALESCE(:platform_verified, false),
                COALESCE(CAST(:raw_data AS JSONB), '{{}}'::jsonb), 0,
                '{{}}'::jsonb, :seen_at, :seen_at, :seen_at, :seen_at
            )
            ON CONFLICT (platform, platform_user_id) DO UPDATE
            SET username = COALESCE(EXCLUDED.username, platform_profiles.username),
                display_name = COALESCE(EXCLUDED.display_name, platform_profiles.display_name),
                avatar_url = COALESCE(EXCLUDED.avatar_url, platform_profiles.avatar_url),
                bio = COALESCE(EXCLUDED.bio, platform_profiles.bio),
                platform_verified = COALESCE(:platform_verified, platform_profiles.platform_verified),
                raw_data = COALESCE(CAST(:raw_data AS JSONB), platform_profiles.raw_data),
                last_seen = GREATEST(platform_profiles.last_seen, EXCLUDED.last_seen),
                updated_at = EXCLUDED.updated_at
            RETURNING {PROFILE_COLUMNS}
            """,
            {
                "id": uuid4(),
                "platform": platform,
                "platform_user_id": platform_user_id,
                "username": attrs.username,
                "display_name": attrs.display_name,
                "avatar_url": attrs.avatar_url,
                "bio": attrs.bio,
                "platform_verified": attrs.platform_verified,
                "raw_data": to_jsonb_param(attrs.raw_data),
                "seen_at": seen_at,
            },
        )
        return _profile(row)

    async def get_profile(self, platform: str, platform_user_id: str) -> PlatformProfile | None:
        row = await self._fetch_one(
            f"""
            SELECT {PROFILE_COLUMNS}
            FROM platform_profiles
            WHERE platform = :platform AND platform_user_id = :platform_user_id
            """,
            {"platform": platform, "platform_user_id": platform_user_id},
        )
        return _profile(row) if row else None

    async def get_profile_by_id(self, profile_id: UUID, *, for_update: bool = False) -> PlatformProfile | None:
        lock = "FOR UPDATE" if for_update else ""
        row = await self._fetch_one(
            f"SELECT {PROFILE_COLUMNS} FROM platform_profiles WHERE id = :id {lock}",
            {"id": profile_id},
        )
        return _profile(row) if row else None

    async def get_linked_profiles(self, identity_id: UUID) -> list[PlatformProfile]:
        rows = await self._fetch_all(
            f"""
            SELECT {PROFILE_COLUMNS}
            FROM platform_profiles
            WHERE identity_id = :identity_id
            ORDER BY first_seen ASC, platform ASC
            """,
            {"identity_id": identity_id},
        )
        return [_profile(r) for r in rows]

    async def search_profiles(self, term: str, limit: int) -> list[PlatformProfile]:
        rows = await self._fetch_all(
            f"""
            SELECT {PROFILE_COLUMNS}
            FROM platform_profiles
            WHERE username ILIKE :pattern ESCAPE '\\'
               OR display_name ILIKE :pattern ESCAPE '\\'
            ORDER BY last_seen DESC
            LIMIT :limit
            """,
            {"pattern": f"%{_escape_like(term)}%", "limit": limit},
        )
        return [_profile(r) for r in rows]

    # -------------------------------------------------------------------------
    # Identities
    # -------------------------------------------------------------------------

    async def get_identity(self, identity_id: UUID, *, for_update: bool = False) -> Identity | None:
        lock = "FOR UPDATE" if for_update else ""
        row = await self._fetch_one(
            f"SELECT {IDENTITY_COLUMNS} FROM identities WHERE id = :id {lock}",
            {"id": identity_id},
        )
        return _identity(row) if row else None

    async def create_identity(self, seed: PlatformProfile, *, verified: bool = False) -> Identity:
        row = await self._fetch_one(
            f"""
            INSERT INTO identities (
                id, master_id, primary_platform, display_name, avatar_url,
                verified, confidence_score, first_seen, last_seen, metadata,
                created_at, updated_at
            ) VALUES (
                :id, :master_id, :primary_platform, :display_name, :avatar_url,
                :verified, :confidence, COALESCE(:first_seen, NOW()),
                COALESCE(:last_seen, NOW()), '{{}}'::jsonb, NOW(), NOW()
            )
            RETURNING {IDENTITY_COLUMNS}
            """,
            {
                "id": uuid4(),
                "master_id": uuid4(),
                "primary_platform": seed.platform,
                "display_name": seed.display_name or seed.username,
                "avatar_url": seed.avatar_url,
                "verified": verified,
                "confidence": DEFAULT_CONFIDENCE,
                "first_seen": seed.first_seen,
                "last_seen": seed.last_seen,
            },
        )
        return _identity(row)

    async def ensure_identity(self, profile: PlatformProfile) -> Identity:
        # The row lock serialises concurrent callers for the same profile; the
        # loser re-reads the committed identity_id instead of creating another.
        locked = await self.get_profile_by_id(profile.id, for_update=True)
        if locked is None:
            raise NotFoundError(
                message="Platform profile not found",
                code="identity.profile_not_found",
                meta={"profile_id": str(profile.id)},
            )
        if locked.identity_id is not None:
            identity = await self.get_identity(locked.identity_id)
            if identity is not None:
                return identity

        identity = await self.create_identity(locked)
        await self.assign_profile(locked.id, identity.id)
        logger.info(
            "Identity created for profile",
            identity_id=str(identity.id),
            platform=locked.platform,
        )
        return identity

    async def assign_profile(self, profile_id: UUID, identity_id: UUID) -> None:
        await self.session.execute(
            text(
                """
                UPDATE platform_profiles
                SET identity_id = :identity_id,
                    updated_at = NOW()
                WHERE id = :profile_id
                """
            ),
            {"identity_id": identity_id, "profile_id": profile_id},
        )

    async def update_identity(self, identity_id: UUID, **fields: Any) -> Identity:
        unknown = set(fields) - _IDENTITY_UPDATABLE
        if unknown:
            raise ValueError(f"Unsupported identity fields: {sorted(unknown)}")

        assignments = []
        params: dict[str, Any] = {"id": identity_id}
        for name, value in fields.items():
            if name == "metadata":
                assignments.append("metadata = CAST(:metadata AS JSONB)")
                params["metadata"] = to_jsonb_param(value)
            else:
                assignments.append(f"{name} = :{name}")
                params[name] = value
        assignments.append("updated_at = NOW()")

        row = await self._fetch_one(
            f"""
            UPDATE identities
            SET {", ".join(assignments)}
            WHERE id = :id
            RETURNING {IDENTITY_COLUMNS}
            """,
            params,
        )
        if row is None:
            raise NotFoundError(
                message="Identity not found",
                code="identity.not_found",
                meta={"identity_id": str(identity_id)},
            )
        return _identity(row)

    async def delete_identity(self, identity_id: UUID) -> None:
        await self.session.execute(
            text("DELETE FROM identities WHERE id = :id"),
            {"id": identity_id},
        )

    async def move_profiles(self, from_identity_id: UUID, to_identity_id: UUID) -> list[UUID]:
        rows = await self._fetch_all(
            """
            UPDATE platform_profiles
            SET identity_id = :to_id,
                updated_at = NOW()
            WHERE identity_id = :from_id
            RETURNING id
            """,
            {"from_id": from_identity_id, "to_id": to_identity_id},
        )
        return [r["id"] for r in rows]

    # -------------------------------------------------------------------------
    # Links
    # -------------------------------------------------------------------------

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
    ) -> IdentityLink:
        row = await self._fetch_one(
            f"""
            INSERT INTO identity_links (
                id, source_profile_id, target_profile_id, link_type, confidence,
                evidence, status, verified_by, verified_at, created_at, updated_at
            ) VALUES (
                :id, :source_id, :target_id, :link_type, :confidence,
                CAST(:evidence AS JSONB), :status, :verified_by, :verified_at,
                NOW(), NOW()
            )
            ON CONFLICT (
                (LEAST(source_profile_id, target_profile_id)),
                (GREATEST(source_profile_id, target_profile_id))
            ) DO UPDATE
            SET link_type = CASE
                    WHEN EXCLUDED.status = 'confirmed' THEN EXCLUDED.link_type
                    ELSE identity_links.link_type
                END,
                confidence = CASE
                    WHEN EXCLUDED.status = 'confirmed' THEN EXCLUDED.confidence
                    WHEN identity_links.status = 'pending'
                        THEN GREATEST(identity_links.confidence, EXCLUDED.confidence)
                    ELSE identity_links.confidence
                END,
                status = CASE
                    WHEN EXCLUDED.status = 'confirmed' THEN 'confirmed'
                    ELSE identity_links.status
                END,
                evidence = identity_links.evidence || EXCLUDED.evidence,
                verified_by = COALESCE(EXCLUDED.verified_by, identity_links.verified_by),
                verified_at = COALESCE(EXCLUDED.verified_at, identity_links.verified_at),
                updated_at = NOW()
            RETURNING {LINK_COLUMNS}
            """,
            {
                "id": uuid4(),
                "source_id": source_profile_id,
                "target_id": target_profile_id,
                "link_type": link_type.value,
                "confidence": float(confidence),
                "evidence": to_jsonb_param(evidence or {}),
                "status": status.value,
                "verified_by": verified_by,
                "verified_at": verified_at,
            },
        )
        return _link(row)

    async def list_links(self, profile_ids: list[UUID]) -> list[IdentityLink]:
        if not profile_ids:
            return []
        rows = await self._fetch_all(
            f"""
            SELECT {LINK_COLUMNS}
            FROM identity_links
            WHERE source_profile_id = ANY(CAST(:ids AS UUID[]))
               OR target_profile_id = ANY(CAST(:ids AS UUID[]))
            ORDER BY created_at ASC
            """,
            {"ids": list(profile_ids)},
        )
        return [_link(r) for r in rows]

    async def delete_links_for_profile(self, profile_id: UUID) -> int:
        result = await self.session.execute(
            text(
                """
                DELETE FROM identity_links
                WHERE source_profile_id = :profile_id
                   OR target_profile_id = :profile_id
                """
            ),
            {"profile_id": profile_id},
        )
        return int(result.rowcount or 0)

    # -------------------------------------------------------------------------
    # Confidence factors
    # -------------------------------------------------------------------------

    async def upsert_factor(
        self,
        identity_id: UUID,
        factor_type: FactorType,
        value: float,
        evidence: dict[str, Any],
        calculated_at: datetime,
    ) -> ConfidenceFactor:
        row = await self._fetch_one(
            """
            INSERT INTO confidence_factors (
                id, identity_id, factor_type, factor_value, evidence, calculated_at
            ) VALUES (
                :id, :identity_id, :factor_type, :value, CAST(:evidence AS JSONB), :calculated_at
            )
            ON CONFLICT (identity_id, factor_type) DO UPDATE
            SET factor_value = EXCLUDED.factor_value,
                evidence = EXCLUDED.evidence,
                calculated_at = EXCLUDED.calculated_at
            RETURNING identity_id, factor_type, factor_value, evidence, calculated_at
            """,
            {
                "id": uuid4(),
                "identity_id": identity_id,
                "factor_type": factor_type.value,
                "value": float(value),
                "evidence": to_jsonb_param(evidence or {}),
                "calculated_at": calculated_at,
            },
        )
        return _factor(row)

    async def list_factors(self, identity_id: UUID) -> list[ConfidenceFactor]:
        rows = await self._fetch_all(
            """
            SELECT identity_id, factor_type, factor_value, evidence, calculated_at
            FROM confidence_factors
            WHERE identity_id = :identity_id
            ORDER BY factor_type ASC
            """,
            {"identity_id": identity_id},
        )
        return [_factor(r) for r in rows]

    async def move_factors(self, from_identity_id: UUID, to_identity_id: UUID) -> int:
        result = await self.session.execute(
            text(
                """
                INSERT INTO confidence_factors (
                    id, identity_id, factor_type, factor_value, evidence, calculated_at
                )
                SELECT gen_random_uuid(), :to_id, factor_type, factor_value, evidence, calculated_at
                FROM confidence_factors
                WHERE identity_id = :from_id
                ON CONFLICT (identity_id, factor_type) DO UPDATE
                SET factor_value = EXCLUDED.factor_value,
                    evidence = EXCLUDED.evidence,
                    calculated_at = EXCLUDED.calculated_at
                WHERE EXCLUDED.calculated_at > confidence_factors.calculated_at
                """
            ),
            {"from_id": from_identity_id, "to_id": to_identity_id},
        )
        await self.session.execute(
            text("DELETE FROM confidence_factors WHERE identity_id = :from_id"),
            {"from_id": from_identity_id},
        )
        return int(result.rowcount or 0)

    async def recompute_confidence(self, identity_id: UUID) -> float:
        row = await self._fetch_one(
            """
            UPDATE identities
            SET confidence_score = COALESCE(
                    (SELECT AVG(factor_value) FROM confidence_factors WHERE identity_id = :id),
                    :default_confidence
                ),
                updated_at = NOW()
            WHERE id = :id
            RETURNING confidence_score
            """,
            {"id": identity_id, "default_confidence": DEFAULT_CONFIDENCE},
        )
        if row is None:
            raise NotFoundError(
                message="Identity not found",
                code="identity.not_found",
                meta={"identity_id": str(identity_id)},
            )
        return float(row["confidence_score"])

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    async def append_audit(
        self,
        identity_id: UUID | None,
        action: AuditAction,
        actor_profile_id: UUID | None,
        details: dict[str, Any],
    ) -> AuditLogEntry:
        row = await self._fetch_one(
            """
            INSERT INTO audit_log (
                id, identity_id, action, actor_profile_id, details, created_at
            ) VALUES (
                :id, :identity_id, :action, :actor_profile_id, CAST(:details AS JSONB), NOW()
            )
            RETURNING id, identity_id, action, actor_profile_id, details, created_at
            """,
            {
                "id": uuid4(),
                "identity_id": identity_id,
                "action": action.value,
                "actor_profile_id": actor_profile_id,
                "details": to_jsonb_param(details or {}),
            },
        )
        return _audit(row)

    async def list_audit(self, identity_id: UUID) -> list[AuditLogEntry]:
        rows = await self._fetch_all(
            """
            SELECT id, identity_id, action, actor_profile_id, details, created_at
            FROM audit_log
            WHERE identity_id = :identity_id
            ORDER BY created_at ASC, id ASC
            """,
            {"identity_id": identity_id},
        )
        return [_audit(r) for r in rows]

    # -------------------------------------------------------------------------
    # Link requests
    # -------------------------------------------------------------------------

    async def create_link_request(
        self,
        requester_profile_id: UUID,
        target_platform: str,
        target_identifier: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> LinkRequest | None:
        row = await self._fetch_one(
            f"""
            INSERT INTO link_requests (
                id, requester_profile_id, target_platform, target_identifier,
                verification_code, status, created_at, expires_at
            ) VALUES (
                :id, :requester_profile_id, :target_platform, :target_identifier,
                :code, 'pending', :created_at, :expires_at
            )
            ON CONFLICT (target_platform, verification_code) WHERE status = 'pending'
            DO NOTHING
            RETURNING {LINK_REQUEST_COLUMNS}
            """,
            {
                "id": uuid4(),
                "requester_profile_id": requester_profile_id,
                "target_platform": target_platform,
                "target_identifier": target_identifier,
                "code": code,
                "created_at": created_at,
                "expires_at": expires_at,
            },
        )
        return LinkRequest.model_validate(dict(row)) if row else None

    async def find_link_request(
        self,
        target_platform: str,
        code: str,
        *,
        for_update: bool = False,
    ) -> LinkRequest | None:
        lock = "FOR UPDATE" if for_update else ""
        row = await self._fetch_one(
            f"""
            SELECT {LINK_REQUEST_COLUMNS}
            FROM link_requests
            WHERE target_platform = :target_platform
              AND verification_code = :code
            ORDER BY (status = 'pending') DESC, created_at DESC
            LIMIT 1
            {lock}
            """,
            {"target_platform": target_platform, "code": code},
        )
        return LinkRequest.model_validate(dict(row)) if row else None

    async def transition_link_request(
        self,
        request_id: UUID,
        from_status: LinkRequestStatus,
        to_status: LinkRequestStatus,
        at: datetime,
    ) -> bool:
        result = await self.session.execute(
            text(
                """
                UPDATE link_requests
                SET status = :to_status,
                    verified_at = COALESCE(:verified_at, verified_at)
                WHERE id = :id
                  AND status = :from_status
                """
            ),
            {
                "id": request_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "verified_at": at if to_status == LinkRequestStatus.VERIFIED else None,
            },
        )
        return (result.rowcount or 0) == 1

    async def expire_link_requests(self, now: datetime, limit: int) -> int:
        result = await self.session.execute(
            text(
                """
                UPDATE link_requests
                SET status = 'expired'
                WHERE id IN (
                    SELECT id
                    FROM link_requests
                    WHERE status = 'pending'
                      AND expires_at < :now
                    ORDER BY expires_at ASC
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                """
            ),
            {"now": now, "limit": limit},
        )
        return int(result.rowcount or 0)

    async def purge_link_requests(self, older_than: datetime, limit: int) -> int:
        result = await self.session.execute(
            text(
                """
                DELETE FROM link_requests
                WHERE id IN (
                    SELECT id
                    FROM link_requests
                    WHERE status <> 'pending'
                      AND created_at < :older_than
                    ORDER BY created_at ASC
                    LIMIT :limit
                )
                """
            ),
            {"older_than": older_than, "limit": limit},
        )
        return int(result.rowcount or 0)

    async def count_overdue_link_requests(self, now: datetime) -> int:
        result = await self.session.execute(
            text(
                """
                SELECT COUNT(*)
                FROM link_requests
                WHERE status = 'pending'
                  AND expires_at < :now
                """
            ),
            {"now": now},
        )
        return int(result.scalar() or 0)

    async def count_purgeable_link_requests(self, older_than: datetime) -> int:
        result = await self.session.execute(
            text(
                """
                SELECT COUNT(*)
                FROM link_requests
                WHERE status <> 'pending'
                  AND created_at < :older_than
                """
            ),
            {"older_than": older_than},
        )
        return int(result.scalar() or 0)

    # -------------------------------------------------------------------------
    # Evidence inputs
    # -------------------------------------------------------------------------

    async def record_activity(self, profile_id: UUID, bucket: int, seen_at: datetime) -> None:
        # Single-statement increment: concurrent messages never lose a count.
        await self.session.execute(
            text(
                """
                UPDATE platform_profiles
                SET message_count = message_count + 1,
                    activity_histogram = jsonb_set(
                        activity_histogram,
                        ARRAY[CAST(:bucket AS TEXT)],
                        to_jsonb(COALESCE((activity_histogram ->> CAST(:bucket AS TEXT))::int, 0) + 1),
                        true
                    ),
                    last_seen = GREATEST(last_seen, :seen_at),
                    updated_at = NOW()
                WHERE id = :profile_id
                """
            ),
            {"profile_id": profile_id, "bucket": str(bucket), "seen_at": seen_at},
        )

    async def upsert_room(self, platform: str, room: RoomRef) -> Room:
        row = await self._fetch_one(
            """
            INSERT INTO rooms (
                id, room_cluster_id, platform, platform_room_id, room_name,
                room_type, created_at, updated_at
            ) VALUES (
                :id, :cluster_id, :platform, :platform_room_id, :room_name,
                :room_type, NOW(), NOW()
            )
            ON CONFLICT (platform, platform_room_id) DO UPDATE
            SET room_name = COALESCE(EXCLUDED.room_name, rooms.room_name),
                room_type = COALESCE(EXCLUDED.room_type, rooms.room_type),
                updated_at = NOW()
            RETURNING id, room_cluster_id, platform, platform_room_id, room_name, room_type
            """,
            {
                "id": uuid4(),
                "cluster_id": uuid4(),
                "platform": platform,
                "platform_room_id": room.platform_room_id,
                "room_name": room.room_name,
                "room_type": room.room_type,
            },
        )
        return Room.model_validate(dict(row))

    async def record_room_participation(self, room_id: UUID, profile_id: UUID, seen_at: datetime) -> None:
        await self.session.execute(
            text(
                """
                INSERT INTO room_participants (
                    id, room_id, profile_id, role, message_count, joined_at, last_active
                ) VALUES (
                    :id, :room_id, :profile_id, 'member', 1, :seen_at, :seen_at
                )
                ON CONFLICT (room_id, profile_id) DO UPDATE
                SET message_count = room_participants.message_count + 1,
                    last_active = GREATEST(room_participants.last_active, EXCLUDED.last_active)
                """
            ),
            {"id": uuid4(), "room_id": room_id, "profile_id": profile_id, "seen_at": seen_at},
        )

    async def set_room_cluster(self, room_ids: list[UUID], cluster_id: UUID) -> int:
        result = await self.session.execute(
            text(
                """
                UPDATE rooms
                SET room_cluster_id = :cluster_id,
                    updated_at = NOW()
                WHERE id = ANY(CAST(:ids AS UUID[]))
                """
            ),
            {"cluster_id": cluster_id, "ids": list(room_ids)},
        )
        return int(result.rowcount or 0)

    # -------------------------------------------------------------------------
    # Matching queries
    # -------------------------------------------------------------------------

    async def find_username_candidates(
        self,
        username: str,
        exclude_platform: str,
        trigram_floor: float,
        limit: int,
    ) -> list[PlatformProfile]:
        # pg_trgm narrows the scan; exact edit-distance scoring happens in Python.
        await self.session.execute(
            text("SELECT set_config('pg_trgm.similarity_threshold', :floor, true)"),
            {"floor": str(trigram_floor)},
        )
        rows = await self._fetch_all(
            f"""
            SELECT {PROFILE_COLUMNS}
            FROM platform_profiles
            WHERE platform <> :platform
              AND username IS NOT NULL
              AND (
                    lower(username) % lower(:username)
                 OR lower(username) LIKE '%' || :pattern || '%' ESCAPE '\\'
                 OR strpos(lower(:username), lower(username)) > 0
              )
            ORDER BY similarity(lower(username), lower(:username)) DESC, id ASC
            LIMIT :limit
            """,
            {
                "platform": exclude_platform,
                "username": username,
                "pattern": _escape_like(username.lower()),
                "limit": limit,
            },
        )
        return [_profile(r) for r in rows]

    async def find_activity_candidates(
        self,
        exclude_platform: str,
        min_messages: int,
        limit: int,
    ) -> list[PlatformProfile]:
        rows = await self._fetch_all(
            f"""
            SELECT {PROFILE_COLUMNS}
            FROM platform_profiles
            WHERE platform <> :platform
              AND message_count >= :min_messages
            ORDER BY last_seen DESC
            LIMIT :limit
            """,
            {"platform": exclude_platform, "min_messages": min_messages, "limit": limit},
        )
        return [_profile(r) for r in rows]

    async def count_shared_rooms(
        self,
        profile_id: UUID,
        exclude_platform: str,
        min_shared: int,
    ) -> list[tuple[PlatformProfile, int]]:
        columns = ", ".join(f"pp.{c.strip()}" for c in PROFILE_COLUMNS.split(","))
        rows = await self._fetch_all(
            f"""
            SELECT {columns},
                   COUNT(DISTINCT their_room.room_cluster_id) AS shared_rooms
            FROM room_participants mine
            JOIN rooms my_room ON my_room.id = mine.room_id
            JOIN rooms their_room ON their_room.room_cluster_id = my_room.room_cluster_id
            JOIN room_participants theirs ON theirs.room_id = their_room.id
            JOIN platform_profiles pp ON pp.id = theirs.profile_id
            WHERE mine.profile_id = :profile_id
              AND pp.platform <> :platform
            GROUP BY pp.id
            HAVING COUNT(DISTINCT their_room.room_cluster_id) >= :min_shared
            ORDER BY shared_rooms DESC, pp.id ASC
            """,
            {"profile_id": profile_id, "platform": exclude_platform, "min_shared": min_shared},
        )
        results = []
        for row in rows:
            data = dict(row)
            shared = int(data.pop("shared_rooms"))
            results.append((_profile(data), shared))
        return results


# lock_not_available, deadlock_detected, serialization_failure, query_canceled
CONTENTION_SQLSTATES = frozenset({"55P03", "40P01", "40001", "57014"})


def _sqlstate(exc: DBAPIError) -> str | None:
    # The asyncpg adapter copies sqlstate onto its wrapper; the driver error is the cause.
    for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
        sqlstate = getattr(candidate, "sqlstate", None)
        if sqlstate:
            return str(sqlstate)
    return None


@asynccontextmanager
async def postgres_transaction() -> AsyncGenerator[PostgresIdentityStore, None]:
    """Open one database transaction and expose it as an IdentityStore.

    Driver-level failures surface as typed errors; the session has already
    rolled back by the time they propagate.
    """
    try:
        async with get_db_session() as session:
            yield PostgresIdentityStore(session)
    except IntegrityError as exc:
        logger.error(
            "Identity graph integrity violation",
            error=str(exc.orig) if exc.orig is not None else str(exc),
        )
        raise IntegrityViolationError(
            meta={"constraint": getattr(getattr(exc.orig, "__cause__", None), "constraint_name", None)},
        ) from exc
    except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as exc:
        logger.warning("Identity store unavailable", error=str(exc))
        raise StorageUnavailableError() from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            logger.warning("Identity store connection invalidated", error=str(exc))
            raise StorageUnavailableError() from exc
        sqlstate = _sqlstate(exc)
        if sqlstate in CONTENTION_SQLSTATES:
            logger.warning("Identity store lock contention", sqlstate=sqlstate, error=str(exc))
            raise StorageUnavailableError(
                message="Identity store busy, retry the request",
                code="storage.contention",
                meta={"sqlstate": sqlstate},
            ) from exc
        raise
