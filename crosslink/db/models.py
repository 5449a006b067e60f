"""
Identity Graph Database Models

SQLAlchemy models for identities, platform profiles, identity links,
confidence factors, the audit log, link requests and room participation.
Runtime queries are explicit SQL (see crosslink.identity.postgres_store);
these models are the schema of record for Alembic.
"""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class IdentityRecord(Base):
    """A hypothesized real-world person uniting platform profiles."""

    __tablename__ = "identities"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    master_id = Column(UUID(as_uuid=True), nullable=False, unique=True, default=uuid4)

    primary_platform = Column(String(50), nullable=True)
    display_name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    verified = Column(Boolean, nullable=False, default=False)
    confidence_score = Column(Float, nullable=False, default=50.0)  # 0-100

    first_seen = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    metadata_ = Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb"))

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    profiles = relationship("PlatformProfileRecord", back_populates="identity")
    factors = relationship("ConfidenceFactorRecord", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Identity {self.id} ({self.confidence_score:.0f})>"


class PlatformProfileRecord(Base):
    """A user account as seen on one platform."""

    __tablename__ = "platform_profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    identity_id = Column(
        UUID(as_uuid=True),
        ForeignKey("identities.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    platform = Column(String(50), nullable=False)  # telegram, discord, x, ...
    platform_user_id = Column(String(255), nullable=False)
    username = Column(Text, nullable=True)
    display_name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    platform_verified = Column(Boolean, nullable=False, default=False)
    raw_data = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))

    message_count = Column(Integer, nullable=False, default=0)
    activity_histogram = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    first_seen = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    identity = relationship("IdentityRecord", back_populates="profiles")

    # The pg_trgm GIN index on lower(username) is created by migration 001.
    __table_args__ = (
        UniqueConstraint("platform", "platform_user_id", name="uq_platform_profiles_platform_user"),
    )

    def __repr__(self) -> str:
        return f"<PlatformProfile {self.platform}:{self.platform_user_id}>"


class IdentityLinkRecord(Base):
    """Evidence that two platform profiles belong to the same person."""

    __tablename__ = "identity_links"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    source_profile_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_profile_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    link_type = Column(String(30), nullable=False)  # manual, auto_username, auto_temporal, auto_social
    confidence = Column(Float, nullable=False, default=50.0)
    evidence = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    status = Column(String(20), nullable=False, default="pending", index=True)
    verified_by = Column(Text, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("source_profile_id <> target_profile_id", name="ck_identity_links_distinct"),
    )


# At most one edge per unordered profile pair.
Index(
    "uq_identity_links_pair",
    func.least(IdentityLinkRecord.source_profile_id, IdentityLinkRecord.target_profile_id),
    func.greatest(IdentityLinkRecord.source_profile_id, IdentityLinkRecord.target_profile_id),
    unique=True,
)


class ConfidenceFactorRecord(Base):
    """One named signal contributing to an identity's confidence."""

    __tablename__ = "confidence_factors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    identity_id = Column(
        UUID(as_uuid=True),
        ForeignKey("identities.id", ondelete="CASCADE"),
        nullable=False,
    )
    factor_type = Column(String(50), nullable=False)
    factor_value = Column(Float, nullable=False)
    evidence = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    calculated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("identity_id", "factor_type", name="uq_confidence_factors_identity_type"),
    )


class AuditLogRecord(Base):
    """Append-only history of identity-affecting actions.

    identity_id / actor_profile_id carry no foreign keys so rows stay intact
    after the referenced identity is merged away.
    """

    __tablename__ = "audit_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    identity_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    action = Column(String(30), nullable=False)
    actor_profile_id = Column(UUID(as_uuid=True), nullable=True)
    details = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class LinkRequestRecord(Base):
    """User-initiated verification attempt."""

    __tablename__ = "link_requests"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    requester_profile_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_platform = Column(String(50), nullable=False)
    target_identifier = Column(Text, nullable=False)
    verification_code = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_link_requests_pending_code",
            "target_platform",
            "verification_code",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )


class RoomRecord(Base):
    """A chat room on one platform; rooms sharing a cluster are one community."""

    __tablename__ = "rooms"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    room_cluster_id = Column(UUID(as_uuid=True), nullable=False, default=uuid4, index=True)
    platform = Column(String(50), nullable=False)
    platform_room_id = Column(String(255), nullable=False)
    room_name = Column(Text, nullable=True)
    room_type = Column(String(20), nullable=True)  # channel, group, dm, thread
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("platform", "platform_room_id", name="uq_rooms_platform_room"),
    )


class RoomParticipantRecord(Base):
    __tablename__ = "room_participants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    room_id = Column(UUID(as_uuid=True), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    profile_id = Column(
        UUID(as_uuid=True),
        ForeignKey("platform_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(String(20), nullable=False, default="member")
    message_count = Column(Integer, nullable=False, default=0)
    joined_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_active = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("room_id", "profile_id", name="uq_room_participants_room_profile"),
    )
