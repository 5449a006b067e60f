"""Create identity graph tables.

Revision ID: 001_identity_graph
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_identity_graph"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    op.create_table(
        "identities",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("master_id", sa.UUID(as_uuid=True), nullable=False, unique=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("primary_platform", sa.String(50), nullable=True),
        sa.Column("display_name", sa.Text, nullable=True),
        sa.Column("avatar_url", sa.Text, nullable=True),
        sa.Column("verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("confidence_score", sa.Float, nullable=False, server_default=sa.text("50.0")),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.CheckConstraint("confidence_score >= 0 AND confidence_score <= 100", name="ck_identities_confidence"),
    )

    op.create_table(
        "platform_profiles",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "identity_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("identities.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("platform_user_id", sa.String(255), nullable=False),
        sa.Column("username", sa.Text, nullable=True),
        sa.Column("display_name", sa.Text, nullable=True),
        sa.Column("avatar_url", sa.Text, nullable=True),
        sa.Column("bio", sa.Text, nullable=True),
        sa.Column("platform_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("raw_data", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("message_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("activity_histogram", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_timestamps(),
        sa.UniqueConstraint("platform", "platform_user_id", name="uq_platform_profiles_platform_user"),
    )
    op.create_index("ix_platform_profiles_identity_id", "platform_profiles", ["identity_id"])
    op.execute(
        "CREATE INDEX ix_platform_profiles_username_trgm "
        "ON platform_profiles USING gin (lower(username) gin_trgm_ops)"
    )

    op.create_table(
        "identity_links",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "source_profile_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("platform_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "target_profile_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("platform_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("link_type", sa.String(30), nullable=False),
        sa.Column("confidence", sa.Float, nullable=False, server_default=sa.text("50.0")),
        sa.Column("evidence", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("verified_by", sa.Text, nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("source_profile_id <> target_profile_id", name="ck_identity_links_distinct"),
        sa.CheckConstraint(
            "link_type IN ('manual', 'auto_username', 'auto_temporal', 'auto_social')",
            name="ck_identity_links_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'rejected')",
            name="ck_identity_links_status",
        ),
    )
    op.create_index("ix_identity_links_source_profile_id", "identity_links", ["source_profile_id"])
    op.create_index("ix_identity_links_target_profile_id", "identity_links", ["target_profile_id"])
    op.create_index("ix_identity_links_status", "identity_links", ["status"])
    op.execute(
        "CREATE UNIQUE INDEX uq_identity_links_pair ON identity_links "
        "((LEAST(source_profile_id, target_profile_id)), (GREATEST(source_profile_id, target_profile_id)))"
    )

    op.create_table(
        "confidence_factors",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "identity_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("identities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("factor_type", sa.String(50), nullable=False),
        sa.Column("factor_value", sa.Float, nullable=False),
        sa.Column("evidence", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("identity_id", "factor_type", name="uq_confidence_factors_identity_type"),
    )

    # No foreign keys: history must survive merges that delete identities.
    op.create_table(
        "audit_log",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("identity_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("actor_profile_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("details", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_identity_id", "audit_log", ["identity_id"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])

    op.create_table(
        "link_requests",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "requester_profile_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("platform_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("target_platform", sa.String(50), nullable=False),
        sa.Column("target_identifier", sa.Text, nullable=False),
        sa.Column("verification_code", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'verified', 'expired', 'rejected')",
            name="ck_link_requests_status",
        ),
    )
    op.create_index("ix_link_requests_expires_at", "link_requests", ["expires_at"])
    op.create_index(
        "uq_link_requests_pending_code",
        "link_requests",
        ["target_platform", "verification_code"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "rooms",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("room_cluster_id", sa.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("platform_room_id", sa.String(255), nullable=False),
        sa.Column("room_name", sa.Text, nullable=True),
        sa.Column("room_type", sa.String(20), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("platform", "platform_room_id", name="uq_rooms_platform_room"),
    )
    op.create_index("ix_rooms_room_cluster_id", "rooms", ["room_cluster_id"])

    op.create_table(
        "room_participants",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("room_id", sa.UUID(as_uuid=True), sa.ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "profile_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("platform_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(20), nullable=False, server_default=sa.text("'member'")),
        sa.Column("message_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("room_id", "profile_id", name="uq_room_participants_room_profile"),
    )
    op.create_index("ix_room_participants_room_id", "room_participants", ["room_id"])
    op.create_index("ix_room_participants_profile_id", "room_participants", ["profile_id"])


def downgrade() -> None:
    op.drop_table("room_participants")
    op.drop_table("rooms")
    op.drop_table("link_requests")
    op.drop_table("audit_log")
    op.drop_table("confidence_factors")
    op.drop_table("identity_links")
    op.drop_table("platform_profiles")
    op.drop_table("identities")
