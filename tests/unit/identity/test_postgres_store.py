from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from crosslink.identity.postgres_store import PostgresIdentityStore, postgres_transaction
from crosslink.identity.types import (
    AuditAction,
    LinkRequestStatus,
    LinkStatus,
    LinkType,
    ProfileAttributes,
)
from crosslink.kernel.errors import IntegrityViolationError, StorageUnavailableError
from crosslink.kernel.time import UTC

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


def _result(rows=None, rowcount=None, scalar=None):
    result = MagicMock()
    rows = rows or []
    result.mappings.return_value.first.return_value = rows[0] if rows else None
    result.mappings.return_value.all.return_value = rows
    result.rowcount = rowcount
    result.scalar.return_value = scalar
    return result


def _session(*results):
    session = AsyncMock()
    session.execute.side_effect = list(results)
    return session


def _sql(session, call_index=0) -> str:
    return " ".join(str(session.execute.call_args_list[call_index].args[0]).split())


def _params(session, call_index=0) -> dict:
    return session.execute.call_args_list[call_index].args[1]


def _profile_row(**overrides):
    row = {
        "id": uuid4(),
        "identity_id": None,
        "platform": "discord",
        "platform_user_id": "u123",
        "username": "newuser",
        "display_name": None,
        "avatar_url": None,
        "bio": None,
        "platform_verified": False,
        "raw_data": '{"locale":"en"}',
        "message_count": 3,
        "activity_histogram": {"9": 2, "10": 1},
        "first_seen": NOW,
        "last_seen": NOW,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_upsert_profile_keeps_existing_values_for_missing_attributes():
    session = _session(_result([_profile_row()]))
    store = PostgresIdentityStore(session)

    profile = await store.upsert_profile("discord", "u123", ProfileAttributes(username="newuser"), NOW)

    sql = _sql(session)
    assert "ON CONFLICT (platform, platform_user_id) DO UPDATE" in sql
    assert "COALESCE(EXCLUDED.username, platform_profiles.username)" in sql
    assert "GREATEST(platform_profiles.last_seen, EXCLUDED.last_seen)" in sql
    params = _params(session)
    assert params["username"] == "newuser"
    assert params["display_name"] is None
    assert params["raw_data"] is None
    assert profile.raw_data == {"locale": "en"}
    assert profile.activity_histogram == {"9": 2, "10": 1}


@pytest.mark.asyncio
async def test_record_link_upserts_on_unordered_pair():
    a, b = uuid4(), uuid4()
    row = {
        "id": uuid4(),
        "source_profile_id": a,
        "target_profile_id": b,
        "link_type": "manual",
        "confidence": 100.0,
        "evidence": {"method": "verification_code"},
        "status": "confirmed",
        "verified_by": "u123",
        "verified_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    session = _session(_result([row]))
    store = PostgresIdentityStore(session)

    link = await store.record_link(
        a, b, LinkType.MANUAL, 100, {"method": "verification_code"}, status=LinkStatus.CONFIRMED, verified_by="u123"
    )

    sql = _sql(session)
    assert "LEAST(source_profile_id, target_profile_id)" in sql
    assert "GREATEST(source_profile_id, target_profile_id)" in sql
    assert "GREATEST(identity_links.confidence, EXCLUDED.confidence)" in sql
    assert _params(session)["evidence"] == '{"method":"verification_code"}'
    assert _params(session)["status"] == "confirmed"
    assert link.status == LinkStatus.CONFIRMED
    assert link.link_type == LinkType.MANUAL


@pytest.mark.asyncio
async def test_create_link_request_returns_none_on_pending_code_clash():
    session = _session(_result([]))
    store = PostgresIdentityStore(session)

    request = await store.create_link_request(uuid4(), "discord", "newuser", "ABC123", NOW, NOW + timedelta(minutes=15))

    assert request is None
    assert "WHERE status = 'pending' DO NOTHING" in _sql(session)


@pytest.mark.asyncio
async def test_find_link_request_locks_row_when_requested():
    session = _session(_result([]))
    store = PostgresIdentityStore(session)

    await store.find_link_request("discord", "ABC123", for_update=True)

    assert _sql(session).endswith("LIMIT 1 FOR UPDATE")


@pytest.mark.asyncio
@pytest.mark.parametrize("rowcount,expected", [(1, True), (0, False)])
async def test_transition_link_request_is_conditional(rowcount, expected):
    session = _session(_result(rowcount=rowcount))
    store = PostgresIdentityStore(session)

    moved = await store.transition_link_request(
        uuid4(), LinkRequestStatus.PENDING, LinkRequestStatus.VERIFIED, NOW
    )

    assert moved is expected
    assert "AND status = :from_status" in _sql(session)
    assert _params(session)["from_status"] == "pending"
    assert _params(session)["verified_at"] == NOW


@pytest.mark.asyncio
async def test_expire_link_requests_skips_locked_rows():
    session = _session(_result(rowcount=4))
    store = PostgresIdentityStore(session)

    expired = await store.expire_link_requests(NOW, limit=10)

    assert expired == 4
    assert "FOR UPDATE SKIP LOCKED" in _sql(session)
    assert _params(session) == {"now": NOW, "limit": 10}


@pytest.mark.asyncio
async def test_move_factors_keeps_fresher_row_and_deletes_source():
    session = _session(_result(rowcount=2), _result(rowcount=3))
    store = PostgresIdentityStore(session)
    keep, away = uuid4(), uuid4()

    moved = await store.move_factors(away, keep)

    assert moved == 2
    assert "WHERE EXCLUDED.calculated_at > confidence_factors.calculated_at" in _sql(session, 0)
    assert _sql(session, 1) == "DELETE FROM confidence_factors WHERE identity_id = :from_id"
    assert _params(session, 1) == {"from_id": away}


@pytest.mark.asyncio
async def test_update_identity_rejects_unknown_fields():
    store = PostgresIdentityStore(_session())

    with pytest.raises(ValueError):
        await store.update_identity(uuid4(), master_id=uuid4())


@pytest.mark.asyncio
async def test_append_audit_serializes_details():
    identity_id = uuid4()
    row = {
        "id": uuid4(),
        "identity_id": identity_id,
        "action": "merge",
        "actor_profile_id": None,
        "details": {"merged_from": "x"},
        "created_at": NOW,
    }
    session = _session(_result([row]))
    store = PostgresIdentityStore(session)

    entry = await store.append_audit(identity_id, AuditAction.MERGE, None, {"merged_from": "x"})

    assert _params(session)["action"] == "merge"
    assert _params(session)["details"] == '{"merged_from":"x"}'
    assert entry.action == AuditAction.MERGE


@pytest.mark.asyncio
async def test_username_candidates_set_trigram_floor_and_escape_pattern():
    session = _session(_result(), _result([_profile_row(username="crypto_king")]))
    store = PostgresIdentityStore(session)

    candidates = await store.find_username_candidates("Crypto_King", "telegram", 0.3, 50)

    assert "set_config('pg_trgm.similarity_threshold'" in _sql(session, 0)
    assert _params(session, 0) == {"floor": "0.3"}
    params = _params(session, 1)
    assert params["pattern"] == "crypto\\_king"
    assert params["platform"] == "telegram"
    assert [c.username for c in candidates] == ["crypto_king"]


@pytest.mark.asyncio
async def test_count_shared_rooms_returns_profiles_with_counts():
    session = _session(_result([{**_profile_row(platform="x"), "shared_rooms": 4}]))
    store = PostgresIdentityStore(session)

    results = await store.count_shared_rooms(uuid4(), "telegram", 3)

    assert "COUNT(DISTINCT their_room.room_cluster_id) >= :min_shared" in _sql(session)
    assert len(results) == 1
    profile, shared = results[0]
    assert profile.platform == "x"
    assert shared == 4


class _DriverError(Exception):
    def __init__(self, message: str, sqlstate: str):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestPostgresTransaction:
    @staticmethod
    def _patched_session(session):
        @asynccontextmanager
        async def fake_get_db_session():
            yield session

        return patch("crosslink.identity.postgres_store.get_db_session", fake_get_db_session)

    @pytest.mark.asyncio
    async def test_yields_store_bound_to_session(self):
        session = AsyncMock()
        with self._patched_session(session):
            async with postgres_transaction() as store:
                assert isinstance(store, PostgresIdentityStore)
                assert store.session is session

    @pytest.mark.asyncio
    async def test_integrity_error_becomes_integrity_violation(self):
        with self._patched_session(AsyncMock()):
            with pytest.raises(IntegrityViolationError):
                async with postgres_transaction():
                    raise IntegrityError("INSERT", {}, Exception("duplicate key"))

    @pytest.mark.asyncio
    async def test_connection_failures_become_storage_unavailable(self):
        with self._patched_session(AsyncMock()):
            with pytest.raises(StorageUnavailableError):
                async with postgres_transaction():
                    raise OperationalError("SELECT 1", {}, OSError("connection refused"))

    @pytest.mark.asyncio
    async def test_invalidated_connection_becomes_storage_unavailable(self):
        with self._patched_session(AsyncMock()):
            with pytest.raises(StorageUnavailableError):
                async with postgres_transaction():
                    raise DBAPIError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "sqlstate,message",
        [
            ("55P03", "canceling statement due to lock timeout"),
            ("40P01", "deadlock detected"),
            ("40001", "could not serialize access"),
            ("57014", "canceling statement due to statement timeout"),
        ],
    )
    async def test_lock_contention_becomes_retryable_storage_error(self, sqlstate, message):
        with self._patched_session(AsyncMock()):
            with pytest.raises(StorageUnavailableError) as exc_info:
                async with postgres_transaction():
                    raise DBAPIError("UPDATE identities", {}, _DriverError(message, sqlstate))

        assert exc_info.value.code == "storage.contention"
        assert exc_info.value.meta == {"sqlstate": sqlstate}
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_contention_sqlstate_is_read_from_driver_cause(self):
        wrapper = Exception("deadlock detected")
        wrapper.__cause__ = _DriverError("deadlock detected", "40P01")

        with self._patched_session(AsyncMock()):
            with pytest.raises(StorageUnavailableError):
                async with postgres_transaction():
                    raise DBAPIError("SELECT ... FOR UPDATE", {}, wrapper)

    @pytest.mark.asyncio
    async def test_other_driver_errors_are_not_masked(self):
        with self._patched_session(AsyncMock()):
            with pytest.raises(DBAPIError):
                async with postgres_transaction():
                    raise DBAPIError("SELECT 1", {}, _DriverError("invalid input syntax", "22P02"))

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self):
        with self._patched_session(AsyncMock()):
            with pytest.raises(LookupError):
                async with postgres_transaction():
                    raise LookupError("not a storage failure")
