from __future__ import annotations

from datetime import timedelta

import pytest

from crosslink.identity.types import LinkRequestStatus
from crosslink.jobs.link_request_reaper import LinkRequestReaperJob


@pytest.fixture
def reaper(graph, settings, fake_clock):
    return LinkRequestReaperJob(transaction=graph.transaction, settings=settings, clock=fake_clock.now)


def _statuses(graph):
    return sorted(r.status.value for r in graph.state.link_requests.values())


@pytest.mark.asyncio
async def test_reaper_expires_overdue_pending_requests(service, reaper, graph, fake_clock):
    await service.request_link("telegram", "t-1", "discord", "one")
    fake_clock.advance(timedelta(minutes=10))
    await service.request_link("telegram", "t-2", "discord", "two")
    fake_clock.advance(timedelta(minutes=6))

    stats = await reaper.run()

    assert stats["expired"] == 1
    assert stats["purged"] == 0
    assert stats["dry_run"] is False
    assert _statuses(graph) == ["expired", "pending"]


@pytest.mark.asyncio
async def test_reaper_purges_settled_requests_past_retention(service, reaper, graph, fake_clock, settings):
    await service.request_link("telegram", "t-1", "discord", "one")
    fake_clock.advance(timedelta(minutes=20))
    await reaper.run()

    fake_clock.advance(timedelta(days=settings.link_request_retention_days))
    stats = await reaper.run()

    assert stats["purged"] == 1
    assert graph.state.link_requests == {}


@pytest.mark.asyncio
async def test_reaper_never_purges_pending_requests(service, reaper, graph, fake_clock, settings):
    await service.request_link("telegram", "t-1", "discord", "one")
    graph.state.link_requests.update(
        {
            rid: request.model_copy(update={"expires_at": request.expires_at + timedelta(days=365)})
            for rid, request in graph.state.link_requests.items()
        }
    )
    fake_clock.advance(timedelta(days=settings.link_request_retention_days + 1))

    stats = await reaper.run()

    assert stats["expired"] == 0
    assert stats["purged"] == 0
    assert _statuses(graph) == [LinkRequestStatus.PENDING.value]


@pytest.mark.asyncio
async def test_reaper_dry_run_counts_without_writing(service, reaper, graph, fake_clock):
    for i in range(3):
        await service.request_link("telegram", f"t-{i}", "discord", f"user{i}")
    fake_clock.advance(timedelta(hours=1))

    stats = await reaper.run(dry_run=True, limit=2)

    assert stats["expired"] == 2
    assert stats["dry_run"] is True
    assert _statuses(graph) == ["pending"] * 3


@pytest.mark.asyncio
async def test_reaper_respects_batch_limit(service, reaper, graph, fake_clock):
    for i in range(3):
        await service.request_link("telegram", f"t-{i}", "discord", f"user{i}")
    fake_clock.advance(timedelta(hours=1))

    first = await reaper.run(limit=2)
    second = await reaper.run(limit=2)

    assert (first["expired"], second["expired"]) == (2, 1)
    assert _statuses(graph) == ["expired"] * 3
