"""
Matching & Confidence Engine

Proposes profiles on other platforms that likely belong to the same person.

Signals are evaluated in a fixed order:
1. Username similarity - introduces candidates at their similarity score
2. Temporal correlation - hour-of-week activity overlap
3. Social overlap - shared room clusters

A later signal either introduces a new candidate at its own score or adds a
fixed corroboration bonus to a candidate an earlier signal already found.
The discovering signal names the link type.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from crosslink.config import Settings, get_settings
from crosslink.identity.similarity import activity_correlation, username_similarity
from crosslink.identity.store import IdentityStore
from crosslink.identity.types import (
    AnalysisResult,
    FactorType,
    LinkStatus,
    LinkType,
    MatchCandidate,
    PlatformProfile,
)
from crosslink.kernel.time import Clock, utc_now

logger = structlog.get_logger()

_LINK_TYPE_BY_SIGNAL = {
    FactorType.USERNAME_SIMILARITY: LinkType.AUTO_USERNAME,
    FactorType.TEMPORAL_CORRELATION: LinkType.AUTO_TEMPORAL,
    FactorType.SOCIAL_GRAPH: LinkType.AUTO_SOCIAL,
}

MAX_CONFIDENCE = 100.0


class MatchingEngine:
    """Scores candidate profiles and records the outcome on the identity graph."""

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or get_settings()
        self._clock = clock

    async def find_candidates(
        self,
        store: IdentityStore,
        profile: PlatformProfile,
    ) -> tuple[list[MatchCandidate], dict[FactorType, float]]:
        """Run every signal for `profile`.

        Returns candidates sorted by confidence (descending, ties by profile id)
        and the best raw score each signal produced.
        """
        s = self.settings
        candidates: dict[UUID, MatchCandidate] = {}
        best: dict[FactorType, float] = {}

        def offer(
            other: PlatformProfile,
            signal: FactorType,
            score: float,
            bonus: float,
            evidence: dict[str, Any],
        ) -> None:
            if other.id == profile.id:
                return
            best[signal] = max(best.get(signal, 0.0), score)

            existing = candidates.get(other.id)
            if existing is None:
                candidates[other.id] = MatchCandidate(
                    profile=other,
                    confidence=min(MAX_CONFIDENCE, score),
                    link_type=_LINK_TYPE_BY_SIGNAL[signal],
                    signals=[signal],
                    evidence=dict(evidence),
                )
                return

            existing.confidence = min(MAX_CONFIDENCE, existing.confidence + bonus)
            existing.signals.append(signal)
            existing.evidence.update(evidence)

        # 1. Username similarity
        if profile.username:
            rows = await store.find_username_candidates(
                profile.username,
                profile.platform,
                s.username_trigram_floor,
                s.username_candidate_limit,
            )
            for other in rows:
                score = username_similarity(profile.username, other.username)
                if score < s.username_min_similarity:
                    continue
                offer(
                    other,
                    FactorType.USERNAME_SIMILARITY,
                    score,
                    0.0,
                    {
                        "username_similarity": round(score, 2),
                        "usernames": [profile.username, other.username],
                    },
                )

        # 2. Temporal correlation
        if profile.message_count >= s.temporal_min_messages:
            rows = await store.find_activity_candidates(
                profile.platform,
                s.temporal_min_messages,
                s.temporal_candidate_limit,
            )
            for other in rows:
                correlation = activity_correlation(
                    profile.activity_histogram,
                    other.activity_histogram,
                )
                if correlation < s.temporal_min_correlation:
                    continue
                offer(
                    other,
                    FactorType.TEMPORAL_CORRELATION,
                    correlation * s.temporal_weight,
                    s.temporal_bonus,
                    {"temporal_correlation": round(correlation, 4)},
                )

        # 3. Social overlap
        shared_rows = await store.count_shared_rooms(
            profile.id,
            profile.platform,
            s.social_min_shared_rooms,
        )
        for other, shared in shared_rows:
            if shared < s.social_min_shared_rooms:
                continue
            offer(
                other,
                FactorType.SOCIAL_GRAPH,
                min(s.social_cap, shared * s.social_per_room),
                s.social_bonus,
                {"shared_rooms": shared},
            )

        ordered = sorted(
            candidates.values(),
            key=lambda c: (-c.confidence, str(c.profile.id)),
        )
        return ordered, best

    async def analyze(self, store: IdentityStore, profile: PlatformProfile) -> AnalysisResult:
        """Score `profile` and persist factors and high-confidence pending links.

        Runs inside the caller's transaction. Never confirms a link and never
        reassigns a profile to a different identity.
        """
        s = self.settings
        now = self._clock()

        identity = await store.ensure_identity(profile)
        candidates, best = await self.find_candidates(store, profile)

        for factor_type, value in best.items():
            await store.upsert_factor(
                identity.id,
                factor_type,
                value,
                {
                    "profile_id": profile.id,
                    "platform": profile.platform,
                    "candidates": sum(1 for c in candidates if factor_type in c.signals),
                },
                now,
            )
        confidence = await store.recompute_confidence(identity.id)

        auto_linked = 0
        for candidate in candidates:
            if candidate.confidence < s.auto_link_threshold:
                continue
            await store.record_link(
                profile.id,
                candidate.profile.id,
                candidate.link_type,
                candidate.confidence,
                {
                    **candidate.evidence,
                    "signals": [signal.value for signal in candidate.signals],
                    "analyzed_at": now,
                },
                status=LinkStatus.PENDING,
            )
            auto_linked += 1

        logger.info(
            "Profile analyzed",
            profile_id=str(profile.id),
            identity_id=str(identity.id),
            candidates=len(candidates),
            auto_linked=auto_linked,
            identity_confidence=round(confidence, 2),
        )

        return AnalysisResult(
            profile_id=profile.id,
            identity_id=identity.id,
            candidates=candidates[: s.analysis_result_limit],
            auto_linked=auto_linked,
        )
