"""
Verification Workflow

Proves that two platform profiles belong to the same person:

1. The requester asks to link an account on another platform and receives a
   short one-time code.
2. The code is sent from the target account. Redeeming it before expiry joins
   both profiles under the requester's identity with a confirmed manual link.

A code is consumed at most once. Redemption, merge, link, audit entry and the
request status change commit together or not at all.
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

import structlog

from crosslink.config import Settings, get_settings
from crosslink.identity.merge import IdentityMerger
from crosslink.identity.store import IdentityStore, TransactionFactory
from crosslink.identity.types import (
    AuditAction,
    LinkRequest,
    LinkRequestResult,
    LinkRequestStatus,
    LinkStatus,
    LinkType,
    ProfileAttributes,
    VerificationResult,
)
from crosslink.kernel.errors import (
    ConcurrentModificationError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from crosslink.kernel.time import Clock, isoformat_z, utc_now

logger = structlog.get_logger()

CODE_ALPHABET = string.ascii_uppercase + string.digits

VERIFIED_CONFIDENCE = 100.0


def generate_code(length: int = 6) -> str:
    """Random code drawn from A-Z0-9 with a CSPRNG."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lstrip("@")


class VerificationWorkflow:
    """Issues and redeems one-time link verification codes."""

    def __init__(
        self,
        transaction: TransactionFactory,
        merger: IdentityMerger | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        code_generator: Callable[[int], str] = generate_code,
    ):
        self._transaction = transaction
        self._merger = merger or IdentityMerger(transaction)
        self.settings = settings or get_settings()
        self._clock = clock
        self._generate_code = code_generator

    def instructions(self, code: str, target_platform: str) -> str:
        return (
            f"Please send the code {code} from your {target_platform} account to verify. "
            f"Code expires in {self.settings.link_request_ttl_minutes} minutes."
        )

    async def request_link(
        self,
        platform: str,
        user_id: str,
        target_platform: str,
        target_identifier: str,
        attrs: ProfileAttributes | None = None,
    ) -> LinkRequestResult:
        target_platform = (target_platform or "").strip()
        identifier = normalize_identifier(target_identifier)
        if not target_platform or not identifier:
            raise ValidationError(
                message="Target platform and identifier are required",
                code="verification.missing_target",
            )
        if target_platform == platform:
            raise ValidationError(
                message="Cannot link an account on the same platform",
                code="verification.same_platform",
                meta={"platform": platform},
            )

        now = self._clock()
        expires_at = now + timedelta(minutes=self.settings.link_request_ttl_minutes)

        async with self._transaction() as store:
            requester = await store.upsert_profile(platform, user_id, attrs or ProfileAttributes(), now)
            await store.ensure_identity(requester)

            request: LinkRequest | None = None
            for attempt in range(1, self.settings.verification_code_attempts + 1):
                code = self._generate_code(self.settings.verification_code_length)
                request = await store.create_link_request(
                    requester.id,
                    target_platform,
                    identifier,
                    code,
                    now,
                    expires_at,
                )
                if request is not None:
                    break
                logger.warning(
                    "Verification code clash, regenerating",
                    target_platform=target_platform,
                    attempt=attempt,
                )

            if request is None:
                raise ConcurrentModificationError(
                    message="Could not allocate a unique verification code",
                    code="verification.code_exhausted",
                    meta={"target_platform": target_platform},
                )

        logger.info(
            "Link request created",
            request_id=str(request.id),
            requester_profile_id=str(requester.id),
            target_platform=target_platform,
            expires_at=isoformat_z(expires_at),
        )

        return LinkRequestResult(
            request_id=request.id,
            verification_code=request.verification_code,
            target_platform=target_platform,
            target_identifier=identifier,
            expires_at=request.expires_at,
            instructions=self.instructions(request.verification_code, target_platform),
        )

    async def verify_code(
        self,
        target_platform: str,
        target_user_id: str,
        code: str,
        attrs: ProfileAttributes | None = None,
    ) -> VerificationResult:
        code = normalize_code(code)
        if not code:
            raise ValidationError(
                message="Verification code is required",
                code="verification.missing_code",
            )

        now = self._clock()
        expired: ExpiredError | None = None

        async with self._transaction() as store:
            request = await store.find_link_request(target_platform, code, for_update=True)
            if request is None:
                raise NotFoundError(
                    message="Invalid verification code",
                    code="verification.code_not_found",
                    meta={"target_platform": target_platform},
                )
            if request.is_expired(now) or request.status == LinkRequestStatus.EXPIRED:
                # The expiry must persist, so the error is raised after commit.
                if request.status == LinkRequestStatus.PENDING:
                    await store.transition_link_request(
                        request.id,
                        LinkRequestStatus.PENDING,
                        LinkRequestStatus.EXPIRED,
                        now,
                    )
                expired = ExpiredError(
                    meta={
                        "target_platform": request.target_platform,
                        "target_identifier": request.target_identifier,
                        "requested_at": isoformat_z(request.created_at),
                        "expired_at": isoformat_z(request.expires_at),
                    },
                )
            elif request.status != LinkRequestStatus.PENDING:
                logger.info(
                    "Verification code already consumed",
                    request_id=str(request.id),
                    status=request.status.value,
                )
                raise ConcurrentModificationError(
                    message=f"Verification code already {request.status.value}",
                    code="verification.already_consumed",
                    meta={"status": request.status.value},
                )
            else:
                result = await self._redeem(store, request, target_user_id, attrs, now)

        if expired is not None:
            logger.info(
                "Verification code expired",
                target_platform=target_platform,
                requested_at=expired.meta["requested_at"],
            )
            raise expired

        return result

    async def _redeem(
        self,
        store: IdentityStore,
        request: LinkRequest,
        target_user_id: str,
        attrs: ProfileAttributes | None,
        now: datetime,
    ) -> VerificationResult:
        target = await store.upsert_profile(
            request.target_platform,
            target_user_id,
            attrs or ProfileAttributes(),
            now,
        )
        requester = await store.get_profile_by_id(request.requester_profile_id)
        if requester is None:
            raise NotFoundError(
                message="Requesting profile no longer exists",
                code="identity.profile_not_found",
                meta={"profile_id": str(request.requester_profile_id)},
            )
        identity = await store.ensure_identity(requester)

        merged_identity_id: UUID | None = None
        target = await store.get_profile_by_id(target.id, for_update=True)
        if target.identity_id is not None and target.identity_id != identity.id:
            merged_identity_id = target.identity_id
            await self._merger.merge_in(store, identity.id, merged_identity_id, actor_profile_id=target.id)

        await store.assign_profile(target.id, identity.id)
        await store.update_identity(identity.id, verified=True)

        link = await store.record_link(
            requester.id,
            target.id,
            LinkType.MANUAL,
            VERIFIED_CONFIDENCE,
            {
                "method": "verification_code",
                "request_id": str(request.id),
                "target_identifier": request.target_identifier,
            },
            status=LinkStatus.CONFIRMED,
            verified_by=target_user_id,
            verified_at=now,
        )

        await store.append_audit(
            identity.id,
            AuditAction.LINK_CREATED,
            requester.id,
            {
                "link_id": str(link.id),
                "method": "verification_code",
                "target_platform": target.platform,
                "target_profile_id": str(target.id),
                "merged_identity_id": str(merged_identity_id) if merged_identity_id else None,
            },
        )

        consumed = await store.transition_link_request(
            request.id,
            LinkRequestStatus.PENDING,
            LinkRequestStatus.VERIFIED,
            now,
        )
        if not consumed:
            raise ConcurrentModificationError(
                message="Verification code already consumed",
                code="verification.already_consumed",
                meta={"request_id": str(request.id)},
            )

        logger.info(
            "Link verified",
            identity_id=str(identity.id),
            requester_profile_id=str(requester.id),
            target_profile_id=str(target.id),
            merged_identity_id=str(merged_identity_id) if merged_identity_id else None,
        )

        return VerificationResult(
            success=True,
            identity_id=identity.id,
            link_id=link.id,
            merged_identity_id=merged_identity_id,
        )
