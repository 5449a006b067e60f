"""
Cross-Platform Identity Graph

Links the accounts one person holds on different chat platforms into a single
identity, through verified codes or probabilistic matching.
"""

from .matching import MatchingEngine
from .merge import IdentityMerger
from .service import IdentityService, get_identity_service
from .store import IdentityStore, TransactionFactory
from .types import (
    AnalysisResult,
    AuditAction,
    FactorType,
    Identity,
    IdentityLink,
    LinkRequestResult,
    LinkStatus,
    LinkType,
    MatchCandidate,
    PlatformProfile,
    ProfileAttributes,
    ResolvedIdentity,
    RoomRef,
    SearchResult,
    UnlinkResult,
    VerificationResult,
)
from .verification import VerificationWorkflow

__all__ = [
    "IdentityService",
    "get_identity_service",
    "IdentityStore",
    "TransactionFactory",
    "MatchingEngine",
    "IdentityMerger",
    "VerificationWorkflow",
    "AnalysisResult",
    "AuditAction",
    "FactorType",
    "Identity",
    "IdentityLink",
    "LinkRequestResult",
    "LinkStatus",
    "LinkType",
    "MatchCandidate",
    "PlatformProfile",
    "ProfileAttributes",
    "ResolvedIdentity",
    "RoomRef",
    "SearchResult",
    "UnlinkResult",
    "VerificationResult",
]
