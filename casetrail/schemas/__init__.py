# Canonical Schemas for the CaseTrail workflow service
# These define the contract every stored document must obey.

from .actor import (
    Actor,
    ActorRole,
    ActorWithProfile,
    CaseworkerProfile,
    CaseworkerWithActor,
    VerificationStatus,
    normalize_wallet,
    utcnow,
)
from .case import (
    Case,
    CaseStatus,
    CaseUpdate,
    CaseWithDetails,
    IncidentCategory,
)
from .ledger import (
    DashboardStats,
    DocumentOwnerKind,
    DocumentReference,
    LedgerFailure,
    LedgerFailureKind,
    LedgerMethod,
    LedgerTransaction,
    OutcomeStatus,
    TransitionResult,
)

__all__ = [
    # Actor
    "Actor",
    "ActorRole",
    "ActorWithProfile",
    "CaseworkerProfile",
    "CaseworkerWithActor",
    "VerificationStatus",
    "normalize_wallet",
    "utcnow",
    # Case
    "Case",
    "CaseStatus",
    "CaseUpdate",
    "CaseWithDetails",
    "IncidentCategory",
    # Ledger and read models
    "DashboardStats",
    "DocumentOwnerKind",
    "DocumentReference",
    "LedgerFailure",
    "LedgerFailureKind",
    "LedgerMethod",
    "LedgerTransaction",
    "OutcomeStatus",
    "TransitionResult",
]
