"""
Ledger Interaction Schema

What we ask of the ledger, how it can fail,
and how a write is reported back to the caller.
"""

from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .actor import utcnow


T = TypeVar("T")


class LedgerMethod(str, Enum):
    """
    Contract methods the workflow relies on.
    You can add more later, never remove.
    """
    REGISTER_ACTOR = "register_actor"
    VERIFY_ACTOR = "verify_actor"
    FILE_CASE = "file_case"
    UPDATE_CASE_STATUS = "update_case_status"
    ASSIGN_CASEWORKER = "assign_caseworker"


class LedgerFailureKind(str, Enum):
    """
    Classified ledger failures.
    Callers only ever see one of these, never a raw transport error.
    """
    USER_REJECTED = "user_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TIMEOUT = "timeout"                              # includes network failures
    BUSINESS_RULE_REJECTED = "business_rule_rejected"
    UNKNOWN = "unknown"


class LedgerFailure(BaseModel):
    kind: LedgerFailureKind
    reason: str


class LedgerTransaction(BaseModel):
    """
    A transaction recorded by the simulated ledger.

    Transactions are hash-chained and signed with the system key,
    so the local log can be verified the same way a real chain would be.
    """
    tx_id: str
    sequence_number: int = Field(..., ge=0)
    method: LedgerMethod
    args: list = Field(default_factory=list)
    previous_tx_hash: Optional[str] = None
    tx_hash: str
    signature: str
    created_at: datetime = Field(default_factory=utcnow)


class OutcomeStatus(str, Enum):
    """
    How a mutating operation resolved.

    CONFIRMED: recorded and confirmed on-chain (or no chain step applies)
    PARTIAL:   recorded, but not yet confirmed on-chain
    UNCHANGED: idempotent repeat; nothing was written
    """
    CONFIRMED = "confirmed"
    PARTIAL = "partial"
    UNCHANGED = "unchanged"


class TransitionResult(BaseModel, Generic[T]):
    """Envelope returned by every mutating operation."""
    outcome: OutcomeStatus
    resource: T
    ledger_tx_id: Optional[str] = None
    ledger_failure: Optional[LedgerFailure] = None

    @property
    def is_partial(self) -> bool:
        return self.outcome == OutcomeStatus.PARTIAL


class DocumentOwnerKind(str, Enum):
    ACTOR = "actor"
    CASE = "case"


class DocumentReference(BaseModel):
    """A content identifier recorded against an actor or a case. Append-only."""
    id: UUID = Field(default_factory=uuid4)
    owner_kind: DocumentOwnerKind
    owner_id: UUID
    content_id: str = Field(..., min_length=1)
    filename: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DashboardStats(BaseModel):
    """Counters derived by full scan. Never cached."""
    total_cases: int
    pending_verification_count: int
    caseworker_count: int
    closed_case_count: int
    cases_by_status: dict[str, int] = Field(default_factory=dict)
    actors_by_role: dict[str, int] = Field(default_factory=dict)
