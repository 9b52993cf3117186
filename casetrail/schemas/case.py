"""
Canonical Case Schema

A Case is an incident report and its workflow state.
It moves through one lifecycle and is never deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .actor import Actor, CaseworkerWithActor, utcnow


class CaseStatus(str, Enum):
    """
    pending -> in_progress -> closed
    pending -> rejected, in_progress -> rejected
    CLOSED and REJECTED are terminal.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseStatus.CLOSED, CaseStatus.REJECTED)


class IncidentCategory(str, Enum):
    """Incident categories offered at filing time."""
    THEFT = "theft"
    FRAUD = "fraud"
    ASSAULT = "assault"
    CYBER_CRIME = "cyber_crime"
    VANDALISM = "vandalism"
    HARASSMENT = "harassment"
    OTHER = "other"


class Case(BaseModel):
    """
    The central workflow entity.

    - case_number is generated once and never changes
    - assigned_caseworker_id is set only by the assignment transition
    - closed_at / closing_comments are set only when status becomes CLOSED
    """
    id: UUID = Field(default_factory=uuid4)
    case_number: str = Field(..., description="Human-readable number, e.g. CASE-2026-000042")

    submitter_id: UUID
    category: IncidentCategory
    incident_at: datetime
    location: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    evidence_refs: list[str] = Field(default_factory=list)

    status: CaseStatus = CaseStatus.PENDING
    assigned_caseworker_id: Optional[UUID] = None

    # Ledger confirmations
    ledger_tx_id: Optional[str] = Field(
        default=None,
        description="Transaction that recorded the filing on the ledger"
    )
    assignment_tx_id: Optional[str] = Field(
        default=None,
        description="Transaction that recorded the current assignment"
    )

    closing_comments: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    version: int = Field(default=1, ge=1)

    @property
    def ledger_ref(self) -> str:
        """Identifier the ledger knows this case by."""
        return self.case_number


class CaseUpdate(BaseModel):
    """
    One audit entry per status transition.

    Append-only. Never mutated, never deleted.
    """
    id: UUID = Field(default_factory=uuid4)
    case_id: UUID
    updated_by: UUID
    previous_status: CaseStatus
    new_status: CaseStatus
    comment: Optional[str] = None
    ledger_tx_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    # Store-issued tiebreaker for entries sharing a timestamp
    sequence: int = 0


class CaseWithDetails(Case):
    """
    Read model: case joined with its submitter, assignee and history.

    `updates` is ordered newest first.
    """
    submitter: Actor
    assigned_caseworker: Optional[CaseworkerWithActor] = None
    updates: list[CaseUpdate] = Field(default_factory=list)
