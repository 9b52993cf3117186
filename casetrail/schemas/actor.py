"""
Canonical Actor Schema

Who is acting?
Every participant is identified by a wallet address and carries
exactly one role and one verification status.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_wallet(address: str) -> str:
    """Wallet addresses compare case-insensitively; store them lowercase."""
    return address.strip().lower()


class ActorRole(str, Enum):
    """
    Roles gate every workflow transition.
    `none` until verification succeeds.
    """
    NONE = "none"
    SUBMITTER = "submitter"
    CASEWORKER = "caseworker"
    ADMIN = "admin"


class VerificationStatus(str, Enum):
    """
    Verification moves one way only.
    No transition back to PENDING is exposed.
    """
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Actor(BaseModel):
    """
    A wallet-identified participant.

    Created on registration (pending, role none).
    Mutated only by verification and the caseworker path.
    Never deleted.
    """
    id: UUID = Field(default_factory=uuid4)

    wallet_address: str = Field(
        ...,
        min_length=1,
        description="Wallet address, normalized lowercase (unique)"
    )

    role: ActorRole = ActorRole.NONE
    verification_status: VerificationStatus = VerificationStatus.PENDING

    document_refs: list[str] = Field(
        default_factory=list,
        description="Content identifiers of identity documents, in upload order"
    )

    created_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    verified_by: Optional[UUID] = Field(
        default=None,
        description="Actor who approved the verification. None when system-initiated."
    )

    # Ledger confirmations, when obtained
    registration_tx_id: Optional[str] = None
    verification_tx_id: Optional[str] = None

    version: int = Field(default=1, ge=1)

    @field_validator("wallet_address")
    @classmethod
    def lowercase_wallet(cls, v: str) -> str:
        return normalize_wallet(v)

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED


class CaseworkerProfile(BaseModel):
    """
    Operational attributes of an actor who handles cases.

    At most one profile per actor. Badge is unique.
    Created only by an admin.
    """
    id: UUID = Field(default_factory=uuid4)
    actor_id: UUID

    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    badge: str = Field(..., min_length=1, description="Badge or identifier string (unique)")
    department: str = Field(..., min_length=1)

    created_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1)


class ActorWithProfile(Actor):
    """Actor enriched with its caseworker profile, if one exists."""
    caseworker: Optional[CaseworkerProfile] = None


class CaseworkerWithActor(CaseworkerProfile):
    """
    Caseworker profile joined with its owning actor.

    Counters are derived at read time from the case repository,
    never stored.
    """
    actor: Actor
    active_case_count: int = 0
    closed_case_count: int = 0
