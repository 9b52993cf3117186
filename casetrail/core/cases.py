"""
Case Repository

CRUD and query primitives for cases, collision-free case numbers,
and the CaseWithDetails read model.

Case numbers come from a store-side counter per year:
    CASE-2026-000001, CASE-2026-000002, ...
The counter is atomic in every DocumentStore, so concurrent filings
never share a number even across processes.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from ..db.store import CASES, CASEWORKERS, DocumentStore
from ..schemas import (
    Case,
    CaseStatus,
    CaseWithDetails,
    CaseworkerProfile,
    CaseworkerWithActor,
    IncidentCategory,
    utcnow,
)
from .audit import AuditTrail
from .errors import ValidationError, translate_store_errors
from .identity import IdentityResolver

CASE_NUMBER_PREFIX = "CASE"

ACTIVE_STATUSES = (CaseStatus.PENDING, CaseStatus.IN_PROGRESS)


def format_case_number(year: int, sequence: int) -> str:
    return f"{CASE_NUMBER_PREFIX}-{year}-{sequence:06d}"


def _newest_first(cases: list[Case]) -> list[Case]:
    return sorted(cases, key=lambda c: (c.created_at, c.case_number), reverse=True)


class CaseRepository:

    def __init__(self, store: DocumentStore, identity: IdentityResolver, audit: AuditTrail):
        self._store = store
        self._identity = identity
        self._audit = audit

    async def next_case_number(self, year: int) -> str:
        with translate_store_errors(CASES):
            sequence = await self._store.next_sequence(f"case_number:{year}")
        return format_case_number(year, sequence)

    async def create(
        self,
        submitter_id: UUID,
        category: IncidentCategory,
        incident_at: datetime,
        location: str,
        description: str,
        evidence_refs: Optional[list[str]] = None,
    ) -> Case:
        now = utcnow()
        case_number = await self.next_case_number(now.year)
        try:
            case = Case(
                case_number=case_number,
                submitter_id=submitter_id,
                category=category,
                incident_at=incident_at,
                location=location,
                description=description,
                evidence_refs=list(evidence_refs or []),
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(p) for p in error.get("loc", ())) or None
            raise ValidationError(error.get("msg", "Invalid case"), field=field) from e

        with translate_store_errors(CASES):
            doc = await self._store.create(CASES, case.model_dump(mode="json"))
        return Case.model_validate(doc)

    async def get_case(self, case_id: UUID) -> Optional[Case]:
        with translate_store_errors(CASES):
            doc = await self._store.get(CASES, case_id)
        return Case.model_validate(doc) if doc else None

    async def get(self, case_id: UUID) -> Optional[CaseWithDetails]:
        """
        Compose the detail view.

        Returns None when the case is absent or its submitter cannot be
        resolved.
        """
        case = await self.get_case(case_id)
        if case is None:
            return None
        return await self.details(case)

    async def get_by_number(self, case_number: str) -> Optional[CaseWithDetails]:
        with translate_store_errors(CASES):
            docs = await self._store.query(CASES, case_number=case_number.strip().upper())
        if not docs:
            return None
        return await self.details(Case.model_validate(docs[0]))

    async def details(self, case: Case) -> Optional[CaseWithDetails]:
        submitter = await self._identity.get(case.submitter_id)
        if submitter is None:
            return None

        assigned = None
        if case.assigned_caseworker_id:
            assigned = await self.caseworker_with_actor(case.assigned_caseworker_id)

        updates = await self._audit.list_by_case(case.id)
        return CaseWithDetails(
            **case.model_dump(),
            submitter=submitter,
            assigned_caseworker=assigned,
            updates=updates,
        )

    async def caseworker_with_actor(self, caseworker_id: UUID) -> Optional[CaseworkerWithActor]:
        with translate_store_errors(CASEWORKERS):
            doc = await self._store.get(CASEWORKERS, caseworker_id)
        if doc is None:
            return None
        return await self.join_caseworker(CaseworkerProfile.model_validate(doc))

    async def join_caseworker(self, profile: CaseworkerProfile) -> Optional[CaseworkerWithActor]:
        actor = await self._identity.get(profile.actor_id)
        if actor is None:
            return None
        active, closed = await self.caseworker_counters(profile.id)
        return CaseworkerWithActor(
            **profile.model_dump(),
            actor=actor,
            active_case_count=active,
            closed_case_count=closed,
        )

    async def caseworker_counters(self, caseworker_id: UUID) -> tuple[int, int]:
        """(active, closed) counts for an assignee, derived at read time."""
        assigned = await self._rows(assigned_caseworker_id=str(caseworker_id))
        active = sum(1 for c in assigned if c.status in ACTIVE_STATUSES)
        closed = sum(1 for c in assigned if c.status == CaseStatus.CLOSED)
        return active, closed

    async def _rows(self, **filters) -> list[Case]:
        with translate_store_errors(CASES):
            if filters:
                docs = await self._store.query(CASES, **filters)
            else:
                docs = await self._store.list_all(CASES)
        return _newest_first([Case.model_validate(d) for d in docs])

    async def _with_details(self, cases: list[Case]) -> list[CaseWithDetails]:
        # Cases whose submitter no longer resolves are left out, as in get()
        detailed = [await self.details(case) for case in cases]
        return [d for d in detailed if d is not None]

    async def list_by_submitter(self, submitter_id: UUID) -> list[CaseWithDetails]:
        return await self._with_details(await self._rows(submitter_id=str(submitter_id)))

    async def list_by_caseworker(self, caseworker_id: UUID) -> list[CaseWithDetails]:
        return await self._with_details(await self._rows(assigned_caseworker_id=str(caseworker_id)))

    async def list_all(self) -> list[CaseWithDetails]:
        """Every case, newest first, with submitter, assignee and history."""
        return await self._with_details(await self._rows())

    async def update(self, case_id: UUID, changes: dict, expected_version: Optional[int]) -> Case:
        """
        Conditional write.

        Raises:
            Conflict: the stored version differs from expected_version
            NotFound: no such case
        """
        if "case_number" in changes:
            raise ValidationError("Case numbers are immutable", field="case_number")
        changes = {**changes, "updated_at": utcnow()}
        with translate_store_errors(CASES):
            doc = await self._store.update(CASES, case_id, changes, expected_version=expected_version)
        return Case.model_validate(doc)
