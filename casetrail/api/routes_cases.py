"""
Case API Routes

Commands:
- POST  /api/cases                   - File a case (verified submitter)
- PATCH /api/cases/{id}/assign       - Assign a caseworker (admin)
- PATCH /api/cases/{id}/status       - Move the case through its lifecycle

Queries:
- GET /api/cases                     - List cases (filters: submitter_id, caseworker_id)
- GET /api/cases/by-number/{number}  - Look up by case number
- GET /api/cases/{id}                - Case with submitter, assignee and history
- GET /api/cases/{id}/updates        - Audit trail, newest first
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..core import NotFound, WorkflowEngine
from ..schemas import (
    ActorWithProfile,
    Case,
    CaseStatus,
    CaseUpdate,
    CaseWithDetails,
    IncidentCategory,
    TransitionResult,
)
from .deps import current_actor, get_engine


router = APIRouter(prefix="/api/cases", tags=["Cases"])


# ============================================================
# Request Models
# ============================================================

class FileCaseRequest(BaseModel):
    category: IncidentCategory
    incident_at: datetime
    location: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    evidence_refs: list[str] = Field(default_factory=list)


class AssignRequest(BaseModel):
    caseworker_id: UUID


class StatusRequest(BaseModel):
    status: CaseStatus
    comment: Optional[str] = None


# ============================================================
# Commands
# ============================================================

@router.post("", response_model=TransitionResult[Case], status_code=201)
async def file_case(
    body: FileCaseRequest,
    actor: ActorWithProfile = Depends(current_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.file_case(
        actor,
        category=body.category,
        incident_at=body.incident_at,
        location=body.location,
        description=body.description,
        evidence_refs=body.evidence_refs,
    )


@router.patch("/{case_id}/assign", response_model=TransitionResult[Case])
async def assign_caseworker(
    case_id: UUID,
    body: AssignRequest,
    actor: ActorWithProfile = Depends(current_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.assign_caseworker(actor, case_id, body.caseworker_id)


@router.patch("/{case_id}/status", response_model=TransitionResult[Case])
async def update_status(
    case_id: UUID,
    body: StatusRequest,
    actor: ActorWithProfile = Depends(current_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.update_status(actor, case_id, body.status, body.comment)


# ============================================================
# Queries
# ============================================================

@router.get("", response_model=list[CaseWithDetails])
async def list_cases(
    submitter_id: Optional[UUID] = None,
    caseworker_id: Optional[UUID] = None,
    engine: WorkflowEngine = Depends(get_engine),
):
    if submitter_id is not None:
        cases = await engine.cases.list_by_submitter(submitter_id)
        if caseworker_id is not None:
            cases = [c for c in cases if c.assigned_caseworker_id == caseworker_id]
        return cases
    if caseworker_id is not None:
        return await engine.cases.list_by_caseworker(caseworker_id)
    return await engine.cases.list_all()


@router.get("/by-number/{case_number}", response_model=CaseWithDetails)
async def get_case_by_number(
    case_number: str,
    engine: WorkflowEngine = Depends(get_engine),
):
    case = await engine.cases.get_by_number(case_number)
    if case is None:
        raise NotFound(f"Case {case_number} not found")
    return case


@router.get("/{case_id}", response_model=CaseWithDetails)
async def get_case(
    case_id: UUID,
    engine: WorkflowEngine = Depends(get_engine),
):
    case = await engine.cases.get(case_id)
    if case is None:
        raise NotFound(f"Case {case_id} not found")
    return case


@router.get("/{case_id}/updates", response_model=list[CaseUpdate])
async def list_updates(
    case_id: UUID,
    engine: WorkflowEngine = Depends(get_engine),
):
    if await engine.cases.get_case(case_id) is None:
        raise NotFound(f"Case {case_id} not found")
    return await engine.audit.list_by_case(case_id)
