"""
Caseworker, Stats and Document API Routes

- POST /api/caseworkers               - Create a caseworker (admin)
- GET  /api/caseworkers               - Caseworkers with derived case counters
- GET  /api/caseworkers/{id}          - One caseworker
- GET  /api/stats                     - Dashboard counters
- POST /api/documents?filename=...    - Upload raw bytes, returns the content id
- GET  /api/documents/{kind}/{id}     - Content ids recorded for an actor or case
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, model_validator

from ..core import AggregateStats, NotFound, ValidationError, WorkflowEngine
from ..core.documents import MAX_UPLOAD_BYTES
from ..schemas import (
    ActorWithProfile,
    CaseworkerWithActor,
    DashboardStats,
    DocumentOwnerKind,
    DocumentReference,
    TransitionResult,
)
from .deps import current_actor, get_engine, get_stats, require_session


router = APIRouter(prefix="/api", tags=["Administration"])


class CreateCaseworkerRequest(BaseModel):
    """Either an existing actor_id or a wallet_address (registered on demand)."""
    actor_id: Optional[UUID] = None
    wallet_address: Optional[str] = None
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    badge: str = Field(..., min_length=1)
    department: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def one_target(self):
        if (self.actor_id is None) == (not self.wallet_address):
            raise ValueError("Provide exactly one of actor_id or wallet_address")
        return self


class UploadResponse(BaseModel):
    content_id: str
    filename: Optional[str] = None
    gateway_url: str


@router.post(
    "/caseworkers",
    response_model=TransitionResult[CaseworkerWithActor],
    status_code=201,
)
async def create_caseworker(
    body: CreateCaseworkerRequest,
    actor: ActorWithProfile = Depends(current_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    if body.actor_id is not None:
        return await engine.create_caseworker(
            actor, body.actor_id, body.name, body.phone, body.badge, body.department
        )
    return await engine.create_caseworker_for_wallet(
        actor, body.wallet_address, body.name, body.phone, body.badge, body.department
    )


@router.get("/caseworkers", response_model=list[CaseworkerWithActor])
async def list_caseworkers(engine: WorkflowEngine = Depends(get_engine)):
    return await engine.caseworkers.list_all()


@router.get("/caseworkers/{caseworker_id}", response_model=CaseworkerWithActor)
async def get_caseworker(
    caseworker_id: UUID,
    engine: WorkflowEngine = Depends(get_engine),
):
    caseworker = await engine.caseworkers.get(caseworker_id)
    if caseworker is None:
        raise NotFound(f"Caseworker {caseworker_id} not found")
    return caseworker


@router.get("/stats", response_model=DashboardStats)
async def get_dashboard_stats(stats: AggregateStats = Depends(get_stats)):
    return await stats.compute()


async def _read_upload(request: Request) -> bytes:
    """Request body, refused as soon as it is known to exceed the upload limit."""
    too_large = ValidationError(
        f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MB upload limit",
        field="file",
    )
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_UPLOAD_BYTES:
        raise too_large

    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > MAX_UPLOAD_BYTES:
            raise too_large
        chunks.append(chunk)
    return b"".join(chunks)


@router.post(
    "/documents",
    response_model=UploadResponse,
    status_code=201,
    dependencies=[Depends(require_session)],
)
async def upload_document(
    request: Request,
    filename: Optional[str] = None,
    engine: WorkflowEngine = Depends(get_engine),
):
    data = await _read_upload(request)
    if not data:
        raise ValidationError("Request body is empty", field="file")
    content_id = await engine.documents.upload(data, filename)
    return UploadResponse(
        content_id=content_id,
        filename=filename,
        gateway_url=engine.documents.gateway_url(content_id),
    )


@router.get(
    "/documents/{owner_kind}/{owner_id}",
    response_model=list[DocumentReference],
    dependencies=[Depends(require_session)],
)
async def list_documents(
    owner_kind: DocumentOwnerKind,
    owner_id: UUID,
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.documents.list_for(owner_kind, owner_id)
