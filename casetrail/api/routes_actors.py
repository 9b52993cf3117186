"""
Session and Actor API Routes

- POST   /api/session                        - Bind a wallet to the session cookie
- DELETE /api/session                        - Clear the session
- GET    /api/actors/me                      - Actor behind the session
- POST   /api/actors/register                - Register a wallet (pending, role none)
- GET    /api/actors/pending                 - Verification queue (admin or caseworker)
- GET    /api/actors/by-wallet/{wallet}      - Look up an actor
- PATCH  /api/actors/{id}/verification       - Approve or reject a pending actor

Sessions are NOT authenticated. POST /api/session signs a cookie for
whatever wallet address it is given, including the admin's; nothing
proves the caller controls that wallet. Deploy only behind a front end
that performs the wallet connection, until a signed-challenge login
(nonce signed by the wallet, checked here) replaces it.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from ..core import NotFound, Unauthorized, WorkflowEngine
from ..schemas import (
    Actor,
    ActorRole,
    ActorWithProfile,
    TransitionResult,
    VerificationStatus,
)
from .auth import SessionWallet, clear_session_cookie_response, set_session_cookie_response
from .deps import current_actor, get_engine


router = APIRouter(prefix="/api", tags=["Actors"])


# ============================================================
# Request/Response Models
# ============================================================

class SessionRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)


class SessionResponse(BaseModel):
    wallet_address: str
    actor: Optional[ActorWithProfile] = None


class RegisterRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)
    document_refs: list[str] = Field(default_factory=list)


class VerificationRequest(BaseModel):
    status: VerificationStatus


# ============================================================
# Session
# ============================================================

@router.post("/session", response_model=SessionResponse)
async def create_session(
    body: SessionRequest,
    response: Response,
    engine: WorkflowEngine = Depends(get_engine),
):
    # Trusts the posted address; see the module docstring
    actor = await engine.identity.resolve(body.wallet_address)
    wallet = actor.wallet_address if actor else body.wallet_address.strip().lower()
    set_session_cookie_response(response, SessionWallet(wallet_address=wallet))
    return SessionResponse(wallet_address=wallet, actor=actor)


@router.delete("/session", status_code=204)
async def delete_session():
    return clear_session_cookie_response(Response(status_code=204))


# ============================================================
# Actors
# ============================================================

@router.get("/actors/me", response_model=ActorWithProfile)
async def get_me(actor: ActorWithProfile = Depends(current_actor)):
    return actor


@router.post("/actors/register", response_model=TransitionResult[Actor], status_code=201)
async def register_actor(
    body: RegisterRequest,
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.register_actor(body.wallet_address, body.document_refs)


@router.get("/actors/pending", response_model=list[Actor])
async def list_pending(
    actor: ActorWithProfile = Depends(current_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    if not actor.is_verified or actor.role not in (ActorRole.ADMIN, ActorRole.CASEWORKER):
        raise Unauthorized("Only admins and caseworkers may review pending actors")
    return await engine.identity.list_pending()


@router.get("/actors/by-wallet/{wallet}", response_model=ActorWithProfile)
async def get_actor_by_wallet(
    wallet: str,
    engine: WorkflowEngine = Depends(get_engine),
):
    actor = await engine.identity.resolve(wallet)
    if actor is None:
        raise NotFound(f"No actor registered for wallet {wallet}")
    return actor


@router.patch("/actors/{actor_id}/verification", response_model=TransitionResult[Actor])
async def set_verification(
    actor_id: UUID,
    body: VerificationRequest,
    actor: ActorWithProfile = Depends(current_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return await engine.set_verification(actor, actor_id, body.status)
