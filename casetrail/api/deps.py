"""
Dependency injection for API routes.

Components live on app.state (wired in the lifespan). The acting
actor is resolved from the session wallet on every request, so a role
change takes effect immediately.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request

from ..core import AggregateStats, WorkflowEngine
from ..observability import wallet_var
from ..schemas import ActorWithProfile
from .auth import SESSION_COOKIE, SessionWallet, read_session_cookie


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_stats(request: Request) -> AggregateStats:
    return request.app.state.stats


def get_session(request: Request) -> Optional[SessionWallet]:
    return read_session_cookie(request.cookies.get(SESSION_COOKIE))


def require_session(session: Optional[SessionWallet] = Depends(get_session)) -> SessionWallet:
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    wallet_var.set(session.wallet_address)
    return session


async def current_actor(
    session: SessionWallet = Depends(require_session),
    engine: WorkflowEngine = Depends(get_engine),
) -> ActorWithProfile:
    """The registered actor behind the session wallet."""
    actor = await engine.identity.resolve(session.wallet_address)
    if actor is None:
        raise HTTPException(status_code=401, detail="Wallet is not registered")
    return actor
