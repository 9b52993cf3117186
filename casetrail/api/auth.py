"""
Session cookies for the CaseTrail API.

The wallet provider runs client-side; the service binds the wallet
address the client presents into a signed cookie and trusts it for
the rest of the session. Roles are never read from the cookie, they
are resolved from the store on every request.

For production:
- Set CASETRAIL_SESSION_SECRET to a 32+ character random string
- Set CASETRAIL_PRODUCTION=1 for secure cookie settings
"""

import os
import warnings
from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

SESSION_COOKIE = "ct_session"
SESSION_MAX_AGE_SECONDS = 86400 * 7


def _is_production() -> bool:
    return os.environ.get("CASETRAIL_PRODUCTION", "").lower() in ("1", "true", "yes")


def _serializer() -> URLSafeSerializer:
    secret = os.environ.get("CASETRAIL_SESSION_SECRET", "")
    if not secret or len(secret) < 16:
        if _is_production():
            raise RuntimeError(
                "CASETRAIL_SESSION_SECRET must be set in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        warnings.warn(
            "CASETRAIL_SESSION_SECRET not set. Using insecure default.",
            stacklevel=2
        )
        secret = "dev-insecure-casetrail-secret-do-not-use-in-production"
    return URLSafeSerializer(secret_key=secret, salt="casetrail-session-v1")


@dataclass(frozen=True)
class SessionWallet:
    wallet_address: str


def create_session_cookie(session: SessionWallet) -> str:
    return _serializer().dumps({"w": session.wallet_address})


def read_session_cookie(cookie_value: Optional[str]) -> Optional[SessionWallet]:
    if not cookie_value:
        return None
    try:
        data = _serializer().loads(cookie_value)
        return SessionWallet(wallet_address=str(data["w"]))
    except (BadSignature, KeyError, TypeError):
        return None


def set_session_cookie_response(resp, session: SessionWallet):
    is_prod = _is_production()
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_cookie(session),
        httponly=True,
        samesite="strict" if is_prod else "lax",
        secure=is_prod,
        path="/",
        max_age=SESSION_MAX_AGE_SECONDS,
    )
    return resp


def clear_session_cookie_response(resp):
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return resp
