from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from walletgate.api.schemas import (
    Envelope,
    StatusResponse,
    UserResponse,
    WalletBindRequest,
    WalletBindResponse,
    WalletChallengeRequest,
    WalletChallengeResponse,
    WalletRefreshResponse,
    WalletUserSummary,
    WalletVerifyRequest,
    WalletVerifyResponse,
)
from walletgate.logging import get_logger
from walletgate.service.nonce_store import format_rfc3339
from walletgate.service.runtime import get_runtime
from walletgate.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_user(
    session_id_header: Optional[str] = Header(
        None, convert_underscores=False, alias="session_id"
    ),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    session_id = session_id_header or session_cookie
    if not session_id:
        raise _http_error("unauthorized", "session required", status_code=401)
    runtime = get_runtime()
    session = runtime.store.get_session(session_id)
    if session is None or session.is_expired():
        raise _http_error("unauthorized", "invalid session", status_code=401)
    user = runtime.store.get_user(session.user_id)
    if user is None or not user.is_enabled:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return AuthContext(user_id=user.id, role=user.role, session_id=session.id)


def _apply_session_cookie(response: Response, session: Session) -> None:
    # Session datetimes are naive UTC
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _user_summary(user: User) -> WalletUserSummary:
    return WalletUserSummary(
        id=user.id,
        username=user.username,
        wallet_address=user.wallet_address,
        role=user.role,
        status=user.status,
    )


@router.get("/status", response_model=Envelope, tags=["meta"])
async def status():
    """Public feature flags so clients can hide wallet login when it is off."""
    settings = get_runtime().settings
    return Envelope(
        status="ok",
        data=StatusResponse(
            system_name=settings.system_name,
            wallet_login=settings.wallet_login_enabled,
            wallet_auto_register=settings.wallet_auto_register_enabled,
            wallet_allowed_chains=settings.wallet_allowed_chains,
        ),
    )


@router.post("/auth/wallet/challenge", response_model=Envelope, tags=["wallet"])
async def wallet_challenge(body: WalletChallengeRequest):
    """Issue a login challenge for a wallet address.

    The returned ``message`` must be signed verbatim with ``personal_sign``.
    Issuing again for the same address replaces the previous challenge.

    Raises:
        400: If the address is malformed
        403: If wallet login is disabled or the address may not log in
    """
    runtime = get_runtime()
    challenge = await runtime.wallet_auth.issue_challenge(body.address, body.chain_id)
    return Envelope(
        status="ok",
        data=WalletChallengeResponse(
            nonce=challenge.nonce,
            message=challenge.message,
            address=challenge.address,
            expires_at=format_rfc3339(challenge.expires_at),
        ),
    )


@router.post("/auth/wallet/verify", response_model=Envelope, tags=["wallet"])
async def wallet_verify(body: WalletVerifyRequest, request: Request, response: Response):
    """Verify a signed challenge and open a session.

    Raises:
        400: Malformed address or signature, or chain id not allowed
        401: Nonce missing/expired/mismatched or signature mismatch
        403: Feature disabled, address not eligible, or account disabled
    """
    runtime = get_runtime()
    result = await runtime.wallet_auth.verify(
        body.address,
        body.signature,
        body.nonce,
        body.chain_id,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    _apply_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=WalletVerifyResponse(
            token=result.token.token,
            expires_at=format_rfc3339(result.token.expires_at),
            session_expires_at=result.session.expires_at,
            user=_user_summary(result.user),
        ),
    )


@router.post("/auth/wallet/bind", response_model=Envelope, tags=["wallet"])
async def wallet_bind(
    body: WalletBindRequest, principal: AuthContext = Depends(get_user)
):
    """Bind a wallet to the signed-in account after verifying its signature."""
    runtime = get_runtime()
    user = await runtime.wallet_auth.bind(
        principal.user_id,
        body.address,
        body.signature,
        body.nonce,
        body.chain_id,
    )
    return Envelope(
        status="ok",
        data=WalletBindResponse(bound=True, wallet_address=user.wallet_address or ""),
    )


@router.post("/auth/wallet/refresh", response_model=Envelope, tags=["wallet"])
async def wallet_refresh(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    result = await runtime.wallet_auth.refresh(
        authorization,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    _apply_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=WalletRefreshResponse(
            token=result.token.token,
            expires_at=format_rfc3339(result.token.expires_at),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.store.revoke_session(principal.session_id)
    response.delete_cookie(SESSION_COOKIE, path="/")
    logger.info("session_revoked", user_id=principal.user_id)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            role=user.role,
            status=user.status,
            wallet_address=user.wallet_address,
            created_at=user.created_at,
        ),
    )
