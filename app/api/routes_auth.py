from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.core.security import decode_oauth_state, encode_oauth_state
from app.db import repo
from app.db.session import get_session, get_session_factory
from app.jobs.token_refresh import refresh_expiring_connections
from app.schemas.connection import (
    ConnectionRead,
    ConnectionStatus,
    OAuthCallbackResponse,
    TokenRefreshSummary,
)
from app.services.qbo_client import QuickBooksOAuthError, QuickBooksService
from app.utils.validators import resolve_environment


router = APIRouter(prefix="/auth", tags=["auth"])
public_router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("app.api.auth")


@router.get("/connect", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def connect_oauth(settings: Settings = Depends(get_settings)):
    state_payload = {
        "environment": settings.environment,
        "nonce": str(uuid.uuid4()),
    }
    state = encode_oauth_state(settings.fernet_key, state_payload)

    qbo_service = QuickBooksService(settings)
    auth_url = qbo_service.build_authorization_url(state=state)
    logger.info("oauth_connect_redirect", extra={"environment": settings.environment})
    return RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@public_router.get("/callback", response_model=OAuthCallbackResponse)
async def oauth_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    realmId: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
) -> OAuthCallbackResponse:
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {error_description or error}",
        )
    if not code or not state or not realmId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth parameters",
        )

    try:
        state_payload = decode_oauth_state(
            settings.fernet_key,
            state,
            ttl=settings.oauth_state_ttl_seconds,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    environment = resolve_environment(state_payload.get("environment"), settings.environment)
    logging_utils.set_request_context(realm_id=realmId)
    qbo_service = QuickBooksService(settings)

    try:
        token_bundle = await qbo_service.exchange_authorization_code(code=code, realm_id=realmId)
    except QuickBooksOAuthError as exc:
        logger.error("oauth_exchange_failed", extra={"environment": environment})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to exchange authorization code",
        ) from exc

    connection = await qbo_service.upsert_connection(
        session,
        environment=environment,
        realm_id=realmId,
        bundle=token_bundle,
    )
    await session.commit()

    logger.info(
        "oauth_callback_completed",
        extra={"realm_id": realmId, "environment": environment},
    )
    return OAuthCallbackResponse(
        message="OAuth flow completed",
        realm_id=realmId,
        environment=environment,
        connection=ConnectionRead.model_validate(connection),
    )


@router.get("/status", response_model=ConnectionStatus)
async def connection_status(
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
) -> ConnectionStatus:
    connection = await repo.get_connection_optional(session, environment=settings.environment)
    if connection is None:
        return ConnectionStatus(
            connected=False,
            environment=settings.environment,
            access_status="none",
        )
    access_status = "none"
    if connection.access_token and connection.access_expires_at is not None:
        expires_at = connection.access_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        access_status = "valid" if expires_at > datetime.now(timezone.utc) else "expired"
    return ConnectionStatus(
        connected=True,
        environment=settings.environment,
        access_status=access_status,
        connection=ConnectionRead.model_validate(connection),
    )


@router.post("/refresh", response_model=TokenRefreshSummary)
async def refresh_tokens(settings: Settings = Depends(get_settings)) -> TokenRefreshSummary:
    summary = await refresh_expiring_connections(get_session_factory(), settings)
    return TokenRefreshSummary(**summary)
