from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.http import get_async_client, request_with_retry_and_backoff
from app.core.logging import sanitize_payload
from app.core.security import decrypt_refresh_token, encrypt_refresh_token
from app.db import repo
from app.db.models import QuickBooksConnection


class QuickBooksOAuthError(RuntimeError):
    pass


class QuickBooksApiError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    scopes: list[str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _describe(exc: httpx.HTTPError) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def extract_fault_detail(response: httpx.Response) -> str:
    """Best human readable message from a QuickBooks error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        fault = payload.get("Fault") or payload.get("fault") or {}
        errors = fault.get("Error") or fault.get("error") or []
        if errors and isinstance(errors[0], dict):
            first = errors[0]
            return str(first.get("Detail") or first.get("Message") or response.text)
        if payload.get("error_description") or payload.get("error"):
            return str(payload.get("error_description") or payload.get("error"))
    return response.text


class QuickBooksService:
    AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"
    SCOPES = ["com.intuit.quickbooks.accounting"]
    MINOR_VERSION = "65"
    PAGE_SIZE = 100

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.logger = logging.getLogger("app.services.qbo")

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.settings.token_refresh_margin_seconds)

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.qbo_client_id,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "state": state,
        }
        url = httpx.URL(self.AUTH_URL, params=params)
        self.logger.info(
            "oauth_authorization_url_generated",
            extra={"environment": self.settings.environment},
        )
        return str(url)

    async def exchange_authorization_code(self, *, code: str, realm_id: str) -> TokenBundle:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
        }
        response = await self._token_request(data)
        return self._parse_token_response(response, realm_id)

    async def refresh_tokens(self, *, refresh_token: str, realm_id: str) -> TokenBundle:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        response = await self._token_request(data)
        return self._parse_token_response(response, realm_id)

    async def upsert_connection(
        self,
        session: AsyncSession,
        *,
        environment: str,
        realm_id: str,
        bundle: TokenBundle,
    ) -> QuickBooksConnection:
        connection = await repo.get_connection_optional(session, environment=environment)
        encrypted_refresh = encrypt_refresh_token(self.settings.fernet_key, bundle.refresh_token)

        if connection is None:
            connection = QuickBooksConnection(
                environment=environment,
                realm_id=realm_id,
                refresh_token_enc=encrypted_refresh,
                access_token=bundle.access_token,
                access_expires_at=bundle.access_expires_at,
                refresh_expires_at=bundle.refresh_expires_at,
                scopes=bundle.scopes,
                refresh_counter=0,
            )
            await repo.save_connection(session, connection)
            self.logger.info(
                "connection_created",
                extra={"realm_id": realm_id, "environment": environment},
            )
            return connection

        connection.realm_id = realm_id
        connection.refresh_token_enc = encrypted_refresh
        connection.access_token = bundle.access_token
        connection.access_expires_at = bundle.access_expires_at
        connection.refresh_expires_at = bundle.refresh_expires_at
        connection.scopes = bundle.scopes
        connection.last_error = None
        connection.last_error_at = None
        await repo.save_connection(session, connection)
        self.logger.info(
            "connection_updated",
            extra={"realm_id": realm_id, "environment": environment},
        )
        return connection

    def needs_refresh(self, connection: QuickBooksConnection, now: Optional[datetime] = None) -> bool:
        if not connection.access_token or connection.access_expires_at is None:
            return True
        now = now or _now()
        return _as_aware(connection.access_expires_at) <= now + self.refresh_margin

    async def ensure_valid_access_token(
        self,
        session: AsyncSession,
        connection: QuickBooksConnection,
    ) -> str:
        if self.needs_refresh(connection):
            await self.refresh_connection(session, connection)
        if not connection.access_token:
            raise QuickBooksApiError("Missing access token after refresh")
        return connection.access_token

    async def query(
        self,
        session: AsyncSession,
        connection: QuickBooksConnection,
        *,
        entity: str,
        select_sql: str,
        startposition: int | None = None,
        maxresults: int | None = None,
    ) -> dict:
        statement = select_sql.strip()
        if startposition:
            statement = f"{statement} STARTPOSITION {startposition}"
        if maxresults:
            statement = f"{statement} MAXRESULTS {maxresults}"
        params = {
            "query": statement,
            "minorversion": self.MINOR_VERSION,
        }
        return await self._get(
            session,
            connection,
            url=self._build_query_url(connection),
            params=params,
            entity=entity,
        )

    async def get_invoice_by_doc_number(
        self,
        session: AsyncSession,
        connection: QuickBooksConnection,
        doc_number: str,
    ) -> Optional[dict]:
        escaped = self._escape(doc_number)
        payload = await self.query(
            session,
            connection,
            entity="Invoice",
            select_sql=f"select * from Invoice where DocNumber = '{escaped}'",
            startposition=1,
            maxresults=1,
        )
        invoices = payload.get("QueryResponse", {}).get("Invoice") or []
        return invoices[0] if invoices else None

    async def list_unpaid_invoices(
        self,
        session: AsyncSession,
        connection: QuickBooksConnection,
    ) -> list[dict]:
        """All invoices with an open balance, paging through the query API."""
        invoices: list[dict] = []
        start = 1
        while True:
            payload = await self.query(
                session,
                connection,
                entity="Invoice",
                select_sql="select * from Invoice where Balance > '0'",
                startposition=start,
                maxresults=self.PAGE_SIZE,
            )
            batch = payload.get("QueryResponse", {}).get("Invoice") or []
            invoices.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                break
            start += self.PAGE_SIZE
        return invoices

    async def refresh_connection(
        self,
        session: AsyncSession,
        connection: QuickBooksConnection,
        *,
        force: bool = False,
    ) -> None:
        try:
            refresh_token = decrypt_refresh_token(
                self.settings.fernet_key,
                connection.refresh_token_enc,
            )
            bundle = await self.refresh_tokens(refresh_token=refresh_token, realm_id=connection.realm_id)
        except (QuickBooksOAuthError, ValueError) as exc:
            connection.last_error = str(exc)
            connection.last_error_at = _now()
            await repo.save_connection(session, connection)
            self.logger.error(
                "connection_refresh_failed",
                extra={
                    "realm_id": connection.realm_id,
                    "environment": connection.environment,
                    "error": str(exc),
                },
            )
            if isinstance(exc, QuickBooksOAuthError):
                raise
            raise QuickBooksOAuthError(str(exc)) from exc
        connection.access_token = bundle.access_token
        connection.access_expires_at = bundle.access_expires_at
        connection.refresh_expires_at = bundle.refresh_expires_at
        connection.refresh_token_enc = encrypt_refresh_token(
            self.settings.fernet_key, bundle.refresh_token
        )
        connection.scopes = bundle.scopes
        connection.refresh_counter = (connection.refresh_counter or 0) + 1
        connection.last_error = None
        connection.last_error_at = None
        await repo.save_connection(session, connection)
        self.logger.info(
            "connection_refreshed",
            extra={
                "realm_id": connection.realm_id,
                "environment": connection.environment,
                "force": force,
            },
        )

    async def _get(
        self,
        session: AsyncSession,
        connection: QuickBooksConnection,
        *,
        url: str,
        params: dict[str, Any],
        entity: str,
    ) -> dict:
        token = await self.ensure_valid_access_token(session, connection)
        async with get_async_client(self.settings) as client:
            response = await self._send_get(client, url, params, token, connection, entity)

            if response.status_code == 401:
                self.logger.warning(
                    "qbo_unauthorized",
                    extra={
                        "entity": entity,
                        "realm_id": connection.realm_id,
                        "environment": connection.environment,
                    },
                )
                await self.refresh_connection(session, connection, force=True)
                response = await self._send_get(
                    client, url, params, connection.access_token, connection, entity
                )

            if response.status_code >= 400:
                detail = extract_fault_detail(response)
                self.logger.error(
                    "qbo_request_failed",
                    extra={
                        "entity": entity,
                        "status": response.status_code,
                        "detail": detail,
                        "realm_id": connection.realm_id,
                        "environment": connection.environment,
                    },
                )
                raise QuickBooksApiError(
                    f"QuickBooks API error for {entity} ({response.status_code}): {detail}",
                    status_code=response.status_code,
                )

            return response.json()

    async def _send_get(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict[str, Any],
        token: Optional[str],
        connection: QuickBooksConnection,
        entity: str,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        try:
            return await request_with_retry_and_backoff(
                client,
                method="GET",
                url=url,
                params=params,
                headers=headers,
                settings=self.settings,
            )
        except httpx.HTTPError as exc:
            self.logger.error(
                "qbo_transport_error",
                extra={
                    "entity": entity,
                    "error": repr(exc),
                    "realm_id": connection.realm_id,
                    "environment": connection.environment,
                },
            )
            raise QuickBooksApiError(
                f"QuickBooks API unreachable for {entity}: {_describe(exc)}"
            ) from exc

    def _build_query_url(self, connection: QuickBooksConnection) -> str:
        base = self._build_company_base_url(connection)
        return f"{base}/query"

    def _build_company_base_url(self, connection: QuickBooksConnection) -> str:
        base = (
            self.SANDBOX_API_BASE
            if connection.environment == "sandbox"
            else self.PROD_API_BASE
        )
        return f"{base}/v3/company/{connection.realm_id}"

    async def _token_request(self, data: dict[str, str]) -> dict:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            async with get_async_client(self.settings) as client:
                response = await request_with_retry_and_backoff(
                    client,
                    "POST",
                    self.TOKEN_URL,
                    data=data,
                    headers=headers,
                    settings=self.settings,
                )
        except httpx.HTTPError as exc:
            self.logger.error(
                "oauth_token_transport_error",
                extra={"grant_type": data.get("grant_type"), "error": repr(exc)},
            )
            raise QuickBooksOAuthError(f"Token endpoint unreachable: {_describe(exc)}") from exc
        if response.status_code >= 400:
            detail = extract_fault_detail(response)
            self.logger.error(
                "oauth_token_error",
                extra={
                    "status": response.status_code,
                    "grant_type": data.get("grant_type"),
                    "detail": detail,
                },
            )
            raise QuickBooksOAuthError(
                f"Failed to obtain tokens from Intuit (status {response.status_code}): {detail}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise QuickBooksOAuthError("Token endpoint returned a non-JSON body") from exc

    def _parse_token_response(self, payload: dict, realm_id: str) -> TokenBundle:
        now = _now()
        try:
            access_expires_in = int(payload["expires_in"])
            refresh_expires_in = int(payload.get("x_refresh_token_expires_in", 0))
            access_token = payload["access_token"]
            refresh_token = payload["refresh_token"]
            scope_raw = payload.get("scope", "")
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.error(
                "token_response_incomplete",
                extra={"payload": sanitize_payload(payload)},
            )
            raise QuickBooksOAuthError("Incomplete token response") from exc

        bundle = TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + timedelta(seconds=access_expires_in),
            refresh_expires_at=now + timedelta(seconds=refresh_expires_in),
            scopes=[scope for scope in scope_raw.split() if scope],
        )

        self.logger.info(
            "token_bundle_parsed",
            extra={
                "realm_id": realm_id,
                "access_expires_at": bundle.access_expires_at.isoformat(),
                "refresh_expires_at": bundle.refresh_expires_at.isoformat(),
            },
        )
        return bundle

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    def _escape(self, value: str) -> str:
        return value.replace("'", "''")
