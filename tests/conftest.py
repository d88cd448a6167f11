"""Shared fixtures: environment, a throwaway SQLite database and a QuickBooks mock."""

import asyncio
import os
import tempfile
import uuid as _uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

# Settings are read once, so the environment must be in place before importing app.
_test_db_path = os.path.join(tempfile.gettempdir(), f"dominus_test_{_uuid.uuid4().hex[:8]}.db")
os.environ["ENV"] = "sandbox"
os.environ["API_KEY"] = "test-admin-key"
os.environ["REPORTS_API_KEY"] = "test-reports-key"
os.environ["FERNET_KEY"] = Fernet.generate_key().decode("utf-8")
os.environ["QBO_CLIENT_ID"] = "client-id"
os.environ["QBO_CLIENT_SECRET"] = "client-secret"
os.environ["QBO_REDIRECT_URI"] = "http://testserver/auth/callback"
os.environ["DATABASE_URL"] = f"sqlite:///{_test_db_path}"
os.environ["REPORT_TIMEZONE"] = "UTC"
os.environ["INVOICES_PER_PAGE"] = "50"
os.environ["RETRY_MAX_ATTEMPTS"] = "1"
os.environ["ALLOWED_ACTIVITIES"] = "Labor Rate HR,Travel Zone 1"

from app.core.config import get_settings  # noqa: E402
from app.core.security import encrypt_refresh_token  # noqa: E402
from app.db.models import Base, QuickBooksConnection  # noqa: E402
from app.db.session import get_engine, get_session_factory  # noqa: E402
from app.main import app  # noqa: E402
from app.services import qbo_client  # noqa: E402


ADMIN_HEADERS = {"X-API-Key": "test-admin-key"}
REPORTS_HEADERS = {"X-API-Key": "test-reports-key"}


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def database():
    async def _reset():
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    run(_reset())
    yield


@pytest.fixture(scope="session", autouse=True)
def _remove_database_file():
    yield
    if os.path.exists(_test_db_path):
        os.remove(_test_db_path)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def session_factory():
    return get_session_factory()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
def reports_headers():
    return dict(REPORTS_HEADERS)


@pytest.fixture
def today(settings):
    return settings.today()


class QuickBooksMock:
    """Routes QuickBooks HTTP calls to ``handler`` and records every request."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handler = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            return httpx.Response(500, json={"error": "no handler"})
        return self.handler(request)


@pytest.fixture
def qbo_mock(monkeypatch):
    mock = QuickBooksMock()
    transport = httpx.MockTransport(mock)
    monkeypatch.setattr(
        qbo_client,
        "get_async_client",
        lambda settings=None: httpx.AsyncClient(transport=transport),
    )
    return mock


def token_response(access_token: str = "new-access", refresh_token: str = "new-refresh") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": 3600,
            "x_refresh_token_expires_in": 8726400,
            "token_type": "bearer",
            "scope": "com.intuit.quickbooks.accounting",
        },
    )


@pytest.fixture
def make_connection(session_factory, settings):
    def _make(*, expires_in: int = 3600, access_token: str = "old-access", refresh_token: str = "old-refresh"):
        async def _create():
            async with session_factory() as session:
                connection = QuickBooksConnection(
                    environment=settings.environment,
                    realm_id="realm-1",
                    refresh_token_enc=encrypt_refresh_token(settings.fernet_key, refresh_token),
                    access_token=access_token,
                    access_expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
                    refresh_expires_at=datetime.now(timezone.utc) + timedelta(days=100),
                    scopes=["com.intuit.quickbooks.accounting"],
                    refresh_counter=0,
                )
                session.add(connection)
                await session.commit()
                return connection.id

        return run(_create())

    return _make


@pytest.fixture
def create_invoice(client, admin_headers):
    def _create(**fields):
        payload = {"invoice_no": f"INV-{_uuid.uuid4().hex[:6]}"}
        payload.update(fields)
        response = client.post("/invoices", json=payload, headers=admin_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _create
