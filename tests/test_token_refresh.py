import httpx

from app.core.security import decrypt_refresh_token
from app.db import repo
from app.jobs import token_refresh

from conftest import run, token_response


def load_connection(session_factory, settings):
    async def _load():
        async with session_factory() as session:
            return await repo.get_connection(session, environment=settings.environment)

    return run(_load())


class TestRefreshJob:
    def test_refreshes_connection_close_to_expiry(self, qbo_mock, make_connection, session_factory, settings):
        make_connection(expires_in=60)
        qbo_mock.handler = lambda request: token_response("fresh-access", "fresh-refresh")

        summary = run(token_refresh.refresh_expiring_connections(session_factory, settings))
        assert summary == {"checked": 1, "refreshed": 1, "failed": 0}

        request = qbo_mock.requests[0]
        assert request.method == "POST"
        assert request.headers["Authorization"].startswith("Basic ")
        assert b"grant_type=refresh_token" in request.content
        assert b"refresh_token=old-refresh" in request.content

        connection = load_connection(session_factory, settings)
        assert connection.access_token == "fresh-access"
        assert connection.refresh_counter == 1
        assert connection.last_error is None
        assert decrypt_refresh_token(settings.fernet_key, connection.refresh_token_enc) == "fresh-refresh"

    def test_skips_connections_with_time_left(self, qbo_mock, make_connection, session_factory, settings):
        make_connection(expires_in=3600)

        summary = run(token_refresh.refresh_expiring_connections(session_factory, settings))
        assert summary == {"checked": 0, "refreshed": 0, "failed": 0}
        assert qbo_mock.requests == []

    def test_records_failure(self, qbo_mock, make_connection, session_factory, settings):
        make_connection(expires_in=-10)
        qbo_mock.handler = lambda request: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token revoked"}
        )

        summary = run(token_refresh.refresh_expiring_connections(session_factory, settings))
        assert summary == {"checked": 1, "refreshed": 0, "failed": 1}

        connection = load_connection(session_factory, settings)
        assert connection.last_error == "Failed to obtain tokens from Intuit (status 400): Token revoked"
        assert connection.last_error_at is not None
        assert connection.refresh_counter == 0

    def test_records_unreachable_token_endpoint(self, qbo_mock, make_connection, session_factory, settings):
        make_connection(expires_in=-10)

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        qbo_mock.handler = handler
        summary = run(token_refresh.refresh_expiring_connections(session_factory, settings))
        assert summary == {"checked": 1, "refreshed": 0, "failed": 1}

        connection = load_connection(session_factory, settings)
        assert connection.last_error == "Token endpoint unreachable: ConnectError: connection refused"

    def test_main_exit_code(self, qbo_mock, make_connection):
        make_connection(expires_in=-10)
        qbo_mock.handler = lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        assert token_refresh.main() == 1

        qbo_mock.handler = lambda request: token_response()
        assert token_refresh.main() == 0


class TestRefreshEndpoint:
    def test_runs_job(self, client, admin_headers, qbo_mock, make_connection):
        make_connection(expires_in=30)
        qbo_mock.handler = lambda request: token_response()

        response = client.post("/auth/refresh", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"checked": 1, "refreshed": 1, "failed": 0}

    def test_requires_admin_key(self, client, reports_headers):
        response = client.post("/auth/refresh", headers=reports_headers)
        assert response.status_code == 401
