from decimal import Decimal

import httpx

from app.core.security import decrypt_refresh_token
from app.db import repo
from app.services import invoice_sync, qbo_client

from conftest import run, token_response


QBO_INVOICE = {
    "Id": "130",
    "DocNumber": "1050",
    "TxnDate": "2025-05-01",
    "DueDate": "2025-06-30",
    "TotalAmt": 1200.5,
    "Balance": 200.5,
    "SalesTermRef": {"value": "3", "name": "Net 60"},
    "CustomerRef": {"value": "9", "name": "Acme Corp"},
    "BillAddr": {
        "Line1": "Acme Corp",
        "Line2": "1 Main St",
        "City": "Austin",
        "CountrySubDivisionCode": "TX",
        "PostalCode": "78701",
        "Country": "USA",
    },
    "ShipAddr": {"Line1": "1 Main St", "City": "Austin"},
    "Line": [
        {
            "DetailType": "SalesItemLineDetail",
            "Amount": 1000,
            "Description": "Install",
            "SalesItemLineDetail": {"ItemRef": {"name": "labor rate hr"}, "Qty": 10, "UnitPrice": 100},
        },
        {
            "DetailType": "SalesItemLineDetail",
            "Description": "Trip",
            "SalesItemLineDetail": {"ItemRef": {"name": "Travel Zone 1"}, "Qty": 2, "UnitPrice": 100.25},
        },
        {"DetailType": "SubTotalLineDetail", "Amount": 1200.5},
    ],
}


def query_response(*invoices):
    return httpx.Response(200, json={"QueryResponse": {"Invoice": list(invoices)}})


def load_connection(session_factory, settings):
    async def _load():
        async with session_factory() as session:
            return await repo.get_connection(session, environment=settings.environment)

    return run(_load())


class TestMapping:
    def test_address_block(self):
        text = invoice_sync.build_address_text(QBO_INVOICE["BillAddr"])
        assert text == "Acme Corp\n1 Main St\nAustin, TX, 78701\nUSA"

    def test_address_drops_repeated_lines(self):
        addr = {"Line1": "Acme", "Line2": "Acme", "City": "Austin", "Country": ""}
        assert invoice_sync.build_address_text(addr) == "Acme\nAustin"
        assert invoice_sync.build_address_text(None) == ""
        assert invoice_sync.build_address_text({}) == ""

    def test_match_activity(self):
        allowed = ["Labor Rate HR", "Travel Zone 1"]
        assert invoice_sync.match_activity(" labor RATE hr ", allowed, "Labor Rate HR") == "Labor Rate HR"
        assert invoice_sync.match_activity("travel zone 1", allowed, "Labor Rate HR") == "Travel Zone 1"
        assert invoice_sync.match_activity("Mileage", allowed, "Labor Rate HR") == "Labor Rate HR"

    def test_apply_payload(self, settings):
        invoice = repo.new_invoice(invoice_no="1050")
        invoice_sync.apply_invoice_payload(invoice, QBO_INVOICE, settings)

        assert invoice.qbo_invoice_id == "130"
        assert invoice.customer == "Acme Corp"
        assert invoice.invoice_date == "2025-05-01"
        assert invoice.due_date == "2025-06-30"
        assert invoice.total_billed == Decimal("1200.5")
        assert invoice.balance_due == Decimal("200.5")
        assert invoice.total_paid == Decimal("1000")
        assert invoice.payment_status == "UNPAID"
        assert invoice.terms == "Net 60"
        assert invoice.ship_to == "1 Main St\nAustin"
        assert invoice.last_synced_at is not None

        assert [line.activity for line in invoice.lines] == ["Labor Rate HR", "Travel Zone 1"]
        assert [line.position for line in invoice.lines] == [0, 1]
        assert invoice.lines[0].amount == Decimal("1000")
        assert invoice.lines[1].amount == Decimal("200.50")

    def test_apply_payload_keeps_missing_fields(self, settings):
        invoice = repo.new_invoice(invoice_no="77", customer="Keep", bill_to="Old address", terms="Net 30")
        invoice_sync.apply_invoice_payload(invoice, {"TotalAmt": "50", "Balance": "0"}, settings)

        assert invoice.customer == "Keep"
        assert invoice.bill_to == "Old address"
        assert invoice.terms == "Net 30"
        assert invoice.payment_status == "PAID"
        assert invoice.total_paid == Decimal("50")
        assert invoice.lines == []


class TestPullInvoice:
    def test_pulls_invoice_by_doc_number(self, client, admin_headers, qbo_mock, make_connection, create_invoice):
        make_connection()
        invoice = create_invoice(invoice_no="1050")
        qbo_mock.handler = lambda request: query_response(QBO_INVOICE)

        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["customer"] == "Acme Corp"
        assert body["qbo_invoice_id"] == "130"
        assert body["total_billed"] == 1200.5
        assert body["bill_to"] == "Acme Corp\n1 Main St\nAustin, TX, 78701\nUSA"
        assert [line["amount"] for line in body["lines"]] == [1000.0, 200.5]
        assert body["last_synced_at"] is not None

        request = qbo_mock.requests[0]
        assert request.url.path == "/v3/company/realm-1/query"
        assert request.url.params["query"] == (
            "select * from Invoice where DocNumber = '1050' STARTPOSITION 1 MAXRESULTS 1"
        )
        assert request.headers["Authorization"] == "Bearer old-access"

    def test_unknown_doc_number(self, client, admin_headers, qbo_mock, make_connection, create_invoice):
        make_connection()
        invoice = create_invoice(invoice_no="9999")
        qbo_mock.handler = lambda request: query_response()

        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 422
        assert response.json()["message"] == "Invoice 9999 was not found in QuickBooks"

    def test_requires_connection(self, client, admin_headers, create_invoice):
        invoice = create_invoice()
        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["message"] == "QuickBooks is not connected"

    def test_refreshes_and_retries_after_unauthorized(
        self, client, admin_headers, qbo_mock, make_connection, create_invoice, session_factory, settings
    ):
        make_connection()
        invoice = create_invoice(invoice_no="1050")

        def handler(request):
            if request.url.host == "oauth.platform.intuit.com":
                return token_response()
            if request.headers["Authorization"] == "Bearer old-access":
                return httpx.Response(401, json={"Fault": {"Error": [{"Message": "AuthenticationFailed"}]}})
            return query_response(QBO_INVOICE)

        qbo_mock.handler = handler
        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 200, response.text

        assert [request.url.host for request in qbo_mock.requests] == [
            "sandbox-quickbooks.api.intuit.com",
            "oauth.platform.intuit.com",
            "sandbox-quickbooks.api.intuit.com",
        ]
        assert qbo_mock.requests[-1].headers["Authorization"] == "Bearer new-access"

        connection = load_connection(session_factory, settings)
        assert connection.access_token == "new-access"
        assert connection.refresh_counter == 1
        assert decrypt_refresh_token(settings.fernet_key, connection.refresh_token_enc) == "new-refresh"

    def test_expired_token_is_refreshed_first(self, client, admin_headers, qbo_mock, make_connection, create_invoice):
        make_connection(expires_in=-60)
        invoice = create_invoice(invoice_no="1050")

        def handler(request):
            if request.url.host == "oauth.platform.intuit.com":
                return token_response()
            return query_response(QBO_INVOICE)

        qbo_mock.handler = handler
        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 200
        assert qbo_mock.requests[0].url.host == "oauth.platform.intuit.com"
        assert qbo_mock.requests[1].headers["Authorization"] == "Bearer new-access"

    def test_fault_becomes_bad_gateway(self, client, admin_headers, qbo_mock, make_connection, create_invoice):
        make_connection()
        invoice = create_invoice(invoice_no="1050")
        qbo_mock.handler = lambda request: httpx.Response(
            400,
            json={"Fault": {"Error": [{"Message": "Invalid query", "Detail": "QueryParserError: bad"}]}},
        )

        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 502
        body = response.json()
        assert body["message"] == "QuickBooks error: QuickBooks API error for Invoice (400): QueryParserError: bad"
        assert body["correlation_id"]

    def test_failed_refresh_is_recorded(
        self, client, admin_headers, qbo_mock, make_connection, create_invoice, session_factory, settings
    ):
        make_connection(expires_in=-60)
        invoice = create_invoice(invoice_no="1050")
        qbo_mock.handler = lambda request: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Refresh token expired"}
        )

        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 502

        connection = load_connection(session_factory, settings)
        assert "Refresh token expired" in connection.last_error
        assert connection.last_error_at is not None
        assert connection.access_token == "old-access"

    def test_unreachable_api_becomes_bad_gateway(
        self, client, admin_headers, qbo_mock, make_connection, create_invoice
    ):
        make_connection()
        invoice = create_invoice(invoice_no="1050")

        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        qbo_mock.handler = handler
        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 502
        assert response.json()["message"] == (
            "QuickBooks error: QuickBooks API unreachable for Invoice: ConnectTimeout: timed out"
        )

    def test_unreadable_refresh_token_fails_the_pull(
        self, client, admin_headers, qbo_mock, make_connection, create_invoice, session_factory, settings
    ):
        make_connection(expires_in=-60)
        invoice = create_invoice(invoice_no="1050")

        async def _corrupt():
            async with session_factory() as session:
                connection = await repo.get_connection(session, environment=settings.environment)
                connection.refresh_token_enc = "not-a-fernet-token"
                await session.commit()

        run(_corrupt())
        response = client.post(f"/invoices/{invoice['id']}/pull", headers=admin_headers)
        assert response.status_code == 502
        assert response.json()["message"] == "QuickBooks error: Invalid refresh token payload"
        assert qbo_mock.requests == []

        connection = load_connection(session_factory, settings)
        assert connection.last_error == "Invalid refresh token payload"


class TestSyncUnpaid:
    def test_creates_and_updates_by_doc_number(
        self, client, admin_headers, qbo_mock, make_connection, create_invoice, monkeypatch
    ):
        monkeypatch.setattr(qbo_client.QuickBooksService, "PAGE_SIZE", 2)
        make_connection()
        create_invoice(invoice_no="1050", customer="Stale")
        second = dict(QBO_INVOICE, Id="131", DocNumber="1051", CustomerRef={"name": "Globex"})
        without_number = dict(QBO_INVOICE, Id="132", DocNumber="")

        def handler(request):
            query = request.url.params["query"]
            if "STARTPOSITION 1 " in query:
                return query_response(QBO_INVOICE, second)
            return query_response(without_number)

        qbo_mock.handler = handler
        response = client.post("/invoices/sync", headers=admin_headers)
        assert response.status_code == 200, response.text
        assert response.json() == {"created": 1, "updated": 1}

        queries = [request.url.params["query"] for request in qbo_mock.requests]
        assert queries == [
            "select * from Invoice where Balance > '0' STARTPOSITION 1 MAXRESULTS 2",
            "select * from Invoice where Balance > '0' STARTPOSITION 3 MAXRESULTS 2",
        ]

        rows = client.get("/invoices-balance").json()["invoices"]
        assert sorted(row["invoice_no"] for row in rows) == ["1050", "1051"]
        assert {row["balance_due"] for row in rows} == {200.5}

    def test_requires_admin_key(self, client):
        response = client.post("/invoices/sync")
        assert response.status_code == 401

    def test_unreachable_token_endpoint_is_recorded(
        self, client, admin_headers, qbo_mock, make_connection, session_factory, settings
    ):
        make_connection(expires_in=-60)

        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        qbo_mock.handler = handler
        response = client.post("/invoices/sync", headers=admin_headers)
        assert response.status_code == 502
        assert "Token endpoint unreachable" in response.json()["message"]

        connection = load_connection(session_factory, settings)
        assert connection.last_error == "Token endpoint unreachable: ConnectTimeout: timed out"
        assert connection.last_error_at is not None
        assert connection.access_token == "old-access"
