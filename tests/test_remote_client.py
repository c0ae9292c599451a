"""
Tests for the HTTP remote store client
"""

import pytest
import httpx
import json
from datetime import datetime, timezone
from decimal import Decimal

from field_lending.exceptions import ConnectivityError, LoanNotFoundError, RemoteApplyError
from field_lending.models import Payment
from field_lending.remote_client import HttpLoanRepository


BASE_URL = "http://remote.test/api"


def make_repository(handler, api_key=None) -> HttpLoanRepository:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpLoanRepository(base_url=BASE_URL, api_key=api_key, client=client)


def make_payment(payment_id="pay_001") -> Payment:
    paid_at = datetime(2024, 1, 3, 10, tzinfo=timezone.utc)
    return Payment(
        id=payment_id,
        created_at=paid_at,
        updated_at=paid_at,
        loan_id="loan_001",
        borrower_id="borrower_001",
        amount=Decimal("100"),
        paid_at=paid_at,
    )


class TestHttpLoanRepository:
    """Test request mapping and error translation"""

    @pytest.mark.asyncio
    async def test_get_loan(self, make_loan):
        loan = make_loan()

        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/api/loans/loan_001"
            return httpx.Response(200, json=loan.to_dict())

        repository = make_repository(handler)
        fetched = await repository.get_loan_by_id("loan_001")

        assert fetched == loan
        await repository.close()

    @pytest.mark.asyncio
    async def test_missing_loan(self):
        repository = make_repository(lambda request: httpx.Response(404, json={"detail": "not found"}))
        with pytest.raises(LoanNotFoundError):
            await repository.get_loan_by_id("loan_404")

    @pytest.mark.asyncio
    async def test_error_status_raises_remote_apply_error(self):
        repository = make_repository(lambda request: httpx.Response(500, json={"message": "db down"}))

        with pytest.raises(RemoteApplyError) as exc_info:
            await repository.create_payment(make_payment())

        assert exc_info.value.status_code == 500
        assert "db down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error_raises_connectivity_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        repository = make_repository(handler)
        with pytest.raises(ConnectivityError):
            await repository.get_payments_by_loan("loan_001")

    @pytest.mark.asyncio
    async def test_duplicate_create_returns_stored_record(self):
        stored = make_payment()
        stored.notes = "first write"
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            if request.method == "POST":
                return httpx.Response(409, json={"detail": "exists"})
            return httpx.Response(200, json=stored.to_dict())

        repository = make_repository(handler)
        result, created = await repository.create_payment(make_payment())

        assert result.notes == "first write"
        assert created is False
        assert seen == [("POST", "/api/payments"), ("GET", "/api/payments/pay_001")]

    @pytest.mark.asyncio
    async def test_list_payments_by_loan(self):
        later = make_payment("pay_002")
        later.paid_at = datetime(2024, 1, 4, tzinfo=timezone.utc)

        def handler(request):
            assert request.url.params["loan_id"] == "loan_001"
            return httpx.Response(200, json=[later.to_dict(), make_payment().to_dict()])

        repository = make_repository(handler)
        payments = await repository.get_payments_by_loan("loan_001")

        assert [p.id for p in payments] == ["pay_001", "pay_002"]

    @pytest.mark.asyncio
    async def test_queue_mirror_and_status_update(self):
        requests = []

        def handler(request):
            requests.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(204)

        repository = make_repository(handler)
        await repository.mirror_queue_item({"id": "q-1", "status": "pending"})
        await repository.update_queue_item("q-1", {"status": "synced"})

        assert requests == [
            ("POST", "/api/offline-queue", {"id": "q-1", "status": "pending"}),
            ("PATCH", "/api/offline-queue/q-1", {"status": "synced"}),
        ]

    @pytest.mark.asyncio
    async def test_api_key_sent_as_bearer_token(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer secret"
            return httpx.Response(200, json={"status": "ok"})

        repository = make_repository(handler, api_key="secret")
        assert await repository.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_when_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        repository = make_repository(handler)
        assert await repository.health_check() is False

    @pytest.mark.asyncio
    async def test_create_reports_new_record(self):
        payment = make_payment()
        repository = make_repository(lambda request: httpx.Response(201, json=payment.to_dict()))

        result, created = await repository.create_payment(payment)

        assert created is True
        assert result.id == "pay_001"
