"""
Remote Store Client Module

REST client for the lending back office. Implements the LoanRepository
contract over HTTP so the recorder and the sync coordinator can run against
the real remote store.
"""

import httpx
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ConnectivityError, LoanNotFoundError, RemoteApplyError
from .models import Loan, MissedPayment, Payment, Penalty
from .repository import LoanRepository

logger = logging.getLogger("field_lending.remote")


class HttpLoanRepository(LoanRepository):
    """LoanRepository speaking JSON over HTTP"""

    def __init__(
        self,
        base_url: str = "http://localhost:5000/api",
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and return the decoded JSON body (None for empty bodies)

        Raises:
            ConnectivityError: the remote store could not be reached
            RemoteApplyError: the remote store answered with an error status
        """
        url = f"{self.base_url}{path}"
        start = time.time()
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} unreachable: {e}")
            raise ConnectivityError(f"Remote store unreachable: {e}") from e

        latency_ms = (time.time() - start) * 1000
        logger.debug(f"{method} {path} -> {response.status_code} in {latency_ms:.1f}ms")

        if response.status_code >= 400:
            message = _error_message(response)
            raise RemoteApplyError(
                f"{method} {path} failed with {response.status_code}: {message}",
                status_code=response.status_code
            )
        if not response.content:
            return None
        return response.json()

    async def _create(self, path: str, record, record_type):
        """POST a record; a 409 means it already exists, so fetch the stored one

        Returns the stored record and whether this call created it.
        """
        try:
            data = await self._request("POST", path, json=record.to_dict())
            created = True
        except RemoteApplyError as e:
            if e.status_code != 409:
                raise
            data = await self._request("GET", f"{path}/{record.id}")
            created = False
        return (record_type.from_dict(data) if data else record), created

    async def get_loan_by_id(self, loan_id: str) -> Loan:
        try:
            data = await self._request("GET", f"/loans/{loan_id}")
        except RemoteApplyError as e:
            if e.status_code == 404:
                raise LoanNotFoundError(f"Loan {loan_id} not found") from e
            raise
        return Loan.from_dict(data)

    async def save_loan(self, loan: Loan) -> Loan:
        data = await self._request("PUT", f"/loans/{loan.id}", json=loan.to_dict())
        return Loan.from_dict(data) if data else loan

    async def create_loan(self, data: Dict[str, Any]) -> Loan:
        body = await self._request("POST", "/loans", json=data)
        return Loan.from_dict(body)

    async def create_borrower(self, data: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("POST", "/borrowers", json=data)
        return body or data

    async def create_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        return await self._create("/payments", payment, Payment)

    async def create_missed_payment(self, missed: MissedPayment) -> MissedPayment:
        missed, _ = await self._create("/missed-payments", missed, MissedPayment)
        return missed

    async def update_missed_payment(self, missed: MissedPayment) -> MissedPayment:
        data = await self._request("PUT", f"/missed-payments/{missed.id}", json=missed.to_dict())
        return MissedPayment.from_dict(data) if data else missed

    async def create_penalty(self, penalty: Penalty) -> Penalty:
        penalty, _ = await self._create("/penalties", penalty, Penalty)
        return penalty

    async def get_payments_by_loan(self, loan_id: str) -> List[Payment]:
        rows = await self._request("GET", "/payments", params={"loan_id": loan_id}) or []
        return sorted((Payment.from_dict(row) for row in rows), key=lambda p: p.paid_at)

    async def get_missed_payments_by_loan(self, loan_id: str) -> List[MissedPayment]:
        rows = await self._request("GET", "/missed-payments", params={"loan_id": loan_id}) or []
        return sorted((MissedPayment.from_dict(row) for row in rows), key=lambda m: m.term_number)

    async def get_penalties_by_loan(self, loan_id: str) -> List[Penalty]:
        rows = await self._request("GET", "/penalties", params={"loan_id": loan_id}) or []
        return [Penalty.from_dict(row) for row in rows]

    async def mirror_queue_item(self, item: Dict[str, Any]) -> None:
        await self._request("POST", "/offline-queue", json=item)

    async def update_queue_item(self, item_id: str, changes: Dict[str, Any]) -> None:
        await self._request("PATCH", f"/offline-queue/{item_id}", json=changes)

    async def health_check(self) -> bool:
        """Check if the remote store answers"""
        try:
            response = await self._client.get(f"{self.base_url}/health", headers=self._headers())
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self):
        """Close the HTTP client"""
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)
