"""Catalog / quote persistence collaborator.

Owns requested items, per-supplier quote rows and terminal call records.
``CatalogClient`` talks to the catalog service over HTTP;
``InMemoryQuoteRepository`` backs local runs and tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict

import httpx

from quotecall.errors import CollaboratorError

logger = logging.getLogger(__name__)


@dataclass
class RequestedItem:
    id: str
    part_number: str
    description: str = ""
    quantity: int = 1
    budget_max: float | None = None


@dataclass
class QuoteRecord:
    requested_item_id: str
    supplier_id: str
    quote_request_id: str
    part_number: str
    unit_price: float | None = None
    total_price: float | None = None
    currency: str = "USD"
    availability: str = "UNKNOWN"
    lead_time_days: int | None = None
    notes: str = ""
    valid_until: str | None = None
    source: str = "phone_call"
    quote_number: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.requested_item_id, self.supplier_id)


class QuoteRepository(ABC):
    @abstractmethod
    async def get_call_context(self, call_id: str) -> dict | None:
        """Supplier, organization and requested parts for an outbound call."""

    @abstractmethod
    async def get_requested_items(self, quote_request_id: str) -> list[RequestedItem]: ...

    @abstractmethod
    async def upsert_quote_item(self, record: QuoteRecord) -> str:
        """Insert or update the row keyed by (requested_item_id, supplier_id).

        Returns "created" or "updated".
        """

    @abstractmethod
    async def save_call_record(self, record: dict) -> None: ...

    @abstractmethod
    async def get_call_record(self, call_id: str) -> dict | None: ...

    @abstractmethod
    async def list_call_records(self, quote_request_id: str) -> list[dict]: ...

    @abstractmethod
    async def update_call_status(self, call_id: str, status: str, **fields) -> None: ...

    @abstractmethod
    async def mark_quote_request_received(self, quote_request_id: str) -> None: ...


class InMemoryQuoteRepository(QuoteRepository):
    def __init__(self):
        self.contexts: dict[str, dict] = {}
        self.requested_items: dict[str, list[RequestedItem]] = {}
        self.quote_items: dict[tuple[str, str], QuoteRecord] = {}
        self.call_records: dict[str, dict] = {}
        self.received: set[str] = set()

    def add_call_context(self, call_id: str, context: dict) -> None:
        self.contexts[call_id] = context

    def add_requested_items(self, quote_request_id: str, items: list[RequestedItem]) -> None:
        self.requested_items[quote_request_id] = list(items)

    async def get_call_context(self, call_id):
        return self.contexts.get(call_id)

    async def get_requested_items(self, quote_request_id):
        return list(self.requested_items.get(quote_request_id, []))

    async def upsert_quote_item(self, record):
        outcome = "updated" if record.key in self.quote_items else "created"
        self.quote_items[record.key] = record
        return outcome

    async def save_call_record(self, record):
        existing = self.call_records.get(record["callId"], {})
        self.call_records[record["callId"]] = {**existing, **record}

    async def get_call_record(self, call_id):
        record = self.call_records.get(call_id)
        return dict(record) if record else None

    async def list_call_records(self, quote_request_id):
        return [dict(r) for r in self.call_records.values() if r.get("quoteRequestId") == quote_request_id]

    async def update_call_status(self, call_id, status, **fields):
        record = self.call_records.setdefault(call_id, {"callId": call_id})
        record["status"] = status
        record.update(fields)

    async def mark_quote_request_received(self, quote_request_id):
        self.received.add(quote_request_id)


class CatalogClient(QuoteRepository):
    """HTTP client for the catalog service.

    Reads return None / [] when the service is unreachable. Writes retry
    once with a 2-second backoff; quote writes raise CollaboratorError after
    that so extraction can report the supplier as failed, call-record writes
    only log.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 15.0, retry_delay: float = 2.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _request_with_retry(self, method: str, path: str, payload: dict | None, label: str) -> dict:
        """Request with one retry after ``retry_delay`` on failure."""
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(
                        method, f"{self.base_url}{path}", json=payload, headers=self._headers(),
                    )
                    if resp.status_code == 404:
                        return {"success": False, "error": "not found", "status": 404}
                    resp.raise_for_status()
                    return resp.json() if resp.content else {"success": True}
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %ss: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def get_call_context(self, call_id):
        result = await self._request_with_retry("GET", f"/calls/{call_id}/context", None, "Call context lookup")
        if result.get("success") is False:
            return None
        return result

    async def get_requested_items(self, quote_request_id):
        result = await self._request_with_retry(
            "GET", f"/quote-requests/{quote_request_id}/items", None, "Requested items lookup",
        )
        if result.get("success") is False:
            return []
        return [
            RequestedItem(
                id=item["id"],
                part_number=item["partNumber"],
                description=item.get("description", ""),
                quantity=item.get("quantity") or 1,
                budget_max=item.get("budgetMax"),
            )
            for item in result.get("items", [])
        ]

    async def upsert_quote_item(self, record):
        result = await self._request_with_retry(
            "PUT",
            f"/quote-requests/{record.quote_request_id}/suppliers/{record.supplier_id}"
            f"/items/{record.requested_item_id}",
            _record_payload(record),
            "Quote item upsert",
        )
        if result.get("success") is False:
            raise CollaboratorError(f"quote item upsert failed: {result.get('error')}")
        return result.get("result", "updated")

    async def save_call_record(self, record):
        await self._request_with_retry("PUT", f"/calls/{record['callId']}", record, "Call record sync")

    async def get_call_record(self, call_id):
        result = await self._request_with_retry("GET", f"/calls/{call_id}", None, "Call record lookup")
        if result.get("success") is False:
            return None
        return result

    async def list_call_records(self, quote_request_id):
        result = await self._request_with_retry(
            "GET", f"/quote-requests/{quote_request_id}/calls", None, "Call records lookup",
        )
        if result.get("success") is False:
            return []
        return result.get("calls", [])

    async def update_call_status(self, call_id, status, **fields):
        await self._request_with_retry(
            "PATCH", f"/calls/{call_id}", {"status": status, **fields}, "Call status sync",
        )

    async def mark_quote_request_received(self, quote_request_id):
        await self._request_with_retry(
            "PATCH", f"/quote-requests/{quote_request_id}", {"status": "RECEIVED"}, "Quote request status",
        )


def _record_payload(record: QuoteRecord) -> dict:
    data = asdict(record)
    return {
        "partNumber": data["part_number"],
        "unitPrice": data["unit_price"],
        "totalPrice": data["total_price"],
        "currency": data["currency"],
        "availability": data["availability"],
        "leadTimeDays": data["lead_time_days"],
        "notes": data["notes"],
        "validUntil": data["valid_until"],
        "source": data["source"],
        "quoteNumber": data["quote_number"],
    }
