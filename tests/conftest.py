from unittest.mock import AsyncMock

import pytest

from quotecall.catalog import InMemoryQuoteRepository, RequestedItem
from quotecall.session import CallState, Part
from quotecall.state_machine import StateMachine
from quotecall.state_store import InMemoryStateStore

CALL_CONTEXT = {
    "quoteRequestId": "qr_1",
    "supplierId": "sup_1",
    "organizationId": "org_1",
    "supplierName": "Midwest Hydraulics",
    "organizationName": "Acme Fleet",
    "quoteReference": "QR-02-2026-0009",
    "parts": [
        {"partNumber": "ABC123", "description": "hydraulic filter", "quantity": 2, "requestedItemId": "ri_1"},
        {"partNumber": "XJ-900", "description": "seal kit", "quantity": 1, "requestedItemId": "ri_2"},
    ],
}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def machine():
    return StateMachine()


@pytest.fixture
def state():
    """A call that has just been greeted, with two parts to ask about."""
    s = CallState(
        call_id="call_1",
        quote_request_id="qr_1",
        supplier_id="sup_1",
        supplier_name="Midwest Hydraulics",
        organization_name="Acme Fleet",
        quote_reference="QR-02-2026-0009",
        parts=[
            Part("ABC123", "hydraulic filter", quantity=2, requested_item_id="ri_1"),
            Part("XJ-900", "seal kit", quantity=1, requested_item_id="ri_2"),
        ],
        started_at=1000.0,
    )
    s.add_message("agent", "Hi, good morning! Could I speak to someone in your parts department?")
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(clock=clock, lock_wait_s=0.2, retry_interval_s=0.01)


@pytest.fixture
def repository():
    repo = InMemoryQuoteRepository()
    repo.add_call_context("call_1", dict(CALL_CONTEXT))
    repo.add_requested_items("qr_1", [
        RequestedItem(id="ri_1", part_number="ABC123", description="hydraulic filter", quantity=2),
        RequestedItem(id="ri_2", part_number="XJ-900", description="seal kit", quantity=1),
    ])
    return repo


@pytest.fixture
def provider():
    """LLM provider double. Set ``provider.generate_json.return_value`` per test."""
    p = AsyncMock()
    p.generate_json = AsyncMock(return_value={"nextNode": "quote_request", "utterance": "Okay."})
    return p
