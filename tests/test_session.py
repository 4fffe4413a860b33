import json

import pytest

from quotecall.session import (
    CallState,
    CapturedQuote,
    Part,
    detect_follow_up,
    parse_custom_context,
)
from quotecall.states import Node, CallStatus


class TestHistory:
    def test_add_message_appends_in_order(self, state):
        state.add_message("counterparty", "Parts, this is Dave.")
        state.add_message("agent", "Hi Dave.")
        assert [m.speaker for m in state.conversation_history] == ["agent", "counterparty", "agent"]
        assert state.last_agent_message() == "Hi Dave."

    def test_unknown_speaker_rejected(self, state):
        with pytest.raises(ValueError):
            state.add_message("robot", "beep")

    def test_last_agent_message_empty(self):
        assert CallState(call_id="c").last_agent_message() == ""


class TestStatus:
    def test_status_moves_forward(self, state):
        state.set_status(CallStatus.COMPLETED)
        assert state.status == CallStatus.COMPLETED
        assert state.is_terminal

    def test_status_never_reverts(self, state):
        state.set_status(CallStatus.ESCALATED)
        state.set_status(CallStatus.IN_PROGRESS)
        assert state.status == CallStatus.ESCALATED
        state.set_status(CallStatus.COMPLETED)
        assert state.status == CallStatus.ESCALATED


class TestQuotes:
    def test_upsert_merges_by_part_number(self, state):
        state.upsert_quote(CapturedQuote("ABC123", price=45.0))
        state.upsert_quote(CapturedQuote("abc-123", availability="IN_STOCK"))
        assert len(state.quotes) == 1
        assert state.quotes[0].price == 45.0
        assert state.quotes[0].availability == "IN_STOCK"

    def test_upsert_uses_requested_spelling(self, state):
        state.upsert_quote(CapturedQuote("xj900", price=12.0))
        assert state.quotes[0].part_number == "XJ-900"

    def test_unknown_fields_do_not_overwrite(self, state):
        state.upsert_quote(CapturedQuote("ABC123", price=45.0, availability="IN_STOCK", lead_time_days=3))
        state.upsert_quote(CapturedQuote("ABC123"))
        quote = state.quote_for("ABC123")
        assert quote.price == 45.0
        assert quote.availability == "IN_STOCK"
        assert quote.lead_time_days == 3

    def test_discard_quote(self, state):
        state.upsert_quote(CapturedQuote("ABC123", price=45.0))
        assert state.discard_quote("ABC123") is True
        assert state.discard_quote("ABC123") is False
        assert state.quotes == []

    def test_pending_parts_in_request_order(self, state):
        assert state.current_part().part_number == "ABC123"
        state.upsert_quote(CapturedQuote("ABC123", price=45.0))
        assert [p.part_number for p in state.pending_parts()] == ["XJ-900"]
        state.upsert_quote(CapturedQuote("XJ-900"))
        assert state.current_part() is None

    def test_priced_quotes(self, state):
        state.upsert_quote(CapturedQuote("ABC123", price=45.0))
        state.upsert_quote(CapturedQuote("XJ-900", notes="no price"))
        assert [q.part_number for q in state.priced_quotes()] == ["ABC123"]


class TestSerialization:
    def test_round_trip_through_json(self, state):
        state.current_node = Node.NEGOTIATION
        state.status = CallStatus.IN_PROGRESS
        state.upsert_quote(CapturedQuote("ABC123", price=45.0, availability="IN_STOCK"))
        state.negotiated_parts.append("ABC123")

        restored = CallState.from_dict(json.loads(json.dumps(state.to_dict())))

        assert restored.current_node == Node.NEGOTIATION
        assert restored.status == CallStatus.IN_PROGRESS
        assert restored.parts[0] == Part("ABC123", "hydraulic filter", quantity=2, requested_item_id="ri_1")
        assert restored.quotes[0].price == 45.0
        assert restored.conversation_history[0].speaker == "agent"
        assert restored.negotiated_parts == ["ABC123"]

    def test_from_dict_ignores_unknown_keys(self):
        restored = CallState.from_dict({"call_id": "c", "legacy_field": 1})
        assert restored.call_id == "c"
        assert restored.current_node == Node.GREETING


class TestCustomContext:
    def test_parses_company_and_reference(self):
        text = "Company: Acme Fleet\nQuote Request: QR-02-2026-0009\nNotes: rush"
        assert parse_custom_context(text) == ("Acme Fleet", "QR-02-2026-0009")

    def test_missing_lines(self):
        assert parse_custom_context("just some notes") == ("", "")
        assert parse_custom_context(None) == ("", "")

    def test_follow_up_detection(self):
        assert detect_follow_up("This is a follow-up on our previous quote")
        assert detect_follow_up("They asked us to follow up Monday")
        assert not detect_follow_up("Ask for the best price")
