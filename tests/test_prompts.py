from quotecall.prompts import NODE_PROMPTS, build_turn_messages, get_system_prompt
from quotecall.session import CapturedQuote
from quotecall.states import Node


class TestSystemPrompt:
    def test_persona_uses_context(self, state):
        prompt = get_system_prompt(state, ["quote_request", "greeting"])
        assert "Acme Fleet" in prompt
        assert "QR-02-2026-0009" in prompt
        assert "ALLOWED NEXT NODES: quote_request, greeting" in prompt

    def test_current_part_and_pending(self, state):
        state.current_node = Node.QUOTE_REQUEST
        state.upsert_quote(CapturedQuote("ABC123", price=45.0, availability="IN_STOCK"))
        prompt = get_system_prompt(state, ["quote_request"])
        assert "CURRENT PART: XJ-900 (say it as: X J, 9 0 0)" in prompt
        assert "Answered: ABC123 $45.00 IN_STOCK" in prompt
        assert "Pending: XJ-900 x1" in prompt
        assert NODE_PROMPTS[Node.QUOTE_REQUEST] in prompt

    def test_negotiation_lines(self, state):
        state.current_node = Node.NEGOTIATION
        state.benchmark_prices = {"ABC123": 38.0}
        state.negotiated_parts = ["ABC123", "XJ-900"]
        prompt = get_system_prompt(state, ["negotiation", "confirmation"])
        assert "NEGOTIATE: ABC123, best other quote $38.00" in prompt
        assert "NEGOTIATE: XJ-900, above our budget" in prompt

    def test_every_conversational_node_has_a_prompt(self):
        for node in Node:
            if node.is_conversational:
                assert node in NODE_PROMPTS


class TestTurnMessages:
    def test_role_mapping(self, state):
        state.add_message("counterparty", "Parts, this is Dave.")
        state.add_message("system", "note")
        messages = build_turn_messages(state)
        assert [m["role"] for m in messages] == ["assistant", "user", "system"]

    def test_limit(self, state):
        for i in range(30):
            state.add_message("counterparty", f"line {i}")
        messages = build_turn_messages(state, limit=5)
        assert len(messages) == 5
        assert messages[-1]["content"] == "line 29"
