from quotecall.negotiation import NegotiationPolicy
from quotecall.session import CapturedQuote


class TestNegotiationPolicy:
    def test_competing_price_by_normalized_part(self, state):
        state.benchmark_prices = {"xj 900": 30.0}
        assert NegotiationPolicy().competing_price(state, "XJ-900") == 30.0
        assert NegotiationPolicy().competing_price(state, "ABC123") is None

    def test_benchmark_falls_back_to_budget(self, state):
        state.parts[0].budget_max = 40.0
        assert NegotiationPolicy().benchmark(state, "ABC123") == 40.0

    def test_competing_price_beats_budget(self, state):
        state.parts[0].budget_max = 40.0
        state.benchmark_prices = {"ABC123": 35.0}
        assert NegotiationPolicy().benchmark(state, "ABC123") == 35.0

    def test_within_threshold_is_competitive(self, state):
        state.benchmark_prices = {"ABC123": 40.0}
        state.upsert_quote(CapturedQuote("ABC123", price=47.5))
        assert NegotiationPolicy(threshold=0.20).is_competitive(state, "ABC123")

    def test_above_threshold_is_not(self, state):
        state.benchmark_prices = {"ABC123": 40.0}
        state.upsert_quote(CapturedQuote("ABC123", price=48.01))
        assert not NegotiationPolicy(threshold=0.20).is_competitive(state, "ABC123")

    def test_threshold_is_tunable(self, state):
        state.benchmark_prices = {"ABC123": 40.0}
        state.upsert_quote(CapturedQuote("ABC123", price=44.0))
        assert not NegotiationPolicy(threshold=0.05).is_competitive(state, "ABC123")

    def test_no_benchmark_or_no_price_stands(self, state):
        state.upsert_quote(CapturedQuote("ABC123", price=999.0))
        state.upsert_quote(CapturedQuote("XJ-900"))
        policy = NegotiationPolicy()
        assert policy.is_competitive(state, "ABC123")
        assert policy.is_competitive(state, "XJ-900")

    def test_parts_to_negotiate_skips_already_negotiated(self, state):
        state.benchmark_prices = {"ABC123": 40.0, "XJ-900": 10.0}
        state.upsert_quote(CapturedQuote("ABC123", price=60.0))
        state.upsert_quote(CapturedQuote("XJ-900", price=20.0))
        policy = NegotiationPolicy()
        assert policy.parts_to_negotiate(state) == ["ABC123", "XJ-900"]
        state.negotiated_parts.append("ABC123")
        assert policy.parts_to_negotiate(state) == ["XJ-900"]
