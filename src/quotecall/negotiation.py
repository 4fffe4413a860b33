"""When is a quoted price worth pushing back on?

A price is non-competitive when it sits more than ``threshold`` above the
benchmark for that part: the lowest price another supplier quoted, or the
part's budget ceiling when no other quote exists yet.  No benchmark means
nothing to compare against, so the price stands.
"""

from dataclasses import dataclass

from quotecall.normalize import normalize_part_number
from quotecall.session import CallState

DEFAULT_THRESHOLD = 0.20


@dataclass
class NegotiationPolicy:
    threshold: float = DEFAULT_THRESHOLD

    def competing_price(self, state: CallState, part_number: str) -> float | None:
        """Lowest price another supplier quoted for this part, if known."""
        key = normalize_part_number(part_number)
        for pn, price in state.benchmark_prices.items():
            if normalize_part_number(pn) == key and price:
                return float(price)
        return None

    def benchmark(self, state: CallState, part_number: str) -> float | None:
        competing = self.competing_price(state, part_number)
        if competing is not None:
            return competing
        part = state.part_for(part_number)
        if part is not None and part.budget_max:
            return float(part.budget_max)
        return None

    def is_competitive(self, state: CallState, part_number: str) -> bool:
        quote = state.quote_for(part_number)
        if quote is None or quote.price is None:
            return True
        benchmark = self.benchmark(state, part_number)
        if benchmark is None:
            return True
        return quote.price <= benchmark * (1 + self.threshold)

    def parts_to_negotiate(self, state: CallState) -> list[str]:
        """Priced parts above benchmark that have not been negotiated yet."""
        already = {normalize_part_number(pn) for pn in state.negotiated_parts}
        return [
            q.part_number
            for q in state.priced_quotes()
            if normalize_part_number(q.part_number) not in already
            and not self.is_competitive(state, q.part_number)
        ]
