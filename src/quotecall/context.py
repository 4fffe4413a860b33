"""Building the initial CallState for a call id.

Both the lifecycle webhook and the first bridge turn may be the one to
create a call's state; they share ``ensure_call_state`` so the store's
init-if-absent decides which one actually does.
"""

import logging
import time

from quotecall.errors import ContextNotFound
from quotecall.normalize import parse_price, parse_quantity
from quotecall.session import CallState, Part, parse_custom_context, detect_follow_up
from quotecall.state_machine import GREETING_SCRIPT

logger = logging.getLogger(__name__)


def build_call_state(call_id: str, context: dict, *, external_call_id: str = "",
                     max_negotiation_attempts: int = 2) -> CallState:
    """Fresh state at the greeting node with the greeting already spoken."""
    custom_context = context.get("customContext") or ""
    custom_instructions = context.get("customInstructions") or ""
    parsed_org, parsed_ref = parse_custom_context(custom_context)

    parts = []
    for raw in context.get("parts") or []:
        if not raw.get("partNumber"):
            continue
        parts.append(Part(
            part_number=str(raw["partNumber"]).strip(),
            description=raw.get("description") or "",
            quantity=parse_quantity(raw.get("quantity")),
            budget_max=parse_price(raw.get("budgetMax")),
            requested_item_id=raw.get("requestedItemId") or raw.get("id") or "",
        ))

    benchmarks = {}
    for pn, price in (context.get("benchmarkPrices") or {}).items():
        value = parse_price(price)
        if value is not None:
            benchmarks[pn] = value

    state = CallState(
        call_id=call_id,
        quote_request_id=context.get("quoteRequestId") or "",
        supplier_id=context.get("supplierId") or "",
        organization_id=context.get("organizationId") or "",
        caller_id=context.get("callerId") or "",
        external_call_id=external_call_id or context.get("externalCallId") or "",
        supplier_name=context.get("supplierName") or "",
        supplier_phone=context.get("supplierPhone") or "",
        organization_name=context.get("organizationName") or parsed_org or "our company",
        quote_reference=context.get("quoteReference") or parsed_ref or "QR-UNKNOWN",
        caller_name=context.get("callerName") or "",
        parts=parts,
        benchmark_prices=benchmarks,
        custom_context=custom_context,
        custom_instructions=custom_instructions,
        is_follow_up=bool(context.get("isFollowUp")) or detect_follow_up(custom_instructions),
        max_negotiation_attempts=max_negotiation_attempts,
        started_at=time.time(),
    )
    state.add_message("agent", GREETING_SCRIPT)
    return state


async def load_call_context(repository, call_id: str, metadata: dict | None = None) -> dict:
    """Context carried in the vendor metadata wins; otherwise ask the catalog."""
    metadata = metadata or {}
    if metadata.get("parts"):
        return metadata
    context = await repository.get_call_context(call_id)
    if not context:
        raise ContextNotFound(f"no call context for {call_id}")
    return context


async def ensure_call_state(store, repository, call_id: str, *, external_call_id: str = "",
                            metadata: dict | None = None, max_negotiation_attempts: int = 2):
    """Return ``(state, created)``; the state is None once the call has ended."""
    existing = await store.get(call_id)
    if existing is not None and (existing.external_call_id or not external_call_id):
        return existing, False
    if existing is not None:
        # Only metadata is missing; skip the catalog round trip
        incoming = CallState(call_id=call_id, external_call_id=external_call_id)
    else:
        context = await load_call_context(repository, call_id, metadata)
        incoming = build_call_state(
            call_id, context,
            external_call_id=external_call_id,
            max_negotiation_attempts=max_negotiation_attempts,
        )
    return await store.init_if_absent(incoming)
