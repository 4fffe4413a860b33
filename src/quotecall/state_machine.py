import logging
from dataclasses import dataclass

from quotecall.decision import TurnDecision
from quotecall.negotiation import NegotiationPolicy
from quotecall.normalize import normalize_part_number
from quotecall.outcome import Outcome, determine_outcome
from quotecall.session import CallState
from quotecall.states import Node, CallStatus
from quotecall.validation import (
    detect_voicemail,
    detect_hold,
    detect_transfer_offer,
    detect_wrong_department,
    detect_human_request,
    detect_repeat_request,
    detect_agreement,
    detect_rejection,
    detect_firm_price,
    detect_callback_request,
    mentions_price,
    format_part_number_for_speech,
    spell_part_number,
)

logger = logging.getLogger(__name__)

MAX_CLARIFICATION_ATTEMPTS = 3
MAX_TURNS_PER_CALL = 30
MAX_PROVIDER_FAILURES = 2


@dataclass
class Action:
    speak: str = ""
    end_call: bool = False
    needs_llm: bool = True


_ESCAPES = {Node.VOICEMAIL, Node.HUMAN_ESCALATION}

TRANSITIONS = {
    Node.GREETING: {Node.GREETING, Node.QUOTE_REQUEST} | _ESCAPES,
    Node.QUOTE_REQUEST: {Node.QUOTE_REQUEST, Node.CLARIFICATION, Node.NEGOTIATION, Node.CONFIRMATION} | _ESCAPES,
    Node.CLARIFICATION: {Node.CLARIFICATION, Node.QUOTE_REQUEST, Node.NEGOTIATION, Node.CONFIRMATION} | _ESCAPES,
    Node.NEGOTIATION: {Node.NEGOTIATION, Node.CONFIRMATION} | _ESCAPES,
    Node.CONFIRMATION: {Node.CONFIRMATION, Node.QUOTE_REQUEST, Node.COMPLETED} | _ESCAPES,
    Node.HUMAN_ESCALATION: {Node.ESCALATED},
    Node.COMPLETED: set(),
    Node.VOICEMAIL: set(),
    Node.ESCALATED: set(),
}

GREETING_SCRIPT = "Hi, good morning! Could I speak to someone in your parts department?"
TRANSFER_REQUEST_SCRIPT = (
    "I understand. Could you transfer me to someone who handles parts pricing, "
    "or provide their direct number?"
)
HOLD_SCRIPT = "Sure, I'll hold."
CLOSING_SCRIPT = "Great, thanks so much for your help. Have a good one!"
GOODBYE_SCRIPT = "Thank you, goodbye!"
ESCALATION_SCRIPT = (
    "I appreciate your patience. Let me have someone from our team call you back "
    "within the hour to sort this out. Thanks for your time."
)
CALLBACK_SCRIPT = "No problem at all. We'll give you a call back a little later. Thanks!"
CORRECTION_SCRIPT = "Sorry about that. Which one did I get wrong?"
PROVIDER_FALLBACK_SCRIPT = (
    "Sorry, I'm having a little technical difficulty on my end. Could you hold for just a moment?"
)

_AVAILABILITY_SPEECH = {
    "IN_STOCK": "in stock",
    "BACKORDERED": "on backorder",
    "SPECIAL_ORDER": "special order",
}


class InvalidTransition(ValueError):
    pass


def _transition(state: CallState, new_node: Node):
    if new_node not in TRANSITIONS.get(state.current_node, set()):
        raise InvalidTransition(f"{state.current_node.value} -> {new_node.value}")
    if new_node != state.current_node:
        logger.info("[%s] %s -> %s", state.call_id, state.current_node.value, new_node.value)
    state.current_node = new_node


def record_agent_turn(state: CallState, action: Action) -> None:
    if action.speak:
        state.add_message("agent", action.speak)


def build_voicemail_script(state: CallState) -> str:
    who = state.supplier_name or "the parts department"
    reference = format_part_number_for_speech(state.quote_reference)
    return (
        f"Hi, this message is for {who}. This is a call from {state.organization_name} "
        f"about a parts quote, reference {reference}. We'll follow up by email with the "
        f"part numbers. Thanks, and have a great day."
    )


def build_confirmation_script(state: CallState) -> str:
    """Read every captured quote back, in request order."""
    lines = []
    ordered = [state.quote_for(p.part_number) for p in state.parts]
    for quote in [q for q in ordered if q is not None]:
        spoken = format_part_number_for_speech(quote.part_number)
        if quote.price is None:
            lines.append(f"{spoken}, you don't have a price on that one")
            continue
        line = f"{spoken} at ${quote.price:.2f}"
        availability = _AVAILABILITY_SPEECH.get(quote.availability)
        if availability:
            line += f", {availability}"
        if quote.lead_time_days:
            line += f", about {quote.lead_time_days} days out"
        lines.append(line)
    if not lines:
        return "Okay, so it sounds like you don't have any of these right now. Is that right?"
    return "Perfect. Just to confirm: " + "; ".join(lines) + ". Does that all sound right?"


def build_negotiation_script(state: CallState, part_numbers: list[str], policy: NegotiationPolicy) -> str:
    if len(part_numbers) == 1:
        pn = part_numbers[0]
        spoken = format_part_number_for_speech(pn)
        competing = policy.competing_price(state, pn)
        if competing is not None:
            return (
                f"Okay. We've got a quote of ${competing:.2f} on {spoken} "
                f"from another supplier. Is there any flexibility on your price?"
            )
        return f"Okay. That's a bit above what we were expecting for {spoken}. Is there any flexibility on that price?"
    spoken = ", ".join(format_part_number_for_speech(pn) for pn in part_numbers)
    return (
        f"We've got better pricing elsewhere on a few of these, {spoken}. "
        f"Is there anything you can do on price if we take them together?"
    )


def _disputed_parts(state: CallState, text: str) -> list[str]:
    """Captured parts the counterparty named; the only one when just one was read back."""
    said = normalize_part_number(text)
    named = [q.part_number for q in state.quotes if normalize_part_number(q.part_number) in said]
    if not named and len(state.quotes) == 1:
        named = [state.quotes[0].part_number]
    return named


class StateMachine:
    """Pure turn logic. Mutates the CallState it is handed; never does I/O.

    ``process`` runs the deterministic guards for an inbound utterance and
    either answers directly or asks for an LLM decision, which is then fed
    back through ``apply_decision``.
    """

    def __init__(self, policy: NegotiationPolicy | None = None):
        self.policy = policy or NegotiationPolicy()

    def valid_transitions(self, node: Node) -> set[Node]:
        return TRANSITIONS.get(node, set())

    def process(self, state: CallState, text: str) -> Action:
        if state.is_terminal:
            return Action(speak=GOODBYE_SCRIPT, end_call=True, needs_llm=False)

        state.turn_number += 1
        state.add_message("counterparty", text)

        if state.turn_number > MAX_TURNS_PER_CALL:
            logger.warning("[%s] per-call turn limit exceeded, escalating", state.call_id)
            return self.escalate(state, "turn limit")

        if state.current_node == Node.GREETING and detect_voicemail(text):
            return self.enter_voicemail(state)

        if detect_human_request(text):
            return self.escalate(state, "counterparty asked for a person")

        if detect_callback_request(text):
            return self.request_callback(state)

        if detect_hold(text):
            if detect_transfer_offer(text):
                state.needs_transfer = True
            return Action(speak=HOLD_SCRIPT, needs_llm=False)

        handler = getattr(self, f"_handle_{state.current_node.value}", None)
        if handler:
            return handler(state, text)
        return Action()

    # ── Node handlers (deterministic part) ──

    def _handle_greeting(self, state: CallState, text: str) -> Action:
        if detect_wrong_department(text):
            state.needs_transfer = True
            return Action(speak=TRANSFER_REQUEST_SCRIPT, needs_llm=False)
        return Action(needs_llm=True)

    def _handle_quote_request(self, state: CallState, text: str) -> Action:
        if detect_repeat_request(text):
            return self.clarify(state)
        return Action(needs_llm=True)

    def _handle_clarification(self, state: CallState, text: str) -> Action:
        if detect_repeat_request(text):
            return self.clarify(state)
        return Action(needs_llm=True)

    def _handle_negotiation(self, state: CallState, text: str) -> Action:
        if detect_firm_price(text):
            logger.info("[%s] supplier holding firm on price", state.call_id)
            return self.to_confirmation(state)
        return Action(needs_llm=True)

    def _handle_confirmation(self, state: CallState, text: str) -> Action:
        if detect_agreement(text):
            return self.complete(state)
        if detect_repeat_request(text):
            return Action(speak=build_confirmation_script(state), needs_llm=False)
        if detect_rejection(text) and not mentions_price(text):
            return self.reopen(state, _disputed_parts(state, text))
        return Action(needs_llm=True)

    # ── LLM decisions ──

    def apply_decision(self, state: CallState, decision: TurnDecision) -> Action:
        """Validate the model's proposal against the edge set and the counters."""
        current = state.current_node
        state.provider_failures = 0

        if decision.contact_name:
            state.contact_name = decision.contact_name
        if decision.contact_role:
            state.contact_role = decision.contact_role

        captured = 0
        for update in decision.quotes:
            if state.part_for(update.part_number) is None:
                logger.warning("[%s] ignoring quote for unrequested part %r", state.call_id, update.part_number)
                continue
            state.upsert_quote(update.to_captured())
            captured += 1

        if decision.callback_requested:
            return self.request_callback(state)

        proposed = decision.node or current
        if proposed not in self.valid_transitions(current):
            logger.warning(
                "[%s] clipping proposed transition %s -> %s",
                state.call_id, current.value, proposed.value,
            )
            proposed = current

        if proposed == Node.HUMAN_ESCALATION:
            return self.escalate(state, "model requested escalation")
        if proposed == Node.VOICEMAIL:
            return self.enter_voicemail(state)

        if current == Node.GREETING:
            if proposed == Node.QUOTE_REQUEST:
                state.needs_transfer = False
                if not state.pending_parts():
                    return self.after_quotes(state)
                _transition(state, Node.QUOTE_REQUEST)
            return Action(speak=decision.utterance, needs_llm=False)

        if current in (Node.QUOTE_REQUEST, Node.CLARIFICATION):
            if proposed == Node.CLARIFICATION or (not decision.understood and not captured):
                return self.clarify(state, speak=decision.utterance)
            if state.pending_parts():
                _transition(state, Node.QUOTE_REQUEST)
                return Action(speak=decision.utterance, needs_llm=False)
            return self.after_quotes(state)

        if current == Node.NEGOTIATION:
            if decision.price_is_firm or proposed == Node.CONFIRMATION:
                return self.to_confirmation(state)
            still_high = [pn for pn in state.negotiated_parts if not self.policy.is_competitive(state, pn)]
            if not still_high:
                logger.info("[%s] price now competitive, confirming", state.call_id)
                return self.to_confirmation(state)
            return self.negotiate(state, speak=decision.utterance)

        if current == Node.CONFIRMATION:
            if proposed == Node.COMPLETED:
                return self.complete(state, speak=decision.utterance)
            if proposed == Node.QUOTE_REQUEST:
                disputed = [pn for pn in decision.disputed_parts if state.discard_quote(pn)]
                if disputed:
                    logger.info("[%s] re-asking disputed parts %s", state.call_id, disputed)
                    _transition(state, Node.QUOTE_REQUEST)
                    return Action(speak=decision.utterance, needs_llm=False)
            if captured:
                return Action(speak=build_confirmation_script(state), needs_llm=False)
            return Action(speak=decision.utterance, needs_llm=False)

        return Action(speak=decision.utterance, needs_llm=False)

    def handle_provider_failure(self, state: CallState, error: Exception) -> Action:
        state.provider_failures += 1
        logger.warning("[%s] LLM unavailable (%d in a row): %s", state.call_id, state.provider_failures, error)
        if state.provider_failures >= MAX_PROVIDER_FAILURES:
            return self.escalate(state, "LLM provider unavailable")
        return Action(speak=PROVIDER_FALLBACK_SCRIPT, needs_llm=False)

    # ── Routing helpers ──

    def after_quotes(self, state: CallState) -> Action:
        """Every part has an answer: negotiate what is overpriced, else confirm."""
        to_negotiate = self.policy.parts_to_negotiate(state)
        if to_negotiate and state.negotiation_attempts < state.max_negotiation_attempts:
            state.negotiated_parts.extend(to_negotiate)
            return self.negotiate(state, speak=build_negotiation_script(state, to_negotiate, self.policy))
        return self.to_confirmation(state)

    def negotiate(self, state: CallState, speak: str) -> Action:
        if state.negotiation_attempts >= state.max_negotiation_attempts:
            logger.info(
                "[%s] negotiation cap (%d) reached, moving to confirmation",
                state.call_id, state.max_negotiation_attempts,
            )
            return self.to_confirmation(state)
        state.negotiation_attempts += 1
        _transition(state, Node.NEGOTIATION)
        return Action(speak=speak, needs_llm=False)

    def to_confirmation(self, state: CallState) -> Action:
        _transition(state, Node.CONFIRMATION)
        return Action(speak=build_confirmation_script(state), needs_llm=False)

    def reopen(self, state: CallState, part_numbers: list[str]) -> Action:
        """Read-back was wrong: drop the disputed quotes and ask for them again."""
        disputed = [pn for pn in part_numbers if state.discard_quote(pn)]
        if not disputed:
            return Action(speak=CORRECTION_SCRIPT, needs_llm=False)
        logger.info("[%s] read-back rejected, re-asking %s", state.call_id, disputed)
        _transition(state, Node.QUOTE_REQUEST)
        spoken = format_part_number_for_speech(disputed[0])
        return Action(speak=f"Sorry about that. What's the right price on {spoken}?", needs_llm=False)

    def clarify(self, state: CallState, speak: str = "") -> Action:
        state.clarification_attempts += 1
        if state.clarification_attempts >= MAX_CLARIFICATION_ATTEMPTS:
            logger.warning("[%s] %d clarification attempts, escalating", state.call_id, state.clarification_attempts)
            return self.escalate(state, "clarification limit")
        _transition(state, Node.CLARIFICATION)
        if not speak:
            part = state.current_part()
            if part is None:
                speak = "Sorry about that. Could you say that one more time?"
            else:
                speak = f"Sure. The part number is {spell_part_number(part.part_number)}."
                if part.description:
                    speak += f" That's the {part.description}."
        return Action(speak=speak, needs_llm=False)

    # ── Terminal paths (no LLM) ──

    def complete(self, state: CallState, speak: str = "") -> Action:
        _transition(state, Node.COMPLETED)
        state.set_status(CallStatus.COMPLETED)
        state.outcome = determine_outcome(state).value
        return Action(speak=speak or CLOSING_SCRIPT, end_call=True, needs_llm=False)

    def request_callback(self, state: CallState) -> Action:
        state.callback_requested = True
        return self.escalate(state, "callback requested", script=CALLBACK_SCRIPT, next_action="callback")

    def enter_voicemail(self, state: CallState) -> Action:
        if state.is_terminal:
            return Action(end_call=True, needs_llm=False)
        _transition(state, Node.VOICEMAIL)
        state.set_status(CallStatus.COMPLETED)
        state.outcome = Outcome.VOICEMAIL_LEFT.value
        state.next_action = "email_fallback"
        logger.info("[%s] voicemail reached, leaving message", state.call_id)
        return Action(speak=build_voicemail_script(state), end_call=True, needs_llm=False)

    def escalate(self, state: CallState, reason: str, script: str = ESCALATION_SCRIPT,
                 next_action: str = "human_followup") -> Action:
        if state.is_terminal:
            return Action(end_call=True, needs_llm=False)
        logger.warning("[%s] escalating to a human: %s", state.call_id, reason)
        if state.current_node != Node.HUMAN_ESCALATION:
            _transition(state, Node.HUMAN_ESCALATION)
        state.needs_human_escalation = True
        state.next_action = next_action
        state.set_status(CallStatus.ESCALATED)
        _transition(state, Node.ESCALATED)
        state.outcome = determine_outcome(state).value
        return Action(speak=script, end_call=True, needs_llm=False)
