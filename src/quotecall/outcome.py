from enum import Enum

from quotecall.session import CallState
from quotecall.states import Node, CallStatus


class Outcome(Enum):
    QUOTE_RECEIVED = "QUOTE_RECEIVED"
    PARTIAL_QUOTE = "PARTIAL_QUOTE"
    VOICEMAIL_LEFT = "VOICEMAIL_LEFT"
    CALLBACK_REQUESTED = "CALLBACK_REQUESTED"
    TOO_COMPLEX = "TOO_COMPLEX"
    NO_ANSWER = "NO_ANSWER"
    FAILED = "FAILED"


# Coarse disposition surfaced to the requester
DISPOSITIONS = {
    Outcome.QUOTE_RECEIVED: "quoted",
    Outcome.PARTIAL_QUOTE: "quoted",
    Outcome.VOICEMAIL_LEFT: "voicemail",
    Outcome.TOO_COMPLEX: "escalated",
    Outcome.CALLBACK_REQUESTED: "no_answer",
    Outcome.NO_ANSWER: "no_answer",
    Outcome.FAILED: "no_answer",
}

# Vendor lifecycle statuses that decide the outcome on their own
VENDOR_STATUS_OUTCOMES = {
    "voicemail": Outcome.VOICEMAIL_LEFT,
    "no-answer": Outcome.NO_ANSWER,
    "busy": Outcome.NO_ANSWER,
    "failed": Outcome.FAILED,
}

# Call log status written to the terminal record
_CALL_LOG_STATUS = {
    Outcome.VOICEMAIL_LEFT: "VOICEMAIL",
    Outcome.FAILED: "FAILED",
}


def determine_outcome(state: CallState, vendor_status: str = "") -> Outcome:
    """Final disposition from accumulated state.

    Order matters: a voicemail is always a voicemail, any priced quote beats
    an escalation later in the same call, and a call that got nowhere is
    NO_ANSWER.
    """
    if state.current_node == Node.VOICEMAIL or state.outcome == Outcome.VOICEMAIL_LEFT.value:
        return Outcome.VOICEMAIL_LEFT
    if state.priced_quotes():
        return Outcome.QUOTE_RECEIVED
    if state.quotes:
        return Outcome.PARTIAL_QUOTE
    if state.callback_requested:
        return Outcome.CALLBACK_REQUESTED
    if state.needs_human_escalation or state.status == CallStatus.ESCALATED:
        return Outcome.TOO_COMPLEX
    vendor_outcome = VENDOR_STATUS_OUTCOMES.get(vendor_status or state.vendor_status)
    if vendor_outcome is not None:
        return vendor_outcome
    return Outcome.NO_ANSWER


def disposition(outcome: Outcome) -> str:
    return DISPOSITIONS[outcome]


def call_log_status(state: CallState, outcome: Outcome) -> str:
    """COMPLETED | FAILED | VOICEMAIL | HUMAN_ESCALATED for the terminal record."""
    if outcome in _CALL_LOG_STATUS:
        return _CALL_LOG_STATUS[outcome]
    if state.status == CallStatus.ESCALATED:
        return "HUMAN_ESCALATED"
    return "COMPLETED"
