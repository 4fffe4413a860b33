from enum import Enum

CONVERSATION_NODES = {
    "greeting", "quote_request", "clarification",
    "negotiation", "confirmation",
}
ESCALATION_NODES = {"human_escalation", "escalated"}
TERMINAL_NODES = {"completed", "voicemail", "escalated"}


class Node(Enum):
    GREETING = "greeting"
    QUOTE_REQUEST = "quote_request"
    CLARIFICATION = "clarification"
    NEGOTIATION = "negotiation"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"
    VOICEMAIL = "voicemail"
    HUMAN_ESCALATION = "human_escalation"
    ESCALATED = "escalated"

    @property
    def is_conversational(self) -> bool:
        return self.value in CONVERSATION_NODES

    @property
    def is_escalation(self) -> bool:
        return self.value in ESCALATION_NODES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_NODES


class CallStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self is not CallStatus.IN_PROGRESS
