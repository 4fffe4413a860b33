import logging
import re
import time
from dataclasses import dataclass, field, asdict, fields

from quotecall.states import Node, CallStatus

logger = logging.getLogger(__name__)

SPEAKERS = ("agent", "counterparty", "system")

FOLLOW_UP_MARKERS = ("follow up", "follow-up", "followup", "previous quote", "previous call", "called before")


@dataclass
class Message:
    speaker: str
    text: str
    timestamp: float = 0.0


@dataclass
class Part:
    part_number: str
    description: str = ""
    quantity: int = 1
    budget_max: float | None = None
    requested_item_id: str = ""


@dataclass
class CapturedQuote:
    part_number: str
    price: float | None = None
    availability: str = "UNKNOWN"
    lead_time_days: int | None = None
    notes: str = ""


@dataclass
class CallState:
    call_id: str

    # Identity
    quote_request_id: str = ""
    supplier_id: str = ""
    organization_id: str = ""
    caller_id: str = ""
    external_call_id: str = ""

    # Context loaded at call start
    supplier_name: str = ""
    supplier_phone: str = ""
    organization_name: str = "our company"
    quote_reference: str = "QR-UNKNOWN"
    caller_name: str = ""
    parts: list = field(default_factory=list)
    benchmark_prices: dict = field(default_factory=dict)
    custom_context: str = ""
    custom_instructions: str = ""
    is_follow_up: bool = False

    # Conversation
    current_node: Node = Node.GREETING
    conversation_history: list = field(default_factory=list)
    quotes: list = field(default_factory=list)
    turn_number: int = 0

    # Counters
    negotiation_attempts: int = 0
    max_negotiation_attempts: int = 2
    clarification_attempts: int = 0
    provider_failures: int = 0
    negotiated_parts: list = field(default_factory=list)

    # Flags
    needs_human_escalation: bool = False
    needs_transfer: bool = False
    callback_requested: bool = False

    # Lifecycle
    status: CallStatus = CallStatus.IN_PROGRESS
    outcome: str = ""
    next_action: str = ""
    contact_name: str = ""
    contact_role: str = ""
    vendor_status: str = ""
    started_at: float = 0.0
    ended_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def add_message(self, speaker: str, text: str) -> Message:
        if speaker not in SPEAKERS:
            raise ValueError(f"unknown speaker {speaker!r}")
        msg = Message(speaker=speaker, text=text, timestamp=time.time())
        self.conversation_history.append(msg)
        return msg

    def last_agent_message(self) -> str:
        for msg in reversed(self.conversation_history):
            if msg.speaker == "agent":
                return msg.text
        return ""

    def set_status(self, status: CallStatus) -> None:
        """Status only moves forward: in_progress -> completed | escalated."""
        if self.status.is_terminal and status != self.status:
            logger.warning(
                "[%s] ignoring status change %s -> %s on a finished call",
                self.call_id, self.status.value, status.value,
            )
            return
        self.status = status

    # ── Quotes ──

    def quote_for(self, part_number: str) -> CapturedQuote | None:
        key = _part_key(part_number)
        for quote in self.quotes:
            if _part_key(quote.part_number) == key:
                return quote
        return None

    def upsert_quote(self, quote: CapturedQuote) -> CapturedQuote:
        """Merge a captured quote into the list, keyed by part number."""
        existing = self.quote_for(quote.part_number)
        if existing is None:
            part = self.part_for(quote.part_number)
            if part is not None:
                quote.part_number = part.part_number
            self.quotes.append(quote)
            return quote
        if quote.price is not None:
            existing.price = quote.price
        if quote.availability and quote.availability != "UNKNOWN":
            existing.availability = quote.availability
        if quote.lead_time_days is not None:
            existing.lead_time_days = quote.lead_time_days
        if quote.notes:
            existing.notes = quote.notes
        return existing

    def discard_quote(self, part_number: str) -> bool:
        """Drop a disputed quote so the part is asked about again."""
        quote = self.quote_for(part_number)
        if quote is None:
            return False
        self.quotes.remove(quote)
        return True

    def priced_quotes(self) -> list:
        return [q for q in self.quotes if q.price is not None]

    # ── Parts ──

    def part_for(self, part_number: str) -> Part | None:
        key = _part_key(part_number)
        for part in self.parts:
            if _part_key(part.part_number) == key:
                return part
        return None

    def pending_parts(self) -> list:
        """Requested parts the supplier has not answered yet, in request order."""
        return [p for p in self.parts if self.quote_for(p.part_number) is None]

    def current_part(self) -> Part | None:
        pending = self.pending_parts()
        return pending[0] if pending else None

    # ── Serialization ──

    def to_dict(self) -> dict:
        data = asdict(self)
        data["current_node"] = self.current_node.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CallState":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["current_node"] = Node(kwargs.get("current_node", Node.GREETING.value))
        kwargs["status"] = CallStatus(kwargs.get("status", CallStatus.IN_PROGRESS.value))
        kwargs["conversation_history"] = [Message(**m) for m in kwargs.get("conversation_history", [])]
        kwargs["parts"] = [Part(**p) for p in kwargs.get("parts", [])]
        kwargs["quotes"] = [CapturedQuote(**q) for q in kwargs.get("quotes", [])]
        return cls(**kwargs)


def _part_key(part_number: str) -> str:
    return re.sub(r"[\s-]", "", part_number or "").upper()


def parse_custom_context(text: str) -> tuple[str, str]:
    """Pull "Company: X" and "Quote Request: Y" lines out of free-form context."""
    organization = ""
    reference = ""
    for line in (text or "").splitlines():
        company = re.match(r"\s*company\s*:\s*(.+)", line, re.IGNORECASE)
        if company and not organization:
            organization = company.group(1).strip()
            continue
        quote_ref = re.match(r"\s*quote request\s*:\s*(.+)", line, re.IGNORECASE)
        if quote_ref and not reference:
            reference = quote_ref.group(1).strip()
    return organization, reference


def detect_follow_up(instructions: str) -> bool:
    lower = (instructions or "").lower()
    return any(marker in lower for marker in FOLLOW_UP_MARKERS)
