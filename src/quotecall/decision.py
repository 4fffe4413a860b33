"""Schema boundary for the turn LLM's structured output.

Nothing the model says enters the state machine until it has passed through
``parse_decision``: node names are repaired or dropped, prices and lead times
are coerced to numbers, availability is mapped onto the fixed vocabulary.
"""

import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from quotecall.errors import MalformedLLMOutput
from quotecall.normalize import normalize_availability, parse_lead_time_days, parse_price
from quotecall.session import CapturedQuote
from quotecall.states import Node

logger = logging.getLogger(__name__)

NODE_ALIASES = {
    "greet": "greeting",
    "quote": "quote_request",
    "quoting": "quote_request",
    "request_quote": "quote_request",
    "clarify": "clarification",
    "negotiate": "negotiation",
    "confirm": "confirmation",
    "escalate": "human_escalation",
    "escalation": "human_escalation",
    "human": "human_escalation",
    "transfer": "human_escalation",
    "complete": "completed",
    "done": "completed",
    "end": "completed",
    "end_call": "completed",
}

CONTACT_ROLES = {"gatekeeper", "buyer", "owner"}


def repair_node_name(value) -> str:
    """Map a model-proposed node name onto a Node value, or "" if hopeless."""
    if not value:
        return ""
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    key = NODE_ALIASES.get(key, key)
    try:
        return Node(key).value
    except ValueError:
        logger.warning("Dropping unknown node name from LLM output: %r", value)
        return ""


class QuoteUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    part_number: str = Field(alias="partNumber")
    price: float | None = None
    availability: str = "UNKNOWN"
    lead_time_days: int | None = Field(default=None, alias="leadTimeDays")
    notes: str = ""

    @field_validator("part_number", mode="before")
    @classmethod
    def _strip_part_number(cls, v):
        return str(v).strip() if v is not None else ""

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, v):
        return parse_price(v)

    @field_validator("availability", mode="before")
    @classmethod
    def _coerce_availability(cls, v):
        return normalize_availability(v)

    @field_validator("lead_time_days", mode="before")
    @classmethod
    def _coerce_lead_time(cls, v):
        return parse_lead_time_days(v)

    @field_validator("notes", mode="before")
    @classmethod
    def _coerce_notes(cls, v):
        return "" if v is None else str(v)

    def to_captured(self) -> CapturedQuote:
        return CapturedQuote(
            part_number=self.part_number,
            price=self.price,
            availability=self.availability,
            lead_time_days=self.lead_time_days,
            notes=self.notes,
        )


class TurnDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    next_node: str = Field(default="", alias="nextNode")
    utterance: str
    quotes: list[QuoteUpdate] = Field(default_factory=list)
    understood: bool = True
    price_is_firm: bool = Field(default=False, alias="priceIsFirm")
    callback_requested: bool = Field(default=False, alias="callbackRequested")
    contact_name: str | None = Field(default=None, alias="contactName")
    contact_role: str | None = Field(default=None, alias="contactRole")
    disputed_parts: list[str] = Field(default_factory=list, alias="disputedParts")

    @field_validator("next_node", mode="before")
    @classmethod
    def _repair_node(cls, v):
        return repair_node_name(v)

    @field_validator("utterance", mode="before")
    @classmethod
    def _clean_utterance(cls, v):
        text = "" if v is None else str(v).strip()
        if not text:
            raise ValueError("utterance is empty")
        return text

    @field_validator("quotes", mode="before")
    @classmethod
    def _drop_unnamed_quotes(cls, v):
        if not isinstance(v, list):
            return []
        return [q for q in v if isinstance(q, dict) and (q.get("partNumber") or q.get("part_number"))]

    @field_validator("contact_role", mode="before")
    @classmethod
    def _known_role(cls, v):
        if not v:
            return None
        role = str(v).strip().lower()
        return role if role in CONTACT_ROLES else None

    @field_validator("disputed_parts", mode="before")
    @classmethod
    def _part_list(cls, v):
        if not isinstance(v, list):
            return []
        return [str(p).strip() for p in v if p]

    @property
    def node(self) -> Node | None:
        return Node(self.next_node) if self.next_node else None


def parse_decision(raw: dict) -> TurnDecision:
    try:
        return TurnDecision.model_validate(raw)
    except ValidationError as e:
        raise MalformedLLMOutput(f"turn decision failed validation: {e.errors()[:3]}") from e
