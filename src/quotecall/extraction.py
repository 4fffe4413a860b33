"""Post-call price extraction.

Turns a finished call transcript, or a supplier's emailed reply, into
normalized quote rows.  Runs off the hot path, so unlike the turn LLM call
it may retry and may take its time.  One supplier failing never fails the
whole run: results are reported per supplier.
"""

import asyncio
import logging
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from quotecall.catalog import QuoteRecord, RequestedItem
from quotecall.errors import LLMProviderError, MalformedLLMOutput
from quotecall.normalize import (
    normalize_availability,
    normalize_part_number,
    parse_lead_time_days,
    parse_price,
    parse_quantity,
)

logger = logging.getLogger(__name__)

CALL_EXTRACTION_PROMPT = """You extract structured quote and pricing information from phone call transcripts between an AI purchasing agent and a parts supplier.

CONTEXT: Our agent called {supplier} to get prices on these parts: {parts}

INSTRUCTIONS:
1. Extract ALL items with pricing mentioned in the conversation.
2. Match items to the requested part numbers above.
3. For each item extract: part number, description, quantity, unit price, total price, lead time, availability.
4. Prices are spoken: "three thousand fourteen dollars and twenty cents" = 3014.20.
5. Part numbers may be spoken phonetically: "A H C one eight five nine eight" = AHC18598.
6. AVAILABILITY RULES:
   - "IN_STOCK" for: says "in stock", "on hand", "ships today", "we have it"
   - "BACKORDERED" for: backordered, out of stock, any wait time
   - "SPECIAL_ORDER" for: special order, custom order
   - null if unclear
7. availabilityNote: any relevant supplier comment about the item.
8. Only record what the SUPPLIER said. Do not guess prices."""

DOCUMENT_EXTRACTION_PROMPT = """You extract structured quote and pricing information from a supplier's emailed quote (email body plus any attached PDF text).

CONTEXT: We asked {supplier} for prices on these parts: {parts}

INSTRUCTIONS:
1. Extract ALL quoted line items with their part number, description, quantity, unit price, total price, lead time and availability.
2. Match items to the requested part numbers above.
3. AVAILABILITY: "IN_STOCK", "BACKORDERED", "SPECIAL_ORDER", or null if unclear.
4. Copy the supplier's quote number and expiry date if present.
5. Do not guess prices. Leave a price null if the document does not state it."""

RESPONSE_SCHEMA = """Respond with a JSON object in this EXACT format:
{
  "quoteNumber": null,
  "totalAmount": number or null,
  "currency": "USD",
  "validUntil": "YYYY-MM-DD" or null,
  "items": [
    {
      "partNumber": "exact part number",
      "description": "part description",
      "quantity": number,
      "unitPrice": number or null,
      "totalPrice": number or null,
      "leadTime": "lead time text" or null,
      "availability": "IN_STOCK" | "BACKORDERED" | "SPECIAL_ORDER" | null,
      "availabilityNote": "supplier comment" or null
    }
  ],
  "notes": "special notes or conditions",
  "paymentTerms": null,
  "shippingMethod": null,
  "shippingCost": null
}
Numbers must be numbers, not strings."""


class ExtractedItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    part_number: str = Field(alias="partNumber")
    description: str = ""
    quantity: int | None = None
    unit_price: float | None = Field(default=None, alias="unitPrice")
    total_price: float | None = Field(default=None, alias="totalPrice")
    lead_time: str | None = Field(default=None, alias="leadTime")
    availability: str | None = None
    availability_note: str | None = Field(default=None, alias="availabilityNote")

    @field_validator("part_number", mode="before")
    @classmethod
    def _part_number(cls, v):
        if v is None or not str(v).strip():
            raise ValueError("partNumber is required")
        return str(v).strip()

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return "" if v is None else str(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v):
        return None if v is None else parse_quantity(v)

    @field_validator("unit_price", "total_price", mode="before")
    @classmethod
    def _price(cls, v):
        return parse_price(v)

    @field_validator("lead_time", "availability", "availability_note", mode="before")
    @classmethod
    def _text(cls, v):
        return None if v is None else str(v)


class ExtractionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quote_number: str | None = Field(default=None, alias="quoteNumber")
    total_amount: float | None = Field(default=None, alias="totalAmount")
    currency: str = "USD"
    valid_until: str | None = Field(default=None, alias="validUntil")
    items: list[ExtractedItem] = Field(default_factory=list)
    notes: str | None = None
    payment_terms: str | None = Field(default=None, alias="paymentTerms")
    shipping_method: str | None = Field(default=None, alias="shippingMethod")
    shipping_cost: float | None = Field(default=None, alias="shippingCost")

    @field_validator("total_amount", "shipping_cost", mode="before")
    @classmethod
    def _amount(cls, v):
        return parse_price(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v):
        return str(v).upper() if v else "USD"

    @field_validator("quote_number", "valid_until", "notes", "payment_terms", "shipping_method", mode="before")
    @classmethod
    def _optional_text(cls, v):
        return None if v is None or v == "" else str(v)

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, v):
        # Drop entries without a part number instead of failing the whole document
        if not isinstance(v, list):
            return []
        return [i for i in v if isinstance(i, dict) and i.get("partNumber")]


@dataclass
class ExtractedQuoteItem:
    part_number: str
    normalized_part_number: str
    description: str
    quantity: int
    unit_price: float | None
    total_price: float | None
    availability: str
    lead_time_days: int | None
    notes: str
    valid_until: str | None


def match_requested_item(part_number: str, items: list[RequestedItem]) -> RequestedItem | None:
    """Exact, then case-insensitive, then normalized. First match wins."""
    for item in items:
        if item.part_number == part_number:
            return item
    lower = part_number.lower()
    for item in items:
        if item.part_number.lower() == lower:
            return item
    normalized = normalize_part_number(part_number)
    for item in items:
        if normalize_part_number(item.part_number) == normalized:
            return item
    return None


def normalize_item(
    item: ExtractedItem,
    requested: RequestedItem | None,
    *,
    valid_until: str | None,
    source_label: str,
) -> ExtractedQuoteItem | None:
    """Apply availability / lead-time rules. None when the item carries no price at all."""
    if item.unit_price is None and item.total_price is None:
        return None

    quantity = item.quantity or (requested.quantity if requested else 1)
    unit_price = item.unit_price
    total_price = item.total_price
    if total_price is None:
        total_price = round(unit_price * quantity, 2)
    elif unit_price is None:
        unit_price = round(total_price / quantity, 2)

    availability = normalize_availability(item.availability)
    lead_time_days = parse_lead_time_days(item.lead_time)
    # A stated lead time contradicts immediate availability
    if availability == "IN_STOCK" and lead_time_days and lead_time_days > 0:
        availability = "BACKORDERED"

    note = item.availability_note or item.lead_time or item.availability
    notes = f"{note} ({source_label})" if note else source_label.capitalize()

    return ExtractedQuoteItem(
        part_number=item.part_number,
        normalized_part_number=normalize_part_number(item.part_number),
        description=item.description or (requested.description if requested else ""),
        quantity=quantity,
        unit_price=unit_price,
        total_price=total_price,
        availability=availability,
        lead_time_days=lead_time_days,
        notes=notes,
        valid_until=valid_until,
    )


class ExtractionPipeline:
    def __init__(
        self,
        provider,
        repository,
        notifier=None,
        *,
        model: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_backoff: float = 2.0,
    ):
        self.provider = provider
        self.repository = repository
        self.notifier = notifier
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    async def extract_from_transcript(
        self,
        quote_request_id: str,
        supplier_id: str,
        supplier_name: str,
        transcript: str,
    ) -> dict:
        """Extract and store quotes from one call transcript. Returns the supplier result."""
        return await self._run_supplier(
            quote_request_id, supplier_id, supplier_name,
            prompt_template=CALL_EXTRACTION_PROMPT,
            content=f"PHONE CALL TRANSCRIPT:\n{transcript}",
            source="phone_call",
        )

    async def extract_from_document(
        self,
        quote_request_id: str,
        supplier_id: str,
        supplier_name: str,
        *,
        subject: str = "",
        sender: str = "",
        body: str = "",
        attachment_text: str = "",
    ) -> dict:
        content = f"EMAIL FROM: {sender}\nSUBJECT: {subject}\n\n{body}"
        if attachment_text:
            content += f"\n\nATTACHMENT TEXT:\n{attachment_text}"
        return await self._run_supplier(
            quote_request_id, supplier_id, supplier_name,
            prompt_template=DOCUMENT_EXTRACTION_PROMPT,
            content=content,
            source="email",
        )

    async def run_for_quote_request(self, quote_request_id: str) -> list[dict]:
        """Re-extract every finished call of a quote request that has a transcript."""
        results = []
        for record in await self.repository.list_call_records(quote_request_id):
            transcript = record.get("transcript") or ""
            if not transcript.strip() or not record.get("supplierId"):
                continue
            results.append(await self._run_supplier(
                quote_request_id, record["supplierId"], record.get("supplierName", ""),
                prompt_template=CALL_EXTRACTION_PROMPT,
                content=f"PHONE CALL TRANSCRIPT:\n{transcript}",
                source="phone_call",
                notify=False,
            ))
        await self._notify(quote_request_id, results)
        return results

    async def _run_supplier(
        self,
        quote_request_id: str,
        supplier_id: str,
        supplier_name: str,
        *,
        prompt_template: str,
        content: str,
        source: str,
        notify: bool = True,
    ) -> dict:
        result = {
            "supplierId": supplier_id,
            "supplierName": supplier_name,
            "itemsExtracted": 0,
            "success": False,
        }
        try:
            requested = await self.repository.get_requested_items(quote_request_id)
            system_prompt = prompt_template.format(
                supplier=supplier_name or "the supplier",
                parts=", ".join(i.part_number for i in requested) or "(extract all pricing info)",
            ) + "\n\n" + RESPONSE_SCHEMA
            extraction = await self._extract(system_prompt, content)
            stored = await self._store(quote_request_id, supplier_id, extraction, requested, source)
        except Exception as e:
            logger.error("Extraction for supplier %s on %s failed: %s", supplier_id, quote_request_id, e)
            result["error"] = str(e)
            return result

        result["itemsExtracted"] = stored
        result["success"] = True
        logger.info("Extracted %d items from %s for %s", stored, supplier_name or supplier_id, quote_request_id)
        if notify:
            await self._notify(quote_request_id, [result])
        return result

    async def _extract(self, system_prompt: str, content: str) -> ExtractionResult:
        """LLM call with retries. Raises the last provider error when they run out."""
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                raw = await self.provider.generate_json(
                    system_prompt,
                    [{"role": "user", "content": content}],
                    timeout=self.timeout,
                    model=self.model,
                    temperature=0.1,
                )
                return ExtractionResult.model_validate(raw)
            except ValidationError as e:
                last_error = MalformedLLMOutput(f"extraction failed validation: {e.errors()[:3]}")
            except LLMProviderError as e:
                last_error = e
            if attempt < self.max_retries:
                logger.warning("Extraction attempt %d failed, retrying: %s", attempt + 1, last_error)
                await asyncio.sleep(self.retry_backoff * (attempt + 1))
        raise last_error

    async def _store(
        self,
        quote_request_id: str,
        supplier_id: str,
        extraction: ExtractionResult,
        requested: list[RequestedItem],
        source: str,
    ) -> int:
        source_label = "extracted from phone call" if source == "phone_call" else "extracted from email"
        stored = 0
        for item in extraction.items:
            match = match_requested_item(item.part_number, requested)
            if match is None:
                logger.warning("No requested item matches extracted part %r, skipping", item.part_number)
                continue
            normalized = normalize_item(item, match, valid_until=extraction.valid_until, source_label=source_label)
            if normalized is None:
                logger.info("Skipping %s, no pricing", item.part_number)
                continue
            await self.repository.upsert_quote_item(QuoteRecord(
                requested_item_id=match.id,
                supplier_id=supplier_id,
                quote_request_id=quote_request_id,
                part_number=match.part_number,
                unit_price=normalized.unit_price,
                total_price=normalized.total_price,
                currency=extraction.currency,
                availability=normalized.availability,
                lead_time_days=normalized.lead_time_days,
                notes=normalized.notes,
                valid_until=normalized.valid_until,
                source=source,
                quote_number=extraction.quote_number or "",
            ))
            stored += 1
        if stored:
            await self.repository.mark_quote_request_received(quote_request_id)
        return stored

    async def _notify(self, quote_request_id: str, results: list[dict]) -> None:
        if self.notifier is None or not any(r.get("itemsExtracted") for r in results):
            return
        await self.notifier.quotes_extracted(quote_request_id, results)
