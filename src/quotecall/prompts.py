from quotecall.session import CallState
from quotecall.states import Node
from quotecall.validation import format_part_number_for_speech

PERSONA = """You are calling a parts supplier on behalf of {organization} to get pricing and availability on parts.

VOICE & PERSONA (Experienced Parts Buyer)
- Tone: friendly, efficient, a regular customer calling the parts counter.
- Cadence: ONE question at a time. Max 2 short sentences per turn.
- This is a phone call. No lists, no markdown, no symbols besides $.
- Say part numbers character by character, exactly as given in KNOWN INFO.
- Say prices the way people do: "forty-five dollars", "about twelve fifty".

RULES
1. Ask about ONE part at a time. NEVER read the whole list at once.
2. NEVER invent a price, availability or lead time. Only record what the supplier said.
3. NEVER agree to buy, place an order, or give payment details. You are collecting a quote.
4. If you did not understand the answer, say so and ask again. Do NOT guess.
5. If asked whether you are an AI: "I'm an automated assistant calling for {organization}."
6. If asked for a quote number or email, give reference {reference}."""

RESPONSE_FORMAT = """RESPONSE FORMAT
Return ONLY a JSON object:
{
  "nextNode": one of the allowed next nodes listed above,
  "utterance": what you say next, spoken text only,
  "quotes": [{"partNumber": "...", "price": number or null, "availability": "IN_STOCK" | "BACKORDERED" | "SPECIAL_ORDER" | "UNKNOWN", "leadTimeDays": number or null, "notes": "..."}],
  "understood": false if the supplier's answer could not be mapped to the question,
  "priceIsFirm": true if the supplier said the price will not come down,
  "callbackRequested": true if the supplier asked to be called back later,
  "contactName": the supplier contact's name if they gave it, else null,
  "contactRole": "gatekeeper" | "buyer" | "owner" | null,
  "disputedParts": part numbers the supplier said we got wrong and must be asked again, else []
}
"quotes" holds ONLY parts the supplier answered in their LAST message. Use [] if none.
A part the supplier does not carry gets price null and a note saying so."""

NODE_PROMPTS = {
    Node.GREETING: """## GREETING
You already asked for the parts department. Figure out who picked up.
- A person at the parts counter or a buyer: introduce yourself in one sentence, then ask about the FIRST pending part. nextNode = "quote_request".
- Still the front desk or they are getting someone: stay polite and brief. nextNode = "greeting".""",

    Node.QUOTE_REQUEST: """## QUOTE REQUEST
Get price and availability for the CURRENT PART only.
- When the supplier gives a price or availability, record it in "quotes", then ask about the next pending part.
- When every part has an answer, nextNode = "confirmation".
- If the answer does not match the part you asked about or you could not make it out, nextNode = "clarification".""",

    Node.CLARIFICATION: """## CLARIFICATION
The last answer could not be matched to the part we asked about.
- Restate the part number slowly, character by character, with its description.
- If the supplier now answers, record it and go back to "quote_request" (or "confirmation" if every part is answered).""",

    Node.NEGOTIATION: """## NEGOTIATION
The price on the part(s) under NEGOTIATE is higher than other quotes we have.
- Mention that we have a better price elsewhere and ask if there is any flexibility. Be polite, one ask per turn.
- If they lower the price, record the new price in "quotes".
- If they say the price is firm, set "priceIsFirm": true and nextNode = "confirmation".""",

    Node.CONFIRMATION: """## CONFIRMATION
You just read back the captured prices. Listen to the supplier's answer.
- If they correct something, record the corrected values in "quotes". nextNode = "confirmation" to read back again.
- If a part was wrong entirely and needs to be asked again, list it in "disputedParts". nextNode = "quote_request".
- If they agree, thank them and say goodbye. nextNode = "completed".""",
}


def get_system_prompt(state: CallState, allowed: list[str]) -> str:
    persona = PERSONA.format(organization=state.organization_name, reference=state.quote_reference)
    node_prompt = NODE_PROMPTS.get(state.current_node, "")
    context = _build_context(state)
    allowed_line = "ALLOWED NEXT NODES: " + ", ".join(allowed)
    return f"{persona}\n\n{context}\n\n{node_prompt}\n\n{allowed_line}\n\n{RESPONSE_FORMAT}"


def _build_context(state: CallState) -> str:
    parts = [f"Calling: {state.supplier_name or 'the supplier'}"]
    if state.contact_name:
        role = f" ({state.contact_role})" if state.contact_role else ""
        parts.append(f"Speaking with: {state.contact_name}{role}")
    if state.is_follow_up:
        parts.append("This is a follow-up to an earlier call about the same quote")
    if state.needs_transfer:
        parts.append("We asked to be transferred to parts. Re-introduce yourself briefly to whoever picks up")

    current = state.current_part()
    if current:
        line = f"CURRENT PART: {current.part_number} (say it as: {format_part_number_for_speech(current.part_number)})"
        if current.description:
            line += f", {current.description}"
        line += f", quantity {current.quantity}"
        parts.append(line)

    for part in state.parts:
        quote = state.quote_for(part.part_number)
        if quote is None:
            parts.append(f"Pending: {part.part_number} x{part.quantity}")
        elif quote.price is None:
            parts.append(f"Answered: {part.part_number} no price ({quote.notes or quote.availability})")
        else:
            parts.append(f"Answered: {part.part_number} ${quote.price:.2f} {quote.availability}")

    if state.current_node == Node.NEGOTIATION:
        for part_number in state.negotiated_parts:
            benchmark = state.benchmark_prices.get(part_number)
            if benchmark:
                parts.append(f"NEGOTIATE: {part_number}, best other quote ${benchmark:.2f}")
            else:
                parts.append(f"NEGOTIATE: {part_number}, above our budget")
    if state.custom_instructions:
        parts.append(f"Instructions from the buyer: {state.custom_instructions}")
    return "KNOWN INFO:\n" + "\n".join(f"- {p}" for p in parts)


def build_turn_messages(state: CallState, limit: int = 20) -> list[dict]:
    """Recent conversation as chat messages: agent -> assistant, supplier -> user."""
    role_map = {"agent": "assistant", "counterparty": "user", "system": "system"}
    return [
        {"role": role_map[msg.speaker], "content": msg.text}
        for msg in state.conversation_history[-limit:]
    ]
