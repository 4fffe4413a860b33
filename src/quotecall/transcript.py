import re

from quotecall.session import Message

_VENDOR_ROLES = {
    "assistant": "agent",
    "bot": "agent",
    "ai": "agent",
    "user": "counterparty",
    "customer": "counterparty",
}

_LINE_PATTERN = re.compile(r"^\s*(ai|assistant|bot|user|customer)\s*:\s*(.*)$", re.IGNORECASE)


def to_plain_text(history: list[Message]) -> str:
    """Render history for the extraction prompt.

    Agent lines prefixed with "AI AGENT:", supplier lines with "SUPPLIER:",
    system notes left out.
    """
    if not history:
        return ""

    lines = []
    for msg in history:
        if msg.speaker == "agent":
            lines.append(f"AI AGENT: {msg.text}")
        elif msg.speaker == "counterparty":
            lines.append(f"SUPPLIER: {msg.text}")
    return "\n".join(lines)


def to_json_array(history: list[Message]) -> list[dict]:
    """History as {speaker, text, timestamp} dicts for the call record."""
    return [
        {"speaker": msg.speaker, "text": msg.text, "timestamp": msg.timestamp}
        for msg in history or []
    ]


def from_vendor_messages(messages: list[dict], started_at: float = 0.0) -> list[Message]:
    """Convert the vendor's end-of-call message artifact into history entries.

    Entries use "message" or "content" for text and "secondsFromStart" or
    "time" for timing. System and tool entries are dropped.
    """
    history = []
    for entry in messages or []:
        speaker = _VENDOR_ROLES.get(str(entry.get("role", "")).lower())
        text = entry.get("message") or entry.get("content") or ""
        if not speaker or not text:
            continue
        if "secondsFromStart" in entry:
            timestamp = started_at + float(entry["secondsFromStart"])
        else:
            timestamp = float(entry.get("time") or 0.0)
        history.append(Message(speaker=speaker, text=text, timestamp=timestamp))
    return history


def from_vendor_text(text: str) -> list[Message]:
    """Parse a flat "AI: ... / User: ..." transcript. Continuation lines join the previous turn."""
    history = []
    for line in (text or "").splitlines():
        match = _LINE_PATTERN.match(line)
        if match:
            speaker = _VENDOR_ROLES[match.group(1).lower()]
            history.append(Message(speaker=speaker, text=match.group(2).strip()))
        elif history and line.strip():
            history[-1].text = f"{history[-1].text} {line.strip()}"
    return history


def count_turns(history: list[Message]) -> int:
    return sum(1 for msg in history if msg.speaker in ("agent", "counterparty"))


def merge_histories(local: list[Message], vendor: list[Message]) -> list[Message]:
    """Pick whichever record of the call has more spoken turns.

    Either side can be short: the vendor's artifact misses turns answered
    while a lock was busy, and local history misses anything said after our
    last persisted turn. Ties keep the local copy, which carries system notes.
    """
    if count_turns(vendor) > count_turns(local):
        return list(vendor)
    return list(local)


def to_timestamped_dump(
    history: list[Message],
    start_time: float,
    call_id: str,
    supplier: str,
    final_node: str,
) -> dict:
    """Build a timestamped transcript dump dict for structured logging.

    Timestamps are converted to relative seconds from call start.
    If start_time is 0, uses the first timestamped entry as base.
    """
    base_time = start_time
    if base_time <= 0:
        for msg in history:
            if msg.timestamp:
                base_time = msg.timestamp
                break

    entries = []
    for msg in history:
        if not msg.timestamp:
            continue
        entries.append({
            "t": round(msg.timestamp - base_time, 1),
            "speaker": msg.speaker,
            "text": msg.text,
        })

    return {
        "call_id": call_id,
        "supplier": supplier,
        "final_node": final_node,
        "entries": entries,
    }
