import asyncio
import json
import logging
import time
from dataclasses import asdict

from quotecall.outcome import Outcome, determine_outcome, disposition, call_log_status
from quotecall.session import CallState
from quotecall.transcript import (
    count_turns,
    merge_histories,
    to_json_array,
    to_plain_text,
    to_timestamped_dump,
)

logger = logging.getLogger(__name__)

FOLLOW_UP_ACTIONS = {"email_fallback", "human_followup", "callback"}


def build_call_record(state: CallState, outcome: Outcome, history: list, artifacts: dict) -> dict:
    """Terminal call record for the catalog, built from state + vendor artifacts."""
    ended_at = state.ended_at or time.time()
    duration = artifacts.get("durationSeconds")
    if duration is None and state.started_at:
        duration = round(ended_at - state.started_at, 1)
    return {
        "callId": state.call_id,
        "externalCallId": state.external_call_id or artifacts.get("externalCallId", ""),
        "quoteRequestId": state.quote_request_id,
        "supplierId": state.supplier_id,
        "supplierName": state.supplier_name,
        "organizationId": state.organization_id,
        "callerId": state.caller_id,
        "status": call_log_status(state, outcome),
        "outcome": outcome.value,
        "disposition": disposition(outcome),
        "finalNode": state.current_node.value,
        "duration": duration,
        "endedReason": artifacts.get("endedReason", ""),
        "recordingUrl": artifacts.get("recordingUrl", ""),
        "transcript": to_plain_text(history),
        "conversationLog": to_json_array(history),
        "quotes": [asdict(q) for q in state.quotes],
        "nextAction": state.next_action,
        "needsHumanEscalation": state.needs_human_escalation,
        "contactName": state.contact_name,
        "contactRole": state.contact_role,
        "negotiationAttempts": state.negotiation_attempts,
        "clarificationAttempts": state.clarification_attempts,
    }


def chunk_transcript_dump(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Split a transcript dump into chunks that fit within log line limits.

    Each chunk is a string: TRANSCRIPT_DUMP|N/M|{json}
    The first chunk carries the header fields, later ones only entries.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    entries = dump.get("entries", [])

    if not entries:
        return [f"TRANSCRIPT_DUMP|1/1|{json.dumps({**header, 'entries': []})}"]

    chunks: list[list[dict]] = []
    current: list[dict] = []
    current_size = len(json.dumps({**header, "entries": []}).encode("utf-8"))

    for entry in entries:
        # comma + bracket overhead
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2
        if current and current_size + entry_size > max_bytes:
            chunks.append(current)
            current = []
            current_size = len(json.dumps({"entries": []}).encode("utf-8"))
        current.append(entry)
        current_size += entry_size
    chunks.append(current)

    total = len(chunks)
    lines = []
    for i, chunk in enumerate(chunks):
        body = {**header, "entries": chunk} if i == 0 else {"entries": chunk}
        lines.append(f"TRANSCRIPT_DUMP|{i + 1}/{total}|{json.dumps(body)}")
    return lines


class PostCallHandler:
    """Everything that happens once a call is over.

    Persists the terminal record, logs the transcript dump, and kicks off
    extraction as a background task so the vendor's webhook gets its answer
    without waiting on an LLM.
    """

    def __init__(self, repository, pipeline=None, notifier=None):
        self.repository = repository
        self.pipeline = pipeline
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    async def finalize(self, state: CallState, artifacts: dict | None = None) -> dict:
        artifacts = artifacts or {}
        if artifacts.get("vendorStatus"):
            state.vendor_status = artifacts["vendorStatus"]
        state.ended_at = state.ended_at or time.time()
        outcome = determine_outcome(state)
        state.outcome = outcome.value

        history = merge_histories(state.conversation_history, artifacts.get("history") or [])
        record = build_call_record(state, outcome, history, artifacts)
        await self.repository.save_call_record(record)

        self._log_transcript(state, history)
        logger.info(
            "[%s] call finished: node=%s outcome=%s quotes=%d",
            state.call_id, state.current_node.value, outcome.value, len(state.quotes),
        )

        if state.quotes and state.quote_request_id and state.supplier_id:
            self.schedule_extraction(state.quote_request_id, state.supplier_id, state.supplier_name, record["transcript"])
        if state.next_action in FOLLOW_UP_ACTIONS and self.notifier is not None:
            await self.notifier.follow_up_needed(record)
        return record

    async def record_failure(self, call_id: str, state: CallState | None, error: str) -> None:
        """Vendor reported an error: mark the call failed. No retry, a human re-dials."""
        fields = {"notes": f"Error: {error}", "outcome": Outcome.FAILED.value}
        if state is not None:
            fields["conversationLog"] = to_json_array(state.conversation_history)
            fields["quoteRequestId"] = state.quote_request_id
            fields["supplierId"] = state.supplier_id
        await self.repository.update_call_status(call_id, "FAILED", **fields)
        logger.error("[%s] call failed: %s", call_id, error)

    async def merge_late_artifacts(self, call_id: str, artifacts: dict) -> dict | None:
        """A second end-of-call event after cleanup: only fill in what the first one lacked."""
        record = await self.repository.get_call_record(call_id)
        if record is None:
            logger.warning("[%s] end-of-call event for an unknown call, ignoring", call_id)
            return None
        updates = {}
        vendor_history = artifacts.get("history") or []
        stored_turns = sum(
            1 for entry in record.get("conversationLog") or []
            if entry.get("speaker") in ("agent", "counterparty")
        )
        if count_turns(vendor_history) > stored_turns:
            updates["transcript"] = to_plain_text(vendor_history)
            updates["conversationLog"] = to_json_array(vendor_history)
        for key in ("recordingUrl", "endedReason", "durationSeconds"):
            if artifacts.get(key) and not record.get(key):
                updates["duration" if key == "durationSeconds" else key] = artifacts[key]
        if not updates:
            return record
        record.update(updates)
        await self.repository.save_call_record(record)
        logger.info("[%s] merged late vendor artifacts: %s", call_id, sorted(updates))
        return record

    def schedule_extraction(self, quote_request_id: str, supplier_id: str, supplier_name: str, transcript: str):
        if self.pipeline is None:
            logger.warning("No extraction pipeline configured, skipping extraction")
            return None
        task = asyncio.create_task(
            self._safe_extraction(quote_request_id, supplier_id, supplier_name, transcript)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _safe_extraction(self, quote_request_id, supplier_id, supplier_name, transcript):
        try:
            await self.pipeline.extract_from_transcript(quote_request_id, supplier_id, supplier_name, transcript)
        except Exception as e:
            logger.error("Background extraction for %s/%s failed: %s", quote_request_id, supplier_id, e)

    async def drain(self) -> None:
        """Wait for scheduled extractions. Used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _log_transcript(self, state: CallState, history: list) -> None:
        dump = to_timestamped_dump(
            history,
            start_time=state.started_at,
            call_id=state.call_id,
            supplier=state.supplier_name,
            final_node=state.current_node.value,
        )
        dump["outcome"] = state.outcome
        for line in chunk_transcript_dump(dump):
            logger.info(line)
