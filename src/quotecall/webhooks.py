"""Voice vendor lifecycle webhooks.

Handles call start, status changes, end of call and vendor errors.  Every
handler is idempotent under retries and out-of-order delivery, and the
gateway always acknowledges, even when a handler fails.

Individual transcript events are ignored. Turn-by-turn state belongs to
the chat completions bridge, which is its only writer.
"""

import logging
from contextlib import AsyncExitStack, asynccontextmanager

from quotecall.context import ensure_call_state, load_call_context, build_call_state
from quotecall.errors import ContextNotFound, LockTimeout, StoreUnavailable
from quotecall.session import CallState
from quotecall.state_machine import StateMachine, record_agent_turn
from quotecall.transcript import from_vendor_messages, from_vendor_text

logger = logging.getLogger(__name__)

# Vendor status -> call log status
STATUS_MAP = {
    "queued": "QUEUED",
    "ringing": "RINGING",
    "answered": "ANSWERED",
    "in-progress": "ANSWERED",
    "busy": "BUSY",
    "no-answer": "NO_ANSWER",
    "voicemail": "VOICEMAIL",
}

# Substrings of the vendor's endedReason that decide the outcome on their own
ENDED_REASON_STATUS = {
    "voicemail": "voicemail",
    "did-not-answer": "no-answer",
    "no-answer": "no-answer",
    "busy": "busy",
}

# Paths the call id has been seen under, most specific first
CALL_ID_PATHS = (
    ("metadata", "callId"),
    ("message", "call", "metadata", "callLogId"),
    ("call", "metadata", "callLogId"),
    ("message", "call", "metadata", "callId"),
    ("call", "metadata", "callId"),
)

EXTERNAL_ID_PATHS = (
    ("message", "call", "id"),
    ("call", "id"),
    ("externalCallId",),
)


def _dig(payload: dict, path: tuple) -> str:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return ""
        node = node.get(key)
    return str(node) if node else ""


def extract_call_id(payload: dict) -> str:
    for path in CALL_ID_PATHS:
        value = _dig(payload, path)
        if value:
            return value
    return ""


def extract_external_call_id(payload: dict) -> str:
    for path in EXTERNAL_ID_PATHS:
        value = _dig(payload, path)
        if value:
            return value
    return ""


def extract_event_type(payload: dict) -> str:
    message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
    return str(payload.get("type") or message.get("type") or "").lower()


def extract_metadata(payload: dict) -> dict:
    for path in (("metadata",), ("message", "call", "metadata"), ("call", "metadata")):
        node = payload
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, dict) and node:
            return node
    return {}


def _message(payload: dict) -> dict:
    message = payload.get("message")
    return message if isinstance(message, dict) else payload


def extract_artifacts(payload: dict, started_at: float = 0.0) -> dict:
    """Transcript, recording and end reason from a call-ended / end-of-call-report event."""
    message = _message(payload)
    artifact = message.get("artifact") if isinstance(message.get("artifact"), dict) else {}

    vendor_messages = artifact.get("messages") or message.get("messages")
    if isinstance(vendor_messages, list) and vendor_messages:
        history = from_vendor_messages(vendor_messages, started_at=started_at)
    else:
        text = artifact.get("transcript") or message.get("transcript") or payload.get("transcript")
        history = from_vendor_text(text) if isinstance(text, str) else []

    ended_reason = str(message.get("endedReason") or payload.get("endedReason") or "")
    vendor_status = ""
    for fragment, status in ENDED_REASON_STATUS.items():
        if fragment in ended_reason.lower():
            vendor_status = status
            break

    return {
        "history": history,
        "recordingUrl": artifact.get("recordingUrl") or message.get("recordingUrl") or "",
        "endedReason": ended_reason,
        "durationSeconds": message.get("durationSeconds") or payload.get("durationSeconds"),
        "externalCallId": extract_external_call_id(payload),
        "vendorStatus": vendor_status,
    }


class WebhookGateway:
    def __init__(self, store, repository, post_call, machine: StateMachine | None = None,
                 *, max_negotiation_attempts: int = 2):
        self.store = store
        self.repository = repository
        self.post_call = post_call
        self.machine = machine or StateMachine()
        self.max_negotiation_attempts = max_negotiation_attempts
        self._handlers = {
            "call-started": self._on_call_started,
            "status-update": self._on_status_update,
            "call-ended": self._on_call_ended,
            "end-of-call-report": self._on_call_ended,
            "error": self._on_error,
            "transcript": self._on_transcript,
        }

    async def handle(self, payload: dict) -> dict:
        event = extract_event_type(payload)
        call_id = extract_call_id(payload)
        if not call_id:
            logger.warning("Webhook %r without a call id, acknowledging", event)
            return {"received": True}

        handler = self._handlers.get(event)
        if handler is None:
            logger.info("[%s] ignoring unhandled webhook %r", call_id, event)
            return {"received": True}

        logger.info("[%s] webhook %s", call_id, event)
        try:
            return await handler(call_id, payload)
        except Exception:
            logger.exception("[%s] webhook %s failed", call_id, event)
            return {"received": True}

    @asynccontextmanager
    async def _authoritative(self, call_id: str):
        """Take the lock if we can; terminal events go ahead without it if we can't."""
        async with AsyncExitStack() as stack:
            try:
                await stack.enter_async_context(self.store.locked(call_id))
            except LockTimeout:
                logger.warning("[%s] lock busy, terminal event proceeding without it", call_id)
            yield

    # ── Handlers ──

    async def _on_call_started(self, call_id: str, payload: dict) -> dict:
        try:
            state, created = await ensure_call_state(
                self.store, self.repository, call_id,
                external_call_id=extract_external_call_id(payload),
                metadata=extract_metadata(payload),
                max_negotiation_attempts=self.max_negotiation_attempts,
            )
        except ContextNotFound as e:
            logger.error("[%s] cannot start call: %s", call_id, e)
            return {"received": True}
        if state is None:
            return {"received": True}
        if created:
            await self.repository.update_call_status(
                call_id, "IN_PROGRESS", externalCallId=state.external_call_id,
            )
        return {"received": True, "initialized": created}

    async def _on_status_update(self, call_id: str, payload: dict) -> dict:
        message = _message(payload)
        status = str(message.get("status") or payload.get("status") or "").lower()
        if status == "voicemail":
            return await self._on_voicemail(call_id, payload)

        mapped = STATUS_MAP.get(status)
        if mapped:
            await self.repository.update_call_status(call_id, mapped)
        try:
            async with self.store.locked(call_id):
                state = await self.store.get(call_id)
                if state is not None and state.vendor_status != status:
                    state.vendor_status = status
                    await self.store.save(state)
        except StoreUnavailable as e:
            logger.warning("[%s] could not mirror status %s: %s", call_id, status, e)
        return {"received": True}

    async def _on_voicemail(self, call_id: str, payload: dict) -> dict:
        """Leave the message, close the call out, and tell the vendor to hang up."""
        async with self._authoritative(call_id):
            state = await self.store.get(call_id)
            if state is None:
                state = await self._transient_state(call_id, payload)
            action = self.machine.enter_voicemail(state)
            record_agent_turn(state, action)
            state.vendor_status = "voicemail"
            if await self.store.delete(call_id) or not await self._has_terminal_record(call_id):
                await self.post_call.finalize(state, {"vendorStatus": "voicemail"})
        response = {"received": True, "endCall": True}
        if action.speak:
            response["say"] = action.speak
        return response

    async def _on_call_ended(self, call_id: str, payload: dict) -> dict:
        async with self._authoritative(call_id):
            state = await self.store.get(call_id)
            artifacts = extract_artifacts(payload, started_at=state.started_at if state else 0.0)
            already_ended = await self.store.is_ended(call_id)
            # Deleting first makes finalization happen exactly once across racing end events
            removed = await self.store.delete(call_id)
            if state is None and not already_ended and not await self._has_terminal_record(call_id):
                # Ended before call-started, or never reached the bridge
                state = await self._transient_state(call_id, payload)
            elif state is None or not removed:
                await self.post_call.merge_late_artifacts(call_id, artifacts)
                return {"received": True}
            if not state.external_call_id:
                state.external_call_id = artifacts["externalCallId"]
            record = await self.post_call.finalize(state, artifacts)
        return {"received": True, "outcome": record["outcome"]}

    async def _on_error(self, call_id: str, payload: dict) -> dict:
        message = _message(payload)
        error = message.get("error") or payload.get("error") or "unknown vendor error"
        if isinstance(error, dict):
            error = error.get("message") or str(error)
        async with self._authoritative(call_id):
            state = await self.store.get(call_id)
            removed = await self.store.delete(call_id)
            if removed or state is None:
                await self.post_call.record_failure(call_id, state, str(error))
        return {"received": True}

    async def _on_transcript(self, call_id: str, payload: dict) -> dict:
        logger.debug("[%s] transcript event ignored, turns are handled by the bridge", call_id)
        return {"received": True}

    async def _transient_state(self, call_id: str, payload: dict) -> CallState:
        """Best-effort state for an event that arrived before (or after) the state existed."""
        try:
            context = await load_call_context(self.repository, call_id, extract_metadata(payload))
        except ContextNotFound:
            context = {}
        state = build_call_state(call_id, context, external_call_id=extract_external_call_id(payload))
        # Nothing was said on our side yet
        state.conversation_history = []
        return state

    async def _has_terminal_record(self, call_id: str) -> bool:
        record = await self.repository.get_call_record(call_id)
        return bool(record and record.get("outcome"))
