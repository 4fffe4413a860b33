"""OpenAI-compatible chat completions endpoint the voice vendor polls each turn.

The vendor only ever reads the assistant message, so every failure path
still produces a speakable sentence and HTTP 200.  Hanging up is signalled
in-band with an ``endCall`` tool call.
"""

import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass

from quotecall.context import ensure_call_state
from quotecall.errors import ContextNotFound, LockTimeout, StoreUnavailable
from quotecall.state_machine import GOODBYE_SCRIPT

logger = logging.getLogger(__name__)

MODEL_NAME = "langgraph-state-machine"

FILLER = "Mhm."
FALLBACK_MISSING_CALL_ID = "I apologize, I'm experiencing a technical issue. Could you hold for just a moment?"
FALLBACK_STORE = "I apologize, I'm having a technical issue. Let me have someone call you right back."
FALLBACK_GENERIC = "I apologize, I'm having technical difficulties. Could you give me just a moment?"


@dataclass
class BridgeReply:
    content: str
    end_call: bool = False
    call_id: str = ""
    node: str = ""
    status: str = ""


def extract_bridge_call_id(body: dict) -> str:
    call = body.get("call") if isinstance(body.get("call"), dict) else {}
    metadata = call.get("metadata") if isinstance(call.get("metadata"), dict) else {}
    return str(metadata.get("callLogId") or metadata.get("callId") or "")


def last_user_message(messages) -> str:
    """Text of the last user turn, or "" when the vendor has not heard anyone yet."""
    for msg in reversed(messages or []):
        if not isinstance(msg, dict) or msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, list):
            content = " ".join(p.get("text", "") for p in content if isinstance(p, dict))
        if content and str(content).strip():
            return str(content).strip()
    return ""


def check_bearer(authorization: str | None, secret: str, *, allow_placeholder: bool = False,
                 placeholder: str = "") -> bool:
    """Bearer token against the shared secret. No secret configured means open."""
    if not secret:
        return True
    authorization = authorization or ""
    if hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode()):
        return True
    # Temporary allowance for vendor assistants still configured with the default key
    if allow_placeholder and placeholder and hmac.compare_digest(
        authorization.encode(), f"Bearer {placeholder}".encode()
    ):
        logger.warning("Accepting vendor placeholder token; configure the shared secret on the assistant")
        return True
    return False


def _end_call_tool() -> dict:
    return {
        "id": f"call_{uuid.uuid4().hex[:24]}",
        "type": "function",
        "function": {"name": "endCall", "arguments": "{}"},
    }


def build_completion(reply: BridgeReply, completion_id: str | None = None, created: int | None = None) -> dict:
    message = {"role": "assistant", "content": reply.content}
    if reply.end_call:
        message["tool_calls"] = [_end_call_tool()]
    return {
        "id": completion_id or f"chatcmpl-{uuid.uuid4()}",
        "object": "chat.completion",
        "created": created or int(time.time()),
        "model": MODEL_NAME,
        "choices": [{
            "index": 0,
            "message": message,
            "finish_reason": "tool_calls" if reply.end_call else "stop",
        }],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        "metadata": {
            "callId": reply.call_id,
            "node": reply.node,
            "status": reply.status,
            "endCall": reply.end_call,
        },
    }


def build_stream_events(reply: BridgeReply, completion_id: str | None = None, created: int | None = None) -> list[str]:
    """SSE frames: content chunk, optional endCall tool chunk, finish chunk, [DONE]."""
    completion_id = completion_id or f"chatcmpl-{uuid.uuid4()}"
    created = created or int(time.time())

    def chunk(delta: dict, finish_reason=None) -> str:
        body = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": MODEL_NAME,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(body)}\n\n"

    events = [chunk({"role": "assistant", "content": reply.content})]
    if reply.end_call:
        tool = _end_call_tool()
        events.append(chunk({"tool_calls": [{"index": 0, **tool}]}))
    events.append(chunk({}, finish_reason="tool_calls" if reply.end_call else "stop"))
    events.append("data: [DONE]\n\n")
    return events


class CustomLLMBridge:
    def __init__(self, store, processor, repository, *, max_negotiation_attempts: int = 2):
        self.store = store
        self.processor = processor
        self.repository = repository
        self.max_negotiation_attempts = max_negotiation_attempts

    async def respond(self, body: dict) -> BridgeReply:
        """Next utterance for this turn. Never raises."""
        call_id = extract_bridge_call_id(body)
        text = last_user_message(body.get("messages"))

        if not text:
            return await self._first_turn(call_id)
        if not call_id:
            logger.error("Bridge request without call.metadata.callLogId")
            return BridgeReply(FALLBACK_MISSING_CALL_ID)

        try:
            return await self._run_turn(call_id, text, body)
        except LockTimeout:
            logger.warning("[%s] turn arrived while another is in flight, answering with filler", call_id)
            return BridgeReply(FILLER, call_id=call_id)
        except (StoreUnavailable, ContextNotFound) as e:
            logger.error("[%s] no usable call state: %s", call_id, e)
            return BridgeReply(FALLBACK_STORE, call_id=call_id)
        except Exception:
            logger.exception("[%s] bridge turn failed", call_id)
            return BridgeReply(FALLBACK_GENERIC, call_id=call_id)

    async def _first_turn(self, call_id: str) -> BridgeReply:
        """Vendor asked before anyone spoke: repeat the seeded greeting."""
        if call_id:
            try:
                state = await self.store.get(call_id)
            except StoreUnavailable as e:
                logger.warning("[%s] could not load greeting: %s", call_id, e)
                state = None
            if state is not None and state.last_agent_message():
                return BridgeReply(state.last_agent_message(), call_id=call_id, node=state.current_node.value,
                                   status=state.status.value)
        logger.warning("[%s] no user message in bridge request", call_id or "?")
        return BridgeReply(FILLER, call_id=call_id)

    async def _run_turn(self, call_id: str, text: str, body: dict) -> BridgeReply:
        call = body.get("call") if isinstance(body.get("call"), dict) else {}
        state = await self.store.get(call_id)
        if state is None:
            # Lost the race with call-started, or it never came
            state, _ = await ensure_call_state(
                self.store, self.repository, call_id,
                external_call_id=str(call.get("id") or ""),
                metadata=call.get("metadata") or {},
                max_negotiation_attempts=self.max_negotiation_attempts,
            )
            if state is None:
                raise StoreUnavailable(f"call {call_id} already ended")

        async with self.store.locked(call_id):
            state = await self.store.get(call_id)
            if state is None:
                raise StoreUnavailable(f"call {call_id} state vanished")
            if state.is_terminal:
                logger.info("[%s] turn after call finished, ending call", call_id)
                return BridgeReply(GOODBYE_SCRIPT, end_call=True, call_id=call_id,
                                   node=state.current_node.value, status=state.status.value)

            action = await self.processor.handle_turn(state, text)
            await self.store.save(state)

        return BridgeReply(
            content=action.speak or FILLER,
            end_call=action.end_call or state.is_terminal,
            call_id=call_id,
            node=state.current_node.value,
            status=state.status.value,
        )
