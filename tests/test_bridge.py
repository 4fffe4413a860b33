import json
from unittest.mock import AsyncMock

import pytest

from quotecall.bridge import (
    FALLBACK_GENERIC,
    FALLBACK_MISSING_CALL_ID,
    FALLBACK_STORE,
    FILLER,
    BridgeReply,
    CustomLLMBridge,
    build_completion,
    build_stream_events,
    check_bearer,
    extract_bridge_call_id,
    last_user_message,
)
from quotecall.errors import StoreUnavailable
from quotecall.processor import TurnProcessor
from quotecall.state_machine import ESCALATION_SCRIPT, GOODBYE_SCRIPT, GREETING_SCRIPT
from quotecall.states import Node, CallStatus


def turn(text: str, call_id: str = "call_1") -> dict:
    body = {
        "model": "gpt-4o",
        "messages": [
            {"role": "system", "content": "ignored"},
            {"role": "assistant", "content": GREETING_SCRIPT},
            {"role": "user", "content": text},
        ],
    }
    if call_id:
        body["call"] = {"id": "ext_1", "metadata": {"callLogId": call_id}}
    return body


@pytest.fixture
def bridge(store, provider, repository):
    return CustomLLMBridge(store, TurnProcessor(provider, timeout=1.0), repository)


class TestRequestParsing:
    def test_call_id(self):
        assert extract_bridge_call_id(turn("hi")) == "call_1"
        assert extract_bridge_call_id({"call": {"metadata": {"callId": "call_2"}}}) == "call_2"
        assert extract_bridge_call_id({"call": "nope"}) == ""

    def test_last_user_message(self):
        assert last_user_message(turn("  Parts desk  ")["messages"]) == "Parts desk"
        assert last_user_message([{"role": "user", "content": [{"type": "text", "text": "In stock"}]}]) == "In stock"
        assert last_user_message([{"role": "assistant", "content": "Hi"}]) == ""
        assert last_user_message(None) == ""


class TestCheckBearer:
    def test_open_without_secret(self):
        assert check_bearer(None, "")

    def test_secret(self):
        assert check_bearer("Bearer s3cret", "s3cret")
        assert not check_bearer("Bearer wrong", "s3cret")
        assert not check_bearer(None, "s3cret")
        assert not check_bearer("Bearer s3cret2", "s3cret")
        assert not check_bearer("s3cret", "s3cret")

    def test_placeholder_only_when_allowed(self):
        assert check_bearer("Bearer no-api-key", "s3cret", allow_placeholder=True, placeholder="no-api-key")
        assert not check_bearer("Bearer no-api-key", "s3cret", allow_placeholder=False, placeholder="no-api-key")


class TestCompletionShape:
    def test_plain_reply(self):
        reply = BridgeReply("Okay.", call_id="call_1", node="quote_request", status="in_progress")
        body = build_completion(reply, completion_id="chatcmpl-1", created=1700000000)
        assert body["object"] == "chat.completion"
        assert body["created"] == 1700000000
        choice = body["choices"][0]
        assert choice["message"] == {"role": "assistant", "content": "Okay."}
        assert choice["finish_reason"] == "stop"
        assert body["metadata"] == {
            "callId": "call_1", "node": "quote_request", "status": "in_progress", "endCall": False,
        }

    def test_end_call_tool(self):
        body = build_completion(BridgeReply(GOODBYE_SCRIPT, end_call=True))
        choice = body["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        tool = choice["message"]["tool_calls"][0]
        assert tool["type"] == "function"
        assert tool["function"] == {"name": "endCall", "arguments": "{}"}
        assert tool["id"].startswith("call_")

    def test_stream_frames_match_completion(self):
        reply = BridgeReply("Thanks, goodbye!", end_call=True)
        frames = build_stream_events(reply, completion_id="chatcmpl-1", created=1)
        assert frames[-1] == "data: [DONE]\n\n"
        chunks = [json.loads(f[len("data: "):]) for f in frames[:-1]]
        assert all(c["id"] == "chatcmpl-1" and c["object"] == "chat.completion.chunk" for c in chunks)
        content = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
        assert content == build_completion(reply)["choices"][0]["message"]["content"]
        assert chunks[1]["choices"][0]["delta"]["tool_calls"][0]["function"]["name"] == "endCall"
        assert chunks[-1]["choices"][0]["finish_reason"] == "tool_calls"

    def test_stream_without_end_call(self):
        frames = build_stream_events(BridgeReply("Okay."))
        assert len(frames) == 3
        assert json.loads(frames[1][len("data: "):])["choices"][0]["finish_reason"] == "stop"


class TestRespond:
    @pytest.mark.asyncio
    async def test_turn_advances_state(self, bridge, store, state):
        await store.save(state)
        reply = await bridge.respond(turn("Parts, this is Dave."))
        assert reply.content == "Okay."
        assert reply.end_call is False
        assert reply.node == "quote_request"
        saved = await store.get("call_1")
        assert saved.current_node == Node.QUOTE_REQUEST
        assert saved.conversation_history[-1].text == "Okay."

    @pytest.mark.asyncio
    async def test_state_created_on_first_turn(self, bridge, store):
        reply = await bridge.respond(turn("Parts, this is Dave."))
        assert reply.content == "Okay."
        saved = await store.get("call_1")
        assert saved.external_call_id == "ext_1"
        assert saved.conversation_history[0].text == GREETING_SCRIPT

    @pytest.mark.asyncio
    async def test_missing_call_id(self, bridge):
        reply = await bridge.respond(turn("hello", call_id=""))
        assert reply.content == FALLBACK_MISSING_CALL_ID
        assert reply.end_call is False

    @pytest.mark.asyncio
    async def test_busy_lock_answers_filler(self, bridge, store, state, provider):
        await store.save(state)
        async with store.locked("call_1"):
            reply = await bridge.respond(turn("ABC123 is forty five"))
        assert reply.content == FILLER
        assert len((await store.get("call_1")).conversation_history) == 1
        provider.generate_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_finished_call_says_goodbye(self, bridge, store, state):
        state.current_node = Node.COMPLETED
        state.set_status(CallStatus.COMPLETED)
        await store.save(state)
        reply = await bridge.respond(turn("Anything else?"))
        assert reply.content == GOODBYE_SCRIPT
        assert reply.end_call is True

    @pytest.mark.asyncio
    async def test_escalation_ends_call(self, bridge, store, state):
        await store.save(state)
        reply = await bridge.respond(turn("Let me talk to a real person"))
        assert reply.content == ESCALATION_SCRIPT
        assert reply.end_call is True
        assert reply.status == "escalated"

    @pytest.mark.asyncio
    async def test_unknown_call_context(self, bridge):
        reply = await bridge.respond(turn("hello", call_id="call_404"))
        assert reply.content == FALLBACK_STORE

    @pytest.mark.asyncio
    async def test_store_down(self, provider, repository):
        store = AsyncMock()
        store.get = AsyncMock(side_effect=StoreUnavailable("redis down"))
        bridge = CustomLLMBridge(store, TurnProcessor(provider), repository)
        reply = await bridge.respond(turn("hello"))
        assert reply.content == FALLBACK_STORE
        assert reply.end_call is False

    @pytest.mark.asyncio
    async def test_unexpected_error(self, bridge, store, state, provider):
        await store.save(state)
        provider.generate_json.side_effect = RuntimeError("bug")
        reply = await bridge.respond(turn("Parts, this is Dave."))
        assert reply.content == FALLBACK_GENERIC

    @pytest.mark.asyncio
    async def test_no_user_message_repeats_greeting(self, bridge, store, state):
        await store.save(state)
        body = turn("x")
        body["messages"] = body["messages"][:2]
        reply = await bridge.respond(body)
        assert reply.content == GREETING_SCRIPT
        assert reply.end_call is False

    @pytest.mark.asyncio
    async def test_no_user_message_and_no_state(self, bridge):
        body = turn("x")
        body["messages"] = []
        assert (await bridge.respond(body)).content == FILLER
