import asyncio
from unittest.mock import AsyncMock

import pytest

from quotecall.errors import LLMProviderError, MalformedLLMOutput
from quotecall.processor import TurnProcessor
from quotecall.state_machine import HOLD_SCRIPT, PROVIDER_FALLBACK_SCRIPT
from quotecall.states import Node, CallStatus


@pytest.mark.asyncio
async def test_llm_decision_advances_and_records_reply(provider, state):
    provider.generate_json.return_value = {
        "nextNode": "quote_request",
        "utterance": "Great. I'm looking for A B C 1 2 3.",
    }
    processor = TurnProcessor(provider, timeout=1.0, model="gpt-4o-mini")

    action = await processor.handle_turn(state, "Parts, this is Dave.")

    assert action.speak == "Great. I'm looking for A B C 1 2 3."
    assert state.current_node == Node.QUOTE_REQUEST
    assert [m.speaker for m in state.conversation_history] == ["agent", "counterparty", "agent"]
    system_prompt, messages = provider.generate_json.call_args.args
    assert "ALLOWED NEXT NODES" in system_prompt
    assert messages[-1] == {"role": "user", "content": "Parts, this is Dave."}
    assert provider.generate_json.call_args.kwargs["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_guard_skips_llm(provider, state):
    processor = TurnProcessor(provider)
    action = await processor.handle_turn(state, "Hang on, let me check")
    assert action.speak == HOLD_SCRIPT
    provider.generate_json.assert_not_called()


@pytest.mark.asyncio
async def test_provider_error_degrades_to_hold_line(provider, state):
    provider.generate_json.side_effect = LLMProviderError("503")
    processor = TurnProcessor(provider)
    action = await processor.handle_turn(state, "Parts, this is Dave.")
    assert action.speak == PROVIDER_FALLBACK_SCRIPT
    assert state.status == CallStatus.IN_PROGRESS
    assert state.conversation_history[-1].text == PROVIDER_FALLBACK_SCRIPT


@pytest.mark.asyncio
async def test_malformed_output_counts_as_failure(provider, state):
    provider.generate_json.return_value = {"nextNode": "quote_request"}
    processor = TurnProcessor(provider)
    action = await processor.handle_turn(state, "Parts, this is Dave.")
    assert action.speak == PROVIDER_FALLBACK_SCRIPT
    assert state.provider_failures == 1


@pytest.mark.asyncio
async def test_slow_provider_times_out(state):
    async def slow(*args, **kwargs):
        await asyncio.sleep(5)
        return {"utterance": "too late"}

    provider = AsyncMock()
    provider.generate_json = slow
    processor = TurnProcessor(provider, timeout=0.01)
    action = await processor.handle_turn(state, "Parts, this is Dave.")
    assert action.speak == PROVIDER_FALLBACK_SCRIPT


@pytest.mark.asyncio
async def test_two_failures_in_a_row_escalate(provider, state):
    provider.generate_json.side_effect = MalformedLLMOutput("junk")
    processor = TurnProcessor(provider)
    await processor.handle_turn(state, "Parts, this is Dave.")
    action = await processor.handle_turn(state, "Hello? Are you there?")
    assert action.end_call is True
    assert state.status == CallStatus.ESCALATED
    assert state.needs_human_escalation is True
