import asyncio
import logging

from quotecall.decision import parse_decision
from quotecall.errors import LLMProviderError, LLMTimeout
from quotecall.prompts import get_system_prompt, build_turn_messages
from quotecall.session import CallState
from quotecall.state_machine import StateMachine, Action, record_agent_turn

logger = logging.getLogger(__name__)


class TurnProcessor:
    """One conversational turn: guards, at most one LLM call, decision validation.

    The LLM call is bounded by ``timeout`` and never retried here; a slow or
    broken provider turns into a spoken "please hold" and, if it keeps
    failing, an escalation.
    """

    def __init__(self, provider, machine: StateMachine | None = None, *, timeout: float = 8.0, model: str | None = None):
        self.provider = provider
        self.machine = machine or StateMachine()
        self.timeout = timeout
        self.model = model

    async def handle_turn(self, state: CallState, text: str) -> Action:
        action = self.machine.process(state, text)
        if action.needs_llm:
            action = await self._decide(state)
        record_agent_turn(state, action)
        logger.info(
            "[%s] turn %d at %s: %r%s",
            state.call_id, state.turn_number, state.current_node.value,
            action.speak[:80], " (end call)" if action.end_call else "",
        )
        return action

    async def _decide(self, state: CallState) -> Action:
        allowed = sorted(n.value for n in self.machine.valid_transitions(state.current_node))
        system_prompt = get_system_prompt(state, allowed)
        messages = build_turn_messages(state)
        try:
            raw = await asyncio.wait_for(
                self.provider.generate_json(system_prompt, messages, timeout=self.timeout, model=self.model),
                timeout=self.timeout + 1.0,
            )
            decision = parse_decision(raw)
        except asyncio.TimeoutError:
            return self.machine.handle_provider_failure(state, LLMTimeout(f"no decision within {self.timeout}s"))
        except LLMProviderError as e:
            return self.machine.handle_provider_failure(state, e)
        return self.machine.apply_decision(state, decision)
