import json

import httpx
import pytest
import respx

from quotecall.errors import LLMProviderError, LLMTimeout, MalformedLLMOutput
from quotecall.llm import LLMProvider

URL = "https://api.openai.com/v1/chat/completions"


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


@pytest.fixture
def llm():
    return LLMProvider(api_key="test-key")


@respx.mock
@pytest.mark.asyncio
async def test_returns_parsed_json(llm):
    route = respx.post(URL).mock(return_value=_completion(json.dumps({"utterance": "Hi"})))
    result = await llm.generate_json("system", [{"role": "user", "content": "hello"}], timeout=5)
    assert result == {"utterance": "Hi"}
    body = json.loads(route.calls.last.request.content)
    assert body["response_format"] == {"type": "json_object"}
    assert body["messages"][0] == {"role": "system", "content": "system"}
    assert body["model"] == "gpt-4o-mini"
    assert route.calls.last.request.headers["authorization"] == "Bearer test-key"


@respx.mock
@pytest.mark.asyncio
async def test_model_override(llm):
    route = respx.post(URL).mock(return_value=_completion("{}"))
    await llm.generate_json("s", [], timeout=5, model="gpt-4o")
    assert json.loads(route.calls.last.request.content)["model"] == "gpt-4o"


@respx.mock
@pytest.mark.asyncio
async def test_http_error(llm):
    respx.post(URL).mock(return_value=httpx.Response(500))
    with pytest.raises(LLMProviderError):
        await llm.generate_json("s", [], timeout=5)


@respx.mock
@pytest.mark.asyncio
async def test_timeout(llm):
    respx.post(URL).mock(side_effect=httpx.ReadTimeout("slow"))
    with pytest.raises(LLMTimeout):
        await llm.generate_json("s", [], timeout=5)


@respx.mock
@pytest.mark.asyncio
async def test_non_json_content(llm):
    respx.post(URL).mock(return_value=_completion("Sure! Here's the answer"))
    with pytest.raises(MalformedLLMOutput):
        await llm.generate_json("s", [], timeout=5)


@respx.mock
@pytest.mark.asyncio
async def test_non_object_content(llm):
    respx.post(URL).mock(return_value=_completion("[1, 2]"))
    with pytest.raises(MalformedLLMOutput):
        await llm.generate_json("s", [], timeout=5)


@respx.mock
@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures(llm):
    route = respx.post(URL).mock(return_value=httpx.Response(503))
    for _ in range(3):
        with pytest.raises(LLMProviderError):
            await llm.generate_json("s", [], timeout=5)
    with pytest.raises(LLMProviderError, match="circuit open"):
        await llm.generate_json("s", [], timeout=5)
    assert route.call_count == 3


@respx.mock
@pytest.mark.asyncio
async def test_custom_base_url():
    route = respx.post("http://localhost:8000/v1/chat/completions").mock(return_value=_completion("{}"))
    provider = LLMProvider(api_key="k", base_url="http://localhost:8000/v1/")
    await provider.generate_json("s", [], timeout=5)
    assert route.called
