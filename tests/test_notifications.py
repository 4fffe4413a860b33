import json

import httpx
import pytest
import respx

from quotecall.notifications import NotificationClient

URL = "https://hooks.example.com/quotes"


@respx.mock
@pytest.mark.asyncio
async def test_quotes_extracted_payload():
    route = respx.post(URL).mock(return_value=httpx.Response(200))
    client = NotificationClient(URL, secret="s3cret", retry_delay=0)
    results = [{"supplierId": "sup_1", "itemsExtracted": 2, "success": True}]
    assert await client.quotes_extracted("qr_1", results) == {"success": True}
    body = json.loads(route.calls.last.request.content)
    assert body["event"] == "quotes_extracted"
    assert body["itemsExtracted"] == 2
    assert body["suppliers"] == results
    assert route.calls.last.request.headers["x-webhook-secret"] == "s3cret"


@respx.mock
@pytest.mark.asyncio
async def test_follow_up_payload():
    route = respx.post(URL).mock(return_value=httpx.Response(200))
    client = NotificationClient(URL, retry_delay=0)
    await client.follow_up_needed({
        "callId": "call_1", "quoteRequestId": "qr_1", "supplierId": "sup_1",
        "outcome": "VOICEMAIL_LEFT", "nextAction": "email_fallback",
    })
    body = json.loads(route.calls.last.request.content)
    assert body["event"] == "follow_up_needed"
    assert body["nextAction"] == "email_fallback"


@respx.mock
@pytest.mark.asyncio
async def test_retries_once_then_reports_failure():
    route = respx.post(URL).mock(return_value=httpx.Response(502))
    client = NotificationClient(URL, retry_delay=0)
    result = await client.quotes_extracted("qr_1", [])
    assert result["success"] is False
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_unconfigured_is_a_no_op():
    result = await NotificationClient("").quotes_extracted("qr_1", [])
    assert result == {"success": False, "error": "not configured"}
