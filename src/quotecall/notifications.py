import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


class NotificationClient:
    """Tells the original requester that quotes came in or a call needs a human.

    Posts JSON to a single webhook URL and retries once with a 2-second
    backoff. An unconfigured URL is a no-op, not an error.
    """

    def __init__(self, webhook_url: str = "", *, secret: str = "", timeout: float = 15.0, retry_delay: float = 2.0):
        self.webhook_url = webhook_url
        self.secret = secret
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    async def _post_with_retry(self, payload: dict, label: str) -> dict:
        if not self.webhook_url:
            logger.info("%s skipped, NOTIFY_WEBHOOK_URL not configured", label)
            return {"success": False, "error": "not configured"}
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.webhook_url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    return {"success": True}
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %ss: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def quotes_extracted(self, quote_request_id: str, results: list[dict]) -> dict:
        """Send the per-supplier extraction summary."""
        return await self._post_with_retry(
            {
                "event": "quotes_extracted",
                "quoteRequestId": quote_request_id,
                "itemsExtracted": sum(r.get("itemsExtracted", 0) for r in results),
                "suppliers": results,
            },
            "Quotes extracted notification",
        )

    async def follow_up_needed(self, record: dict) -> dict:
        """Surface a voicemail / escalated call for manual follow-up."""
        return await self._post_with_retry(
            {
                "event": "follow_up_needed",
                "callId": record.get("callId"),
                "quoteRequestId": record.get("quoteRequestId"),
                "supplierId": record.get("supplierId"),
                "outcome": record.get("outcome"),
                "nextAction": record.get("nextAction"),
            },
            "Follow-up notification",
        )
