import hmac
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from quotecall.bridge import (
    CustomLLMBridge,
    build_completion,
    build_stream_events,
    check_bearer,
)
from quotecall.catalog import CatalogClient, InMemoryQuoteRepository
from quotecall.config import Settings, validate_config
from quotecall.errors import StoreUnavailable
from quotecall.extraction import ExtractionPipeline
from quotecall.llm import LLMProvider
from quotecall.negotiation import NegotiationPolicy
from quotecall.notifications import NotificationClient
from quotecall.post_call import PostCallHandler
from quotecall.processor import TurnProcessor
from quotecall.state_machine import StateMachine
from quotecall.state_store import create_state_store
from quotecall.webhooks import WebhookGateway, extract_event_type

logger = logging.getLogger(__name__)

BRIDGE_PATHS = ("/chat/completions", "/langgraph-handler/chat/completions")

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def _webhook_authorized(request: Request, secret: str) -> bool:
    if not secret:
        return True
    header = request.headers.get("x-webhook-secret") or ""
    if hmac.compare_digest(header.encode(), secret.encode()):
        return True
    authorization = request.headers.get("authorization") or ""
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


def create_app(
    settings: Settings | None = None,
    *,
    store=None,
    provider=None,
    repository=None,
    notifier=None,
) -> FastAPI:
    """Wire the collaborators once. Tests pass their own doubles."""
    settings = settings or Settings.from_env()
    store = store or create_state_store(settings)
    provider = provider or LLMProvider(
        api_key=settings.openai_api_key,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
    )
    if repository is None:
        if settings.catalog_base_url:
            repository = CatalogClient(settings.catalog_base_url, api_key=settings.catalog_api_key)
        else:
            logger.warning("CATALOG_BASE_URL not set, using in-memory quote repository")
            repository = InMemoryQuoteRepository()
    notifier = notifier or NotificationClient(settings.notify_webhook_url, secret=settings.webhook_secret)

    machine = StateMachine(NegotiationPolicy(threshold=settings.negotiation_threshold))
    pipeline = ExtractionPipeline(
        provider, repository, notifier,
        model=settings.extraction_model,
        timeout=settings.extraction_timeout_s,
        max_retries=settings.extraction_max_retries,
    )
    post_call = PostCallHandler(repository, pipeline, notifier)
    gateway = WebhookGateway(
        store, repository, post_call, machine,
        max_negotiation_attempts=settings.max_negotiation_attempts,
    )
    processor = TurnProcessor(provider, machine, timeout=settings.turn_timeout_s, model=settings.llm_model)
    bridge = CustomLLMBridge(
        store, processor, repository,
        max_negotiation_attempts=settings.max_negotiation_attempts,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await post_call.drain()

    app = FastAPI(title="Quote Call Agent", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.repository = repository
    app.state.gateway = gateway
    app.state.bridge = bridge
    app.state.pipeline = pipeline
    app.state.post_call = post_call

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/webhooks")
    async def webhooks(request: Request):
        if not _webhook_authorized(request, settings.webhook_secret):
            logger.warning("Rejected webhook with bad shared secret")
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        try:
            payload = await request.json()
        except ValueError:
            logger.error("Webhook body is not JSON, acknowledging")
            return {"received": True}
        if not isinstance(payload, dict):
            return {"received": True}
        return await gateway.handle(payload)

    async def bridge_health():
        return {
            "status": "ok",
            "endpoint": "custom-llm",
            "expectedAuth": "configured" if settings.webhook_secret else "missing",
        }

    async def chat_completions(request: Request):
        if not check_bearer(
            request.headers.get("authorization"),
            settings.webhook_secret,
            allow_placeholder=settings.allow_placeholder_token,
            placeholder=settings.placeholder_token,
        ):
            logger.warning("Rejected bridge request with bad bearer token")
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        # The vendor also posts lifecycle events to the server URL it was given
        if "messages" not in body and extract_event_type(body):
            return await gateway.handle(body)

        reply = await bridge.respond(body)
        logger.info("[%s] bridge reply node=%s endCall=%s", reply.call_id or "?", reply.node, reply.end_call)
        if body.get("stream"):
            events = build_stream_events(reply)

            async def stream():
                for event in events:
                    yield event

            return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)
        return build_completion(reply)

    for path in BRIDGE_PATHS:
        app.add_api_route(path, bridge_health, methods=["GET"])
        app.add_api_route(path, chat_completions, methods=["POST"])

    @app.get("/quote-requests/{quote_request_id}/active-calls")
    async def active_calls(quote_request_id: str):
        try:
            states = await store.active_calls(quote_request_id)
        except StoreUnavailable as e:
            logger.error("Active calls lookup for %s failed: %s", quote_request_id, e)
            return JSONResponse({"error": "state store unavailable"}, status_code=503)
        return {
            "quoteRequestId": quote_request_id,
            "calls": [
                {
                    "callId": s.call_id,
                    "supplierId": s.supplier_id,
                    "supplierName": s.supplier_name,
                    "node": s.current_node.value,
                    "status": s.status.value,
                    "quotesCaptured": len(s.quotes),
                }
                for s in states
            ],
        }

    @app.post("/quote-requests/{quote_request_id}/extract-call-prices")
    async def extract_call_prices(quote_request_id: str):
        results = await pipeline.run_for_quote_request(quote_request_id)
        return {
            "quoteRequestId": quote_request_id,
            "results": results,
            "itemsExtracted": sum(r.get("itemsExtracted", 0) for r in results),
        }

    @app.post("/quote-requests/{quote_request_id}/extract-document")
    async def extract_document(quote_request_id: str, request: Request):
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "body must be JSON"}, status_code=400)
        if not isinstance(body, dict) or not body.get("supplierId"):
            return JSONResponse({"error": "supplierId is required"}, status_code=400)
        return await pipeline.extract_from_document(
            quote_request_id,
            body["supplierId"],
            body.get("supplierName", ""),
            subject=body.get("subject", ""),
            sender=body.get("sender", ""),
            body=body.get("body", ""),
            attachment_text=body.get("attachmentText", ""),
        )

    return app


def main():
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_config()
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
