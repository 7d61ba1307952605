from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from backend.wa_agent.auth import AdminContext, require_admin
from backend.wa_agent.models import (
    SETTING_KEYS,
    BotSettings,
    HistoryContact,
    HistoryItem,
    HistoryResponse,
    SettingsUpdateRequest,
    WebhookResponse,
)
from backend.wa_agent.observability import MetricsRegistry, configure_logging, observe_request
from backend.wa_agent.persistence import SqlConversationStore
from backend.wa_agent.services.gateway import DispatchError, GreenApiGateway
from backend.wa_agent.services.generator import GeminiReplyGenerator, GeneratorError
from backend.wa_agent.services.pacing import RandomDelay
from backend.wa_agent.services.pipeline import ConversationPipeline, DeliveryOutcome
from backend.wa_agent.services.webhooks import WebhookAuthorizationError, verify_webhook_secret
from backend.wa_agent.settings import Settings, load_settings
from backend.wa_agent.store import ConversationStore, InMemoryStore, StoreError

logger = logging.getLogger("wa_agent")

OUTCOME_RESPONSES = {
    DeliveryOutcome.replied: WebhookResponse(ok=True),
    DeliveryOutcome.ignored: WebhookResponse(ok=True, ignored=True),
    DeliveryOutcome.opted_out: WebhookResponse(ok=True, opted_out=True),
    DeliveryOutcome.dedup: WebhookResponse(ok=True, dedup=True),
}


def create_app() -> FastAPI:
    app = FastAPI(title="WhatsApp Lead Agent API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    app.state.settings = settings
    app.state.store = (
        SqlConversationStore(settings.database_url)
        if settings.persistence_enabled
        else InMemoryStore()
    )
    app.state.generator = GeminiReplyGenerator(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout_seconds=settings.gemini_timeout_seconds,
    )
    app.state.gateway = GreenApiGateway(
        base_url=settings.green_api_base_url,
        id_instance=settings.green_api_id_instance,
        api_token=settings.green_api_token,
        timeout_seconds=settings.green_api_timeout_seconds,
    )
    app.state.delay = RandomDelay()
    app.state.metrics = MetricsRegistry()

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_pipeline(request: Request) -> ConversationPipeline:
    state = request.app.state
    settings: Settings = state.settings
    return ConversationPipeline(
        store=state.store,
        generator=state.generator,
        gateway=state.gateway,
        delay=state.delay,
        pacing_min_ms=settings.pacing_min_ms,
        pacing_max_ms=settings.pacing_max_ms,
        history_window=settings.history_window,
        max_attempts=settings.reply_max_attempts,
    )


def webhook_json(payload: WebhookResponse, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/api/wa/webhook")
    @router.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request) -> JSONResponse:
        settings = get_settings(request)
        registry = get_metrics(request)
        try:
            verify_webhook_secret(request.headers, request.query_params, settings.webhook_secret)
        except WebhookAuthorizationError as exc:
            logger.warning("webhook_rejected reason=%s", exc)
            registry.record_delivery("unauthorized")
            return webhook_json(
                WebhookResponse(ok=False, error="unauthorized"),
                status.HTTP_401_UNAUTHORIZED,
            )

        raw_body = await request.body()
        try:
            body = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            body = None
        if not isinstance(body, dict):
            registry.record_delivery("invalid_json")
            return webhook_json(
                WebhookResponse(ok=False, error="invalid json"),
                status.HTTP_400_BAD_REQUEST,
            )

        pipeline = get_pipeline(request)
        try:
            result = await run_in_threadpool(pipeline.process, body)
        except (StoreError, GeneratorError, DispatchError) as exc:
            logger.error("delivery_failed error_type=%s error=%s", type(exc).__name__, exc)
            registry.record_delivery("error")
            return webhook_json(
                WebhookResponse(ok=False, error=str(exc)),
                status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        registry.record_delivery(result.outcome.value)
        return webhook_json(OUTCOME_RESPONSES[result.outcome])

    @router.get("/api/admin/settings", response_model=BotSettings)
    def read_bot_settings(
        request: Request,
        _: AdminContext = Depends(require_admin),
    ) -> BotSettings:
        try:
            return get_store(request).get_settings()
        except StoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc

    @router.post("/api/admin/settings")
    def save_bot_settings(
        payload: SettingsUpdateRequest,
        request: Request,
        _: AdminContext = Depends(require_admin),
    ) -> dict[str, bool]:
        values = {key: (getattr(payload, key) or "") for key in SETTING_KEYS}
        try:
            get_store(request).save_settings(BotSettings(**values))
        except StoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        return {"ok": True}

    @router.get("/api/admin/history", response_model=HistoryResponse)
    def message_history(
        request: Request,
        limit: int = 200,
        _: AdminContext = Depends(require_admin),
    ) -> HistoryResponse:
        try:
            rows = get_store(request).list_history(limit=limit)
        except StoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        return HistoryResponse(
            items=[
                HistoryItem(
                    id=message.id,
                    created_at_utc=message.created_at_utc,
                    direction=message.direction,
                    text=message.text,
                    contact=(
                        HistoryContact(
                            chat_id=contact.chat_id,
                            lead_type=contact.lead_type,
                            stage=contact.stage,
                        )
                        if contact
                        else None
                    ),
                )
                for message, contact in rows
            ]
        )

    return router


app = create_app()
