"""
AI Coach API Router

Streams AI coach replies grounded in the athlete's recent metrics.
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import List, Optional
import logging
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.config import CoachConfig, settings
from core.database import get_db
from core.exceptions import ServiceUnavailableError, ValidationError
from services.coach_modules.context import ChatMessage, CoachContext, ContextBuilder, render_context
from services.coach_modules.provider import ProviderGateway
from services.coach_modules.relay import (
    SSE_HEADERS,
    StreamRelay,
    StreamSessionRegistry,
    new_request_id,
    session_registry,
    static_reply_frames,
)
from services.coach_modules.safety import MEDICAL_DISCLAIMER, check_input, classify_intent
from services.metrics_aggregator import MetricDomain, summarize
from services.records_store import SqlRecordsStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai/coach", tags=["AI Coach"])


class CoachStreamRequest(BaseModel):
    """Request to stream a coach reply."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    message: str
    history_token: Optional[str] = Field(default=None, alias="historyToken")
    domains: Optional[List[MetricDomain]] = None


class ContextPreviewResponse(BaseModel):
    """Context that would be sent to the provider for a request."""
    context: str
    budget_remaining: int
    history_truncated: bool
    dropped_domains: List[str]


@lru_cache()
def get_coach_config() -> CoachConfig:
    return CoachConfig.from_settings(settings)


@lru_cache()
def get_provider_gateway() -> ProviderGateway:
    return ProviderGateway(get_coach_config())


def get_records_store(db: Session = Depends(get_db)) -> SqlRecordsStore:
    return SqlRecordsStore(db)


def get_session_registry() -> StreamSessionRegistry:
    return session_registry


def new_history_token() -> str:
    return uuid.uuid4().hex


def build_coach_context(
    body: CoachStreamRequest,
    config: CoachConfig,
    store: SqlRecordsStore,
    now: Optional[datetime] = None,
) -> CoachContext:
    """Aggregate recent metrics and history into a bounded context."""
    domains = list(dict.fromkeys(body.domains)) if body.domains else list(MetricDomain)
    until = now or datetime.now(timezone.utc)
    since = until - timedelta(days=config.metrics_window_days)

    records = store.fetch_records(body.user_id, domains, since=since, until=until)
    summary = summarize(records, domains)

    history = store.fetch_history(body.user_id, body.history_token, config.history_limit)
    history.append(ChatMessage(role="user", text=body.message))

    context = ContextBuilder().build(body.user_id, summary, history, config.context_budget)
    if context.history_truncated or context.summary_truncated:
        logger.info(
            "Coach context truncated",
            extra={
                "extra_fields": {
                    "user_id": body.user_id,
                    "history_truncated": context.history_truncated,
                    "dropped_domains": [d.value for d in context.dropped_domains],
                    "history_kept": len(context.conversation_history),
                    "history_total": len(history),
                }
            },
        )
    return context


@router.post("/stream")
async def stream_coach_reply(
    body: CoachStreamRequest,
    request: Request,
    config: CoachConfig = Depends(get_coach_config),
    gateway: ProviderGateway = Depends(get_provider_gateway),
    store: SqlRecordsStore = Depends(get_records_store),
    registry: StreamSessionRegistry = Depends(get_session_registry),
):
    """
    Stream a coach reply (SSE over fetch).

    Errors before the stream starts are plain HTTP errors. Once headers are
    sent, failures arrive as a single terminal `error` frame.

    The exchange is stored under the thread returned in `X-History-Token`;
    send it back as `historyToken` to continue the conversation. The reply
    is stored only when the stream completes.
    """
    check = check_input(body.message, config.max_input_length)
    if check.blocked and check.reason != "emergency_detected":
        raise ValidationError(check.response or "Invalid message", field="message")

    # Normally assigned by the request middleware; the header is the fallback.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("x-request-id") or new_request_id()
    headers = {**SSE_HEADERS, "X-Request-ID": request_id}

    if check.blocked:
        logger.warning(
            "Coach input blocked by safety guard",
            extra={"extra_fields": {"user_id": body.user_id, "reason": check.reason}},
        )
        session = registry.open(request_id)
        return StreamingResponse(
            static_reply_frames(session, check.response or "", registry, meta={"blocked": True}),
            media_type="text/event-stream",
            headers=headers,
        )

    missing = config.missing()
    if missing:
        logger.warning(f"AI coach not configured, missing: {', '.join(missing)}")
        raise ServiceUnavailableError("AI coach is not configured", missing=missing)

    session = registry.open(request_id)
    try:
        context = build_coach_context(body, config, store)
        history_token = body.history_token or new_history_token()
        store.append_message(body.user_id, history_token, "user", body.message)
    except Exception:
        registry.close(session)
        raise
    headers["X-History-Token"] = history_token

    def save_reply(text: str) -> None:
        store.append_message(body.user_id, history_token, "assistant", text)

    stream = gateway.stream_completion(context, session.cancel_token)
    trailer = MEDICAL_DISCLAIMER if classify_intent(body.message) == "medical" else None
    relay = StreamRelay(
        session,
        stream,
        config,
        registry=registry,
        is_disconnected=request.is_disconnected,
        meta={
            "history_token": history_token,
            "history_truncated": context.history_truncated,
            "dropped_domains": [d.value for d in context.dropped_domains],
        },
        trailer=trailer,
        on_complete=save_reply,
    )

    return StreamingResponse(relay.frames(), media_type="text/event-stream", headers=headers)


@router.post("/context", response_model=ContextPreviewResponse)
async def preview_coach_context(
    body: CoachStreamRequest,
    config: CoachConfig = Depends(get_coach_config),
    store: SqlRecordsStore = Depends(get_records_store),
):
    """
    Preview the context that would be sent to the AI coach.

    Useful for understanding what data the coach has access to.
    """
    context = build_coach_context(body, config, store)
    return ContextPreviewResponse(
        context=render_context(context.summary, context.conversation_history, context.system_prompt),
        budget_remaining=context.budget_remaining,
        history_truncated=context.history_truncated,
        dropped_domains=[d.value for d in context.dropped_domains],
    )
