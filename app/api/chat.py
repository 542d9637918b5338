import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTasks

from app.core.classification import Classification, RequestClassifier, get_request_classifier
from app.core.context_builder import ContextBuilder, get_context_builder
from app.core.errors import ChatValidationError, ProviderError
from app.core.guard import enforce_chat_guards
from app.core.prompts import build_model_messages, build_system_prompt
from app.core.rate_limit import FixedWindowRateLimiter, get_rate_limiter
from app.core.triage import (
    GENERIC_SAFE_ANSWERS,
    build_generic_safe_answer,
    build_triage_message,
    classify_and_triage,
)
from app.core.validation import ValidatedMessages, validate_and_normalize_messages
from app.services.analytics import AnalyticsEventData, AnalyticsLogger, get_analytics_logger
from app.services.history import HistoryPersister, get_history_persister
from app.services.model_router import (
    JUDGE_MODEL,
    ModelRouter,
    Verdict,
    choose_model,
    get_model_router,
)
from app.services.rag import RagSource
from app.services.streaming import ChatStream, SendEvent, ndjson_response, stream_text_chunks
from app.services.tools import ToolDef, ToolRegistry, detect_tool_from_text, get_tool_registry, run_tool

logger = logging.getLogger("uvicorn.error")

router = APIRouter(tags=["chat"])

MAX_SESSION_ID_LENGTH = 64


@dataclass
class ChatExchange:
    """Mutable record of one streamed exchange, read by the background writers."""

    tokens: list[str] = field(default_factory=list)
    answer: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    judge_verdict: Optional[str] = None
    rag_sources: tuple[RagSource, ...] = ()
    error_code: Optional[str] = None

    @property
    def final_answer(self) -> str:
        if self.answer is not None:
            return self.answer
        return "".join(self.tokens)


async def _read_json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ChatValidationError("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise ChatValidationError("Invalid JSON body")
    return body


def _session_id(body: dict[str, Any]) -> str:
    supplied = body.get("sessionId")
    if isinstance(supplied, str) and supplied.strip():
        return supplied.strip()[:MAX_SESSION_ID_LENGTH]
    return uuid.uuid4().hex


def _domain(body: dict[str, Any]) -> Optional[str]:
    domain = body.get("domain")
    if isinstance(domain, str) and domain.strip():
        return domain.strip().lower()
    return None


def _judge_replacement(classification: Classification) -> str:
    if classification.topic in GENERIC_SAFE_ANSWERS:
        return build_generic_safe_answer(classification.topic)
    return build_triage_message(classification.topic, classification.risk)


def _triage_response(
    *,
    request_id: str,
    user_id: int,
    session_id: str,
    validated: ValidatedMessages,
    classification: Classification,
    triage_message: str,
    headers: dict[str, str],
    history: HistoryPersister,
    analytics: AnalyticsLogger,
) -> StreamingResponse:
    async def handler(send: SendEvent) -> None:
        await send(
            {
                "type": "meta",
                "sessionId": session_id,
                "triage": True,
                "topic": classification.topic.value,
                "risk": classification.risk.value,
            }
        )
        await stream_text_chunks(triage_message, send)
        await send({"type": "done"})

    background = BackgroundTasks()
    background.add_task(
        history.persist,
        user_id,
        session_id,
        validated.latest_user_message,
        triage_message,
        {"triage": True},
    )
    background.add_task(
        analytics.record,
        AnalyticsEventData(
            event_type="chat_triage",
            user_id=user_id,
            session_id=session_id,
            topic=classification.topic.value,
            risk=classification.risk.value,
            complexity=classification.complexity.value,
            needs_rag=classification.needs_rag,
            messages_in_session=len(validated.normalized_messages),
            answer_length=len(triage_message),
            success=False,
            metadata={"reason": "allow_answer=false"},
        ),
    )
    logger.info(
        "chat_request_triaged request_id=%s user_id=%s topic=%s risk=%s",
        request_id,
        user_id,
        classification.topic.value,
        classification.risk.value,
    )
    return ndjson_response(ChatStream(request_id, handler), headers=headers, background=background)


def _tool_response(
    *,
    request_id: str,
    user_id: int,
    session_id: str,
    validated: ValidatedMessages,
    classification: Classification,
    tool: ToolDef,
    args: dict[str, Any],
    headers: dict[str, str],
    history: HistoryPersister,
    analytics: AnalyticsLogger,
) -> StreamingResponse:
    outcome = run_tool(tool, args)

    async def handler(send: SendEvent) -> None:
        await send({"type": "meta", "sessionId": session_id, "tool": outcome.name})
        await stream_text_chunks(outcome.text, send)
        await send({"type": "done"})

    background = BackgroundTasks()
    background.add_task(
        history.persist,
        user_id,
        session_id,
        validated.latest_user_message,
        outcome.text,
        {"tool": outcome.name},
    )
    background.add_task(
        analytics.record,
        AnalyticsEventData(
            event_type="chat_tool",
            user_id=user_id,
            session_id=session_id,
            topic=classification.topic.value,
            risk=classification.risk.value,
            complexity=classification.complexity.value,
            needs_rag=classification.needs_rag,
            messages_in_session=len(validated.normalized_messages),
            answer_length=len(outcome.text),
            success=outcome.success,
            error_code=None if outcome.success else "tool_input_invalid",
            metadata={"tool": outcome.name},
        ),
    )
    logger.info(
        "chat_request_tool request_id=%s user_id=%s tool=%s success=%s",
        request_id,
        user_id,
        outcome.name,
        outcome.success,
    )
    return ndjson_response(ChatStream(request_id, handler), headers=headers, background=background)


@router.post("/chat")
async def chat(
    request: Request,
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
    classifier: RequestClassifier = Depends(get_request_classifier),
    context_builder: ContextBuilder = Depends(get_context_builder),
    model_router: ModelRouter = Depends(get_model_router),
    analytics: AnalyticsLogger = Depends(get_analytics_logger),
    history: HistoryPersister = Depends(get_history_persister),
    tools: ToolRegistry = Depends(get_tool_registry),
) -> StreamingResponse:
    guard = await enforce_chat_guards(request, limiter=limiter)
    user_id = guard.identity.id
    request_id = guard.request_id
    headers = guard.response_headers

    body = await _read_json_body(request)
    validated = validate_and_normalize_messages(body.get("messages"))
    latest = validated.latest_user_message
    session_id = _session_id(body)
    domain = _domain(body)

    outcome = await classify_and_triage(latest, classifier)
    classification = outcome.classification
    if outcome.blocked:
        return _triage_response(
            request_id=request_id,
            user_id=user_id,
            session_id=session_id,
            validated=validated,
            classification=classification,
            triage_message=outcome.triage_message or "",
            headers=headers,
            history=history,
            analytics=analytics,
        )

    # Tools only run once the safety gate has passed.
    call = detect_tool_from_text(latest)
    tool = tools.get(call.name) if call else None
    if call and tool:
        return _tool_response(
            request_id=request_id,
            user_id=user_id,
            session_id=session_id,
            validated=validated,
            classification=classification,
            tool=tool,
            args=call.args,
            headers=headers,
            history=history,
            analytics=analytics,
        )

    choice = choose_model(classification)
    exchange = ChatExchange()
    started = time.perf_counter()

    async def handler(send: SendEvent) -> None:
        built = await context_builder.build(user_id, latest, classification, domain)
        exchange.rag_sources = built.rag_sources
        system = build_system_prompt(built.context)
        model_messages = build_model_messages(validated.normalized_messages, latest, built.context)
        await send(
            {
                "type": "meta",
                "sessionId": session_id,
                "tier": choice.tier.value,
                "topic": classification.topic.value,
                "risk": classification.risk.value,
                "sources": [source.as_dict() for source in built.rag_sources],
            }
        )

        async def on_token(token: str) -> None:
            exchange.tokens.append(token)
            await send({"type": "token", "value": token})

        try:
            result = await model_router.stream_with_fallback(choice, system, model_messages, on_token)
        except asyncio.CancelledError:
            exchange.error_code = "aborted"
            raise
        except ProviderError as exc:
            exchange.error_code = f"provider_error_{exc.status_code}" if exc.status_code else "provider_error"
            raise
        except Exception:
            exchange.error_code = "generation_failed"
            raise
        exchange.provider = result.provider
        exchange.model = result.model

        if choice.use_judge:
            verdict = await model_router.judge(
                latest,
                built.context.knowledge_snippets,
                result.text,
                choice.judge_model or JUDGE_MODEL,
            )
            if verdict is not None:
                exchange.judge_verdict = verdict.verdict.value
                if verdict.verdict == Verdict.BLOCK:
                    replacement = _judge_replacement(classification)
                    exchange.answer = replacement
                    await send({"type": "meta", "judgeVerdict": Verdict.BLOCK.value, "replacement": replacement})
                elif verdict.verdict == Verdict.WARN and verdict.needs_edit:
                    # A failed rewrite keeps the streamed answer.
                    rewritten = await model_router.rewrite(
                        latest,
                        built.context.knowledge_snippets,
                        result.text,
                        choice.judge_model or JUDGE_MODEL,
                    )
                    if rewritten:
                        exchange.answer = rewritten
                        await send({"type": "meta", "judgeVerdict": Verdict.WARN.value, "replacement": rewritten})

        logger.info(
            "chat_request_completed request_id=%s provider=%s model=%s latency_ms=%s",
            request_id,
            result.provider,
            result.model,
            int((time.perf_counter() - started) * 1000),
        )

    def record_exchange() -> None:
        answer = exchange.final_answer
        metadata: dict[str, Any] = {"provider": exchange.provider, "model": exchange.model}
        if exchange.judge_verdict:
            metadata["judgeVerdict"] = exchange.judge_verdict
        history.persist(user_id, session_id, latest, answer, metadata)
        analytics.record(
            AnalyticsEventData(
                event_type="chat_response",
                user_id=user_id,
                session_id=session_id,
                topic=classification.topic.value,
                risk=classification.risk.value,
                complexity=classification.complexity.value,
                model_used=exchange.model or choice.model,
                used_judge=choice.use_judge,
                judge_verdict=exchange.judge_verdict,
                needs_rag=classification.needs_rag,
                messages_in_session=len(validated.normalized_messages),
                answer_length=len(answer),
                rag_sources=exchange.rag_sources,
                success=exchange.error_code is None and exchange.provider is not None,
                error_code=exchange.error_code,
            )
        )

    background = BackgroundTasks()
    background.add_task(record_exchange)
    return ndjson_response(ChatStream(request_id, handler), headers=headers, background=background)
