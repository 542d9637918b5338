import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from app.core.classification import Classification, Complexity, Risk
from app.core.errors import ProviderError
from app.services.llm import ChatMessages, ProviderRegistry, get_provider_registry

logger = logging.getLogger("uvicorn.error")

OPENAI_CHEAP_MODEL = os.getenv("OPENAI_CHEAP_MODEL", "gpt-4o-mini")
OPENAI_MAIN_MODEL = os.getenv("OPENAI_MAIN_MODEL", "gpt-4o")
ANTHROPIC_CHEAP_MODEL = os.getenv("ANTHROPIC_CHEAP_MODEL", "claude-haiku-4-5")
ANTHROPIC_CHAT_MODEL = os.getenv("ANTHROPIC_CHAT_MODEL", "claude-sonnet-4-5")
GEMINI_CHEAP_MODEL = os.getenv("GEMINI_CHEAP_MODEL", "gemini-2.0-flash")
GEMINI_CHAT_MODEL = os.getenv("GEMINI_CHAT_MODEL", "gemini-2.0-flash")
CHAT_PRIMARY_PROVIDER = os.getenv("CHAT_PRIMARY_PROVIDER", "openai")
CHAT_FALLBACK_PROVIDER = os.getenv("CHAT_FALLBACK_PROVIDER", "anthropic")
JUDGE_PROVIDER = os.getenv("JUDGE_PROVIDER", "anthropic")
JUDGE_MODEL = os.getenv("JUDGE_MODEL", "claude-sonnet-4-5")
CHAT_SIMPLE_MAX_TOKENS = int(os.getenv("CHAT_SIMPLE_MAX_TOKENS", "1200"))
CHAT_COMPLEX_MAX_TOKENS = int(os.getenv("CHAT_COMPLEX_MAX_TOKENS", "2000"))
JUDGE_MAX_TOKENS = int(os.getenv("JUDGE_MAX_TOKENS", "500"))
REWRITE_MAX_TOKENS = int(os.getenv("REWRITE_MAX_TOKENS", "2000"))
CHAT_SIMPLE_TIMEOUT_MS = int(os.getenv("CHAT_SIMPLE_TIMEOUT_MS", "30000"))
CHAT_COMPLEX_TIMEOUT_MS = int(os.getenv("CHAT_COMPLEX_TIMEOUT_MS", "45000"))

TokenCallback = Callable[[str], Awaitable[None]]

_STREAM_END = object()


class ModelTier(str, Enum):
    simple = "simple"
    complex = "complex"


class Verdict(str, Enum):
    SAFE = "SAFE"
    WARN = "WARN"
    BLOCK = "BLOCK"


TIER_MODELS: dict[str, dict[ModelTier, str]] = {
    "openai": {ModelTier.simple: OPENAI_CHEAP_MODEL, ModelTier.complex: OPENAI_MAIN_MODEL},
    "anthropic": {ModelTier.simple: ANTHROPIC_CHEAP_MODEL, ModelTier.complex: ANTHROPIC_CHAT_MODEL},
    "gemini": {ModelTier.simple: GEMINI_CHEAP_MODEL, ModelTier.complex: GEMINI_CHAT_MODEL},
}


def tier_model(provider: str, tier: ModelTier) -> str:
    models = TIER_MODELS.get(provider)
    if not models:
        raise ProviderError(provider=provider, model="", message=f"Unknown provider {provider}")
    return models[tier]


@dataclass(frozen=True)
class ModelChoice:
    provider: str
    model: str
    max_tokens: int
    timeout_ms: int
    tier: ModelTier
    use_judge: bool = False
    judge_model: Optional[str] = None


@dataclass(frozen=True)
class GenerationResult:
    provider: str
    model: str
    text: str


@dataclass(frozen=True)
class JudgeVerdict:
    verdict: Verdict
    reasons: tuple[str, ...] = ()
    needs_edit: bool = False


def _simple_choice() -> ModelChoice:
    return ModelChoice(
        provider=CHAT_PRIMARY_PROVIDER,
        model=tier_model(CHAT_PRIMARY_PROVIDER, ModelTier.simple),
        max_tokens=CHAT_SIMPLE_MAX_TOKENS,
        timeout_ms=CHAT_SIMPLE_TIMEOUT_MS,
        tier=ModelTier.simple,
    )


def _complex_choice() -> ModelChoice:
    return ModelChoice(
        provider=CHAT_PRIMARY_PROVIDER,
        model=tier_model(CHAT_PRIMARY_PROVIDER, ModelTier.complex),
        max_tokens=CHAT_COMPLEX_MAX_TOKENS,
        timeout_ms=CHAT_COMPLEX_TIMEOUT_MS,
        tier=ModelTier.complex,
        use_judge=True,
        judge_model=JUDGE_MODEL,
    )


# Every (complexity, risk) pair is listed; a new enum member fails loudly in choose_model.
MODEL_TABLE: dict[tuple[Complexity, Risk], Callable[[], ModelChoice]] = {
    (Complexity.simple, Risk.none): _simple_choice,
    (Complexity.simple, Risk.low): _simple_choice,
    (Complexity.simple, Risk.moderate): _complex_choice,
    (Complexity.simple, Risk.high): _complex_choice,
    (Complexity.complex, Risk.none): _complex_choice,
    (Complexity.complex, Risk.low): _complex_choice,
    (Complexity.complex, Risk.moderate): _complex_choice,
    (Complexity.complex, Risk.high): _complex_choice,
}


def choose_model(classification: Classification) -> ModelChoice:
    return MODEL_TABLE[(classification.complexity, classification.risk)]()


JUDGE_SYSTEM_PROMPT = """You are a safety and factuality judge for a health coaching assistant.

You never write answers; you only evaluate them.

Enforce:
- No drug or supplement dosages, frequencies or titration schedules.
- No diagnosing diseases and no prescribing or changing medications.
- Fasting, sauna and cold protocols must tell the user to check with a clinician.
- Acute emergency-like symptoms must be escalated to medical care.

Respond ONLY with JSON:
{"verdict": "SAFE" | "WARN" | "BLOCK", "reasons": [string], "needs_edit": true | false}

WARN means minor issues an editor can fix; set needs_edit when it should.
BLOCK means the answer must not be shown.
"""

REWRITE_SYSTEM_PROMPT = """You are a safety editor for a health coaching assistant.

Rewrite the answer so it follows these rules:
- Remove dosages, prescriptions and instructions that go beyond general education.
- Tell the user to check with a clinician for high-risk topics.
- Keep as much useful educational content as possible, in the same calm tone.

Return ONLY the rewritten answer text, no JSON and no commentary.
"""


async def _next_token(tokens: AsyncIterator[str]) -> object:
    try:
        return await tokens.__anext__()
    except StopAsyncIteration:
        return _STREAM_END


class ModelRouter:
    def __init__(
        self,
        registry: ProviderRegistry,
        secondary: Optional[str] = CHAT_FALLBACK_PROVIDER,
        judge_provider: str = JUDGE_PROVIDER,
    ) -> None:
        self.registry = registry
        self.secondary = secondary
        self.judge_provider = judge_provider

    def secondary_for(self, choice: ModelChoice) -> Optional[str]:
        if not self.secondary or self.secondary == choice.provider:
            return None
        if not self.registry.has(self.secondary):
            return None
        return self.secondary

    async def _generate(
        self,
        provider_name: str,
        model: str,
        choice: ModelChoice,
        system: str,
        messages: ChatMessages,
        on_token: TokenCallback,
    ) -> str:
        provider = self.registry.get(provider_name)
        tokens = provider.stream_chat(model, system, messages, choice.max_tokens).__aiter__()
        loop = asyncio.get_running_loop()
        remaining = choice.timeout_ms / 1000
        chunks: list[str] = []
        try:
            while True:
                started = loop.time()
                try:
                    token = await asyncio.wait_for(_next_token(tokens), timeout=remaining)
                except asyncio.TimeoutError as exc:
                    raise ProviderError(
                        provider=provider_name,
                        model=model,
                        message=f"{provider_name} generation exceeded {choice.timeout_ms}ms",
                    ) from exc
                if token is _STREAM_END:
                    break
                # Only provider wait time is budgeted; on_token may block on a slow client.
                remaining -= loop.time() - started
                chunks.append(token)
                await on_token(token)
        finally:
            aclose = getattr(tokens, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(chunks)

    async def stream_with_fallback(
        self,
        choice: ModelChoice,
        system: str,
        messages: ChatMessages,
        on_token: TokenCallback,
    ) -> GenerationResult:
        try:
            text = await self._generate(choice.provider, choice.model, choice, system, messages, on_token)
            return GenerationResult(provider=choice.provider, model=choice.model, text=text)
        except ProviderError as exc:
            secondary = self.secondary_for(choice)
            if secondary is None:
                raise
            logger.warning(
                "chat_provider_fallback from=%s to=%s model=%s status=%s detail=%s",
                choice.provider,
                secondary,
                choice.model,
                exc.status_code,
                str(exc)[:220],
            )
        model = tier_model(secondary, choice.tier)
        text = await self._generate(secondary, model, choice, system, messages, on_token)
        return GenerationResult(provider=secondary, model=model, text=text)

    async def judge(
        self, question: str, rag_context: str, answer: str, judge_model: str
    ) -> Optional[JudgeVerdict]:
        if not self.registry.has(self.judge_provider):
            logger.debug("chat_judge_skipped provider=%s detail=not configured", self.judge_provider)
            return None
        prompt = (
            f"USER_QUESTION:\n{question}\n\n"
            f"RAG_CONTEXT:\n{rag_context or '(no RAG context provided)'}\n\n"
            f"ASSISTANT_ANSWER:\n{answer}\n\n"
            "Evaluate this answer for safety and factuality. Respond with JSON only."
        )
        try:
            provider = self.registry.get(self.judge_provider)
            raw = await provider.complete_json(judge_model, JUDGE_SYSTEM_PROMPT, prompt, JUDGE_MAX_TOKENS)
        except (ProviderError, ValueError) as exc:
            logger.warning(
                "chat_judge_failed provider=%s model=%s detail=%s",
                self.judge_provider,
                judge_model,
                str(exc)[:220],
            )
            return JudgeVerdict(verdict=Verdict.BLOCK, reasons=("Judge evaluation failed",))
        try:
            verdict = Verdict(str(raw.get("verdict") or "SAFE").strip().upper())
        except ValueError:
            verdict = Verdict.SAFE
        reasons = raw.get("reasons")
        return JudgeVerdict(
            verdict=verdict,
            reasons=tuple(str(item) for item in reasons) if isinstance(reasons, list) else (),
            needs_edit=raw.get("needs_edit") is True,
        )

    async def rewrite(self, question: str, rag_context: str, answer: str, judge_model: str) -> Optional[str]:
        """Ask the judge provider for a safer edit; None when it is unavailable or fails."""
        if not self.registry.has(self.judge_provider):
            return None
        prompt = (
            f"USER_QUESTION:\n{question}\n\n"
            f"RAG_CONTEXT:\n{rag_context or '(no RAG context provided)'}\n\n"
            f"UNSAFE_ANSWER:\n{answer}\n\n"
            "Rewrite this answer to be safe and compliant. Return only the rewritten answer."
        )
        messages = [{"role": "user", "content": prompt}]
        chunks: list[str] = []
        try:
            provider = self.registry.get(self.judge_provider)
            async for token in provider.stream_chat(judge_model, REWRITE_SYSTEM_PROMPT, messages, REWRITE_MAX_TOKENS):
                chunks.append(token)
        except ProviderError as exc:
            logger.warning(
                "chat_rewrite_failed provider=%s model=%s detail=%s",
                self.judge_provider,
                judge_model,
                str(exc)[:220],
            )
            return None
        rewritten = "".join(chunks).strip()
        if not rewritten:
            logger.warning("chat_rewrite_failed provider=%s model=%s detail=empty rewrite", self.judge_provider, judge_model)
            return None
        return rewritten


def get_model_router() -> ModelRouter:
    return ModelRouter(get_provider_registry())
