import json
import logging
import os
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

import httpx

from app.core.errors import ProviderError

logger = logging.getLogger("uvicorn.error")

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
ANTHROPIC_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
ANTHROPIC_VERSION = "2023-06-01"

ChatMessages = Sequence[dict[str, str]]


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    async for line in response.aiter_lines():
        line = line.strip()
        if line.startswith("data:"):
            yield line[len("data:") :].strip()


async def _raise_for_status(response: httpx.Response, provider: str, model: str) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    detail = (response.text or "").strip()[:220]
    raise ProviderError(
        provider=provider,
        model=model,
        status_code=response.status_code,
        message=f"{provider} request failed (status={response.status_code}): {detail or 'no response body'}",
    )


class LLMProvider(Protocol):
    name: str

    def stream_chat(
        self, model: str, system: str, messages: ChatMessages, max_tokens: int
    ) -> AsyncIterator[str]:
        ...

    async def complete_json(
        self, model: str, system: str, prompt: str, max_tokens: int
    ) -> dict[str, Any]:
        ...


class HTTPProvider:
    name = "http"
    base_url = ""

    def __init__(self, api_key: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if not api_key:
            raise ValueError(f"{self.name} API key missing")
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=_http_timeout(),
            transport=self._transport,
        )

    def _extract_delta(self, chunk: dict[str, Any]) -> str:
        raise NotImplementedError

    def _stream_request(
        self, model: str, system: str, messages: ChatMessages, max_tokens: int
    ) -> tuple[str, dict[str, Any]]:
        raise NotImplementedError

    async def _post_json(self, path: str, payload: dict[str, Any], model: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
                await _raise_for_status(response, self.name, model)
                return response.json()
        except httpx.TimeoutException as exc:
            raise ProviderError(self.name, model, f"{self.name} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, model, f"{self.name} request failed: {str(exc)[:220]}") from exc
        except ValueError as exc:
            raise ProviderError(self.name, model, f"{self.name} returned invalid JSON") from exc

    async def stream_chat(
        self, model: str, system: str, messages: ChatMessages, max_tokens: int
    ) -> AsyncIterator[str]:
        path, payload = self._stream_request(model, system, messages, max_tokens)
        produced = False
        try:
            async with self._client() as client:
                async with client.stream("POST", path, json=payload) as response:
                    await _raise_for_status(response, self.name, model)
                    async for data in _iter_sse_data(response):
                        if not data or data == "[DONE]":
                            continue
                        delta = self._extract_delta(json.loads(data))
                        if delta:
                            produced = True
                            yield delta
        except httpx.TimeoutException as exc:
            raise ProviderError(self.name, model, f"{self.name} stream timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, model, f"{self.name} stream failed: {str(exc)[:220]}") from exc
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.name, model, f"{self.name} stream returned malformed data") from exc
        if not produced:
            raise ProviderError(self.name, model, f"{self.name} stream returned empty content")


class OpenAIProvider(HTTPProvider):
    name = "openai"
    base_url = OPENAI_BASE_URL

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _stream_request(
        self, model: str, system: str, messages: ChatMessages, max_tokens: int
    ) -> tuple[str, dict[str, Any]]:
        return "/chat/completions", {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
            "max_completion_tokens": max_tokens,
            "stream": True,
        }

    def _extract_delta(self, chunk: dict[str, Any]) -> str:
        choices = chunk.get("choices") or []
        if not choices:
            return ""
        return str((choices[0].get("delta") or {}).get("content") or "")

    async def complete_json(
        self, model: str, system: str, prompt: str, max_tokens: int
    ) -> dict[str, Any]:
        data = await self._post_json(
            "/chat/completions",
            {
                "model": model,
                "response_format": {"type": "json_object"},
                "temperature": 0.1,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "max_completion_tokens": max_tokens,
            },
            model,
        )
        try:
            text = str(data["choices"][0]["message"].get("content") or "").strip()
            return parse_llm_json(text)
        except (KeyError, IndexError, ValueError) as exc:
            raise ProviderError(self.name, model, "OpenAI completion returned no JSON content") from exc

    async def embed(self, model: str, text: str) -> list[float]:
        data = await self._post_json("/embeddings", {"model": model, "input": text}, model)
        try:
            return [float(value) for value in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(self.name, model, "OpenAI embedding response malformed") from exc


class AnthropicProvider(HTTPProvider):
    name = "anthropic"
    base_url = ANTHROPIC_BASE_URL

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _stream_request(
        self, model: str, system: str, messages: ChatMessages, max_tokens: int
    ) -> tuple[str, dict[str, Any]]:
        return "/messages", {
            "model": model,
            "system": system,
            "messages": list(messages),
            "max_tokens": max_tokens,
            "stream": True,
        }

    def _extract_delta(self, chunk: dict[str, Any]) -> str:
        if chunk.get("type") == "error":
            raise ValueError(str((chunk.get("error") or {}).get("message") or "stream error"))
        if chunk.get("type") != "content_block_delta":
            return ""
        delta = chunk.get("delta") or {}
        if delta.get("type") != "text_delta":
            return ""
        return str(delta.get("text") or "")

    async def complete_json(
        self, model: str, system: str, prompt: str, max_tokens: int
    ) -> dict[str, Any]:
        data = await self._post_json(
            "/messages",
            {
                "model": model,
                "system": system,
                "max_tokens": max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            },
            model,
        )
        try:
            text = "".join(
                str(block.get("text") or "") for block in data["content"] if block.get("type") == "text"
            )
            return parse_llm_json(text)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(self.name, model, "Anthropic message returned no JSON content") from exc


class GeminiProvider(HTTPProvider):
    name = "gemini"
    base_url = GEMINI_BASE_URL

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    @staticmethod
    def _contents(messages: ChatMessages) -> list[dict[str, Any]]:
        return [
            {
                "role": "model" if message["role"] == "assistant" else "user",
                "parts": [{"text": message["content"]}],
            }
            for message in messages
        ]

    def _stream_request(
        self, model: str, system: str, messages: ChatMessages, max_tokens: int
    ) -> tuple[str, dict[str, Any]]:
        return f"/models/{model}:streamGenerateContent?alt=sse", {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": self._contents(messages),
            "generationConfig": {"maxOutputTokens": max_tokens},
        }

    def _extract_delta(self, chunk: dict[str, Any]) -> str:
        candidates = chunk.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(part.get("text") or "") for part in parts)

    async def complete_json(
        self, model: str, system: str, prompt: str, max_tokens: int
    ) -> dict[str, Any]:
        data = await self._post_json(
            f"/models/{model}:generateContent",
            {
                "systemInstruction": {"parts": [{"text": system}]},
                "generationConfig": {
                    "responseMimeType": "application/json",
                    "temperature": 0.1,
                    "maxOutputTokens": max_tokens,
                },
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            },
            model,
        )
        try:
            return parse_llm_json(self._extract_delta(data))
        except ValueError as exc:
            raise ProviderError(self.name, model, "Gemini response returned no JSON content") from exc


class ProviderRegistry:
    """Name -> provider lookup, filled explicitly before first use."""

    def __init__(self, providers: Sequence[LLMProvider] = ()) -> None:
        self._providers: dict[str, LLMProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: LLMProvider) -> None:
        self._providers[provider.name] = provider

    def has(self, name: Optional[str]) -> bool:
        return bool(name) and name in self._providers

    def get(self, name: str) -> LLMProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderError(provider=name, model="", message=f"Provider {name} is not configured")
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)


def build_provider_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    if OPENAI_API_KEY:
        registry.register(OpenAIProvider(OPENAI_API_KEY))
    if ANTHROPIC_API_KEY:
        registry.register(AnthropicProvider(ANTHROPIC_API_KEY))
    if GEMINI_API_KEY:
        registry.register(GeminiProvider(GEMINI_API_KEY))
    if not registry.names():
        logger.warning("llm_provider_registry_empty detail=no provider API keys configured")
    return registry


_provider_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    global _provider_registry
    if _provider_registry is None:
        _provider_registry = build_provider_registry()
    return _provider_registry
