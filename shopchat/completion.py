from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import google.generativeai as genai
import httpx

from .config import Settings
from .errors import CompletionTransportError, EmptyCompletionError
from .models import ConversationTurn

logger = logging.getLogger("shopchat.completion")

DEFAULT_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]


class CompletionClient:
    """Async chat-completion interface shared by the reassembler and orchestrator."""

    def __init__(self, default_model: str, temperature: float, timeout: float) -> None:
        self._default_model = default_model
        self._temperature = temperature
        self._timeout = timeout

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[ConversationTurn],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Purpose: Run one completion with a hard client-side deadline.
        Inputs/Outputs: Inputs are the system prompt, ordered messages and optional
            overrides; output is the trimmed reply text.
        Side Effects / State: One outbound request to the completion service.
        Dependencies: Delegates to _request; wraps it in asyncio.wait_for.
        Failure Modes: CompletionTransportError on timeout/HTTP errors,
            EmptyCompletionError when the reply has no text. Never retries.
        If Removed: Neither the normalizer nor the assistant can reach a model.
        Testing Notes: A hanging backend must fail after the timeout.
        """
        # The deadline cancels only the in-flight request.
        deadline = timeout if timeout is not None else self._timeout
        try:
            text = await asyncio.wait_for(
                self._request(
                    system_prompt,
                    list(messages),
                    model or self._default_model,
                    self._temperature if temperature is None else temperature,
                ),
                timeout=deadline,
            )
        except asyncio.TimeoutError as exc:
            raise CompletionTransportError(f"completion timed out after {deadline:g}s") from exc
        if not text or not text.strip():
            raise EmptyCompletionError("completion returned no text")
        return text.strip()

    async def _request(
        self, system_prompt: str, messages: List[ConversationTurn], model: str, temperature: float
    ) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenRouterClient(CompletionClient):
    """OpenAI-compatible chat completions over HTTPS (OpenRouter by default)."""

    def __init__(
        self,
        api_key: str,
        url: str,
        default_model: str,
        temperature: float,
        timeout: float,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(default_model, temperature, timeout)
        self._url = url
        self._headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "X-Title": "shopchat assistant",
        }
        # No transport timeout; the deadline in complete() bounds the call.
        self._client = http_client or httpx.AsyncClient(timeout=None)

    async def _request(
        self, system_prompt: str, messages: List[ConversationTurn], model: str, temperature: float
    ) -> str:
        """Purpose: POST a chat-completions request and extract the first choice.
        Inputs/Outputs: Inputs are prompt, messages, model and temperature; output
            is raw reply text (possibly empty).
        Side Effects / State: One HTTP request through the shared AsyncClient.
        Dependencies: httpx.AsyncClient and extract_choice_text.
        Failure Modes: Non-2xx, network errors and non-JSON bodies raise
            CompletionTransportError.
        If Removed: The default completion provider stops working.
        Testing Notes: Use httpx.MockTransport to simulate 500s and empty choices.
        """
        # System prompt first, then the ordered conversation.
        payload = {
            "model": model,
            "temperature": temperature,
            "messages": [{"role": "system", "content": system_prompt}]
            + [{"role": m.role, "content": m.content} for m in messages],
        }
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise CompletionTransportError(f"completion request failed: {exc}") from exc
        if response.status_code >= 300:
            raise CompletionTransportError(
                f"completion service returned {response.status_code}: {response.text[:300]}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionTransportError("completion service returned a non-JSON body") from exc
        return extract_choice_text(data)

    async def close(self) -> None:
        await self._client.aclose()


class GeminiCompletionClient(CompletionClient):
    """Gemini SDK wrapper with model caching and permissive safety settings."""

    def __init__(self, api_key: str, default_model: str, temperature: float, timeout: float) -> None:
        """Purpose: Configure the Gemini SDK for async completions.
        Inputs/Outputs: Inputs are key, default model, temperature and timeout.
        Side Effects / State: Configures the SDK global API key.
        Dependencies: Uses google.generativeai.
        Failure Modes: Raises ValueError if the API key is missing.
        If Removed: COMPLETION_PROVIDER=gemini cannot be served.
        Testing Notes: Missing key raises ValueError.
        """
        # Configure the API key once; models are created per system prompt.
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required")
        super().__init__(_normalize_model_name(default_model), temperature, timeout)
        genai.configure(api_key=api_key)

    async def _request(
        self, system_prompt: str, messages: List[ConversationTurn], model: str, temperature: float
    ) -> str:
        # Gemini calls the assistant role "model".
        generative_model = genai.GenerativeModel(
            _normalize_model_name(model),
            system_instruction=system_prompt or None,
        )
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
        ]
        try:
            response = await generative_model.generate_content_async(
                contents,
                generation_config={"temperature": temperature},
                safety_settings=DEFAULT_SAFETY_SETTINGS,
            )
        except Exception as exc:
            raise CompletionTransportError(f"gemini request failed: {exc}") from exc
        try:
            text: Optional[str] = response.text
        except ValueError as exc:
            # Blocked or candidate-less responses raise on .text.
            raise EmptyCompletionError(f"gemini returned no text: {exc}") from exc
        return (text or "").strip()


def extract_choice_text(data: Any) -> str:
    """Return choices[0].message.content (or choices[0].text), '' when absent."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    first: Dict[str, Any] = choices[0]
    message = first.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if content is None:
        content = first.get("text")
    return content if isinstance(content, str) else ""


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip the optional "models/" prefix and surrounding whitespace."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned


def build_completion_client(settings: Settings) -> CompletionClient:
    """Purpose: Create the completion client selected by COMPLETION_PROVIDER.
    Inputs/Outputs: Input is Settings; output is a CompletionClient.
    Side Effects / State: May configure the Gemini SDK or open an HTTP pool.
    Dependencies: OpenRouterClient and GeminiCompletionClient.
    Failure Modes: Unknown providers raise ValueError.
    If Removed: The app cannot wire a model backend.
    Testing Notes: "gemini" without a key raises ValueError.
    """
    # Default to OpenRouter; Gemini stays available through the SDK.
    provider = settings.completion_provider
    if provider == "gemini":
        return GeminiCompletionClient(
            api_key=settings.gemini_api_key,
            default_model=settings.model,
            temperature=settings.temperature,
            timeout=settings.completion_timeout_sec,
        )
    if provider == "openrouter":
        if not settings.openrouter_api_key:
            logger.warning("OPENROUTER_API_KEY is empty; completions will fail and use the fallback reply")
        return OpenRouterClient(
            api_key=settings.openrouter_api_key,
            url=settings.openrouter_url,
            default_model=settings.model,
            temperature=settings.temperature,
            timeout=settings.completion_timeout_sec,
        )
    raise ValueError(f"unknown COMPLETION_PROVIDER: {provider}")
