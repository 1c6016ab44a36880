"""
Kindred - AI Providers
Interchangeable model backends and the dispatcher that walks the fallback chain.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiohttp
import openai
from openai import AsyncOpenAI

import logger as log
from config import ProviderConfig, Settings
from errors import (
    AllProvidersFailedError,
    ProviderAuthError,
    ProviderContentBlockedError,
    ProviderError,
    ProviderMalformedResponseError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTimeoutError,
)
from memory import MemoryView
from models import IdentityKey
from prometheus_metrics import metrics_manager
from prompt_builder import PromptPayload, flatten_messages

logger = logging.getLogger("providers")


def error_for_status(provider: str, status: int, detail: str = "") -> ProviderError:
    """Map an HTTP status to the provider error taxonomy."""
    message = f"{provider} returned HTTP {status}" + (f": {detail}" if detail else "")
    if status == 429:
        return ProviderRateLimitError(provider, message)
    if status in (401, 403):
        return ProviderAuthError(provider, message)
    if status >= 500:
        return ProviderServerError(provider, message)
    return ProviderMalformedResponseError(provider, message)


def format_memory_context(view: Optional[MemoryView]) -> str:
    """Plain-text memory block for providers that take one prompt string."""
    if view is None:
        return ""
    lines = ["User information:"]
    facts = view.user_facts
    if facts:
        lines.extend(f"- {fact}" for fact in facts)
    else:
        lines.append("- No facts known yet.")
    lines.append("")
    lines.append(f"Trust level: {view.trust_level}/10")
    lines.append(f"Romantic level: {view.romantic_level}/10")
    lines.append(f"Censorship level: {view.censorship_level}/10")
    return "\n".join(lines)


@dataclass
class ProviderRequest:
    """One completion request. Exactly one of messages/text is set."""
    messages: Optional[List[dict]] = None
    text: Optional[str] = None
    system_instructions: Optional[str] = None
    memory_view: Optional[MemoryView] = None
    image: Optional[bytes] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class DispatchResult:
    text: str
    provider_used: str
    was_fallback: bool


class Provider:
    """A model backend: request in, text out, or a ProviderError."""

    structured = False

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.name = config.name

    @property
    def available(self) -> bool:
        return bool(self.config.url)

    async def complete(self, request: ProviderRequest) -> str:
        raise NotImplementedError

    async def close(self):
        pass

    def _full_text(self, request: ProviderRequest) -> str:
        """Single prompt string with system instructions and memory prepended."""
        text = request.text if request.text is not None else flatten_messages(request.messages or [])
        if request.system_instructions:
            text = f"{request.system_instructions}\n\n{text}"
        memory_context = format_memory_context(request.memory_view)
        if memory_context:
            text = f"{memory_context}\n\n{text}"
        return text


class OpenAICompatibleProvider(Provider):
    """Chat-completions backend (OpenRouter, Chutes, local servers) via the openai SDK."""

    structured = True

    def __init__(self, config: ProviderConfig, client: AsyncOpenAI = None):
        super().__init__(config)
        self.client = client

    @property
    def available(self) -> bool:
        return bool(self.config.url and self.config.key)

    def _client(self) -> AsyncOpenAI:
        if self.client is None:
            self.client = AsyncOpenAI(base_url=self.config.url, api_key=self.config.key, timeout=self.config.timeout)
        return self.client

    def build_messages(self, request: ProviderRequest) -> List[dict]:
        if request.messages is not None:
            messages = [dict(m) for m in request.messages]
        else:
            system = "\n\n".join(p for p in (request.system_instructions, format_memory_context(request.memory_view)) if p)
            messages = [{"role": "system", "content": system}] if system else []
            messages.append({"role": "user", "content": request.text or ""})

        if request.image:
            for msg in reversed(messages):
                if msg["role"] == "user" and isinstance(msg["content"], str):
                    encoded = base64.b64encode(request.image).decode('utf-8')
                    msg["content"] = [
                        {"type": "text", "text": msg["content"]},
                        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}},
                    ]
                    break
        return messages

    async def complete(self, request: ProviderRequest) -> str:
        messages = self.build_messages(request)
        logger.debug(f"[{self.name}] Sending {len(messages)} messages to {self.config.model}")
        try:
            response = await asyncio.wait_for(
                self._client().chat.completions.create(
                    model=self.config.model,
                    messages=messages,
                    temperature=request.temperature if request.temperature is not None else self.config.temperature,
                    max_tokens=request.max_tokens or self.config.max_tokens,
                ),
                timeout=self.config.timeout,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as e:
            raise ProviderTimeoutError(self.name, f"{self.name} timed out after {self.config.timeout}s") from e
        except openai.APIStatusError as e:
            raise error_for_status(self.name, e.status_code, e.message) from e
        except openai.APIConnectionError as e:
            raise ProviderTimeoutError(self.name, f"{self.name} did not respond: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderMalformedResponseError(self.name, f"{self.name} sent an unusable response: {e}") from e

        if not getattr(response, "choices", None):
            raise ProviderMalformedResponseError(self.name, f"{self.name} returned no choices")
        choice = response.choices[0]
        content = choice.message.content if choice.message else None
        if not content:
            if choice.finish_reason == "content_filter":
                raise ProviderContentBlockedError(self.name, f"{self.name} blocked the response")
            raise ProviderMalformedResponseError(self.name, f"{self.name} returned an empty message")
        return content.strip()


class HTTPProvider(Provider):
    """Base for backends spoken to directly over aiohttp."""

    def __init__(self, config: ProviderConfig, session: aiohttp.ClientSession = None):
        super().__init__(config)
        self._session = session

    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.timeout))
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post(self, url: str, **kwargs):
        """POST and return (status, json-or-text body). Network failures become timeouts."""
        try:
            async with self.session().post(url, **kwargs) as response:
                if response.content_type == "application/json":
                    body = await response.json()
                else:
                    body = await response.text()
                return response.status, body
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.name, f"{self.name} timed out after {self.config.timeout}s") from e
        except aiohttp.ContentTypeError as e:
            raise ProviderMalformedResponseError(self.name, f"{self.name} sent unreadable JSON: {e}") from e
        except aiohttp.ClientError as e:
            raise ProviderTimeoutError(self.name, f"{self.name} did not respond: {e}") from e


class GeminiProvider(HTTPProvider):
    """Google generateContent REST endpoint; takes a single text prompt."""

    @property
    def available(self) -> bool:
        return bool(self.config.url and self.config.key)

    @staticmethod
    def _error_detail(body) -> str:
        """Error text from {"error": {"message": ...}}, {"error": "..."} or a raw body."""
        if not isinstance(body, dict):
            return str(body)[:200]
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        return str(error or "")[:200]

    async def complete(self, request: ProviderRequest) -> str:
        parts = [{"text": self._full_text(request)}]
        if request.image:
            parts.append({"inline_data": {
                "mime_type": "image/png",
                "data": base64.b64encode(request.image).decode('utf-8'),
            }})

        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": request.temperature if request.temperature is not None else self.config.temperature,
                "topP": 0.8,
                "topK": 40,
                "maxOutputTokens": request.max_tokens or self.config.max_tokens,
            },
        }
        url = f"{self.config.url.rstrip('/')}/models/{self.config.model}:generateContent"
        logger.debug(f"[{self.name}] Prompt length {len(parts[0]['text'])}, image={bool(request.image)}")
        status, body = await self._post(url, params={"key": self.config.key}, json=payload)

        if status != 200:
            raise error_for_status(self.name, status, self._error_detail(body))
        if not isinstance(body, dict):
            raise ProviderMalformedResponseError(self.name, f"Unexpected response format from {self.name}")

        feedback = body.get("promptFeedback")
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            raise ProviderContentBlockedError(self.name, f"Response blocked: {block_reason}")

        candidates = body.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise ProviderMalformedResponseError(self.name, f"Unexpected response format from {self.name}")
        content = candidates[0].get("content")
        content_parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(content_parts, list):
            content_parts = []
        text = "".join(p.get("text") or "" for p in content_parts if isinstance(p, dict))
        if not text:
            if candidates[0].get("finishReason") == "SAFETY":
                raise ProviderContentBlockedError(self.name, "Response blocked: SAFETY")
            raise ProviderMalformedResponseError(self.name, f"{self.name} returned no text")
        return text.strip()


class ColabProvider(HTTPProvider):
    """Gradio/Colab endpoint taking a multipart form with 'text' and optional 'image'."""

    async def complete(self, request: ProviderRequest) -> str:
        text = request.text if request.text is not None else flatten_messages(request.messages or [])
        if request.system_instructions:
            text = f"{request.system_instructions}\n\n{text}"

        form = aiohttp.FormData()
        form.add_field("text", text)
        if request.image:
            form.add_field("image", request.image, filename="image.png", content_type="image/png")

        status, body = await self._post(self.config.url, data=form)
        if status != 200:
            raise error_for_status(self.name, status, str(body)[:200])

        if isinstance(body, dict):
            result = body.get("data") or body.get("output") or body.get("text")
            if isinstance(result, list):
                result = result[0] if result else None
            if isinstance(result, str) and result.strip():
                return result.strip()
        elif isinstance(body, str) and body.strip():
            return body.strip()
        raise ProviderMalformedResponseError(self.name, f"Unexpected response format from {self.name}")


PROVIDER_KINDS = {
    "openai": OpenAICompatibleProvider,
    "gemini": GeminiProvider,
    "colab": ColabProvider,
}


def build_providers(settings: Settings) -> Dict[str, Provider]:
    """Instantiate every configured provider by kind."""
    providers = {}
    for name, cfg in settings.providers.items():
        cls = PROVIDER_KINDS.get(cfg.kind)
        if cls is None:
            logger.warning(f"[{name}] Unknown provider kind '{cfg.kind}', skipping")
            continue
        providers[name] = cls(cfg)
        if not providers[name].available:
            logger.warning(f"[{name}] ✗ Missing url or API key - calls will fail")
    return providers


class ProviderDispatcher:
    """Tries the primary provider, then the fallback order, first success wins."""

    def __init__(self, providers: Dict[str, Provider], primary: str,
                 fallback_enabled: bool = True, fallback_order: List[str] = None):
        self.providers = providers
        self.primary = primary.lower()
        self.fallback_enabled = fallback_enabled
        self.fallback_order = [p.lower() for p in (fallback_order or [])]
        self.status: Dict[str, str] = {name: "unknown" for name in providers}

        logger.info(f"Providers: {list(providers)} | primary={self.primary} | fallback={self.fallback_order if fallback_enabled else 'off'}")

    @property
    def primary_provider(self) -> Optional[Provider]:
        return self.providers.get(self.primary)

    @property
    def primary_structured(self) -> bool:
        provider = self.primary_provider
        return bool(provider and provider.structured)

    def set_primary(self, name: str) -> bool:
        name = name.lower()
        if name not in self.providers:
            return False
        self.primary = name
        logger.info(f"Primary provider changed to {name}")
        return True

    def candidates(self) -> List[str]:
        """Primary first, then fallbacks without the primary."""
        order = [self.primary]
        if self.fallback_enabled:
            order += [p for p in self.fallback_order if p != self.primary]
        return order

    def _request_for(self, provider: Provider, prompt: PromptPayload, system_instructions: Optional[str],
                     memory_view: Optional[MemoryView], image: Optional[bytes], **overrides) -> ProviderRequest:
        if prompt.structured and provider.structured:
            return ProviderRequest(messages=prompt.messages, image=image, **overrides)
        if prompt.structured:
            # Structured turns already carry the system prompt and memory
            return ProviderRequest(text=flatten_messages(prompt.messages), image=image, **overrides)
        return ProviderRequest(text=prompt.text, system_instructions=system_instructions,
                               memory_view=memory_view, image=image, **overrides)

    async def _attempt(self, name: str, request_args: tuple, overrides: dict) -> str:
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderError(name, f"Unknown AI provider: {name}")

        request = self._request_for(provider, *request_args, **overrides)
        logger.info(f"[{name}] Attempting {provider.config.model or provider.config.url}")
        start = time.time()
        try:
            text = await provider.complete(request)
        except ProviderError as e:
            self.status[name] = e.kind
            metrics_manager.record_api_request(name, e.kind, time.time() - start)
            logger.error(f"[{name}] ✗ {e.kind}: {e}")
            raise
        except Exception as e:
            # Anything else the adapter didn't anticipate still advances the chain
            error = ProviderMalformedResponseError(name, f"{name} failed unexpectedly: {e}")
            self.status[name] = error.kind
            metrics_manager.record_api_request(name, error.kind, time.time() - start)
            logger.error(f"[{name}] ✗ {error.kind}: {type(e).__name__}: {e}")
            raise error from e
        self.status[name] = "ok"
        metrics_manager.record_api_request(name, "success", time.time() - start)
        logger.info(f"[{name}] ✓ Success! Response length: {len(text)} chars")
        return text

    async def dispatch(self, prompt: PromptPayload, identity: Optional[IdentityKey] = None,
                       system_instructions: Optional[str] = None, memory_view: Optional[MemoryView] = None,
                       image: Optional[bytes] = None, **overrides) -> DispatchResult:
        """Generate text for a prompt, falling back through the configured order.

        Raises AllProvidersFailedError naming the primary's and the last
        fallback's errors when nothing succeeds.
        """
        request_args = (prompt, system_instructions, memory_view, image)
        order = self.candidates()
        if identity is not None:
            logger.debug(f"Dispatching for {identity} via {order}")

        primary_error = None
        last_error = None
        for index, name in enumerate(order):
            if index > 0:
                log.warn(f"Trying fallback AI: {name}")
            try:
                text = await self._attempt(name, request_args, overrides)
            except ProviderError as e:
                if primary_error is None:
                    primary_error = e
                last_error = e
                continue

            was_fallback = index > 0
            if was_fallback:
                metrics_manager.record_fallback(self.primary, name)
            return DispatchResult(text=text, provider_used=name, was_fallback=was_fallback)

        logger.error(f"ALL PROVIDERS FAILED - status: {self.status}")
        raise AllProvidersFailedError(self.primary, primary_error, last_error)

    def get_status(self) -> Dict[str, str]:
        return dict(self.status)

    async def close(self):
        for provider in self.providers.values():
            await provider.close()
