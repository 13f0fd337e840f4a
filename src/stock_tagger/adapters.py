"""
Model adapters: one per AI provider, each turning (image, prompt, credential) into reply text.

Adapters encode the image the way their provider expects, attach the credential using the
provider's authentication convention and surface provider error messages. They never retry;
retrying is the orchestrator's job.
"""

import urllib.parse
from abc import ABC, abstractmethod
from collections.abc import Callable
from http import HTTPStatus
from typing import Any, ClassVar
from uuid import UUID

import httpx
from loguru import logger
from openai import AsyncOpenAI
from pydantic_ai import Agent, BinaryContent, ModelSettings
from pydantic_ai.exceptions import AgentRunError
from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from stock_tagger.config import (
    ANTHROPIC_BASE_URL,
    ANTHROPIC_VERSION,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    GEMINI_BASE_URL,
    LOCAL_VISION_BASE_URL,
    OPENAI_BASE_URL,
)
from stock_tagger.errors import MalformedResponseError, TransportFailureError
from stock_tagger.images import ImagePayload
from stock_tagger.models import MODEL_SPECS, Credential, ModelId


class ModelAdapter(ABC):
    """Capability to run one vision prompt against one provider."""

    provider_label: ClassVar[str]

    def __init__(
        self,
        api_model: str,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        """Bind the provider-side model name and sampling settings."""
        self.api_model = api_model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @abstractmethod
    async def invoke(self, image: ImagePayload, prompt: str, credential: Credential) -> str:
        """
        Send ``prompt`` and ``image`` to the provider and return its reply text.

        Raises:
            TransportFailureError: the provider was unreachable or answered with an error.
            MalformedResponseError: the provider answered with an unreadable envelope.

        """


class HttpModelAdapter(ModelAdapter):
    """Adapter speaking a provider's REST API through a shared httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_model: str,
        *,
        base_url: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        """Use ``client`` for requests to ``base_url``."""
        super().__init__(api_model, temperature=temperature, max_tokens=max_tokens)
        self.client = client
        self.base_url = base_url.rstrip("/")

    @abstractmethod
    def build_request(
        self,
        image: ImagePayload,
        prompt: str,
        credential: Credential,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return the (url, headers, json body) of the provider request."""

    @abstractmethod
    def extract_text(self, payload: dict[str, Any]) -> str:
        """Pull the reply text out of a success envelope ('' when it carries none)."""

    async def invoke(self, image: ImagePayload, prompt: str, credential: Credential) -> str:
        url, headers, body = self.build_request(image, prompt, credential)
        logger.debug("provider_request", provider=self.provider_label, model=self.api_model)
        try:
            response = await self.client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            msg = f"{self.provider_label} API Error: {exc!s} ({type(exc).__name__})"
            raise TransportFailureError(msg) from exc

        if response.is_error:
            msg = f"{self.provider_label} API Error: {_error_message(response)}"
            raise TransportFailureError(msg, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"{self.provider_label} returned a non-JSON response"
            raise MalformedResponseError(msg) from exc
        if not isinstance(payload, dict):
            msg = f"{self.provider_label} returned an unexpected response envelope"
            raise MalformedResponseError(msg)

        text = self.extract_text(payload)
        logger.debug("provider_response", provider=self.provider_label, chars=len(text))
        return text


def _error_message(response: httpx.Response) -> str:
    """
    Provider error message from an error response, falling back to the reason phrase.

    Google, Anthropic and OpenAI all report ``{"error": {"message": ...}}``.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return response.reason_phrase or f"HTTP {response.status_code}"


def _dig(payload: Any, *path: str | int) -> Any:  # noqa: ANN401
    """
    Follow keys/indexes through nested JSON, returning None on any miss.

    Examples:
        >>> _dig({"a": [{"b": "x"}]}, "a", 0, "b")
        'x'
        >>> _dig({"a": []}, "a", 0, "b") is None
        True

    """
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
    return current


class GeminiAdapter(HttpModelAdapter):
    provider_label = "Gemini"

    def build_request(
        self,
        image: ImagePayload,
        prompt: str,
        credential: Credential,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{self.base_url}/models/{self.api_model}:generateContent"
        headers = {"Content-Type": "application/json", "x-goog-api-key": credential.secret}
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": image.media_type, "data": image.base64}},
                    ],
                },
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        return url, headers, body

    def extract_text(self, payload: dict[str, Any]) -> str:
        return _dig(payload, "candidates", 0, "content", "parts", 0, "text") or ""


class ClaudeAdapter(HttpModelAdapter):
    provider_label = "Claude"

    def build_request(
        self,
        image: ImagePayload,
        prompt: str,
        credential: Credential,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": credential.secret,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        body = {
            "model": self.api_model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": image.media_type,
                                "data": image.base64,
                            },
                        },
                    ],
                },
            ],
        }
        return f"{self.base_url}/messages", headers, body

    def extract_text(self, payload: dict[str, Any]) -> str:
        return _dig(payload, "content", 0, "text") or ""


class OpenAIAdapter(HttpModelAdapter):
    provider_label = "OpenAI"

    def build_request(
        self,
        image: ImagePayload,
        prompt: str,
        credential: Credential,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential.secret}",
        }
        body = {
            "model": self.api_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image.data_url}},
                    ],
                },
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        return f"{self.base_url}/chat/completions", headers, body

    def extract_text(self, payload: dict[str, Any]) -> str:
        return _dig(payload, "choices", 0, "message", "content") or ""


class LocalVisionAdapter(ModelAdapter):
    """
    Adapter for a vision-language model served by LM Studio or Ollama.

    The request goes through a pydantic_ai Agent over the server's OpenAI-compatible API.
    The agent returns plain text so the reply is parsed exactly like the hosted providers'.
    """

    provider_label = "Local model"

    def __init__(
        self,
        api_model: str,
        *,
        base_url: str = LOCAL_VISION_BASE_URL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        model_factory: Callable[[Credential], Model] | None = None,
    ) -> None:
        """
        Configure the local server endpoint.

        Args:
            api_model: Model name as listed by the server
            base_url: OpenAI-compatible base URL of the server
            temperature: Sampling temperature for generation (0.0-1.0)
            max_tokens: Maximum tokens to generate
            model_factory: Builds the pydantic_ai model for a credential; defaults to an
                           OpenAI-compatible chat model without client-side retries

        """
        super().__init__(api_model, temperature=temperature, max_tokens=max_tokens)
        self.base_url = base_url
        self._model_factory = model_factory or self._chat_model
        self._models: dict[UUID, Model] = {}

    def _chat_model(self, credential: Credential) -> Model:
        openai_client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=credential.secret,
            max_retries=0,
        )
        provider = OpenAIProvider(openai_client=openai_client)
        return OpenAIChatModel(model_name=self.api_model, provider=provider)

    async def invoke(self, image: ImagePayload, prompt: str, credential: Credential) -> str:
        model = self._models.get(credential.id)
        if model is None:
            model = self._models[credential.id] = self._model_factory(credential)
        agent: Agent[None, str] = Agent(model, output_type=str)
        logger.debug("provider_request", provider=self.provider_label, model=self.api_model)
        try:
            result = await agent.run(
                [prompt, BinaryContent(data=image.data, media_type=image.media_type)],
                model_settings=ModelSettings(
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
            )
        except (AgentRunError, httpx.HTTPError) as exc:
            status_code = getattr(exc, "status_code", None)
            msg = f"{self.provider_label} API Error: {exc}"
            raise TransportFailureError(msg, status_code=status_code) from exc
        return result.output or ""


def check_local_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """
    Verify that a local OpenAI-compatible server lists ``model_name``.

    Raises:
        TransportFailureError: the listing could not be fetched or the model is absent.

    """
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        msg = f"Invalid local model server URL: {url}"
        raise TransportFailureError(msg)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        msg = f"Could not list models at {url}: {exc}"
        raise TransportFailureError(msg) from exc

    if response.status_code != HTTPStatus.OK:
        msg = f"Model listing at {url} failed: {_error_message(response)}"
        raise TransportFailureError(msg, status_code=response.status_code)

    try:
        listing = response.json()
    except ValueError as exc:
        msg = f"Model listing at {url} is not JSON"
        raise TransportFailureError(msg) from exc

    if not isinstance(listing, dict):
        msg = f"Model listing at {url} is not a JSON object"
        raise TransportFailureError(msg)

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]
    if model_name not in models:
        logger.error("local_model_not_available", requested=model_name, available=models)
        msg = f"Model {model_name} is not available at {api_base_url}"
        raise TransportFailureError(msg)

    logger.debug("local_model_validated", model=model_name)


def build_adapters(
    client: httpx.AsyncClient,
    *,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> dict[ModelId, ModelAdapter]:
    """Create one adapter per ModelId, HTTP adapters sharing ``client``."""
    settings: dict[str, Any] = {"temperature": temperature, "max_tokens": max_tokens}
    http_adapters: dict[str, tuple[type[HttpModelAdapter], str]] = {
        "google": (GeminiAdapter, GEMINI_BASE_URL),
        "anthropic": (ClaudeAdapter, ANTHROPIC_BASE_URL),
        "openai": (OpenAIAdapter, OPENAI_BASE_URL),
    }
    adapters: dict[ModelId, ModelAdapter] = {}
    for model_id, spec in MODEL_SPECS.items():
        if spec.provider == "local":
            adapters[model_id] = LocalVisionAdapter(spec.api_model, **settings)
            continue
        adapter_cls, base_url = http_adapters[spec.provider]
        adapters[model_id] = adapter_cls(client, spec.api_model, base_url=base_url, **settings)
    return adapters
