"""
Model backend for the Local LLM MCP Server.

The core only needs three capabilities from a backend:
- list the loaded models
- report a model's context length
- stream a chat completion as text fragments

LMStudioBackend provides them against LM Studio:
- Chat completions through the OpenAI-compatible /v1 endpoint (AsyncOpenAI)
- Loaded state and context length through LM Studio's REST API (/api/v0/models),
  falling back to /v1/models when that API isn't available
- Connection pooling via a shared httpx.AsyncClient
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, runtime_checkable

import httpx
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI

from .config import LLMConfig
from .exceptions import ModelCallError, ModelTimeoutError, ModelUnavailableError

logger = logging.getLogger(__name__)

# Model types LM Studio can chat with
CHAT_MODEL_TYPES = {"llm", "vlm"}


@dataclass(frozen=True)
class ModelHandle:
    """A model loaded in the backend."""

    identifier: str
    path: str = ""
    architecture: str = "unknown"
    context_length: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "path": self.path or self.identifier,
            "architecture": self.architecture,
            "contextLength": self.context_length,
        }


@dataclass(frozen=True)
class ResponseOptions:
    """Sampling options for a single model call."""

    max_tokens: int
    temperature: float = 0.1
    top_p: float = 0.95


@runtime_checkable
class ModelBackend(Protocol):
    """Capability the orchestration core consumes."""

    async def list_loaded_models(self) -> list[ModelHandle]:
        ...

    async def get_context_length(self, model: ModelHandle) -> int | None:
        ...

    def respond(
        self,
        model: ModelHandle,
        messages: list[dict[str, str]],
        options: ResponseOptions,
    ) -> AsyncIterator[str]:
        ...


def rest_api_root(base_url: str) -> str:
    """http://host:1234/v1 -> http://host:1234"""
    root = base_url.rstrip("/")
    if root.endswith("/v1"):
        root = root[: -len("/v1")]
    return root


class LMStudioBackend:
    """ModelBackend backed by a running LM Studio server."""

    def __init__(self, config: LLMConfig | None = None, http_client: httpx.AsyncClient | None = None):
        self.config = config or LLMConfig()
        self._owns_http_client = http_client is None

        # Create async HTTP client with connection pooling
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout_seconds),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

        # Create async OpenAI client with pooled connections
        self.client = AsyncOpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            http_client=self._http_client,
            max_retries=0,
        )

        self._api_call_count = 0

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _list_from_rest_api(self) -> list[ModelHandle] | None:
        url = f"{rest_api_root(self.config.base_url)}/api/v0/models"
        response = await self._http_client.get(url)
        if response.status_code == 404:
            return None
        response.raise_for_status()

        models = []
        for item in response.json().get("data", []):
            if item.get("state") != "loaded":
                continue
            if item.get("type", "llm") not in CHAT_MODEL_TYPES:
                continue
            models.append(ModelHandle(
                identifier=item["id"],
                path=item.get("path", item["id"]),
                architecture=item.get("arch", "unknown"),
                context_length=item.get("loaded_context_length") or item.get("max_context_length"),
            ))
        return models

    async def _list_from_openai_api(self) -> list[ModelHandle]:
        page = await self.client.models.list()
        return [ModelHandle(identifier=m.id, path=m.id) for m in page.data]

    async def list_loaded_models(self) -> list[ModelHandle]:
        """
        List models currently loaded in LM Studio.

        Raises:
            ModelUnavailableError: if LM Studio can't be reached
        """
        try:
            models = await self._list_from_rest_api()
            if models is None:
                logger.debug("[MODEL] REST API unavailable, falling back to /v1/models")
                models = await self._list_from_openai_api()
        except (httpx.HTTPError, APIConnectionError) as e:
            raise ModelUnavailableError(
                f"Cannot reach LM Studio at {self.config.base_url}: {e}",
                {"base_url": self.config.base_url},
            ) from e
        except APIError as e:
            raise ModelUnavailableError(
                f"LM Studio rejected the model listing request: {e}",
                {"base_url": self.config.base_url},
            ) from e

        logger.debug(f"[MODEL] Loaded models: {[m.identifier for m in models]}")
        return models

    async def get_context_length(self, model: ModelHandle) -> int | None:
        return model.context_length

    async def respond(
        self,
        model: ModelHandle,
        messages: list[dict[str, str]],
        options: ResponseOptions,
    ) -> AsyncIterator[str]:
        """
        Stream a chat completion as text fragments.

        Raises:
            ModelTimeoutError: if the request times out
            ModelCallError: on any other backend failure
        """
        self._api_call_count += 1
        try:
            stream = await self.client.chat.completions.create(
                model=model.identifier,
                messages=messages,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                top_p=options.top_p,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except APITimeoutError as e:
            raise ModelTimeoutError(
                f"Model {model.identifier} timed out", {"model": model.identifier}
            ) from e
        except APIError as e:
            raise ModelCallError(
                f"Model {model.identifier} failed: {e}", {"model": model.identifier}
            ) from e

    def get_stats(self) -> dict[str, Any]:
        return {
            "base_url": self.config.base_url,
            "api_calls": self._api_call_count,
        }
