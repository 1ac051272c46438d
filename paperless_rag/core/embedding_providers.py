"""Embedding provider abstraction for OpenAI-compatible APIs and Ollama."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from paperless_rag.core.errors import ConfigurationError, TransportError, ValidationError
from paperless_rag.core.settings import Settings

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_DELAY = 1.0  # seconds, multiplied by the attempt number
REQUEST_TIMEOUT = 60.0


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "provider": self.provider,
            "model": self.model,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


class EmbeddingError(TransportError):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


def _error_message(response: httpx.Response) -> str:
    """Pull the backend's error message out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"API error ({response.status_code}): {error['message']}"
        if isinstance(error, str) and error:
            return f"API error ({response.status_code}): {error}"
    return f"API returned status {response.status_code}: {response.text}"


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    initial_delay: float = INITIAL_DELAY

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g., 'OpenAI', 'Ollama')."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """The model identifier being used."""
        ...

    @abstractmethod
    def _check_config(self) -> None:
        """Raise ConfigurationError when a required setting is missing."""
        ...

    @abstractmethod
    def _request(self, text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json body) for one embedding request."""
        ...

    @abstractmethod
    def _parse(self, data: dict[str, Any]) -> list[float]:
        """Extract the vector from a successful response body."""
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding for a single text.

        Retries up to MAX_RETRIES times on transport errors and non-200
        responses, waiting initial_delay * attempt seconds in between.

        Raises:
            ConfigurationError: If endpoint, credential or model is missing.
            ValidationError: If text is empty.
            EmbeddingError: If every attempt failed or the response held no vector.
        """
        self._check_config()
        if not text or not text.strip():
            raise ValidationError("text cannot be empty")

        url, headers, request_body = self._request(text)
        logger.debug(f"Generating embedding with {self.name}/{self.model_id}, text_length={len(text)}")

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            last_error: str = ""
            last_status: int | None = None
            last_exc: Exception | None = None

            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(url, headers=headers, json=request_body)
                except httpx.TransportError as e:
                    last_exc = e
                    last_status = None
                    last_error = f"request failed: {e}"
                else:
                    if response.status_code == 200:
                        try:
                            data = response.json()
                        except ValueError as e:
                            raise EmbeddingError(
                                f"failed to decode response: {e}", provider=self.name
                            ) from e
                        try:
                            vector = self._parse(data)
                        except (KeyError, TypeError, ValueError) as e:
                            raise EmbeddingError(
                                f"unexpected response shape: {e}", provider=self.name
                            ) from e
                        logger.debug(f"Generated embedding, dimensions={len(vector)}")
                        return vector
                    last_exc = None
                    last_status = response.status_code
                    last_error = _error_message(response)

                if attempt < MAX_RETRIES:
                    delay = self.initial_delay * attempt
                    logger.warning(
                        f"{self.name} embedding attempt {attempt}/{MAX_RETRIES} failed: "
                        f"{last_error}. Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

        retriable = last_status is None or last_status == 429 or last_status >= 500
        raise EmbeddingError(
            f"{last_error} (after {MAX_RETRIES} attempts)",
            provider=self.name,
            retriable=retriable,
        ) from last_exc

    async def health_check(self) -> HealthCheckResult:
        """Check if the provider is reachable and configured correctly."""
        start = time.monotonic()
        try:
            vector = await self.embed_single("test")
        except ConfigurationError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=str(e),
            )
        except EmbeddingError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=str(e),
                details={"retriable": e.retriable},
            )

        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self.model_id,
            message="connected",
            latency_ms=int((time.monotonic() - start) * 1000),
            details={"dimensions": len(vector)},
        )


class OpenAICompatibleProvider(EmbeddingProvider):
    """Provider for OpenAI-compatible /embeddings endpoints (OpenAI, OpenRouter)."""

    def __init__(self, base_url: str, api_key: str, model: str):
        self._base_url = (base_url or "").strip().rstrip("/")
        self._api_key = (api_key or "").strip()
        self._model = (model or "").strip()

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    def _check_config(self) -> None:
        if not self._api_key:
            raise ConfigurationError("embeddings API key is required")
        if not self._base_url:
            raise ConfigurationError("embeddings base URL is required")
        if not self._model:
            raise ConfigurationError("embeddings model is required")

    def _request(self, text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        return (
            f"{self._base_url}/embeddings",
            {
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            {"model": self._model, "input": text},
        )

    def _parse(self, data: dict[str, Any]) -> list[float]:
        items = data.get("data") or []
        if not items:
            raise EmbeddingError("no embedding data in response", provider=self.name)
        return [float(x) for x in items[0]["embedding"]]


class OllamaProvider(EmbeddingProvider):
    """Ollama embedding provider for local models. Needs no credential."""

    def __init__(self, base_url: str, model: str):
        self._base_url = (base_url or "").strip().rstrip("/")
        self._model = (model or "").strip()

    @property
    def name(self) -> str:
        return "Ollama"

    @property
    def model_id(self) -> str:
        return self._model

    def _check_config(self) -> None:
        if not self._base_url:
            raise ConfigurationError("Ollama base URL is required")
        if not self._model:
            raise ConfigurationError("Ollama model is required")

    def _request(self, text: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        return (
            f"{self._base_url}/api/embeddings",
            {"Content-Type": "application/json"},
            {"model": self._model, "prompt": text},
        )

    def _parse(self, data: dict[str, Any]) -> list[float]:
        embedding = data.get("embedding")
        if not embedding:
            raise EmbeddingError("no embedding data in response", provider=self.name)
        return [float(x) for x in embedding]


def get_provider(settings: Settings) -> EmbeddingProvider:
    """Factory function to get the embedding provider named in settings.

    Raises:
        ConfigurationError: If the provider name is unknown.
    """
    provider_name = settings.embedding_provider.lower()

    if provider_name == "openai":
        return OpenAICompatibleProvider(
            base_url=settings.embeddings_url,
            api_key=settings.embeddings_key,
            model=settings.embeddings_model,
        )

    elif provider_name == "ollama":
        return OllamaProvider(
            base_url=settings.embeddings_url,
            model=settings.embeddings_model,
        )

    else:
        raise ConfigurationError(f"Unknown provider: {provider_name}. Available: openai, ollama")
