"""
Embedding provider strategies.

Every provider exposes the same ``embed`` coroutine and reports failures as
either ``ProviderTransientError`` (worth retrying or failing over) or
``ProviderFatalError`` (the request itself is wrong).
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import openai
from openai import AsyncOpenAI

from opportunity_matcher.core.exceptions import ProviderFatalError, ProviderTransientError

# HTTP statuses that are worth retrying on another attempt or provider
TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


class EmbeddingProvider(ABC):
    """A single text → vector backend."""

    name: str = "provider"
    max_batch_size: int = 100

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a batch no larger than ``max_batch_size``.

        Args:
            texts: Non-empty strings to embed

        Returns:
            One vector per input text, in input order

        Raises:
            ProviderTransientError: Timeout, connection failure, rate limit or 5xx
            ProviderFatalError: Request rejected for reasons a retry cannot fix
        """
        pass

    async def close(self) -> None:
        """Release network resources held by the provider."""
        return None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings through the OpenAI API or any OpenAI-compatible endpoint
    (DeepInfra, OpenRouter, a local server).
    """

    def __init__(
        self,
        name: str,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        max_batch_size: int = 2048,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize the provider.

        Args:
            name: Label used in logs and metrics
            model: Embedding model name
            api_key: API token for the endpoint
            base_url: Endpoint base URL; the OpenAI default when None
            max_batch_size: Largest number of inputs accepted per request
            dimensions: Requested output size, for models that support shortening
            timeout: Per-request timeout in seconds
            client: Pre-built client, mainly for tests
        """
        if client is None and not api_key:
            raise ValueError(f"API key must be provided for embedding provider '{name}'")

        self.name = name
        self.model = model
        self.max_batch_size = max_batch_size
        self.dimensions = dimensions
        # Retries and failover are owned by the provider chain
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    async def embed(self, texts: List[str]) -> List[List[float]]:
        kwargs = {"model": self.model, "input": texts, "encoding_format": "float"}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions

        try:
            response = await self.client.embeddings.create(**kwargs)
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise ProviderTransientError(
                f"{self.name} unreachable: {str(e)}", provider=self.name
            ) from e
        except openai.APIStatusError as e:
            message = f"{self.name} returned HTTP {e.status_code}: {e.message}"
            if e.status_code >= 500 or e.status_code in TRANSIENT_STATUS_CODES:
                raise ProviderTransientError(message, provider=self.name) from e
            raise ProviderFatalError(message, provider=self.name) from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise ProviderTransientError(
                f"{self.name} returned {len(data)} embeddings for {len(texts)} inputs",
                provider=self.name,
            )
        return [list(item.embedding) for item in data]

    async def close(self) -> None:
        await self.client.close()
