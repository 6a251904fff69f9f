"""
Ordered embedding provider chain.

Providers are tried in priority order. A call fails over to the next
provider only on a transient error; a fatal error is surfaced at once.
Inputs larger than a provider's batch limit are split into chunks, and each
chunk gets one backoff retry before the provider is given up on.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import (
    EmbeddingUnavailable,
    EmbeddingValidationError,
    ProviderFatalError,
    ProviderTransientError,
)
from opportunity_matcher.libs.circuit_breaker import CircuitBreaker
from opportunity_matcher.libs.embeddings.providers import EmbeddingProvider
from opportunity_matcher.log.logging import logger
from opportunity_matcher.metrics.core import MetricNames, increment_counter, report_timing


def chunked(items: Sequence, size: int) -> Iterable[Sequence]:
    """Yield consecutive slices of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EmbeddingProviderChain:
    """Turns text into vectors using the first provider that can serve the call."""

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        dimensions: Optional[int] = None,
        timeout: float = settings.embedding_timeout_seconds,
        retry_attempts: int = settings.embedding_retry_attempts,
        backoff_seconds: float = settings.embedding_retry_backoff_seconds,
        backoff_max_seconds: float = settings.embedding_retry_backoff_max_seconds,
        failure_threshold: int = settings.provider_failure_threshold,
        reset_timeout: float = settings.provider_reset_timeout_seconds,
    ):
        """
        Initialize the chain.

        Args:
            providers: Providers in priority order (primary first)
            dimensions: Expected vector length; None accepts whatever the providers return
            timeout: Bound on each provider call, in seconds
            retry_attempts: Attempts per chunk, including the first one
            backoff_seconds: Exponential backoff multiplier between attempts
            backoff_max_seconds: Upper bound of a single backoff wait
            failure_threshold: Consecutive failures before a provider is skipped
            reset_timeout: Seconds before a skipped provider is tried again
        """
        if not providers:
            raise ValueError("At least one embedding provider is required")

        self.providers = list(providers)
        self.dimensions = dimensions
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._breakers = {
            provider.name: CircuitBreaker(
                name=provider.name,
                failure_threshold=failure_threshold,
                reset_timeout=reset_timeout,
            )
            for provider in self.providers
        }
        logger.info(
            "Embedding provider chain initialized",
            providers=[p.name for p in self.providers],
            dimensions=dimensions,
        )

    @property
    def provider_names(self) -> List[str]:
        return [provider.name for provider in self.providers]

    def breaker_for(self, provider_name: str) -> CircuitBreaker:
        return self._breakers[provider_name]

    def provider_status(self) -> Dict[str, Dict[str, Any]]:
        """Circuit state per provider, in priority order."""
        return {name: breaker.to_dict() for name, breaker in self._breakers.items()}

    @staticmethod
    def _validate(texts: Sequence[str]) -> List[str]:
        if isinstance(texts, str):
            raise EmbeddingValidationError("embed() expects a sequence of strings, got a single string")
        texts = list(texts)
        if not texts:
            raise EmbeddingValidationError("Cannot embed an empty batch")
        for position, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise EmbeddingValidationError(
                    f"Input at position {position} is empty or not a string",
                    context={"position": position},
                )
        return texts

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed texts with the highest-priority available provider.

        Args:
            texts: 1..N non-empty strings

        Returns:
            Vectors in the same order and count as ``texts``

        Raises:
            EmbeddingValidationError: The input can never be embedded
            ProviderFatalError: A provider rejected the request
            EmbeddingUnavailable: Every provider failed transiently or is tripped
        """
        texts = self._validate(texts)
        failures = []

        for position, provider in enumerate(self.providers):
            breaker = self._breakers[provider.name]
            if not await breaker.is_allowed():
                logger.warning(
                    "Skipping embedding provider with open circuit",
                    provider=provider.name,
                    retry_after=round(breaker.retry_after(), 3),
                )
                failures.append(f"{provider.name}: circuit open")
                continue

            start_time = time.time()
            try:
                vectors = await self._embed_with(provider, texts)
            except ProviderTransientError as e:
                await breaker.record_failure(str(e))
                failures.append(f"{provider.name}: {str(e)}")
                logger.warning(
                    "Embedding provider failed transiently, failing over",
                    provider=provider.name,
                    error=str(e),
                    remaining=len(self.providers) - position - 1,
                )
                increment_counter(MetricNames.EMBEDDING_FAILOVER_COUNT, {"provider": provider.name})
                continue
            except ProviderFatalError as e:
                # A rejected request neither trips nor closes the circuit
                await breaker.release()
                logger.error(
                    "Embedding provider rejected request",
                    provider=provider.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            await breaker.record_success()
            report_timing(
                MetricNames.EMBEDDING_REQUEST_DURATION,
                time.time() - start_time,
                {"provider": provider.name},
            )
            if position > 0:
                logger.info("Embeddings served by fallback provider", provider=provider.name, count=len(texts))
            return vectors

        increment_counter(MetricNames.EMBEDDING_UNAVAILABLE_COUNT)
        logger.error("All embedding providers exhausted", failures=failures)
        raise EmbeddingUnavailable(
            "All embedding providers exhausted", context={"failures": failures}
        )

    async def _embed_with(self, provider: EmbeddingProvider, texts: List[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        chunk_size = max(1, provider.max_batch_size)
        for chunk in chunked(texts, chunk_size):
            vectors.extend(await self._embed_chunk(provider, list(chunk)))
        return vectors

    async def _embed_chunk(self, provider: EmbeddingProvider, chunk: List[str]) -> List[List[float]]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception_type(ProviderTransientError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying embedding chunk",
                        provider=provider.name,
                        attempt=attempt.retry_state.attempt_number,
                        chunk_size=len(chunk),
                    )
                vectors = await self._call_provider(provider, chunk)
        return vectors

    async def _call_provider(self, provider: EmbeddingProvider, chunk: List[str]) -> List[List[float]]:
        try:
            vectors = await asyncio.wait_for(provider.embed(chunk), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTransientError(
                f"{provider.name} timed out after {self.timeout}s", provider=provider.name
            ) from e

        if len(vectors) != len(chunk):
            raise ProviderTransientError(
                f"{provider.name} returned {len(vectors)} vectors for {len(chunk)} inputs",
                provider=provider.name,
            )
        if self.dimensions is not None:
            for vector in vectors:
                if len(vector) != self.dimensions:
                    raise ProviderFatalError(
                        f"{provider.name} returned {len(vector)}-dimensional vectors, "
                        f"index expects {self.dimensions}",
                        provider=provider.name,
                    )
        return vectors

    async def close(self) -> None:
        for provider in self.providers:
            try:
                await provider.close()
            except Exception as e:
                logger.warning("Error closing embedding provider", provider=provider.name, error=str(e))


def build_default_chain() -> EmbeddingProviderChain:
    """Build the chain from settings: OpenAI first, the OpenAI-compatible fallback second."""
    from opportunity_matcher.libs.embeddings.providers import OpenAIEmbeddingProvider

    providers: List[EmbeddingProvider] = []
    if settings.openai_api_key:
        providers.append(
            OpenAIEmbeddingProvider(
                name="openai",
                model=settings.openai_embedding_model,
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                max_batch_size=settings.openai_max_batch_size,
                dimensions=settings.embedding_dimensions,
                timeout=settings.embedding_timeout_seconds,
            )
        )
    if settings.fallback_embedder_api_key:
        providers.append(
            OpenAIEmbeddingProvider(
                name="fallback",
                model=settings.fallback_embedder_model,
                api_key=settings.fallback_embedder_api_key,
                base_url=settings.fallback_embedder_base_url,
                max_batch_size=settings.fallback_embedder_max_batch_size,
                timeout=settings.embedding_timeout_seconds,
            )
        )
    if not providers:
        raise ValueError("No embedding provider configured: set OPENAI_API_KEY or FALLBACK_EMBEDDER_API_KEY")

    return EmbeddingProviderChain(providers, dimensions=settings.embedding_dimensions)
