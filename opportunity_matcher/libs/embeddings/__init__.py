from opportunity_matcher.libs.embeddings.chain import EmbeddingProviderChain, build_default_chain
from opportunity_matcher.libs.embeddings.providers import EmbeddingProvider, OpenAIEmbeddingProvider

__all__ = [
    "EmbeddingProvider",
    "EmbeddingProviderChain",
    "OpenAIEmbeddingProvider",
    "build_default_chain",
]
