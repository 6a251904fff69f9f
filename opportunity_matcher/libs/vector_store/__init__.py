from opportunity_matcher.core.config import settings
from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.libs.vector_store.memory import InMemoryVectorStore
from opportunity_matcher.libs.vector_store.postgres import PgVectorStore


def build_vector_store(backend: str = settings.vector_backend) -> VectorStore:
    """Build the configured vector store backend."""
    if backend == "memory":
        return InMemoryVectorStore()
    if backend == "pgvector":
        return PgVectorStore()
    raise ValueError(f"Unknown vector backend: {backend}")


__all__ = ["VectorStore", "InMemoryVectorStore", "PgVectorStore", "build_vector_store"]
