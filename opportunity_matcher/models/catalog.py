"""
Catalog models.

This module contains the read-only view of an opportunity record and the
helpers that turn it into embedding input.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

# Text fields concatenated (in this order) to build the embedding input.
EMBEDDING_TEXT_FIELDS = (
    "title",
    "summary",
    "description",
    "category",
    "provider",
    "location",
    "requirements",
    "benefits",
)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return " ".join(str(v).strip() for v in value if v is not None and str(v).strip())
    return str(value).strip()


def join_text_parts(parts: List[Any]) -> str:
    """Join non-empty parts with single spaces, skipping empty or missing values."""
    return " ".join(text for text in (_as_text(p) for p in parts) if text)


@dataclass
class CatalogItem:
    """An opportunity/scholarship record owned by the catalog collaborator."""

    id: str
    title: str = ""
    summary: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    provider: Optional[str] = None
    location: Optional[str] = None
    deadline: Optional[Union[date, datetime]] = None
    requirements: Optional[Union[str, List[str]]] = None
    benefits: Optional[Union[str, List[str]]] = None
    created_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "CatalogItem":
        """Build an item from a raw document, keeping unknown keys in ``extra``."""
        data = dict(document)
        item_id = data.pop("id", None) or data.pop("_id", None)
        if item_id is None:
            raise ValueError("Catalog document has no id")
        known = {}
        for name in (
            "title", "summary", "description", "category", "provider",
            "location", "deadline", "requirements", "benefits",
        ):
            known[name] = data.pop(name, None)
        created_at = data.pop("created_at", None) or data.pop("createdAt", None)
        return cls(
            id=str(item_id),
            title=known.pop("title") or "",
            created_at=created_at,
            extra=data,
            **known,
        )

    def embedding_text(self) -> str:
        """Concatenate the catalog text fields used as embedding input."""
        return join_text_parts([getattr(self, name) for name in EMBEDDING_TEXT_FIELDS])

    def content_hash(self) -> str:
        """SHA-256 of the embedding input, stored with the record for change detection."""
        return hashlib.sha256(self.embedding_text().encode("utf-8")).hexdigest()

    def snapshot_metadata(self) -> Dict[str, Any]:
        """Metadata snapshot stored with the embedding for filtering without a join."""
        summary = self.summary or (self.description[:500] if self.description else None)
        return {
            "title": self.title,
            "summary": summary,
            "category": self.category,
            "provider": self.provider,
            "location": self.location,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "content_hash": self.content_hash(),
        }
