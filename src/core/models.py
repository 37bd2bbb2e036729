"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


class ProcessingState(str, Enum):
    """Lifecycle stage of a message's caption analysis."""

    INITIALIZED = "initialized"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    NO_CAPTION = "no_caption"


@dataclass(frozen=True)
class ParsingMetadata:
    """How a caption was parsed and how much the result can be trusted."""

    method: str
    confidence: float
    fallbacks_used: tuple[str, ...]
    timestamp: datetime
    needs_escalation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "confidence": self.confidence,
            "fallbacks_used": list(self.fallbacks_used),
            "timestamp": self.timestamp.isoformat(),
            "needs_escalation": self.needs_escalation,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ParsingMetadata":
        return cls(
            method=raw.get("method", "manual"),
            confidence=float(raw.get("confidence", 0.1)),
            fallbacks_used=tuple(raw.get("fallbacks_used") or ()),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            needs_escalation=bool(raw.get("needs_escalation", False)),
        )


@dataclass(frozen=True)
class SyncMetadata:
    """Provenance stamped onto content copied from a group's canonical source."""

    group_message_count: int
    source_message_id: str
    sync_timestamp: datetime
    is_original_caption: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_message_count": self.group_message_count,
            "source_message_id": self.source_message_id,
            "sync_timestamp": self.sync_timestamp.isoformat(),
            "is_original_caption": self.is_original_caption,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SyncMetadata":
        return cls(
            group_message_count=int(raw["group_message_count"]),
            source_message_id=str(raw["source_message_id"]),
            sync_timestamp=datetime.fromisoformat(raw["sync_timestamp"]),
            is_original_caption=bool(raw.get("is_original_caption", False)),
        )


@dataclass(frozen=True)
class AnalyzedContent:
    """Structured product data extracted from a caption.

    Produced whole by the parser; a copy with sync provenance is what siblings
    in a media group receive. Two contents are equivalent when their
    canonical dicts match, regardless of sync provenance.
    """

    product_name: Optional[str]
    product_code: Optional[str]
    vendor_uid: Optional[str]
    purchase_date: Optional[date]
    quantity: Optional[int]
    notes: Optional[str]
    parsing_metadata: ParsingMetadata
    sync: Optional[SyncMetadata] = None

    @property
    def is_empty(self) -> bool:
        return not any(
            (
                self.product_name,
                self.product_code,
                self.vendor_uid,
                self.purchase_date,
                self.quantity,
                self.notes,
            )
        )

    def canonical_dict(self) -> dict[str, Any]:
        """Return the content without sync provenance."""

        return {
            "product_name": self.product_name,
            "product_code": self.product_code,
            "vendor_uid": self.vendor_uid,
            "purchase_date": self.purchase_date.isoformat() if self.purchase_date else None,
            "quantity": self.quantity,
            "notes": self.notes,
            "parsing_metadata": self.parsing_metadata.to_dict(),
        }

    def equivalent_to(self, other: Optional["AnalyzedContent"]) -> bool:
        return other is not None and self.canonical_dict() == other.canonical_dict()

    def with_sync(self, sync: SyncMetadata) -> "AnalyzedContent":
        return replace(self, sync=sync)

    def to_dict(self) -> dict[str, Any]:
        payload = self.canonical_dict()
        payload["sync"] = self.sync.to_dict() if self.sync else None
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AnalyzedContent":
        purchase_date = raw.get("purchase_date")
        sync = raw.get("sync")
        return cls(
            product_name=raw.get("product_name"),
            product_code=raw.get("product_code"),
            vendor_uid=raw.get("vendor_uid"),
            purchase_date=date.fromisoformat(purchase_date) if purchase_date else None,
            quantity=raw.get("quantity"),
            notes=raw.get("notes"),
            parsing_metadata=ParsingMetadata.from_dict(raw["parsing_metadata"]),
            sync=SyncMetadata.from_dict(sync) if sync else None,
        )


@dataclass(frozen=True)
class Message:
    """One unit delivered by the platform, as the core sees it."""

    id: str
    chat_id: int
    created_at: datetime
    correlation_id: str
    media_group_id: Optional[str] = None
    caption: Optional[str] = None
    is_original_caption: bool = False
    analyzed_content: Optional[AnalyzedContent] = None
    processing_state: ProcessingState = ProcessingState.INITIALIZED
    retry_count: int = 0
    error_message: Optional[str] = None
    edit_history: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    is_edited: bool = False
    updated_at: Optional[datetime] = None

    @property
    def in_group(self) -> bool:
        return bool(self.media_group_id)

    @property
    def has_content(self) -> bool:
        return self.analyzed_content is not None and not self.analyzed_content.is_empty

    @property
    def edit_count(self) -> int:
        return len(self.edit_history)


# Fields a MessageStore.update call may touch.
UPDATABLE_FIELDS = frozenset(
    {
        "caption",
        "is_original_caption",
        "analyzed_content",
        "processing_state",
        "retry_count",
        "error_message",
        "edit_history",
        "is_edited",
        "updated_at",
    }
)
