"""Data models for generations and queue items."""

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class GenerationStatus(str, Enum):
    """Lifecycle of a generated image artifact."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    """Lifecycle of a queue item. ``completed`` and ``failed`` are terminal."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


class RemixMode(str, Enum):
    FORK = "fork"
    REPLACE = "replace"


def _load_json(value: str | None) -> Any:
    if not value:
        return None
    return json.loads(value)


def dump_json(value: Any) -> str | None:
    """Serialise an optional value for a TEXT column."""
    if value is None:
        return None
    return json.dumps(value)


@dataclass
class GenerationRecord:
    """One produced (or in-flight) image artifact."""

    id: str
    prompt_json: dict[str, Any]
    status: GenerationStatus
    created_at: str
    image_path: str | None = None
    error_message: str | None = None
    api_response_text: str | None = None
    reference_photo_ids: list[str] | None = None
    components_used: list[Any] | None = None
    inline_reference_paths: list[str] | None = None
    parent_id: str | None = None
    edit_instructions: str | None = None
    is_favorite: bool = False
    is_hidden: bool = False
    completed_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "GenerationRecord":
        return cls(
            id=row["id"],
            prompt_json=json.loads(row["prompt_json"]),
            status=GenerationStatus(row["status"]),
            created_at=row["created_at"],
            image_path=row["image_path"],
            error_message=row["error_message"],
            api_response_text=row["api_response_text"],
            reference_photo_ids=_load_json(row["reference_photo_ids"]),
            components_used=_load_json(row["components_used"]),
            inline_reference_paths=_load_json(row["inline_reference_paths"]),
            parent_id=row["parent_id"],
            edit_instructions=row["edit_instructions"],
            is_favorite=bool(row["is_favorite"]),
            is_hidden=bool(row["is_hidden"]),
            completed_at=row["completed_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class QueueOptions:
    """Snapshot of submission options captured at enqueue time.

    Later edits to the source generation cannot change in-flight work because
    every field here is copied into the queue row.
    """

    reference_photo_ids: list[str] | None = None
    inline_reference_paths: list[str] | None = None
    google_search: bool = False
    safety_override: bool = False
    remix_source_id: str | None = None
    remix_mode: RemixMode | None = None
    edit_instructions: str | None = None

    @property
    def is_replace(self) -> bool:
        return self.remix_source_id is not None and self.remix_mode == RemixMode.REPLACE


@dataclass
class QueueItem:
    """One unit of scheduled work bound to exactly one generation."""

    id: str
    generation_id: str
    prompt_json: dict[str, Any]
    status: QueueStatus
    created_at: str
    options: QueueOptions = field(default_factory=QueueOptions)
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    seq: int | None = None
    position: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueueItem":
        keys = row.keys()
        remix_mode = row["remix_mode"]
        return cls(
            id=row["id"],
            generation_id=row["generation_id"],
            prompt_json=json.loads(row["prompt_json"]),
            status=QueueStatus(row["status"]),
            created_at=row["created_at"],
            options=QueueOptions(
                reference_photo_ids=_load_json(row["reference_photo_ids"]),
                inline_reference_paths=_load_json(row["inline_reference_paths"]),
                google_search=bool(row["google_search"]),
                safety_override=bool(row["safety_override"]),
                remix_source_id=row["remix_source_id"],
                remix_mode=RemixMode(remix_mode) if remix_mode else None,
                edit_instructions=row["edit_instructions"],
            ),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error=row["error"],
            seq=row["seq"],
            position=row["position"] if "position" in keys else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        if self.options.remix_mode is not None:
            data["options"]["remix_mode"] = self.options.remix_mode.value
        return data


@dataclass
class DeleteResult:
    success: bool
    error: str | None = None


@dataclass
class QueueMetrics:
    queued_count: int
    processing_count: int
    avg_wait_time_seconds: float | None
    completed_1h: int
    failed_1h: int
    success_rate_1h: float | None


@dataclass
class Page:
    """A page of results in the shape the history views consume."""

    items: list[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total > 0 else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() if hasattr(item, "to_dict") else item for item in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }
