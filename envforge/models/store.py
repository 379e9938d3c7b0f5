"""Content store entry models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class BuildStatus(str, Enum):
    """Lifecycle of one build attempt."""

    PENDING = "pending"
    BUILT = "built"
    FAILED = "failed"


class StoreEntry(BaseModel):
    """One build attempt for a content hash.

    Entries are never patched: a failed attempt stays failed and a retry
    is recorded as a new attempt with a higher ``attempt`` number.
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    path: Path
    status: BuildStatus
    attempt: int = 1
    name: str = ""
    reason: str = ""
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_built(self) -> bool:
        return self.status is BuildStatus.BUILT


class ReservationStatus(str, Enum):
    """Outcome of ``ContentStore.reserve``."""

    BUILT = "built"  # an entry already exists; nothing to build
    ACQUIRED = "acquired"  # the caller holds the build slot
    IN_PROGRESS = "in_progress"  # another builder holds the slot (non-blocking)
