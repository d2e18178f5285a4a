"""Audit records for strategy version transitions."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class TransitionKind(StrEnum):
    """What kind of lifecycle transition an entry records."""

    BOOTSTRAP = "bootstrap"
    EVOLUTION = "evolution"
    PROMOTION = "promotion"
    ARCHIVE = "archive"
    ROLLOUT = "rollout"
    ROLLBACK = "rollback"


class EvolutionLogEntry(BaseModel):
    """Append-only record of a version transition.

    ``changes`` is a free-form payload. Entries written by the engine
    carry ``before``, ``after``, ``diff`` and ``metrics`` keys, but any
    extra keys are preserved as-is.
    """

    entry_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    topic_id: str
    from_version: int | None = None
    to_version: int
    kind: TransitionKind = TransitionKind.EVOLUTION
    reason: str = ""
    changes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "topic_id": self.topic_id,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "kind": self.kind.value,
            "reason": self.reason or "No reason provided",
            "changes": self.changes,
            "timestamp": self.created_at.isoformat(),
        }
