"""Persisted records for topics and strategy versions.

These are the rows the repository stores. ``StrategyVersion.config`` is
kept as an opaque JSON object; parsing into a typed ``StrategyConfig``
happens in ``deepcurrent.strategy.config`` on read.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class StrategyStatus(StrEnum):
    """Lifecycle state of a strategy version."""

    CANDIDATE = "candidate"
    ACTIVE = "active"
    ARCHIVED = "archived"


class Topic(BaseModel):
    """A research subject under autonomous management."""

    topic_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    title: str
    description: str = ""
    user_id: str | None = None
    active_version: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class StrategyVersion(BaseModel):
    """An immutable configuration snapshot for a topic.

    ``parent_version`` is the version this one was derived from.
    ``restored_from`` is set on rollbacks to the version whose config was
    re-issued.
    """

    topic_id: str
    version: int
    status: StrategyStatus = StrategyStatus.CANDIDATE
    rollout_percentage: int = Field(default=100, ge=0, le=100)
    parent_version: int | None = None
    restored_from: int | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status == StrategyStatus.ACTIVE
