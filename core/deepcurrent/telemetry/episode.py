"""Episode models for strategy telemetry.

An Episode captures one research execution under a strategy version:
- Input: the query and the strategy version active when it started
- Output: sources returned by search and the subset the agent kept
- Effort: how many follow-up queries were issued

Episodes are created at execution start and updated once at completion.
Completed and failed episodes are immutable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class EpisodeStatus(StrEnum):
    """Lifecycle of an episode."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EpisodeStatus.COMPLETED, EpisodeStatus.FAILED)


_TRANSITIONS: dict[EpisodeStatus, set[EpisodeStatus]] = {
    EpisodeStatus.PENDING: {
        EpisodeStatus.RUNNING,
        EpisodeStatus.COMPLETED,
        EpisodeStatus.FAILED,
    },
    EpisodeStatus.RUNNING: {EpisodeStatus.COMPLETED, EpisodeStatus.FAILED},
    EpisodeStatus.COMPLETED: set(),
    EpisodeStatus.FAILED: set(),
}


def can_transition(current: EpisodeStatus, target: EpisodeStatus) -> bool:
    """Check whether an episode may move from *current* to *target*."""
    return target in _TRANSITIONS[current]


class SourceRef(BaseModel):
    """Reference to a research source."""

    url: str
    title: str | None = None
    source: str | None = None
    timestamp: str | None = None
    snippet: str | None = None


class Episode(BaseModel):
    """Telemetry for a single execution."""

    episode_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    topic_id: str
    strategy_version: int
    query: str
    user_id: str | None = None

    status: EpisodeStatus = EpisodeStatus.PENDING
    error_message: str | None = None

    sources_returned: list[SourceRef] = Field(default_factory=list)
    sources_saved: list[SourceRef] = Field(default_factory=list)
    followup_count: int = Field(default=0, ge=0)
    tool_usage: dict[str, Any] | None = None
    result_note_id: str | None = None
    senso_search_used: bool = False
    senso_generate_used: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def save_rate(self) -> float:
        """Fraction of returned sources that were saved.

        Failed episodes count as zero so degraded runs stay visible to
        the policy.
        """
        if self.status == EpisodeStatus.FAILED:
            return 0.0
        if not self.sources_returned:
            return 0.0
        return len(self.sources_saved) / len(self.sources_returned)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def used_senso(self) -> bool:
        """Whether the run consulted Senso for search or generation."""
        return self.senso_search_used or self.senso_generate_used

    @property
    def tool_usage_count(self) -> int:
        return len(self.tool_usage) if self.tool_usage else 0
