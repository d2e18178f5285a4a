"""
Performance Analyzer - metrics over recorded episodes.

Aggregates are computed per strategy version, never per topic, so data
from different configurations is not mixed. Completed and failed episodes
both count; pending and running ones are in flight and are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from deepcurrent.errors import NotFoundError
from deepcurrent.settings import EvolutionThresholds
from deepcurrent.telemetry.episode import Episode, EpisodeStatus

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregateMetrics:
    """Mean per-episode metrics for one strategy version."""

    total_episodes: int = 0
    avg_save_rate: float = 0.0
    avg_followup_count: float = 0.0
    failed_episodes: int = 0
    senso_usage_rate: float = 0.0

    @classmethod
    def from_episodes(cls, episodes: list[Episode]) -> "AggregateMetrics":
        if not episodes:
            return cls()
        n = len(episodes)
        return cls(
            total_episodes=n,
            avg_save_rate=sum(e.save_rate for e in episodes) / n,
            avg_followup_count=sum(e.followup_count for e in episodes) / n,
            failed_episodes=sum(1 for e in episodes if e.status == EpisodeStatus.FAILED),
            senso_usage_rate=sum(1 for e in episodes if e.used_senso) / n,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_episodes": self.total_episodes,
            "avg_save_rate": self.avg_save_rate,
            "avg_followup_count": self.avg_followup_count,
            "failed_episodes": self.failed_episodes,
            "senso_usage_rate": self.senso_usage_rate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AggregateMetrics":
        return cls(
            total_episodes=int(data.get("total_episodes", 0)),
            avg_save_rate=float(data.get("avg_save_rate", 0.0)),
            avg_followup_count=float(data.get("avg_followup_count", 0.0)),
            failed_episodes=int(data.get("failed_episodes", 0)),
            senso_usage_rate=float(data.get("senso_usage_rate", 0.0)),
        )


class Recommendation(StrEnum):
    KEEP = "keep"
    EVOLVE = "evolve"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class EpisodeAnalysis:
    """Advisory verdict on a single episode."""

    episode_id: str
    save_rate: float
    followup_count: int
    sources_returned: int
    sources_saved: int
    tool_usage_count: int
    recommendation: Recommendation
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "episode_id": self.episode_id,
            "save_rate": self.save_rate,
            "followup_count": self.followup_count,
            "sources_returned": self.sources_returned,
            "sources_saved": self.sources_saved,
            "tool_usage_count": self.tool_usage_count,
            "recommendation": self.recommendation.value,
            "reason": self.reason,
        }


class PerformanceAnalyzer:
    """Computes per-episode and per-version metrics."""

    def __init__(
        self,
        repository: StrategyRepository,
        thresholds: EvolutionThresholds | None = None,
    ) -> None:
        self._repo = repository
        self.thresholds = thresholds or EvolutionThresholds()

    async def aggregate(
        self,
        topic_id: str,
        version: int,
        since_episode_count: int | None = None,
    ) -> AggregateMetrics:
        """Average save rate and follow-up count for one version.

        Args:
            topic_id: Topic to aggregate.
            version: Strategy version whose episodes are included.
            since_episode_count: Only use the N most recent finished episodes.
        """
        episodes = await self._repo.list_episodes(topic_id, strategy_version=version)
        finished = [e for e in episodes if e.is_terminal]
        if since_episode_count is not None:
            finished = finished[: max(0, since_episode_count)]
        return AggregateMetrics.from_episodes(finished)

    async def analyze_one(self, episode_id: str) -> EpisodeAnalysis:
        """Evaluate one episode against the single-episode thresholds.

        Raises:
            NotFoundError: If the episode does not exist.
        """
        episode = await self._repo.get_episode(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return self.evaluate_episode(episode)

    def evaluate_episode(self, episode: Episode) -> EpisodeAnalysis:
        t = self.thresholds
        save_rate = episode.save_rate

        if episode.status == EpisodeStatus.FAILED:
            recommendation = Recommendation.ROLLBACK
            reason = f"execution failed: {episode.error_message or 'unknown error'}"
        elif save_rate < t.episode_low_save_rate:
            recommendation = Recommendation.EVOLVE
            reason = f"low save rate ({save_rate:.2f} < {t.episode_low_save_rate})"
        elif episode.followup_count > t.episode_max_followups:
            recommendation = Recommendation.EVOLVE
            reason = (
                f"excessive follow-ups ({episode.followup_count} > {t.episode_max_followups})"
            )
        else:
            recommendation = Recommendation.KEEP
            reason = "episode within thresholds"

        return EpisodeAnalysis(
            episode_id=episode.episode_id,
            save_rate=save_rate,
            followup_count=episode.followup_count,
            sources_returned=len(episode.sources_returned),
            sources_saved=len(episode.sources_saved),
            tool_usage_count=episode.tool_usage_count,
            recommendation=recommendation,
            reason=reason,
        )

    async def compare_versions(self, topic_id: str) -> dict[int, AggregateMetrics]:
        """Aggregate metrics for every version of a topic, keyed by version."""
        versions = await self._repo.list_versions(topic_id)
        episodes = await self._repo.list_episodes(topic_id)

        by_version: dict[int, list[Episode]] = {v.version: [] for v in versions}
        for episode in episodes:
            if episode.is_terminal and episode.strategy_version in by_version:
                by_version[episode.strategy_version].append(episode)

        return {n: AggregateMetrics.from_episodes(eps) for n, eps in by_version.items()}
