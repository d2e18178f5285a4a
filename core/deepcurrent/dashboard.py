"""Read-only query surface for dashboards.

Returns, per topic, the active version, every version with its aggregate
metrics, and the evolution log. Versions whose config fails validation
are flagged as corrupt and get no metrics.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from deepcurrent.errors import NotFoundError, ValidationError
from deepcurrent.governance.audit import AuditLog
from deepcurrent.strategy.config import parse_config
from deepcurrent.telemetry.analyzer import PerformanceAnalyzer

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


class StrategyDashboard:
    """Aggregated view of a topic's strategy history."""

    def __init__(
        self,
        repository: StrategyRepository,
        analyzer: PerformanceAnalyzer,
        audit_log: AuditLog,
    ) -> None:
        self._repo = repository
        self._analyzer = analyzer
        self._audit = audit_log

    async def get_overview(self, topic_id: str) -> dict[str, Any]:
        """Raises NotFoundError if the topic does not exist."""
        topic = await self._repo.get_topic(topic_id)
        if topic is None:
            raise NotFoundError("Topic", topic_id)

        versions = await self._repo.list_versions(topic_id)
        metrics = await self._analyzer.compare_versions(topic_id)

        rows: list[dict[str, Any]] = []
        for version in reversed(versions):
            row: dict[str, Any] = {
                "version": version.version,
                "status": version.status.value,
                "rollout_percentage": version.rollout_percentage,
                "parent_version": version.parent_version,
                "restored_from": version.restored_from,
                "created_at": version.created_at.isoformat(),
            }
            try:
                config = parse_config(version.config, topic_id, version.version)
            except ValidationError as e:
                logger.warning(
                    f"Excluding corrupt strategy v{version.version} from overview",
                    extra={"topic_id": topic_id, "version": version.version, "detail": e.detail},
                )
                row["corrupt"] = True
                row["config"] = version.config
                row["metrics"] = None
            else:
                row["corrupt"] = False
                row["config"] = config.to_payload()
                row["metrics"] = metrics[version.version].to_dict()
            rows.append(row)

        entries = await self._audit.list_entries(topic_id)
        return {
            "topic": {
                "topic_id": topic.topic_id,
                "title": topic.title,
                "description": topic.description,
                "user_id": topic.user_id,
            },
            "active_version": topic.active_version,
            "versions": rows,
            "evolution_log": [e.to_dict() for e in entries],
        }

    async def recent_evolutions(self, topic_id: str, limit: int = 5) -> list[dict[str, Any]]:
        entries = await self._audit.list_entries(topic_id, limit=limit)
        return [e.to_dict() for e in entries]
