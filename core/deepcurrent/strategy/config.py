"""Strategy configuration payloads.

A StrategyConfig is the typed view of the JSON blob stored on each
StrategyVersion. Payloads carry a ``schemaVersion`` tag; older payloads
are migrated on read so call sites never test for field presence.

Fields the engine does not know about are kept verbatim (``extra="allow"``)
and survive every read/derive/write cycle.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from deepcurrent.errors import ValidationError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

# Episodes executed under the compiled-in default are recorded against
# version 0, which is never allocated to a real StrategyVersion.
DEFAULT_STRATEGY_VERSION = 0


class SearchDepth(StrEnum):
    SHALLOW = "shallow"
    STANDARD = "standard"
    DEEP = "deep"


class TimeWindow(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class Ranking(StrEnum):
    """How search results are ordered before evaluation."""

    BALANCED = "balanced"
    PRECISION = "precision"
    RECALL = "recall"


SEARCH_DEPTH_ORDER: tuple[SearchDepth, ...] = (
    SearchDepth.SHALLOW,
    SearchDepth.STANDARD,
    SearchDepth.DEEP,
)
TIME_WINDOW_ORDER: tuple[TimeWindow, ...] = (
    TimeWindow.DAY,
    TimeWindow.WEEK,
    TimeWindow.MONTH,
    TimeWindow.ALL,
)


class StrategyConfig(BaseModel):
    """Behavioral parameters for one strategy version."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, alias="schemaVersion")

    search_depth: SearchDepth = Field(default=SearchDepth.STANDARD, alias="searchDepth")
    time_window: TimeWindow = Field(default=TimeWindow.WEEK, alias="timeWindow")
    max_followups: int | None = Field(default=None, ge=1, alias="maxFollowups")
    ranking: Ranking = Field(default=Ranking.BALANCED)

    model: str = "gpt-4o-mini"
    parallel_searches: bool = Field(default=False, alias="parallelSearches")

    tools: list[str] = Field(
        default_factory=lambda: [
            "linkupSearchTool",
            "evaluateResultsBatchTool",
            "extractLearningsTool",
        ]
    )
    enabled_tools: list[str] = Field(
        default_factory=lambda: ["linkup", "evaluate", "extract"], alias="enabledTools"
    )
    summary_templates: list[str] = Field(
        default_factory=lambda: ["bullets", "narrative"], alias="summaryTemplates"
    )

    senso_first: bool = Field(default=False, alias="sensoFirst")
    skip_evaluation: bool = Field(default=False, alias="skipEvaluation")

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the stored JSON shape, extra fields included."""
        return self.model_dump(mode="json", by_alias=True)

    def evolve(self, **changes: Any) -> "StrategyConfig":
        """Return a validated copy with *changes* applied (field names, not aliases)."""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StrategyConfig":
        """Migrate and validate a stored payload.

        Raises:
            pydantic.ValidationError / ValueError: If the payload is malformed.
        """
        return cls.model_validate(migrate_payload(payload))


DEFAULT_STRATEGY_CONFIG = StrategyConfig()


# ---------------------------------------------------------------------------
# Schema migrations
# ---------------------------------------------------------------------------


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Untagged payloads predate the typed schema.

    - ``callPatterns.followUpDepth`` / ``parallelQueries`` become
      ``maxFollowups`` / ``parallelSearches``
    - ``searchStrategy: senso-first`` becomes ``sensoFirst``
    - ``tools`` as a ``{name: enabled}`` map becomes a list of names
    """
    call_patterns = data.get("callPatterns")
    if isinstance(call_patterns, dict):
        if data.get("maxFollowups") is None and call_patterns.get("followUpDepth") is not None:
            data["maxFollowups"] = call_patterns["followUpDepth"]
        if "parallelSearches" not in data and "parallelQueries" in call_patterns:
            data["parallelSearches"] = bool(call_patterns["parallelQueries"])

    if "sensoFirst" not in data and data.get("searchStrategy") == "senso-first":
        data["sensoFirst"] = True

    tools = data.get("tools")
    if isinstance(tools, dict):
        data["tools"] = [name for name, enabled in tools.items() if enabled]

    data["schemaVersion"] = 2
    return data


_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
}


def migrate_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Bring *payload* up to ``CURRENT_SCHEMA_VERSION``.

    The input is not modified.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Config payload must be an object, got {type(payload).__name__}")

    data = copy.deepcopy(payload)
    schema = data.get("schemaVersion", 1)
    if not isinstance(schema, int) or isinstance(schema, bool) or schema < 1:
        raise ValueError(f"Invalid schemaVersion: {schema!r}")
    if schema > CURRENT_SCHEMA_VERSION:
        raise ValueError(
            f"schemaVersion {schema} is newer than supported {CURRENT_SCHEMA_VERSION}"
        )

    while schema < CURRENT_SCHEMA_VERSION:
        data = _MIGRATIONS[schema](data)
        schema += 1
    return data


def parse_config(payload: dict[str, Any], topic_id: str, version: int | None) -> StrategyConfig:
    """Parse a stored payload, raising the engine's ValidationError on failure."""
    try:
        return StrategyConfig.from_payload(payload)
    except (PydanticValidationError, ValueError) as e:
        raise ValidationError(topic_id, version, str(e)) from e


def config_diff(before: StrategyConfig, after: StrategyConfig) -> dict[str, dict[str, Any]]:
    """Field-level diff between two configs, keyed by payload name."""
    old = before.to_payload()
    new = after.to_payload()
    diff: dict[str, dict[str, Any]] = {}
    for key in sorted(set(old) | set(new)):
        if old.get(key) != new.get(key):
            diff[key] = {"before": old.get(key), "after": new.get(key)}
    return diff


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StrategyContext:
    """Typed strategy parameters handed to the executor for one run."""

    topic_id: str
    strategy_version: int | None
    search_depth: SearchDepth
    time_window: TimeWindow
    max_followups: int | None
    ranking: Ranking
    model: str
    parallel_searches: bool
    enabled_tools: tuple[str, ...]
    summary_templates: tuple[str, ...]
    senso_first: bool
    skip_evaluation: bool
    episode_id: str | None = None

    @property
    def is_default(self) -> bool:
        """True when no strategy version backs this run."""
        return self.strategy_version is None

    @classmethod
    def from_config(
        cls,
        config: StrategyConfig,
        topic_id: str,
        strategy_version: int | None,
        episode_id: str | None = None,
    ) -> "StrategyContext":
        return cls(
            topic_id=topic_id,
            strategy_version=strategy_version,
            search_depth=config.search_depth,
            time_window=config.time_window,
            max_followups=config.max_followups,
            ranking=config.ranking,
            model=config.model,
            parallel_searches=config.parallel_searches,
            enabled_tools=tuple(config.enabled_tools),
            summary_templates=tuple(config.summary_templates),
            senso_first=config.senso_first,
            skip_evaluation=config.skip_evaluation,
            episode_id=episode_id,
        )

    def with_episode(self, episode_id: str) -> "StrategyContext":
        return replace(self, episode_id=episode_id)
