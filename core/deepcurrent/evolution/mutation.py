"""Mutator - rule-based derivation of candidate strategy configs.

Each evolution trigger maps to one rule. A rule changes a strict subset
of the config's fields and leaves everything else, including fields the
engine does not know about, untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from deepcurrent.errors import MutationError
from deepcurrent.evolution.policy import EvolutionTrigger
from deepcurrent.strategy.config import (
    SEARCH_DEPTH_ORDER,
    TIME_WINDOW_ORDER,
    Ranking,
    SearchDepth,
    StrategyConfig,
    TimeWindow,
    config_diff,
)
from deepcurrent.telemetry.analyzer import AggregateMetrics

logger = logging.getLogger(__name__)

MODEL_UPGRADES: dict[str, str] = {
    "gpt-4o-mini": "gpt-4o",
    "gpt-3.5-turbo": "gpt-4o-mini",
}

DEFAULT_MAX_FOLLOWUPS = 3
MIN_FOLLOWUPS = 1
LOW_SENSO_USAGE = 0.2


def _step_up(order: tuple, current: Any) -> Any:
    index = order.index(current)
    return order[min(index + 1, len(order) - 1)]


@dataclass
class MutationResult:
    """A derived config and what changed relative to its parent."""

    config: StrategyConfig
    trigger: EvolutionTrigger
    diff: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def fields_changed(self) -> list[str]:
        return sorted(self.diff)


Rule = Callable[[StrategyConfig, AggregateMetrics | None], dict[str, Any]]


class Mutator:
    """Derives a new candidate config from the current one.

    Rules:
    - low save rate: deeper search, wider time window, precision ranking,
      stronger model
    - no sources saved: deepest search, widest time window, evaluation on
    - excessive follow-ups: tighter follow-up budget, parallel searches

    Whatever the trigger, Senso-first search is switched on when fewer than
    *low_senso_usage* of the aggregated episodes consulted Senso.
    """

    def __init__(
        self,
        model_upgrades: dict[str, str] | None = None,
        low_senso_usage: float = LOW_SENSO_USAGE,
    ) -> None:
        self._model_upgrades = dict(MODEL_UPGRADES if model_upgrades is None else model_upgrades)
        self._low_senso_usage = low_senso_usage
        self._rules: dict[EvolutionTrigger, Rule] = {
            EvolutionTrigger.LOW_SAVE_RATE: self._improve_precision,
            EvolutionTrigger.NO_SOURCES_SAVED: self._broaden_search,
            EvolutionTrigger.EXCESSIVE_FOLLOWUPS: self._tighten_followups,
        }

    def derive(
        self,
        config: StrategyConfig,
        trigger: EvolutionTrigger | str,
        metrics: AggregateMetrics | None = None,
    ) -> MutationResult:
        """Apply the rule for *trigger* to *config*.

        Raises:
            MutationError: If no rule exists for the trigger, or every knob
                the rule turns is already at its limit.
        """
        try:
            trigger = EvolutionTrigger(trigger)
        except ValueError:
            raise MutationError(f"No mutation rule for reason '{trigger}'") from None

        updates = self._rules[trigger](config, metrics)
        if self._senso_underused(metrics):
            updates["senso_first"] = True
        derived = config.evolve(**updates)
        diff = config_diff(config, derived)
        if not diff:
            raise MutationError(
                f"Rule '{trigger.value}' cannot change the config further; all knobs at their limit"
            )

        logger.info(f"Derived config for '{trigger.value}': changed {', '.join(sorted(diff))}")
        return MutationResult(config=derived, trigger=trigger, diff=diff)

    def _senso_underused(self, metrics: AggregateMetrics | None) -> bool:
        if metrics is None or metrics.total_episodes == 0:
            return False
        return metrics.senso_usage_rate < self._low_senso_usage

    def _improve_precision(
        self, config: StrategyConfig, metrics: AggregateMetrics | None
    ) -> dict[str, Any]:
        return {
            "search_depth": _step_up(SEARCH_DEPTH_ORDER, config.search_depth),
            "time_window": _step_up(TIME_WINDOW_ORDER, config.time_window),
            "ranking": Ranking.PRECISION,
            "model": self._model_upgrades.get(config.model, config.model),
        }

    def _broaden_search(
        self, config: StrategyConfig, metrics: AggregateMetrics | None
    ) -> dict[str, Any]:
        return {
            "search_depth": SearchDepth.DEEP,
            "time_window": TimeWindow.ALL,
            "skip_evaluation": False,
        }

    def _tighten_followups(
        self, config: StrategyConfig, metrics: AggregateMetrics | None
    ) -> dict[str, Any]:
        if config.max_followups is None:
            budget = DEFAULT_MAX_FOLLOWUPS
        else:
            budget = max(MIN_FOLLOWUPS, config.max_followups - 1)
        return {"max_followups": budget, "parallel_searches": True}

