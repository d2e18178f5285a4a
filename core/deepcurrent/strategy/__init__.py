"""
Strategy versions: typed configs, versioned storage and the rollout lifecycle.

Usage:
    from deepcurrent.strategy import ConfigStore, RolloutManager, StrategyConfig

    store = ConfigStore(repository)
    rollout = RolloutManager(repository, store, audit_log)
    await rollout.bootstrap(topic_id)
"""

from deepcurrent.strategy.config import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_STRATEGY_CONFIG,
    DEFAULT_STRATEGY_VERSION,
    Ranking,
    SearchDepth,
    StrategyConfig,
    StrategyContext,
    TimeWindow,
    config_diff,
    migrate_payload,
)
from deepcurrent.strategy.store import ConfigStore
from deepcurrent.strategy.rollout import RolloutManager

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "ConfigStore",
    "DEFAULT_STRATEGY_CONFIG",
    "DEFAULT_STRATEGY_VERSION",
    "Ranking",
    "RolloutManager",
    "SearchDepth",
    "StrategyConfig",
    "StrategyContext",
    "TimeWindow",
    "config_diff",
    "migrate_payload",
]
