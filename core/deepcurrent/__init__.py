"""
DeepCurrent Strategy Evolution Engine

Versions each research topic's strategy configuration, records telemetry
for every execution, and evolves the strategy when aggregate performance
falls below thresholds.

Usage:
    from deepcurrent import StrategyEngine
    from deepcurrent.storage import InMemoryRepository

    engine = StrategyEngine.create(InMemoryRepository())
    topic = await engine.topics.create_topic("Fusion energy")
    await engine.rollout.bootstrap(topic.topic_id)
"""

from deepcurrent.engine import StrategyEngine
from deepcurrent.errors import (
    ConflictError,
    EngineError,
    InvalidTransitionError,
    MutationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from deepcurrent.settings import EngineSettings, EvolutionThresholds

__version__ = "0.1.0"

__all__ = [
    "ConflictError",
    "EngineError",
    "EngineSettings",
    "EvolutionThresholds",
    "InvalidTransitionError",
    "MutationError",
    "NotFoundError",
    "StrategyEngine",
    "TransientStoreError",
    "ValidationError",
]
