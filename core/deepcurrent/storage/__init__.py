"""Storage Module - persistence seam for the evolution engine.

- StrategyRepository: Protocol every backend implements
- InMemoryRepository: process-local backend, default for tests
- JsonFileRepository: JSON/JSONL files on disk
- Topic, StrategyVersion, StrategyStatus: persisted row models
"""

from deepcurrent.storage.json_repository import JsonFileRepository
from deepcurrent.storage.models import StrategyStatus, StrategyVersion, Topic
from deepcurrent.storage.repository import (
    InMemoryRepository,
    StrategyRepository,
    TopicTransaction,
)

__all__ = [
    "StrategyRepository",
    "InMemoryRepository",
    "JsonFileRepository",
    "TopicTransaction",
    "Topic",
    "StrategyVersion",
    "StrategyStatus",
]
