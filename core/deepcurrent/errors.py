"""Error taxonomy for the strategy evolution engine.

Callers handle these at well-defined seams:

- NotFoundError: missing topic/version. Execution falls back to the
  compiled-in default strategy, it never fails the user's request.
- ConflictError: a concurrent writer claimed the version number. Retry
  allocation with a fresh read.
- ValidationError: a stored config payload is malformed. The version is
  treated as corrupt, excluded from aggregates and logged.
- TransientStoreError: the store is temporarily unavailable. Episode
  writes retry with backoff, evolution checks are skipped.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""


class NotFoundError(EngineError):
    """A topic, strategy version or episode does not exist."""

    def __init__(self, kind: str, key: Any):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found")


class ConflictError(EngineError):
    """A version number was already claimed by another writer."""

    def __init__(self, topic_id: str, version: int):
        self.topic_id = topic_id
        self.version = version
        super().__init__(f"Version {version} for topic '{topic_id}' was claimed concurrently")


class ValidationError(EngineError):
    """A persisted strategy config payload failed schema validation."""

    def __init__(self, topic_id: str, version: int | None, detail: str):
        self.topic_id = topic_id
        self.version = version
        self.detail = detail
        super().__init__(f"Invalid config for topic '{topic_id}' v{version}: {detail}")


class TransientStoreError(EngineError):
    """The persistent store is temporarily unavailable."""


class InvalidTransitionError(EngineError):
    """A lifecycle transition is not allowed from the current state."""


class MutationError(EngineError):
    """The mutator could not derive a config different from its parent."""
