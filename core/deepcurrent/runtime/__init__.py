"""Runtime Module - event dispatch and strategy-driven execution.

The execution service lives in ``deepcurrent.runtime.execution`` and is
imported explicitly since it depends on the rest of the engine.
"""

from deepcurrent.runtime.event_bus import EngineEvent, EventBus, EventHandler, EventType

__all__ = [
    "EngineEvent",
    "EventBus",
    "EventHandler",
    "EventType",
]
