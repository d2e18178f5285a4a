"""
Governance Layer for Strategy Evolution

Auditability for autonomous strategy changes: every version transition
is recorded with the config diff and the metrics behind it.

Components:
- EvolutionLogEntry: Append-only transition record
- TransitionKind: Evolution, promotion, archive, rollout, rollback, bootstrap
- AuditLog: Records, queries and purges transition entries

Usage:
    from deepcurrent.governance import AuditLog, TransitionKind

    audit = AuditLog(repository, event_bus)
    await audit.record(topic_id, 1, 2, "low save rate", changes, TransitionKind.EVOLUTION)
    timeline = await audit.timeline(topic_id)
"""

from deepcurrent.governance.schemas import EvolutionLogEntry, TransitionKind
from deepcurrent.governance.audit import AuditLog

__all__ = [
    "AuditLog",
    "EvolutionLogEntry",
    "TransitionKind",
]
