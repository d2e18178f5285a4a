"""
Strategy evolution: policy, mutation and the closed-loop engine.

Components:
- EvolutionPolicy: Threshold rules over per-version aggregates
- Mutator: Rule-based derivation of candidate configs
- EvolutionEngine: Reacts to completed episodes and registers candidates

Usage:
    from deepcurrent.evolution import EvolutionEngine, EvolutionPolicy, Mutator

    engine = EvolutionEngine(repository, store, rollout, policy, Mutator(), audit)
    engine.attach(event_bus)
"""

from deepcurrent.evolution.policy import (
    EvolutionDecision,
    EvolutionPolicy,
    EvolutionTrigger,
)
from deepcurrent.evolution.mutation import MutationResult, Mutator
from deepcurrent.evolution.pipeline import CheckOutcome, EvolutionEngine, EvolutionOutcome

__all__ = [
    "CheckOutcome",
    "EvolutionDecision",
    "EvolutionEngine",
    "EvolutionOutcome",
    "EvolutionPolicy",
    "EvolutionTrigger",
    "MutationResult",
    "Mutator",
]
