"""
Engine Configuration Models

Defines the tunables for the strategy evolution engine:
- Evolution thresholds (when the policy triggers, when a single episode looks bad)
- Rollout defaults for new candidates
- Retry budgets for version allocation and telemetry writes
- Storage location and evolution-log retention
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_DEFAULT_STORAGE = Path.home() / ".deepcurrent"


@dataclass(frozen=True)
class EvolutionThresholds:
    """Decision thresholds shared by the analyzer and the evolution policy."""

    min_episodes: int = 5
    low_save_rate: float = 0.5
    max_avg_followups: float = 5.0

    episode_low_save_rate: float = 0.5
    episode_max_followups: int = 5
    low_senso_usage: float = 0.2

    @classmethod
    def aggressive(cls) -> "EvolutionThresholds":
        """Evolve after every episode with tighter quality bars."""
        return cls(
            min_episodes=1,
            low_save_rate=0.6,
            max_avg_followups=5.0,
            episode_low_save_rate=0.6,
            episode_max_followups=5,
        )

    @classmethod
    def conservative(cls) -> "EvolutionThresholds":
        """Require more evidence and only react to clearly poor metrics."""
        return cls(
            min_episodes=10,
            low_save_rate=0.3,
            max_avg_followups=10.0,
            episode_low_save_rate=0.3,
            episode_max_followups=10,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_episodes": self.min_episodes,
            "low_save_rate": self.low_save_rate,
            "max_avg_followups": self.max_avg_followups,
            "episode_low_save_rate": self.episode_low_save_rate,
            "episode_max_followups": self.episode_max_followups,
            "low_senso_usage": self.low_senso_usage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvolutionThresholds":
        defaults = cls()
        return cls(
            min_episodes=int(data.get("min_episodes", defaults.min_episodes)),
            low_save_rate=float(data.get("low_save_rate", defaults.low_save_rate)),
            max_avg_followups=float(data.get("max_avg_followups", defaults.max_avg_followups)),
            episode_low_save_rate=float(
                data.get("episode_low_save_rate", defaults.episode_low_save_rate)
            ),
            episode_max_followups=int(
                data.get("episode_max_followups", defaults.episode_max_followups)
            ),
            low_senso_usage=float(data.get("low_senso_usage", defaults.low_senso_usage)),
        )


@dataclass
class EngineSettings:
    """Top-level configuration for the strategy evolution engine."""

    storage_path: Path = field(default_factory=lambda: _DEFAULT_STORAGE)
    thresholds: EvolutionThresholds = field(default_factory=EvolutionThresholds)

    candidate_rollout_percentage: int = 20
    auto_promote: bool = False

    max_allocation_retries: int = 10

    telemetry_retry_attempts: int = 3
    telemetry_retry_base_delay: float = 0.05

    evolution_log_retention_days: int | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.candidate_rollout_percentage <= 100:
            raise ValueError("candidate_rollout_percentage must be between 0 and 100")
        if self.max_allocation_retries < 1:
            raise ValueError("max_allocation_retries must be at least 1")
        if self.telemetry_retry_attempts < 1:
            raise ValueError("telemetry_retry_attempts must be at least 1")
        self.storage_path = Path(self.storage_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage_path": str(self.storage_path),
            "thresholds": self.thresholds.to_dict(),
            "candidate_rollout_percentage": self.candidate_rollout_percentage,
            "auto_promote": self.auto_promote,
            "max_allocation_retries": self.max_allocation_retries,
            "telemetry_retry_attempts": self.telemetry_retry_attempts,
            "telemetry_retry_base_delay": self.telemetry_retry_base_delay,
            "evolution_log_retention_days": self.evolution_log_retention_days,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineSettings":
        defaults = cls()
        return cls(
            storage_path=Path(data.get("storage_path", defaults.storage_path)),
            thresholds=EvolutionThresholds.from_dict(data.get("thresholds", {})),
            candidate_rollout_percentage=data.get(
                "candidate_rollout_percentage", defaults.candidate_rollout_percentage
            ),
            auto_promote=data.get("auto_promote", defaults.auto_promote),
            max_allocation_retries=data.get(
                "max_allocation_retries", defaults.max_allocation_retries
            ),
            telemetry_retry_attempts=data.get(
                "telemetry_retry_attempts", defaults.telemetry_retry_attempts
            ),
            telemetry_retry_base_delay=data.get(
                "telemetry_retry_base_delay", defaults.telemetry_retry_base_delay
            ),
            evolution_log_retention_days=data.get("evolution_log_retention_days"),
        )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineSettings":
        """Build settings from ``DEEPCURRENT_*`` environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()
        base = defaults.thresholds

        def _get(name: str) -> str | None:
            value = env.get(f"DEEPCURRENT_{name}")
            return value if value not in (None, "") else None

        preset = _get("THRESHOLD_PRESET")
        if preset == "aggressive":
            base = EvolutionThresholds.aggressive()
        elif preset == "conservative":
            base = EvolutionThresholds.conservative()
        elif preset is not None and preset != "default":
            raise ValueError(f"Unknown threshold preset: {preset}")

        thresholds = EvolutionThresholds(
            min_episodes=int(_get("MIN_EPISODES") or base.min_episodes),
            low_save_rate=float(_get("LOW_SAVE_RATE") or base.low_save_rate),
            max_avg_followups=float(_get("MAX_AVG_FOLLOWUPS") or base.max_avg_followups),
            episode_low_save_rate=base.episode_low_save_rate,
            episode_max_followups=base.episode_max_followups,
            low_senso_usage=float(_get("LOW_SENSO_USAGE") or base.low_senso_usage),
        )

        retention = _get("LOG_RETENTION_DAYS")
        return cls(
            storage_path=Path(_get("STORAGE_PATH") or defaults.storage_path),
            thresholds=thresholds,
            candidate_rollout_percentage=int(
                _get("CANDIDATE_ROLLOUT") or defaults.candidate_rollout_percentage
            ),
            auto_promote=(_get("AUTO_PROMOTE") or "false").lower() in ("1", "true", "yes"),
            max_allocation_retries=int(
                _get("MAX_ALLOCATION_RETRIES") or defaults.max_allocation_retries
            ),
            evolution_log_retention_days=int(retention) if retention else None,
        )
