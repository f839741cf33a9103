"""Error hierarchy for poolchain."""

from __future__ import annotations

from typing import Any, Mapping, Optional


class PoolChainError(Exception):
    """Base exception for poolchain failures."""

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.context = dict(context) if context else {}

    def log_message(self) -> str:
        if not self.context:
            return str(self)
        return f"{self}: {self.context}"


class ConfigError(PoolChainError):
    """Configuration loading or validation error."""


class ObservationError(PoolChainError):
    """Malformed or incomplete observation table."""


class IntegrationFailure(PoolChainError):
    """The ODE integrator could not produce a trajectory for one candidate."""


class NoCandidatesSurvive(PoolChainError):
    """A stage's acceptance and threshold filters left no candidates."""

    def __init__(self, stage: int, stats: Mapping[str, int], reason: str) -> None:
        super().__init__(
            f"[Stage {stage}] no candidates survive: {reason}",
            context={"stage": stage, **stats},
        )
        self.stage = stage
        self.stats = dict(stats)


class CacheCorruption(PoolChainError):
    """A persisted stage table is unreadable or schema-incompatible."""


__all__ = [
    "PoolChainError",
    "ConfigError",
    "ObservationError",
    "IntegrationFailure",
    "NoCandidatesSurvive",
    "CacheCorruption",
]
