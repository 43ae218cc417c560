"""
Error taxonomy for flag evaluation and rollout orchestration.

Evaluation absorbs every error locally; these types exist so the cache,
write path and orchestrator can classify failures and report them with a
machine-readable code.
"""

from typing import Any, Dict, Optional


class FlagEngineError(Exception):
    """Base class for engine errors."""

    code: str = "FLAG_ENGINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigurationError(FlagEngineError):
    """Malformed condition: unknown operator, invalid regex, wrong operand shape."""

    code = "CONFIGURATION_ERROR"


class FlagValidationError(FlagEngineError, ValueError):
    """A flag record does not match its declared value type or schema."""

    code = "FLAG_VALIDATION_ERROR"


class FlagNotFoundError(FlagEngineError):
    """Unknown flag key."""

    code = "FLAG_NOT_FOUND"

    def __init__(self, flag_key: str):
        super().__init__(f"Feature flag '{flag_key}' not found", details={"flag_key": flag_key})
        self.flag_key = flag_key


class StoreUnavailableError(FlagEngineError):
    """The external flag store could not be reached."""

    code = "STORE_UNAVAILABLE"


class MetricsUnavailableError(FlagEngineError):
    """A metric could not be fetched (error or timeout)."""

    code = "METRICS_UNAVAILABLE"


class RolloutError(FlagEngineError):
    """Base class for rollout orchestration errors."""

    code = "ROLLOUT_ERROR"


class RolloutNotFoundError(RolloutError):
    code = "ROLLOUT_NOT_FOUND"

    def __init__(self, flag_key: str):
        super().__init__(f"No rollout registered for flag '{flag_key}'", details={"flag_key": flag_key})
        self.flag_key = flag_key


class InvalidRolloutTransitionError(RolloutError):
    """The requested transition is not allowed from the rollout's current state."""

    code = "INVALID_TRANSITION"


class InvalidRolloutStagesError(RolloutError):
    code = "INVALID_STAGES"
