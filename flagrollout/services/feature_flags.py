"""Flag Evaluation Service.

Public entry point for flag reads and for the narrow set of writes the
engine performs (enabled switch and rollout percentages).

Read path: context -> cache snapshot -> rule engine -> value. It is
synchronous, performs no I/O and never raises.

Write path: authoritative store record -> validated change with a bumped
version -> store -> cache invalidation.

Usage:
    service = FlagEvaluationService(cache, store)

    if service.is_enabled("new-checkout", EvaluationContext(subject_id="user-123")):
        ...

    theme = service.evaluate("checkout-theme", {"subject_id": "user-123", "plan": "pro"}, fallback="classic")

    await service.set_global_rollout_percentage("new-checkout", 25)
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from flagrollout.core.config import settings
from flagrollout.core.exceptions import FlagNotFoundError, FlagValidationError
from flagrollout.core.logging import get_logger
from flagrollout.core.metrics import flag_evaluations_total
from flagrollout.core.resilience import retry_store_operation
from flagrollout.models.evaluation import EvaluationContext, EvaluationReason, EvaluationResult
from flagrollout.models.feature_flag import FeatureFlag, validate_percentage
from flagrollout.services import bucketing
from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.flag_store import FlagStore
from flagrollout.services.rule_engine import RuleEngine, rule_engine

logger = get_logger(__name__)

ContextLike = Union[EvaluationContext, Mapping[str, Any], None]


def _as_context(context: ContextLike) -> EvaluationContext:
    if isinstance(context, EvaluationContext):
        return context
    if context is None:
        return EvaluationContext()
    return EvaluationContext.from_dict(dict(context))


class FlagEvaluationService:
    """Evaluates flags from the cache and applies rollout writes to the store."""

    def __init__(
        self,
        cache: FlagCache,
        store: FlagStore,
        engine: Optional[RuleEngine] = None,
        retry_attempts: Optional[int] = None,
        retry_min_wait: float = 0.5,
    ):
        self.cache = cache
        self.store = store
        self.engine = engine or rule_engine

        attempts = settings.FLAG_STORE_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        retrying = retry_store_operation(attempts=attempts, min_wait=retry_min_wait)
        self._store_get = retrying(self.store.get)
        self._store_put = retrying(self.store.put)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def evaluate_detailed(self, flag_key: str, context: ContextLike = None, fallback: Any = None) -> EvaluationResult:
        """Evaluate a flag and explain the outcome.

        Unknown flags (and any unexpected error) yield ``fallback``.
        """
        try:
            flag = self.cache.get(flag_key)
            if flag is None:
                logger.warning("feature_flag_not_found", flag_key=flag_key)
                result = EvaluationResult(flag_key=flag_key, value=fallback, reason=EvaluationReason.FLAG_NOT_FOUND)
            else:
                result = self.engine.resolve_detailed(flag, _as_context(context))
        except Exception as e:
            logger.error("flag_evaluation_failed", flag_key=flag_key, error=str(e), exc_info=True)
            result = EvaluationResult(flag_key=flag_key, value=fallback, reason=EvaluationReason.ERROR)

        flag_evaluations_total.labels(reason=result.reason.value).inc()
        return result

    def evaluate(self, flag_key: str, context: ContextLike = None, fallback: Any = None) -> Any:
        return self.evaluate_detailed(flag_key, context, fallback).value

    def is_enabled(self, flag_key: str, context: ContextLike = None, default: bool = False) -> bool:
        """Boolean convenience wrapper around evaluate()."""
        value = self.evaluate(flag_key, context, fallback=default)
        if isinstance(value, bool):
            return value
        return bool(value)

    def is_in_rollout(self, subject_id: Optional[str], flag_key: str, percentage: float) -> bool:
        return bucketing.is_in_rollout(subject_id, flag_key, percentage)

    def get_flag(self, flag_key: str) -> Optional[FeatureFlag]:
        return self.cache.get(flag_key)

    def list_flags(self) -> List[FeatureFlag]:
        return sorted(self.cache.all().values(), key=lambda f: f.key)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _load_authoritative(self, flag_key: str) -> FeatureFlag:
        record = await self._store_get(flag_key)
        if record is None:
            raise FlagNotFoundError(flag_key)
        if isinstance(record, FeatureFlag):
            return record
        return FeatureFlag.from_dict(record)

    async def _update_flag(
        self, flag_key: str, action: str, mutate: Callable[[FeatureFlag], Dict[str, Any]]
    ) -> FeatureFlag:
        current = await self._load_authoritative(flag_key)
        changes = mutate(current)
        updated = dataclasses.replace(
            current,
            version=current.version + 1,
            updated_at=datetime.now(timezone.utc),
            **changes,
        )
        await self._store_put(flag_key, updated)
        await self.cache.invalidate(flag_key)
        logger.info(
            "feature_flag_updated",
            flag_key=flag_key,
            action=action,
            version=updated.version,
            changed=sorted(changes),
        )
        return updated

    async def set_global_rollout_percentage(self, flag_key: str, percentage: Optional[float]) -> FeatureFlag:
        """Set (or clear with None) the flag's global rollout percentage.

        Raises:
            ValueError: percentage outside 0-100
            FlagNotFoundError: flag does not exist in the store
        """
        if percentage is not None:
            validate_percentage(percentage, "Rollout percentage")
        return await self._update_flag(
            flag_key, "set_global_rollout_percentage", lambda flag: {"global_rollout_percentage": percentage}
        )

    async def set_rule_rollout_percentage(
        self, flag_key: str, rule_id: str, percentage: Optional[float]
    ) -> FeatureFlag:
        if percentage is not None:
            validate_percentage(percentage, "Rule rollout percentage")

        def mutate(flag: FeatureFlag) -> Dict[str, Any]:
            if flag.get_rule(rule_id) is None:
                raise FlagValidationError(
                    f"Flag '{flag_key}' has no targeting rule '{rule_id}'",
                    details={"flag_key": flag_key, "rule_id": rule_id},
                )
            rules = tuple(
                dataclasses.replace(rule, rollout_percentage=percentage) if rule.id == rule_id else rule
                for rule in flag.targeting_rules
            )
            return {"targeting_rules": rules}

        return await self._update_flag(flag_key, "set_rule_rollout_percentage", mutate)

    async def set_enabled(self, flag_key: str, enabled: bool) -> FeatureFlag:
        return await self._update_flag(flag_key, "set_enabled", lambda flag: {"enabled": bool(enabled)})

    async def enable_flag(self, flag_key: str) -> FeatureFlag:
        return await self.set_enabled(flag_key, True)

    async def disable_flag(self, flag_key: str) -> FeatureFlag:
        return await self.set_enabled(flag_key, False)

    async def get_authoritative_flag(self, flag_key: str) -> FeatureFlag:
        """Read the flag straight from the store (write-path consumers only)."""
        return await self._load_authoritative(flag_key)
