"""Rollout Stage Orchestrator.

Drives a flag's global rollout percentage through a list of stages:

    not_started -> in_progress -> complete
                        |  ^
              rollback  |  | advance (manual)
                        v  |
                    rolled_back  (terminal once back at 0%)

    any state -> emergency_disabled

Auto-advance timers are asyncio tasks owned by the orchestrator. They wake
up at the end of each stage (or every ``max_sleep_seconds``), re-check the
rollout state, verify the stage's success criteria and advance. A failed,
timed-out or errored criteria check halts the rollout at the current stage
and notifies operators.

Every operator-facing method returns a ``RolloutResult`` instead of raising.

Usage:
    orchestrator = RolloutOrchestrator(flag_service, metrics_source, notifier)

    await orchestrator.start_rollout("new-checkout", canary_deployment().stages, auto_advance=True)
    ...
    await orchestrator.rollback("new-checkout")
    await orchestrator.emergency_disable("new-checkout", reason="checkout errors spiking")
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from flagrollout.core.config import settings
from flagrollout.core.exceptions import (
    FlagEngineError,
    InvalidRolloutTransitionError,
    MetricsUnavailableError,
    RolloutNotFoundError,
)
from flagrollout.core.logging import flag_log_context, get_logger
from flagrollout.core.metrics import (
    rollout_divergence_total,
    rollout_percentage,
    rollout_transitions_total,
    success_criteria_checks_total,
)
from flagrollout.models.rollout import (
    Rollout,
    RolloutResult,
    RolloutStage,
    RolloutState,
    RolloutStrategy,
    SuccessCriteria,
    validate_stages,
)
from flagrollout.services.feature_flags import FlagEvaluationService
from flagrollout.services.metrics_source import MetricsSource
from flagrollout.services.notification_service import (
    FLAG_EMERGENCY_DISABLED,
    ROLLOUT_AUTO_ROLLED_BACK,
    ROLLOUT_ROLLED_BACK,
    LoggingNotifier,
    Notifier,
)

logger = get_logger(__name__)

StageLike = Union[RolloutStage, Dict[str, Any], int, float]

# Result codes that are not errors from the engine's error taxonomy
STAGE_IN_PROGRESS = "STAGE_IN_PROGRESS"
SUCCESS_CRITERIA_FAILED = "SUCCESS_CRITERIA_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_stages(stages: Union[RolloutStrategy, Iterable[StageLike]]) -> Tuple[List[RolloutStage], str]:
    """Accept a strategy, stage objects, stage dicts or bare percentages."""
    if isinstance(stages, RolloutStrategy):
        return list(stages.stages), stages.name

    normalized = []
    for index, stage in enumerate(stages or []):
        if isinstance(stage, RolloutStage):
            normalized.append(stage)
        elif isinstance(stage, dict):
            normalized.append(RolloutStage.from_dict(stage))
        else:
            normalized.append(RolloutStage(percentage=stage, name=f"Stage {index + 1}"))
    return normalized, "Custom Rollout"


class RolloutOrchestrator:
    """Staged rollout state machine with cancellable auto-advance timers."""

    def __init__(
        self,
        flag_service: FlagEvaluationService,
        metrics_source: Optional[MetricsSource] = None,
        notifier: Optional[Notifier] = None,
        metrics_timeout_seconds: Optional[float] = None,
        max_sleep_seconds: Optional[float] = None,
        step_retry_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.flag_service = flag_service
        self.metrics_source = metrics_source
        self.notifier = notifier or LoggingNotifier()
        self.metrics_timeout_seconds = (
            settings.METRICS_TIMEOUT_SECONDS if metrics_timeout_seconds is None else metrics_timeout_seconds
        )
        self.max_sleep_seconds = settings.ROLLOUT_TIMER_MAX_SLEEP_SECONDS if max_sleep_seconds is None else max_sleep_seconds
        self.step_retry_seconds = settings.ROLLOUT_STEP_RETRY_SECONDS if step_retry_seconds is None else step_retry_seconds
        self._clock = clock

        self._rollouts: Dict[str, Rollout] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def get_rollout(self, flag_key: str) -> Optional[Rollout]:
        return self._rollouts.get(flag_key)

    def list_rollouts(self) -> List[Rollout]:
        return [self._rollouts[key] for key in sorted(self._rollouts)]

    def has_timer(self, flag_key: str) -> bool:
        task = self._timers.get(flag_key)
        return task is not None and not task.done()

    def _lock_for(self, flag_key: str) -> asyncio.Lock:
        lock = self._locks.get(flag_key)
        if lock is None:
            lock = self._locks[flag_key] = asyncio.Lock()
        return lock

    def _require_rollout(self, flag_key: str) -> Rollout:
        rollout = self._rollouts.get(flag_key)
        if rollout is None:
            raise RolloutNotFoundError(flag_key)
        return rollout

    def _result(
        self,
        rollout: Optional[Rollout],
        action: str,
        flag_key: str,
        success: bool = True,
        message: str = "",
        error_code: Optional[str] = None,
    ) -> RolloutResult:
        return RolloutResult(
            success=success,
            action=action,
            flag_key=flag_key,
            state=rollout.state if rollout else None,
            stage_index=rollout.stage_index if rollout else None,
            percentage=rollout.last_written_percentage if rollout else None,
            message=message,
            error_code=error_code,
        )

    async def _guard(
        self, action: str, flag_key: str, operation: Callable[[], Awaitable[RolloutResult]]
    ) -> RolloutResult:
        """Run an operation, turning engine errors into failed results."""
        with flag_log_context(flag_key, rollout_action=action):
            try:
                result = await operation()
            except FlagEngineError as e:
                logger.warning("rollout_operation_rejected", error_code=e.code, error=e.message)
                result = self._result(
                    self._rollouts.get(flag_key), action, flag_key, success=False, message=e.message, error_code=e.code
                )
            except Exception as e:
                logger.exception("rollout_operation_failed", error=str(e))
                result = self._result(
                    self._rollouts.get(flag_key),
                    action,
                    flag_key,
                    success=False,
                    message=f"Unexpected error: {e}",
                    error_code=INTERNAL_ERROR,
                )

        rollout_transitions_total.labels(action=action, outcome="success" if result.success else "failure").inc()
        return result

    # ------------------------------------------------------------------
    # Store writes
    # ------------------------------------------------------------------

    async def _write_percentage(self, rollout: Rollout, percentage: float) -> None:
        """Write the global rollout percentage, warning if someone else changed it."""
        flag = await self.flag_service.get_authoritative_flag(rollout.flag_key)
        expected = rollout.last_written_percentage
        if expected is not None and flag.global_rollout_percentage != expected:
            rollout_divergence_total.labels(flag_key=rollout.flag_key).inc()
            logger.warning(
                "rollout_percentage_divergence",
                expected_percentage=expected,
                stored_percentage=flag.global_rollout_percentage,
                new_percentage=percentage,
            )

        await self.flag_service.set_global_rollout_percentage(rollout.flag_key, percentage)
        rollout.last_written_percentage = percentage
        rollout_percentage.labels(flag_key=rollout.flag_key).set(percentage)

    async def _notify(self, event: str, rollout: Optional[Rollout], flag_key: str, **payload: Any) -> None:
        body = {
            "flag_key": flag_key,
            "state": rollout.state.value if rollout else None,
            "stage_index": rollout.stage_index if rollout else None,
            "percentage": rollout.last_written_percentage if rollout else None,
            **payload,
        }
        try:
            await self.notifier.notify(event, body)
        except Exception as e:
            logger.error("rollout_notification_failed", notification_event=event, error=str(e))

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_timer(self, flag_key: str) -> None:
        self._cancel_timer(flag_key)
        task = asyncio.create_task(self._timer_loop(flag_key), name=f"rollout-timer:{flag_key}")
        self._timers[flag_key] = task

        def _forget(done: asyncio.Task) -> None:
            if self._timers.get(flag_key) is done:
                self._timers.pop(flag_key, None)

        task.add_done_callback(_forget)

    def _cancel_timer(self, flag_key: str) -> Optional[asyncio.Task]:
        task = self._timers.pop(flag_key, None)
        if task is None or task.done():
            return None
        # A timer step that halts its own rollout just exits on the next state check
        if task is asyncio.current_task():
            return None
        task.cancel()
        return task

    def _rearm_if_running(self, flag_key: str) -> None:
        rollout = self._rollouts.get(flag_key)
        if rollout is not None and rollout.state == RolloutState.IN_PROGRESS and rollout.auto_advance:
            logger.warning("rollout_timer_rearmed", flag_key=flag_key)
            self._arm_timer(flag_key)

    def _seconds_until_due(self, rollout: Rollout) -> Optional[float]:
        stage = rollout.strategy.current_stage
        if stage is None or stage.duration_hours is None:
            return None
        due = rollout.stage_started_at + timedelta(hours=stage.duration_hours)
        return (due - self._clock()).total_seconds()

    async def _timer_loop(self, flag_key: str) -> None:
        while True:
            rollout = self._rollouts.get(flag_key)
            if rollout is None or rollout.state != RolloutState.IN_PROGRESS or not rollout.auto_advance:
                return

            remaining = self._seconds_until_due(rollout)
            if remaining is None:
                logger.info("rollout_stage_awaits_manual_advance", flag_key=flag_key, stage_index=rollout.stage_index)
                return

            if remaining > 0:
                await asyncio.sleep(min(remaining, self.max_sleep_seconds))
                continue

            result = await self.auto_advance(flag_key)
            if not result.success and result.state == RolloutState.IN_PROGRESS:
                await asyncio.sleep(self.step_retry_seconds)

    # ------------------------------------------------------------------
    # Success criteria
    # ------------------------------------------------------------------

    async def _check_criteria(self, criteria: SuccessCriteria) -> Tuple[bool, Optional[float], str]:
        """Fetch the metric (bounded) and compare it with the threshold."""
        if self.metrics_source is None:
            success_criteria_checks_total.labels(metric=criteria.metric, outcome="error").inc()
            return False, None, "no metrics source configured"

        try:
            observed = await asyncio.wait_for(
                self.metrics_source.get_metric_value(criteria.metric), timeout=self.metrics_timeout_seconds
            )
        except asyncio.TimeoutError:
            success_criteria_checks_total.labels(metric=criteria.metric, outcome="timeout").inc()
            return False, None, f"metric '{criteria.metric}' timed out after {self.metrics_timeout_seconds}s"
        except MetricsUnavailableError as e:
            success_criteria_checks_total.labels(metric=criteria.metric, outcome="error").inc()
            return False, None, e.message
        except Exception as e:
            success_criteria_checks_total.labels(metric=criteria.metric, outcome="error").inc()
            return False, None, f"metric '{criteria.metric}' failed: {e}"

        if isinstance(observed, bool) or not isinstance(observed, (int, float)):
            success_criteria_checks_total.labels(metric=criteria.metric, outcome="error").inc()
            return False, None, f"metric '{criteria.metric}' returned a non-numeric value"

        passed = criteria.is_met(float(observed))
        success_criteria_checks_total.labels(metric=criteria.metric, outcome="pass" if passed else "fail").inc()
        verdict = "met" if passed else "not met"
        return (
            passed,
            float(observed),
            f"{criteria.metric}={observed} {criteria.operator.value} {criteria.threshold}: {verdict}",
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_rollout(
        self,
        flag_key: str,
        stages: Union[RolloutStrategy, Sequence[StageLike]],
        auto_advance: bool = False,
        name: Optional[str] = None,
    ) -> RolloutResult:
        """Validate the stages, write stage 0 and optionally arm the timer."""

        async def operation() -> RolloutResult:
            stage_list, default_name = normalize_stages(stages)
            validate_stages(stage_list)

            async with self._lock_for(flag_key):
                existing = self._rollouts.get(flag_key)
                if existing is not None and existing.is_active:
                    raise InvalidRolloutTransitionError(
                        f"Flag '{flag_key}' already has an active rollout ({existing.state.value})"
                    )

                # Fails with FlagNotFoundError before any bookkeeping exists
                await self.flag_service.get_authoritative_flag(flag_key)

                now = self._clock()
                rollout = Rollout(
                    flag_key=flag_key,
                    strategy=RolloutStrategy(stages=stage_list, name=name or default_name),
                    auto_advance=auto_advance,
                    stage_started_at=now,
                    started_at=now,
                    updated_at=now,
                )
                first = stage_list[0].percentage
                await self._write_percentage(rollout, first)

                rollout.state = RolloutState.COMPLETE if len(stage_list) == 1 else RolloutState.IN_PROGRESS
                rollout.record("start", first, at=now)
                self._rollouts[flag_key] = rollout

                if rollout.state == RolloutState.IN_PROGRESS and auto_advance:
                    self._arm_timer(flag_key)

                logger.info(
                    "rollout_started",
                    stages=[s.percentage for s in stage_list],
                    auto_advance=auto_advance,
                    state=rollout.state.value,
                )
                return self._result(rollout, "start", flag_key, message=f"Rollout started at {first}%")

        return await self._guard("start", flag_key, operation)

    async def _advance(self, rollout: Rollout, action: str, message: str = "") -> RolloutResult:
        """Move to the next stage. Caller holds the flag lock and checked the state."""
        next_index = rollout.stage_index + 1
        stage = rollout.strategy.stages[next_index]
        await self._write_percentage(rollout, stage.percentage)

        rollout.strategy.current_stage_index = next_index
        rollout.stage_started_at = self._clock()
        rollout.last_reason = message or None
        if rollout.strategy.is_last_stage:
            rollout.state = RolloutState.COMPLETE
            self._cancel_timer(rollout.flag_key)
        else:
            rollout.state = RolloutState.IN_PROGRESS
        rollout.record(action, stage.percentage, message, at=rollout.stage_started_at)

        logger.info(
            "rollout_stage_advanced",
            stage_index=next_index,
            percentage=stage.percentage,
            state=rollout.state.value,
        )
        return self._result(
            rollout, action, rollout.flag_key, message=message or f"Advanced to stage {next_index} ({stage.percentage}%)"
        )

    async def advance_stage(self, flag_key: str) -> RolloutResult:
        """Manual advance. From a rolled-back rollout this resumes progression."""

        async def operation() -> RolloutResult:
            async with self._lock_for(flag_key):
                rollout = self._require_rollout(flag_key)
                if rollout.state == RolloutState.EMERGENCY_DISABLED:
                    raise InvalidRolloutTransitionError(f"Flag '{flag_key}' was emergency disabled")
                if rollout.state == RolloutState.ROLLED_BACK and rollout.stage_index < 0:
                    raise InvalidRolloutTransitionError(f"Rollout of '{flag_key}' was rolled back to 0% and is closed")
                if rollout.state == RolloutState.COMPLETE or rollout.strategy.is_last_stage:
                    raise InvalidRolloutTransitionError(f"Rollout of '{flag_key}' is already at its final stage")

                resumed = rollout.state == RolloutState.ROLLED_BACK
                result = await self._advance(rollout, "advance")
                if resumed:
                    logger.info("rollout_resumed_after_rollback", stage_index=rollout.stage_index)
                elif rollout.auto_advance and rollout.state == RolloutState.IN_PROGRESS and not self.has_timer(flag_key):
                    self._arm_timer(flag_key)
                return result

        return await self._guard("advance", flag_key, operation)

    async def auto_advance(self, flag_key: str) -> RolloutResult:
        """One timer step: advance if the stage elapsed and its criteria hold."""

        async def operation() -> RolloutResult:
            async with self._lock_for(flag_key):
                rollout = self._require_rollout(flag_key)
                if rollout.state != RolloutState.IN_PROGRESS or not rollout.auto_advance:
                    raise InvalidRolloutTransitionError(
                        f"Rollout of '{flag_key}' is not auto-advancing ({rollout.state.value})"
                    )

                remaining = self._seconds_until_due(rollout)
                if remaining is None:
                    return self._result(
                        rollout,
                        "auto_advance",
                        flag_key,
                        success=False,
                        message="Current stage has no duration; advance it manually",
                        error_code=STAGE_IN_PROGRESS,
                    )
                if remaining > 0:
                    return self._result(
                        rollout,
                        "auto_advance",
                        flag_key,
                        success=False,
                        message=f"Stage {rollout.stage_index} still running ({remaining:.0f}s left)",
                        error_code=STAGE_IN_PROGRESS,
                    )

                criteria = rollout.strategy.current_stage.success_criteria
                if criteria is None:
                    return await self._advance(rollout, "auto_advance")

                passed, observed, detail = await self._check_criteria(criteria)
                if passed:
                    return await self._advance(rollout, "auto_advance", message=detail)
                return await self._halt_on_failed_criteria(rollout, criteria, observed, detail)

        return await self._guard("auto_advance", flag_key, operation)

    async def _halt_on_failed_criteria(
        self, rollout: Rollout, criteria: SuccessCriteria, observed: Optional[float], detail: str
    ) -> RolloutResult:
        """Abort the pending advance and hold the current stage's percentage."""
        current = rollout.strategy.current_stage.percentage
        await self._write_percentage(rollout, current)

        rollout.state = RolloutState.ROLLED_BACK
        rollout.auto_advance = False
        rollout.last_reason = detail
        rollout.record("auto_rollback", current, detail, at=self._clock())
        self._cancel_timer(rollout.flag_key)

        logger.warning(
            "rollout_auto_rolled_back",
            stage_index=rollout.stage_index,
            percentage=current,
            metric=criteria.metric,
            observed=observed,
            threshold=criteria.threshold,
            detail=detail,
        )
        await self._notify(
            ROLLOUT_AUTO_ROLLED_BACK,
            rollout,
            rollout.flag_key,
            metric=criteria.metric,
            observed=observed,
            threshold=criteria.threshold,
            operator=criteria.operator.value,
            reason=detail,
        )
        return self._result(
            rollout,
            "auto_advance",
            rollout.flag_key,
            success=False,
            message=f"Success criteria failed, rollout halted at {current}%: {detail}",
            error_code=SUCCESS_CRITERIA_FAILED,
        )

    async def rollback(self, flag_key: str, reason: Optional[str] = None) -> RolloutResult:
        """Step back to the previous stage's percentage (0% from the first stage)."""

        async def operation() -> RolloutResult:
            async with self._lock_for(flag_key):
                rollout = self._require_rollout(flag_key)
                if rollout.state == RolloutState.EMERGENCY_DISABLED:
                    raise InvalidRolloutTransitionError(f"Flag '{flag_key}' was emergency disabled")
                if rollout.stage_index < 0:
                    raise InvalidRolloutTransitionError(f"Rollout of '{flag_key}' is already rolled back to 0%")

                self._cancel_timer(flag_key)
                previous_index = rollout.stage_index - 1
                target = rollout.strategy.stages[previous_index].percentage if previous_index >= 0 else 0
                from_percentage = rollout.last_written_percentage
                await self._write_percentage(rollout, target)

                rollout.strategy.current_stage_index = previous_index
                rollout.state = RolloutState.ROLLED_BACK
                rollout.auto_advance = False
                rollout.stage_started_at = self._clock()
                rollout.last_reason = reason
                rollout.record("rollback", target, reason or "", at=rollout.stage_started_at)

                logger.warning(
                    "rollout_rolled_back",
                    from_percentage=from_percentage,
                    to_percentage=target,
                    stage_index=previous_index,
                    reason=reason,
                )
                await self._notify(
                    ROLLOUT_ROLLED_BACK,
                    rollout,
                    flag_key,
                    from_percentage=from_percentage,
                    to_percentage=target,
                    reason=reason,
                )
                return self._result(rollout, "rollback", flag_key, message=f"Rolled back to {target}%")

        return await self._guard("rollback", flag_key, operation)

    async def emergency_disable(self, flag_key: str, reason: str = "") -> RolloutResult:
        """Turn the flag off in any state, with or without a rollout.

        The rollout only moves to EMERGENCY_DISABLED once the flag is off in
        the store; if the store fails, a paused auto-advance timer is re-armed.
        """

        async def operation() -> RolloutResult:
            self._cancel_timer(flag_key)
            try:
                async with self._lock_for(flag_key):
                    flag = await self.flag_service.get_authoritative_flag(flag_key)
                    already_disabled = not flag.enabled
                    if not already_disabled:
                        await self.flag_service.disable_flag(flag_key)

                    rollout = self._rollouts.get(flag_key)
                    if rollout is not None:
                        rollout.auto_advance = False
                        if rollout.state != RolloutState.EMERGENCY_DISABLED:
                            rollout.state = RolloutState.EMERGENCY_DISABLED
                            rollout.last_reason = reason or None
                            rollout.record("emergency_disable", rollout.last_written_percentage, reason, at=self._clock())
            except Exception:
                self._rearm_if_running(flag_key)
                raise

            if already_disabled:
                logger.info("emergency_disable_noop", reason=reason)
                return self._result(rollout, "emergency_disable", flag_key, message="Flag already disabled")

            logger.critical("flag_emergency_disabled", reason=reason)
            await self._notify(FLAG_EMERGENCY_DISABLED, rollout, flag_key, reason=reason)
            return self._result(rollout, "emergency_disable", flag_key, message="Flag disabled")

        return await self._guard("emergency_disable", flag_key, operation)

    async def resume_auto_advance(self, flag_key: str) -> RolloutResult:
        """Re-arm automatic progression for a non-terminal rollout.

        The current stage's clock restarts; the flag keeps its percentage.
        """

        async def operation() -> RolloutResult:
            async with self._lock_for(flag_key):
                rollout = self._require_rollout(flag_key)
                if rollout.is_terminal:
                    raise InvalidRolloutTransitionError(
                        f"Rollout of '{flag_key}' is {rollout.state.value} and cannot resume"
                    )

                if rollout.state == RolloutState.IN_PROGRESS and rollout.auto_advance and self.has_timer(flag_key):
                    return self._result(rollout, "resume", flag_key, message="Already auto-advancing")

                rollout.state = RolloutState.IN_PROGRESS
                rollout.auto_advance = True
                rollout.stage_started_at = self._clock()
                rollout.record("resume", rollout.last_written_percentage, at=rollout.stage_started_at)
                self._arm_timer(flag_key)

                logger.info("rollout_auto_advance_resumed", stage_index=rollout.stage_index)
                return self._result(rollout, "resume", flag_key, message="Automatic progression resumed")

        return await self._guard("resume", flag_key, operation)

    async def cancel_rollout(self, flag_key: str) -> RolloutResult:
        """Forget the rollout without touching the flag."""

        async def operation() -> RolloutResult:
            async with self._lock_for(flag_key):
                rollout = self._require_rollout(flag_key)
                self._cancel_timer(flag_key)
                del self._rollouts[flag_key]
                logger.info("rollout_cancelled", state=rollout.state.value)
                return self._result(rollout, "cancel", flag_key, message="Rollout cancelled; flag left unchanged")

        return await self._guard("cancel", flag_key, operation)

    async def shutdown(self) -> None:
        """Cancel every timer and wait for them to exit."""
        tasks = [task for task in (self._cancel_timer(key) for key in list(self._timers)) if task is not None]
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Cancelled rollout timer task")
        if tasks:
            logger.info(f"Stopped {len(tasks)} rollout timers")
