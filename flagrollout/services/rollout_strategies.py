"""Rollout strategy presets.

Ready-made stage lists for the orchestrator. The presets are conventions
only; any valid stage list can be used.

Usage:
    from flagrollout.services.rollout_strategies import canary_deployment, get_strategy

    await orchestrator.start_rollout("new-checkout", canary_deployment(), auto_advance=True)
    await orchestrator.start_rollout("search-v2", get_strategy("moderate"))
"""

from typing import Callable, Dict, List, Optional, Sequence

from flagrollout.models.rollout import CriteriaOperator, RolloutStage, RolloutStrategy, SuccessCriteria

DEFAULT_PROGRESSIVE_STAGES = [1, 5, 10, 25, 50, 100]
PROGRESSIVE_STAGE_HOURS = 24

# Named stage percentage lists
COMMON_STRATEGIES: Dict[str, List[int]] = {
    "conservative": [1, 5, 10, 25, 50, 75, 100],
    "moderate": [5, 10, 25, 50, 100],
    "aggressive": [10, 50, 100],
    "gradual": [1, 2, 5, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
}

_ERROR_RATE_BELOW_1_PERCENT = SuccessCriteria(metric="error_rate", threshold=0.01, operator=CriteriaOperator.LESS_THAN)


def progressive_rollout(
    stages: Optional[Sequence[float]] = None, duration_hours: Optional[float] = PROGRESSIVE_STAGE_HOURS
) -> RolloutStrategy:
    """Evenly timed stages (24 hours each by default)."""
    percentages = list(stages) if stages is not None else list(DEFAULT_PROGRESSIVE_STAGES)
    return RolloutStrategy(
        name="Progressive Rollout",
        stages=[
            RolloutStage(name=f"Stage {index + 1}", percentage=pct, duration_hours=duration_hours)
            for index, pct in enumerate(percentages)
        ],
    )


def canary_deployment() -> RolloutStrategy:
    """1% and 5% canaries gated on error rate, then early adopters, then GA."""
    return RolloutStrategy(
        name="Canary Deployment",
        stages=[
            RolloutStage(
                name="Canary (Internal)",
                percentage=1,
                duration_hours=2,
                success_criteria=_ERROR_RATE_BELOW_1_PERCENT,
            ),
            RolloutStage(
                name="Canary (Beta)",
                percentage=5,
                duration_hours=6,
                success_criteria=_ERROR_RATE_BELOW_1_PERCENT,
            ),
            RolloutStage(name="Early Adopters", percentage=10, duration_hours=12),
            RolloutStage(name="General Availability", percentage=100),
        ],
    )


def ring_deployment() -> RolloutStrategy:
    return RolloutStrategy(
        name="Ring Deployment",
        stages=[
            RolloutStage(name="Ring 0 - Canary", percentage=1, duration_hours=1),
            RolloutStage(name="Ring 1 - Early Adopters", percentage=10, duration_hours=12),
            RolloutStage(name="Ring 2 - General Users", percentage=50, duration_hours=24),
            RolloutStage(name="Ring 3 - All Users", percentage=100),
        ],
    )


def blue_green_deployment() -> RolloutStrategy:
    """Dark launch at 0%, a short 10% test window, then full cutover."""
    return RolloutStrategy(
        name="Blue-Green Deployment",
        stages=[
            RolloutStage(name="Blue (Current)", percentage=0),
            RolloutStage(name="Green (New) - Testing", percentage=10, duration_hours=2),
            RolloutStage(name="Green (New) - Full Cutover", percentage=100),
        ],
    )


PRESETS: Dict[str, Callable[[], RolloutStrategy]] = {
    "progressive": progressive_rollout,
    "canary": canary_deployment,
    "ring": ring_deployment,
    "blue_green": blue_green_deployment,
}


def get_strategy(name: str, duration_hours: Optional[float] = None) -> RolloutStrategy:
    """Resolve a preset or common strategy name to a fresh strategy.

    Raises:
        KeyError: unknown name
    """
    if name in PRESETS:
        return PRESETS[name]()
    if name in COMMON_STRATEGIES:
        strategy = progressive_rollout(COMMON_STRATEGIES[name], duration_hours=duration_hours)
        strategy.name = f"{name.capitalize()} Rollout"
        return strategy
    raise KeyError(name)


def available_strategies() -> List[str]:
    return sorted(list(PRESETS) + list(COMMON_STRATEGIES))
