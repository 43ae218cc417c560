"""
Service layer for flag evaluation and progressive rollouts

This module provides services for:
- Condition evaluation and deterministic bucketing
- Targeting rule resolution
- The flag cache and the evaluation service
- Rollout orchestration, strategy presets and rule builders
- Collaborator interfaces (flag store, metrics source, notifier)
"""

from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.flag_store import FlagStore, InMemoryFlagStore
from flagrollout.services.feature_flags import FlagEvaluationService
from flagrollout.services.metrics_source import MetricsSource, StaticMetricsSource
from flagrollout.services.notification_service import LoggingNotifier, Notifier, RecordingNotifier
from flagrollout.services.rollout_orchestrator import RolloutOrchestrator
from flagrollout.services.rule_engine import RuleEngine, rule_engine

__all__ = [
    "FlagCache",
    "FlagEvaluationService",
    "FlagStore",
    "InMemoryFlagStore",
    "LoggingNotifier",
    "MetricsSource",
    "Notifier",
    "RecordingNotifier",
    "RolloutOrchestrator",
    "RuleEngine",
    "StaticMetricsSource",
    "rule_engine",
]
