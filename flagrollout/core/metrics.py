"""Prometheus metrics for flag evaluation and rollout orchestration."""

from prometheus_client import Counter, Gauge, Histogram, Info

from flagrollout.core.logging import get_logger

logger = get_logger(__name__)


def _safe_counter(*args, **kwargs):
    try:
        return Counter(*args, **kwargs)
    except ValueError:
        # Already registered (module reloaded in tests); return a no-op
        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def inc(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_histogram(*args, **kwargs):
    try:
        return Histogram(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def observe(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_gauge(*args, **kwargs):
    try:
        return Gauge(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def set(self, *args, **kwargs):
                pass

            def inc(self, *args, **kwargs):
                pass

            def dec(self, *args, **kwargs):
                pass

        return DummyMetric()


# Application info
try:
    app_info = Info("flagrollout_app", "Flag rollout engine information")
    app_info.info({"version": "0.1.0"})
except ValueError:
    pass

# Evaluation Metrics
flag_evaluations_total = _safe_counter(
    "flagrollout_flag_evaluations_total",
    "Flag evaluations by outcome reason",
    ["reason"],
)
flag_configuration_errors_total = _safe_counter(
    "flagrollout_flag_configuration_errors_total",
    "Malformed conditions encountered during evaluation",
    ["kind"],
)

# Cache Metrics
flag_cache_refresh_total = _safe_counter(
    "flagrollout_flag_cache_refresh_total",
    "Flag cache refresh attempts",
    ["outcome"],
)
flag_cache_refresh_duration_seconds = _safe_histogram(
    "flagrollout_flag_cache_refresh_duration_seconds",
    "Duration of full flag cache refreshes",
)
flag_cache_entries = _safe_gauge("flagrollout_flag_cache_entries", "Flags held in the current cache snapshot")

# Rollout Metrics
rollout_transitions_total = _safe_counter(
    "flagrollout_rollout_transitions_total",
    "Rollout state machine transitions",
    ["action", "outcome"],
)
rollout_percentage = _safe_gauge(
    "flagrollout_rollout_percentage",
    "Global rollout percentage last written by the orchestrator",
    ["flag_key"],
)
rollout_divergence_total = _safe_counter(
    "flagrollout_rollout_divergence_total",
    "Stored rollout percentage differed from the orchestrator's last write",
    ["flag_key"],
)
success_criteria_checks_total = _safe_counter(
    "flagrollout_success_criteria_checks_total",
    "Success criteria evaluations",
    ["metric", "outcome"],
)
