"""flagrollout - feature flag evaluation and progressive rollout engine."""

__version__ = "0.1.0"
