"""Readiness gating for starting services."""

from flotilla.readiness.poller import PollOutcome, PollResult, ReadinessPoller

__all__ = ["PollOutcome", "PollResult", "ReadinessPoller"]
