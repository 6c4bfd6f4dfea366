"""Epicflow - event-sourced orchestration of multi-team software delivery.

Drives epics and stories through dependency-ordered, isolated team pipelines
with checkpointed recovery, a failure circuit breaker and tiered merge-conflict
resolution.
"""

__version__ = "0.1.0"
