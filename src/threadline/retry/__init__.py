"""Retry queue for messages whose routing failed, and its dead-letter store."""

from threadline.retry.policy import RetryPolicy
from threadline.retry.sweeper import RetrySweeper, SweepSummary

__all__ = ["RetryPolicy", "RetrySweeper", "SweepSummary"]
