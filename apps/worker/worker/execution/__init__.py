"""Execution policies shared by pipeline steps."""

from worker.execution.retry import RetryPolicy, retry_transient

__all__ = ["RetryPolicy", "retry_transient"]
