"""Bounded retry combinators used by the setup and migration pipeline."""

from appdb.execution.retry import RetryContext, RetryPolicy, retry_retryable

__all__ = ["RetryContext", "RetryPolicy", "retry_retryable"]
