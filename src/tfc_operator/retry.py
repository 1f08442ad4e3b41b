"""Retry tracking for unsuccessful runs.

BACKOFF LIMIT:
- -1: retry indefinitely
-  0: never retry
-  N: retry up to N times after the first failure (N+1 attempts in total)

The failure counter is reset only by a successful terminal run. A retry
that is still in flight does not reset it, so a run that keeps failing
eventually exhausts the limit.
"""

from __future__ import annotations

import logging

from .models import RetryPolicy, RetryStatus, RunTrackingStatus

logger = logging.getLogger(__name__)

UNLIMITED_RETRIES = -1


def is_retry_enabled(policy: RetryPolicy | None) -> bool:
    return policy is not None and policy.backoff_limit != 0


class RetryTracker:
    """Counts consecutive run failures on a status and decides on retries."""

    def __init__(self, policy: RetryPolicy | None) -> None:
        self._policy = policy

    @property
    def enabled(self) -> bool:
        return is_retry_enabled(self._policy)

    def should_retry(self, status: RunTrackingStatus, failed_run_id: str) -> bool:
        """Record a failed run and decide whether to start a new one.

        Returns True (and bumps the counter) if the caller must start a
        replacement run. A run that was already retried is never retried
        again, so re-entering after a crash cannot double the attempts.
        """
        if not self.enabled or self._policy is None:
            return False

        retry = status.retry or RetryStatus()
        if retry.failed_run_id and retry.failed_run_id == failed_run_id:
            return False

        limit = self._policy.backoff_limit
        if limit != UNLIMITED_RETRIES and retry.failed_count >= limit:
            logger.info(
                "Backoff limit reached",
                extra={"failed_count": retry.failed_count, "backoff_limit": limit},
            )
            return False

        retry.failed_count += 1
        retry.failed_run_id = failed_run_id
        status.retry = retry
        logger.info(
            "Retrying failed run",
            extra={
                "run_id": failed_run_id,
                "failed_count": retry.failed_count,
                "backoff_limit": limit,
            },
        )
        return True

    def exhausted(self, status: RunTrackingStatus) -> bool:
        """True if no further retry would be granted."""
        if not self.enabled or self._policy is None:
            return True
        limit = self._policy.backoff_limit
        failed = status.retry.failed_count if status.retry else 0
        return limit != UNLIMITED_RETRIES and failed >= limit

    @staticmethod
    def reset(status: RunTrackingStatus) -> None:
        """Clear the failure counter after a successful terminal run."""
        if status.retry is not None:
            status.retry.failed_count = 0
            status.retry.failed_run_id = ""
