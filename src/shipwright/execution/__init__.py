"""Shipwright execution: retry policy and per-target mutual exclusion.

::

    RetryContext(ExponentialBackoff)   ─ bounded publish retries
    TargetLockRegistry                 ─ one run per host, in process
    LedgerLock / ConcurrencyGuard      ─ one run per host, across processes
"""

from shipwright.execution.concurrency import ConcurrencyGuard, LedgerLock, TargetLockRegistry
from shipwright.execution.retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy

__all__ = [
    "ConcurrencyGuard",
    "ExponentialBackoff",
    "LedgerLock",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
    "TargetLockRegistry",
]
