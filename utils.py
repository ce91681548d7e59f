#!/usr/bin/env python3
"""
Utility functions for the IMAP sync engine.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class RetryResult:
    """Outcome of retry_operation: either a value or the last error."""

    value: Any = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def retry_operation(operation: Callable[[], Any], max_retries: int, delay: float,
                    description: str = "operation", sleep: Callable[[float], None] = time.sleep) -> RetryResult:
    """Call ``operation`` once plus up to ``max_retries`` retries.

    Waits ``delay`` seconds between attempts. Never raises for failures of
    the operation itself; the last exception is returned in the result.
    """
    result = RetryResult()
    for attempt in range(max_retries + 1):
        result.attempts = attempt + 1
        try:
            result.value = operation()
            result.error = None
            return result
        except Exception as e:
            result.error = e
            if attempt == max_retries:
                break
            logging.warning(f"{description} attempt {attempt + 1} failed: {e}. Retrying in {delay:g}s...")
            if delay > 0:
                sleep(delay)
    return result
