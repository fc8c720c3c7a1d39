"""Retry helpers for storage operations and component health checks."""

import asyncio
import time
import random
from typing import Callable, Any, Optional, Dict, List, Tuple, Type
from functools import wraps
from datetime import datetime

from .exceptions import WorkflowEngineError, StorageError
from .logging import get_logger, RetryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    retry_logger = RetryLogger(func.__name__)

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                retry_logger.log_retry_success(func.__name__, attempt)
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    retry_logger.log_retry_exhausted(func.__name__, e, attempt)
                raise

            retry_logger.log_retry_attempt(func.__name__, e, attempt, config.max_attempts)
            time.sleep(config.get_delay(attempt))


class HealthChecker:
    """Runs the component checks behind ``/health/detailed``.

    Checks are plain callables returning a dict; they run on a worker thread
    so a slow database cannot stall the event loop past its timeout.
    """

    def __init__(self):
        self.checks: Dict[str, Tuple[Callable[[], Dict[str, Any]], float]] = {}

    def register_check(self, name: str, check_func: Callable[[], Dict[str, Any]], timeout: float = 5.0):
        self.checks[name] = (check_func, timeout)
        logger.info(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run one check; failures and timeouts are reported, never raised."""
        if name not in self.checks:
            return {"status": "error", "message": f"Health check '{name}' not found"}

        check_func, timeout = self.checks[name]
        start_time = time.time()
        try:
            result = {"status": "healthy", **await asyncio.wait_for(asyncio.to_thread(check_func), timeout=timeout)}
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {timeout}s"}
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.time() - start_time) * 1000, 2)
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        results = {name: await self.run_check(name) for name in self.checks}
        return {
            "overall_status": "healthy" if all(r["status"] == "healthy" for r in results.values()) else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }
