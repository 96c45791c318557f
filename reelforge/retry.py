"""
Retry and backoff primitives.

Two layers use these:

    - Capability calls: every Adapter.invoke() runs through a RetryPolicy
      chosen by the capability's class (text, media, distribution).  Only
      Unavailable is retried; AuthRequired and Malformed never are.
    - Jobs: the queue uses a BackoffPolicy to push a failed job's next
      attempt into the future.

Usage:
    from reelforge.retry import with_retry, policy_for

    @with_retry(max_retries=2, base_delay=1.0)
    async def fetch(url: str) -> bytes:
        ...

    policy = policy_for(Capability.SCRIPT)
    text = await policy.execute(adapter.generate_script, strategy)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Type

from reelforge.errors import AuthRequired, Malformed, Unavailable

logger = logging.getLogger("reelforge.retry")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_RETRIES = 0
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_EXPONENTIAL_BASE = 2.0


# ===================================================================
# RETRY POLICY
# ===================================================================

@dataclass
class RetryPolicy:
    """Retry an async callable on selected exception types.

    The delay before retry *n* (0-based) is
    ``min(base_delay * exponential_base ** n, max_delay)``, multiplied by a
    random factor in [0.5, 1.5) when *jitter* is set.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    exponential_base: float = DEFAULT_EXPONENTIAL_BASE
    jitter: bool = True
    retry_on: Tuple[Type[BaseException], ...] = (Unavailable,)
    never_retry: Tuple[Type[BaseException], ...] = (AuthRequired, Malformed)
    name: str = "default"

    async def execute(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Run *func* and retry it according to this policy.

        Raises the last exception once retries are exhausted or when the
        exception is not retryable.
        """
        attempt = 0
        while True:
            try:
                result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        "Succeeded on attempt %d/%d for %s",
                        attempt + 1, self.max_retries + 1, self.name,
                    )
                return result
            except Exception as exc:
                if not self._should_retry(exc, attempt):
                    raise
                delay = self._calculate_delay(attempt)
                logger.info(
                    "Retry %d/%d for %s in %.1fs: %s",
                    attempt + 1, self.max_retries, self.name, delay, exc,
                )
                await asyncio.sleep(delay)
                attempt += 1

    def _calculate_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return round(delay, 3)

    def _should_retry(self, exc: BaseException, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        if isinstance(exc, self.never_retry):
            return False
        return isinstance(exc, self.retry_on)


# ===================================================================
# DECORATOR
# ===================================================================

def with_retry(
    policy: Optional[RetryPolicy] = None,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = (Unavailable,),
) -> Callable:
    """Decorator that wraps an async function with a RetryPolicy.

    Pass a ready-made *policy*, or the individual knobs to build one.
    """

    def decorator(func: Callable) -> Callable:
        effective = policy or RetryPolicy(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            retry_on=retry_on,
            name=func.__name__,
        )

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await effective.execute(func, *args, **kwargs)

        wrapper.retry_policy = effective  # type: ignore[attr-defined]
        return wrapper

    return decorator


# ===================================================================
# CAPABILITY POLICIES
# ===================================================================

# Keyed by CapabilityClass value; see reelforge.models.capability_class().
CAPABILITY_RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "text": RetryPolicy(max_retries=1, base_delay=2.0, name="text"),
    "media": RetryPolicy(max_retries=0, name="media"),
    "distribution": RetryPolicy(max_retries=0, name="distribution"),
}


def policy_for(capability_class: str) -> RetryPolicy:
    """Return the retry policy for a capability class ("text", "media", ...)."""
    value = getattr(capability_class, "value", capability_class)
    return CAPABILITY_RETRY_POLICIES.get(value, RetryPolicy(name=str(value)))


# ===================================================================
# JOB BACKOFF
# ===================================================================

@dataclass
class BackoffPolicy:
    """Delay schedule between job attempts.

    ``delay_for(attempts)`` takes the number of attempts already made (>= 1)
    and returns seconds to wait: exponential doubles *delay* per attempt,
    fixed always waits *delay*.  Both are capped at *max_delay*.
    """

    kind: str = "exponential"
    delay: float = 5.0
    max_delay: float = 300.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def delay_for(self, attempts: int) -> float:
        n = max(1, attempts)
        if self.kind == "fixed":
            value = self.delay
        else:
            value = self.delay * (2 ** (n - 1))
        return float(min(value, self.max_delay))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "delay": self.delay, "max_delay": self.max_delay, "extra": dict(self.extra)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> BackoffPolicy:
        data = data or {}
        return cls(
            kind=data.get("kind", "exponential"),
            delay=float(data.get("delay", 5.0)),
            max_delay=float(data.get("max_delay", 300.0)),
            extra=dict(data.get("extra", {})),
        )
