"""Retry/fallback engine shared by every remote model call.

A logical capability (detection, chat, suggestion, image generation) is backed
by an ordered list of interchangeable candidate models, each usually drawing
on its own quota pool. ``ModelInvoker.invoke`` walks that list strictly in
order and returns the first success:

- rate/quota failure with a provider retry delay at or below the ceiling:
  sleep exactly that long and retry the same candidate once
- any other failure (including a rate failure without a usable delay):
  sleep the chain's fixed backoff and advance to the next candidate

When every candidate has failed, a single ``QuotaExhaustedError`` (all final
failures were rate signals) or ``ProviderError`` is raised carrying the last
observed error. Nothing is merged across candidates.
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Tuple

from ..core.exceptions import ProviderError, QuotaExhaustedError, RateLimitError

logger = logging.getLogger(__name__)

RETRY_DELAY_PATTERN = re.compile(r'retry(?:_?delay)?(?:\s+in)?["\'\s:]*(\d+(?:\.\d+)?)\s*s', re.IGNORECASE)
RATE_LIMIT_MARKERS = ("429", "RESOURCE_EXHAUSTED", "rate limit", "quota")

CandidateCall = Callable[[str, Any], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[Any]]


def parse_retry_delay(message: str) -> Optional[int]:
    """Extract a provider-reported retry delay in whole seconds (rounded up).

    Understands both ``"retryDelay": "34s"`` payloads and ``retry in 34.07s`` prose.
    """
    if not message:
        return None
    match = RETRY_DELAY_PATTERN.search(message)
    if not match:
        return None
    return int(math.ceil(float(match.group(1))))


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class FailureClass:
    kind: FailureKind
    retry_after: Optional[int] = None


class FailureClassifier(Protocol):
    def classify(self, error: BaseException) -> FailureClass:
        ...


class QuotaAwareClassifier:
    """Default strategy: HTTP 429 / RESOURCE_EXHAUSTED are rate signals, everything else a failure."""

    def classify(self, error: BaseException) -> FailureClass:
        if isinstance(error, RateLimitError):
            return FailureClass(FailureKind.RATE_LIMITED, error.retry_after)

        message = str(error)
        code = getattr(error, "code", None)
        if code == 429 or any(marker.lower() in message.lower() for marker in RATE_LIMIT_MARKERS):
            return FailureClass(FailureKind.RATE_LIMITED, parse_retry_delay(message))

        return FailureClass(FailureKind.FAILED)


@dataclass(slots=True)
class CandidateChain:
    """Ordered candidate models for one logical capability."""
    capability: str
    candidates: Tuple[str, ...]
    timeout: float
    backoff: float
    classifier: FailureClassifier = field(default_factory=QuotaAwareClassifier)

    def __post_init__(self):
        self.candidates = tuple(self.candidates)
        if not self.candidates:
            raise ValueError(f"Capability '{self.capability}' needs at least one candidate model")


@dataclass(slots=True)
class InvocationResult:
    output: Any
    model: str
    attempts: int
    elapsed: float


class ModelInvoker:
    """Sequential candidate walker; holds no state between calls."""

    def __init__(self, retry_delay_ceiling: float = 40,
                 sleep: SleepFn = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.retry_delay_ceiling = retry_delay_ceiling
        self._sleep = sleep
        self._clock = clock

    async def invoke(self, chain: CandidateChain, call: CandidateCall, payload: Any = None) -> InvocationResult:
        """Run ``call(model, payload)`` against each candidate until one succeeds.

        Raises:
            QuotaExhaustedError: every candidate ended on a rate/quota failure
            ProviderError: every candidate failed, at least one for another reason
        """
        started = self._clock()
        attempts = 0
        last_error: Optional[BaseException] = None
        last_model: Optional[str] = None
        last_retry_after: Optional[int] = None
        all_rate_limited = True

        for index, model in enumerate(chain.candidates):
            retried = False
            while True:
                attempts += 1
                logger.info(f"[{chain.capability}] Trying model: {model}")
                try:
                    output = await asyncio.wait_for(call(model, payload), timeout=chain.timeout)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if isinstance(e, asyncio.TimeoutError):
                        e = TimeoutError(f"{model} timed out after {chain.timeout}s")
                    last_error = e
                    last_model = model
                    failure = chain.classifier.classify(e)
                    logger.warning(f"[{chain.capability}] Failed with {model} ({failure.kind.value}): {str(e)[:200]}")

                    if failure.kind is FailureKind.RATE_LIMITED:
                        last_retry_after = failure.retry_after
                        if (not retried and failure.retry_after is not None
                                and failure.retry_after <= self.retry_delay_ceiling):
                            logger.info(f"[{chain.capability}] 429 on {model}, waiting {failure.retry_after}s then retrying")
                            await self._sleep(failure.retry_after)
                            retried = True
                            continue
                    else:
                        all_rate_limited = False
                    break
                else:
                    elapsed = self._clock() - started
                    logger.info(f"[{chain.capability}] Success with {model} after {attempts} attempt(s)")
                    return InvocationResult(output=output, model=model, attempts=attempts, elapsed=elapsed)

            if index < len(chain.candidates) - 1:
                await self._sleep(chain.backoff)

        message = f"All {chain.capability} models failed. Last error: {last_error}"
        logger.error(f"[{chain.capability}] {message}")
        if all_rate_limited:
            raise QuotaExhaustedError(message, last_error=last_error, model=last_model,
                                      attempts=attempts, retry_after=last_retry_after)
        raise ProviderError(message, last_error=last_error, model=last_model, attempts=attempts)
