# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Retry Utilities - Exponential backoff with jitter for downstream calls
"""
import time
import random
import logging
from functools import wraps
from typing import Callable, TypeVar, Any, Optional

import requests

from utils.errors import ApiError

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_MESSAGE_MARKERS = ('quota', 'rate limit', 'backend error')


def http_status_of(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status for ApiError, googleapiclient HttpError and requests errors"""
    if isinstance(exc, ApiError):
        return exc.status_code
    resp = getattr(exc, 'resp', None)
    if resp is not None and getattr(resp, 'status', None) is not None:
        try:
            return int(resp.status)
        except (TypeError, ValueError):
            return None
    response = getattr(exc, 'response', None)
    if response is not None and getattr(response, 'status_code', None) is not None:
        return response.status_code
    code = getattr(exc, 'code', None)
    if isinstance(code, int):
        return code
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """Rate limiting, server errors and network failures are worth retrying"""
    if isinstance(exc, ApiError):
        return exc.retryable
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    status = http_status_of(exc)
    if status is not None and (status == 429 or 500 <= status <= 599):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


class RetryPolicy:
    """
    Bounded retry with exponential backoff and jitter

    One instance is created per collaborator (ServiceTitan, Sheets, Graph)
    so each can have its own attempt count and backoff curve.
    """

    def __init__(
        self,
        name: str,
        max_retries: int = 3,
        base_delay: float = 0.25,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: float = 0.1,
        retry_if: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.name = name
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_if = retry_if
        self.sleep = sleep

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based), capped and jittered"""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return max(0.0, delay)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempt = 0
        label = getattr(func, '__name__', repr(func))

        while True:
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"[{self.name}] {label} succeeded after {attempt} retries")
                return result
            except Exception as e:
                if not self.retry_if(e):
                    raise

                if attempt >= self.max_retries:
                    logger.error(
                        f"[{self.name}] Max retries ({self.max_retries}) exceeded for {label}. "
                        f"Final error: {type(e).__name__}: {e}"
                    )
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(
                    f"[{self.name}] Error in {label} (attempt {attempt + 1}/{self.max_retries + 1}): "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.2f} seconds..."
                )
                self.sleep(delay)
                attempt += 1

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.call(func, *args, **kwargs)
        return wrapper
