"""
Resilient HTTP calling — exponential backoff on transient failures.

Retries on 429/500/502/503/504 and on transport-level errors. The delay is
``min(initial_delay * 2**attempt, max_delay)`` unless a 429 carries a
parseable ``Retry-After`` header, which wins. When the budget runs out the
last real response is returned so callers can inspect the actual status.
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class RetryPolicy(BaseModel):
    """Retry budget for one class of calls."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.initial_delay * (2 ** attempt), self.max_delay)


# Creation is expensive to fail and cheap to wait for; polling wants fast iteration.
CREATE_POLICY = RetryPolicy(max_retries=3, initial_delay=2.0, max_delay=30.0)
POLL_POLICY = RetryPolicy(max_retries=3, initial_delay=0.5, max_delay=5.0)


def is_transient_response(response: httpx.Response) -> bool:
    return response.status_code in TRANSIENT_STATUS_CODES


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date). None if unusable."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class wait_backoff_or_retry_after(wait_base):
    """tenacity wait strategy: policy backoff, overridden by Retry-After on 429."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            response = outcome.result()
            if isinstance(response, httpx.Response) and response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    return retry_after
        return self.policy.backoff(retry_state.attempt_number - 1)


class ResilientCaller:
    """
    Wraps an ``httpx.AsyncClient`` and sends every request through a tenacity
    retry loop governed by a ``RetryPolicy``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        tag: str = "HTTP",
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self._client = client
        self._tag = tag
        self._sleep = sleep or asyncio.sleep

    async def call(
        self,
        method: str,
        url: str,
        policy: RetryPolicy,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request, retrying transient failures per ``policy``.

        Returns the final response, which may still be a non-2xx status when
        retries were exhausted. Transport errors are re-raised only if no
        response was ever received.
        """
        last_response: Optional[httpx.Response] = None

        async def _attempt() -> httpx.Response:
            nonlocal last_response
            response = await self._client.request(method, url, **kwargs)
            last_response = response
            return response

        def _log_retry(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            outcome = retry_state.outcome
            if outcome is not None and outcome.failed:
                reason = f"error {outcome.exception()!r}"
            elif outcome is not None:
                reason = f"status {outcome.result().status_code}"
            else:
                reason = "unknown"
            logger.warning(
                f"[{self._tag}] {method} {url} failed with {reason}; "
                f"retry {retry_state.attempt_number}/{policy.max_retries} in {delay:.2f}s"
            )

        def _give_up(retry_state: RetryCallState) -> httpx.Response:
            outcome = retry_state.outcome
            if outcome is not None and not outcome.failed:
                return outcome.result()
            if last_response is not None:
                return last_response
            raise outcome.exception()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_backoff_or_retry_after(policy),
            retry=(
                retry_if_exception_type(httpx.TransportError)
                | retry_if_result(is_transient_response)
            ),
            before_sleep=_log_retry,
            retry_error_callback=_give_up,
            sleep=self._sleep,
        )
        return await retrying(_attempt)
