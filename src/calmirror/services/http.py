"""Authenticated HTTP client with retry and exponential backoff."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type, retry_if_result,
    stop_after_attempt, wait_exponential,
)

from ..config import Settings
from .base import TransientHttpError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


def is_retryable_status(status_code: int) -> bool:
    """429 and every 5xx are worth retrying."""
    return status_code == 429 or 500 <= status_code < 600


class RetryingClient:
    """Issues bearer-authenticated requests against the Google Calendar API.

    Responses with status 429 or 5xx, and transport failures, are retried up
    to ``max_retries`` times with a delay of ``base_delay * 2 ** attempt``.
    Any other response is returned as is; once retries are exhausted the last
    response is returned and interpreting it is up to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        token_provider: TokenProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.base_url = settings.google_api_base_url.rstrip('/')
        self.max_retries = settings.sync_config.max_retries
        self.base_delay = settings.sync_config.retry_base_delay_seconds
        self._token_provider = token_provider
        self._client = http_client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self._sleep = sleep or asyncio.sleep
        self.logger = logger.getChild('retrying_client')

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Raises:
            TransientHttpError: If the network kept failing on every attempt
            AuthenticationError: If no valid access token can be obtained
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            retry=(
                retry_if_result(lambda response: is_retryable_status(response.status_code))
                | retry_if_exception_type(httpx.TransportError)
            ),
            before_sleep=self._log_retry,
            retry_error_callback=lambda state: state.outcome.result(),
            sleep=self._sleep,
        )
        try:
            return await retrying(self._send, method, path, params, json)
        except httpx.TransportError as e:
            raise TransientHttpError(f"{method} {path} failed after {self.max_retries} retries: {e}")

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        token = await self._token_provider()
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
        }
        return await self._client.request(
            method, f"{self.base_url}{path}", params=params, json=json, headers=headers
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        if outcome.failed:
            reason = repr(outcome.exception())
        else:
            reason = f"HTTP {outcome.result().status_code}"
        self.logger.warning(
            f"Request failed ({reason}), retry {retry_state.attempt_number}/{self.max_retries} "
            f"in {retry_state.next_action.sleep:.2f}s"
        )

    async def close(self) -> None:
        await self._client.aclose()
