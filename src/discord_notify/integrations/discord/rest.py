from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Optional

import httpx

from ...core.logging_utils import log_event
from .constants import DISCORD_API_BASE_URL
from .errors import DiscordAPIError, DiscordPermanentError, DiscordTransientError

RETRYABLE_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.RemoteProtocolError,
)


class DiscordRestClient:
    """The slice of the Discord REST API a DM bot needs.

    Rate limits are retried after ``Retry-After``. Server errors and network
    failures back off exponentially up to ``max_retries`` and then surface as
    :class:`DiscordTransientError`; 401/403 raise
    :class:`DiscordPermanentError` straight away.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        timeout_seconds: float = 10.0,
        base_url: str = DISCORD_API_BASE_URL,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={"Authorization": f"Bot {bot_token}"},
        )
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._logger = logger or logging.getLogger(__name__)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DiscordRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def _backoff_delay(self, attempt: int) -> float:
        if self._retry_base_delay <= 0:
            return 0.0
        delay = self._retry_base_delay * (2**attempt) + random.uniform(0, 1)
        return float(min(delay, self._retry_max_delay))

    async def _backoff(self, method: str, path: str, attempt: int, reason: str) -> None:
        delay = self._backoff_delay(attempt)
        log_event(
            self._logger,
            logging.WARNING,
            "discord.rest.retry",
            method=method,
            path=path,
            reason=reason,
            attempt=attempt,
            max_retries=self._max_retries,
            delay_seconds=round(delay, 2),
        )
        await asyncio.sleep(delay)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[dict[str, Any]] = None,
    ) -> Any:
        attempt = 0
        rate_limited = 0
        while True:
            try:
                response = await self._client.request(method, path, json=payload)
            except RETRYABLE_NETWORK_ERRORS as exc:
                if attempt >= self._max_retries:
                    raise DiscordTransientError(
                        f"Discord API network error for {method} {path}: {exc}"
                    ) from exc
                attempt += 1
                await self._backoff(method, path, attempt, type(exc).__name__)
                continue
            except httpx.HTTPError as exc:
                raise DiscordTransientError(
                    f"Discord API network error for {method} {path}: {exc}"
                ) from exc

            status = response.status_code
            if status == 429:
                retry_after = _parse_retry_after(response)
                if retry_after is None or rate_limited >= self._max_retries:
                    raise DiscordTransientError(
                        f"Discord API rate limit exceeded for {method} {path}",
                        status_code=status,
                        retry_after=retry_after,
                    )
                rate_limited += 1
                log_event(
                    self._logger,
                    logging.INFO,
                    "discord.rest.rate_limited",
                    method=method,
                    path=path,
                    retry_after=retry_after,
                    attempt=rate_limited,
                )
                await asyncio.sleep(retry_after)
                continue
            if status >= 500 and attempt < self._max_retries:
                attempt += 1
                await self._backoff(method, path, attempt, f"status={status}")
                continue
            return _decode_response(method, path, response)

    async def get_gateway_bot(self) -> dict[str, Any]:
        payload = await self._request("GET", "/gateway/bot")
        return payload if isinstance(payload, dict) else {}

    async def create_dm_channel(self, *, recipient_id: str) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/users/@me/channels",
            payload={"recipient_id": recipient_id},
        )
        return response if isinstance(response, dict) else {}

    async def create_channel_message(
        self,
        *,
        channel_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def edit_channel_message(
        self,
        *,
        channel_id: str,
        message_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def create_interaction_response(
        self,
        *,
        interaction_id: str,
        interaction_token: str,
        payload: dict[str, Any],
    ) -> None:
        await self._request(
            "POST",
            f"/interactions/{interaction_id}/{interaction_token}/callback",
            payload=payload,
        )


def _decode_response(method: str, path: str, response: httpx.Response) -> Any:
    status = response.status_code
    if response.is_success:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise DiscordAPIError(
                f"Discord API returned non-JSON success response for {method} {path}"
            ) from exc
    preview = (response.text or "").strip().replace("\n", " ")[:200]
    detail = f"{method} {path}: status={status} body={preview!r}"
    if status >= 500:
        raise DiscordTransientError(
            f"Discord API server error for {detail}", status_code=status
        )
    if status in (401, 403):
        raise DiscordPermanentError(
            f"Discord API authentication failure for {detail}",
            status_code=status,
            user_message="Discord rejected the bot token or lacks access.",
        )
    raise DiscordAPIError(f"Discord API request failed for {detail}", status_code=status)


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return 0.0
