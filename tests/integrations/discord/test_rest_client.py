from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from discord_notify.integrations.discord.errors import (
    DiscordAPIError,
    DiscordPermanentError,
    DiscordTransientError,
)
from discord_notify.integrations.discord.rest import DiscordRestClient


def _client(handler, **kwargs: Any) -> DiscordRestClient:
    return DiscordRestClient(
        bot_token="abc123",
        base_url="https://discord.test/api/v10",
        transport=httpx.MockTransport(handler),
        retry_base_delay=0.0,
        **kwargs,
    )


@pytest.mark.anyio
async def test_discord_rest_client_sets_authorization_header() -> None:
    observed: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        observed["authorization"] = request.headers.get("Authorization")
        observed["path"] = request.url.path
        return httpx.Response(200, json={"url": "wss://gateway.discord.gg"})

    client = _client(handler)
    try:
        payload = await client.get_gateway_bot()
    finally:
        await client.close()

    assert payload["url"] == "wss://gateway.discord.gg"
    assert observed["authorization"] == "Bot abc123"
    assert observed["path"] == "/api/v10/gateway/bot"


@pytest.mark.anyio
async def test_dm_channel_and_message_routes() -> None:
    observed: list[tuple[str, str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        observed.append((request.method, request.url.path, body))
        if request.url.path.endswith("/users/@me/channels"):
            return httpx.Response(200, json={"id": "dm-1"})
        if request.url.path.endswith("/callback"):
            return httpx.Response(204)
        return httpx.Response(200, json={"id": "msg-1"})

    async with _client(handler) as client:
        channel = await client.create_dm_channel(recipient_id="user-9")
        message = await client.create_channel_message(
            channel_id="dm-1", payload={"content": "hi"}
        )
        await client.create_interaction_response(
            interaction_id="int-1",
            interaction_token="tok",
            payload={"type": 7, "data": {}},
        )
        edited = await client.edit_channel_message(
            channel_id="dm-1", message_id="msg-1", payload={"components": []}
        )

    assert channel == {"id": "dm-1"}
    assert message == {"id": "msg-1"}
    assert edited == {"id": "msg-1"}
    assert observed == [
        ("POST", "/api/v10/users/@me/channels", {"recipient_id": "user-9"}),
        ("POST", "/api/v10/channels/dm-1/messages", {"content": "hi"}),
        ("POST", "/api/v10/interactions/int-1/tok/callback", {"type": 7, "data": {}}),
        ("PATCH", "/api/v10/channels/dm-1/messages/msg-1", {"components": []}),
    ]


@pytest.mark.anyio
async def test_rate_limit_honours_retry_after(monkeypatch: pytest.MonkeyPatch) -> None:
    from discord_notify.integrations.discord import rest as rest_module

    sleeps: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    monkeypatch.setattr(rest_module.asyncio, "sleep", _fake_sleep)
    calls = 0

    def handler(_request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(429, headers={"Retry-After": "1.5"}, json={})
        return httpx.Response(200, json={"id": "msg-1"})

    async with _client(handler) as client:
        message = await client.create_channel_message(channel_id="c", payload={})

    assert message == {"id": "msg-1"}
    assert sleeps == [1.5]


@pytest.mark.anyio
async def test_server_errors_retry_then_raise_transient(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    from discord_notify.integrations.discord import rest as rest_module

    async def _fake_sleep(_seconds: float) -> None:
        return None

    monkeypatch.setattr(rest_module.asyncio, "sleep", _fake_sleep)
    calls = 0

    def handler(_request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(502, text="bad gateway")

    async with _client(handler, max_retries=2) as client:
        with pytest.raises(DiscordTransientError) as excinfo:
            await client.create_channel_message(channel_id="c", payload={})

    assert calls == 3
    assert excinfo.value.status_code == 502


@pytest.mark.anyio
async def test_auth_failures_are_permanent() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "Missing Access"})

    async with _client(handler) as client:
        with pytest.raises(DiscordPermanentError) as excinfo:
            await client.create_dm_channel(recipient_id="u")

    assert excinfo.value.status_code == 403
    assert excinfo.value.user_message


@pytest.mark.anyio
async def test_client_errors_carry_status_code() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Unknown Channel"})

    async with _client(handler) as client:
        with pytest.raises(DiscordAPIError) as excinfo:
            await client.create_channel_message(channel_id="gone", payload={})

    assert excinfo.value.status_code == 404
    assert not isinstance(excinfo.value, DiscordTransientError)


@pytest.mark.anyio
async def test_network_errors_become_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    from discord_notify.integrations.discord import rest as rest_module

    async def _fake_sleep(_seconds: float) -> None:
        return None

    monkeypatch.setattr(rest_module.asyncio, "sleep", _fake_sleep)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler, max_retries=1) as client:
        with pytest.raises(DiscordTransientError):
            await client.get_gateway_bot()
