from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx
import pytest

from discord_notify.integrations.discord.constants import (
    DISCORD_INTENT_DIRECT_MESSAGES,
    DISCORD_INTENT_MESSAGE_CONTENT,
    DISCORD_NOTIFY_INTENTS,
)
from discord_notify.integrations.discord.errors import (
    DiscordAPIError,
    DiscordPermanentError,
)
from discord_notify.integrations.discord.gateway import (
    DiscordGatewayClient,
    build_identify_payload,
    calculate_reconnect_backoff,
    gateway_close_code,
    parse_gateway_frame,
)
from discord_notify.integrations.discord.rest import DiscordRestClient


async def _noop_dispatch(_event_type: str, _payload: dict[str, object]) -> None:
    return None


def test_notify_intents_cover_direct_messages_and_content() -> None:
    assert DISCORD_NOTIFY_INTENTS == (1 << 12) | (1 << 15)
    assert DISCORD_NOTIFY_INTENTS & DISCORD_INTENT_DIRECT_MESSAGES
    assert DISCORD_NOTIFY_INTENTS & DISCORD_INTENT_MESSAGE_CONTENT


def test_build_identify_payload() -> None:
    payload = build_identify_payload(bot_token="tok", intents=DISCORD_NOTIFY_INTENTS)

    assert payload["op"] == 2
    assert payload["d"]["token"] == "tok"
    assert payload["d"]["intents"] == DISCORD_NOTIFY_INTENTS
    assert payload["d"]["properties"]["browser"] == "discord-notify"


def test_parse_gateway_frame_variants() -> None:
    frame = parse_gateway_frame('{"op": 0, "s": 3, "t": "READY", "d": {"v": 10}}')

    assert (frame.op, frame.s, frame.t, frame.d) == (0, 3, "READY", {"v": 10})
    assert parse_gateway_frame(b'{"op": 11}').op == 11
    with pytest.raises(DiscordAPIError):
        parse_gateway_frame('{"d": {}}')
    with pytest.raises(DiscordAPIError):
        parse_gateway_frame("[1]")


def test_reconnect_backoff_grows_and_caps() -> None:
    assert calculate_reconnect_backoff(0, rand_float=lambda: 0.5) == pytest.approx(1.0)
    assert calculate_reconnect_backoff(2, rand_float=lambda: 0.5) == pytest.approx(4.0)
    assert calculate_reconnect_backoff(10) == 30.0
    assert calculate_reconnect_backoff(3, max_seconds=0.0) == 0.0


def test_gateway_close_code_extraction() -> None:
    class _WithCode(Exception):
        code = 4004

    class _Received:
        code = 4014

    class _WithRcvd(Exception):
        rcvd = _Received()

    assert gateway_close_code(_WithCode()) == 4004
    assert gateway_close_code(_WithRcvd()) == 4014
    assert gateway_close_code(RuntimeError("x")) is None


@pytest.mark.anyio
async def test_run_retries_resolve_failures_without_exiting(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    from discord_notify.integrations.discord import gateway as gateway_module

    client = DiscordGatewayClient(
        bot_token="token",
        intents=0,
        logger=logging.getLogger("test.gateway"),
    )

    async def _fail_resolve() -> str:
        raise RuntimeError("resolve failed")

    monkeypatch.setattr(client, "_resolve_gateway_url", _fail_resolve)
    backoff_attempts: list[int] = []
    monkeypatch.setattr(
        gateway_module,
        "calculate_reconnect_backoff",
        lambda attempt: float(backoff_attempts.append(attempt) or 2.0),
    )
    sleep_calls: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        sleep_calls.append(seconds)
        if len(sleep_calls) == 2:
            client._stop_event.set()

    monkeypatch.setattr(gateway_module.asyncio, "sleep", _fake_sleep)
    await client.run(_noop_dispatch)

    assert backoff_attempts == [0, 1]
    assert sleep_calls == [2.0, 2.0]


@pytest.mark.anyio
async def test_run_halts_on_permanent_errors_until_stopped(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client = DiscordGatewayClient(
        bot_token="token",
        intents=0,
        logger=logging.getLogger("test.gateway"),
    )
    attempts = 0

    async def _fail_resolve() -> str:
        nonlocal attempts
        attempts += 1
        client._stop_event.set()
        raise DiscordPermanentError("invalid credentials")

    monkeypatch.setattr(client, "_resolve_gateway_url", _fail_resolve)
    await client.run(_noop_dispatch)

    assert attempts == 1


class _FakeWebSocket:
    def __init__(self, frames: list[dict[str, Any]]) -> None:
        self._hello = json.dumps(frames[0])
        self._frames = [json.dumps(frame) for frame in frames[1:]]
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

    async def recv(self) -> str:
        return self._hello

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    def __aiter__(self) -> "_FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        if not self._frames:
            raise StopAsyncIteration
        return self._frames.pop(0)


@pytest.mark.anyio
async def test_run_connection_identifies_and_dispatches_events() -> None:
    client = DiscordGatewayClient(
        bot_token="token",
        intents=DISCORD_NOTIFY_INTENTS,
        logger=logging.getLogger("test.gateway"),
    )
    websocket = _FakeWebSocket(
        [
            {"op": 10, "d": {"heartbeat_interval": 45000}},
            {"op": 0, "s": 1, "t": "READY", "d": {"user": {"id": "bot"}}},
            {"op": 1},
            {"op": 0, "s": 2, "t": "MESSAGE_CREATE", "d": {"content": "yes"}},
        ]
    )
    dispatched: list[tuple[str, dict[str, Any]]] = []

    async def _dispatch(event_type: str, payload: dict[str, Any]) -> None:
        dispatched.append((event_type, payload))

    try:
        established = await client._run_connection(websocket, _dispatch)
    finally:
        await client._cancel_heartbeat()

    assert established is True
    assert websocket.sent[0]["op"] == 2
    assert websocket.sent[0]["d"]["intents"] == DISCORD_NOTIFY_INTENTS
    assert websocket.sent[1] == {"op": 1, "d": 1}
    assert [event for event, _ in dispatched] == ["READY", "MESSAGE_CREATE"]
    assert dispatched[1][1] == {"content": "yes"}


@pytest.mark.anyio
async def test_missed_heartbeat_ack_closes_the_connection() -> None:
    client = DiscordGatewayClient(
        bot_token="token",
        intents=0,
        logger=logging.getLogger("test.gateway"),
    )
    websocket = _FakeWebSocket([{"op": 10, "d": {"heartbeat_interval": 1}}])

    await asyncio.wait_for(client._heartbeat_loop(websocket, 0.0), 1.0)

    assert websocket.sent == [{"op": 1, "d": None}]
    assert websocket.close_code == 4000


@pytest.mark.anyio
async def test_gateway_url_comes_from_the_shared_rest_client() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"url": "wss://gateway.test"})

    async with DiscordRestClient(
        bot_token="token",
        base_url="https://discord.test/api/v10",
        transport=httpx.MockTransport(handler),
    ) as rest:
        client = DiscordGatewayClient(
            bot_token="token",
            intents=0,
            logger=logging.getLogger("test.gateway"),
            rest_client=rest,
        )
        url = await client._resolve_gateway_url()

    assert url == "wss://gateway.test?v=10&encoding=json"
    assert paths == ["/api/v10/gateway/bot"]
