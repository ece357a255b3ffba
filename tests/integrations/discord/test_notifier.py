from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from discord_notify.core.exceptions import DeliveryError
from discord_notify.core.pending.models import OriginInfo, PendingRequest, RequestKind
from discord_notify.integrations.discord.notifier import (
    ALREADY_RESOLVED_TEXT,
    DiscordNotifier,
)
from discord_notify.integrations.discord.rest import DiscordRestClient

REQUEST = PendingRequest(
    id="r1",
    kind=RequestKind.ASK,
    message="Deploy now?",
    origin=OriginInfo(pid=9, cwd="/work/app", project_name="app"),
    created_at=0,
    timeout_ms=1000,
    options=("Yes", "No"),
)


def _notifier(handler) -> tuple[DiscordNotifier, DiscordRestClient]:
    rest = DiscordRestClient(
        bot_token="tok",
        base_url="https://discord.test/api/v10",
        transport=httpx.MockTransport(handler),
        max_retries=0,
        retry_base_delay=0.0,
    )
    return DiscordNotifier(rest, user_id="user-1", logger=logging.getLogger("test")), rest


@pytest.mark.anyio
async def test_deliver_opens_dm_once_and_posts_embed() -> None:
    requests: list[tuple[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.url.path, json.loads(request.content)))
        if request.url.path.endswith("/users/@me/channels"):
            return httpx.Response(200, json={"id": "dm-1"})
        return httpx.Response(200, json={"id": f"msg-{len(requests)}"})

    notifier, rest = _notifier(handler)
    try:
        first = await notifier.deliver(REQUEST)
        second = await notifier.deliver(REQUEST)
    finally:
        await rest.close()

    assert first.channel_id == "dm-1"
    assert first.message_id == "msg-2"
    assert second.message_id == "msg-3"
    paths = [path for path, _ in requests]
    assert paths.count("/api/v10/users/@me/channels") == 1
    message_body = requests[1][1]
    assert message_body["embeds"][0]["footer"]["text"] == "app • PID 9"
    assert len(message_body["components"][0]["components"]) == 2


@pytest.mark.anyio
async def test_deliver_failure_raises_delivery_error_and_resets_channel() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path.endswith("/users/@me/channels"):
            return httpx.Response(200, json={"id": "dm-1"})
        return httpx.Response(404, json={"message": "Unknown Channel"})

    notifier, rest = _notifier(handler)
    try:
        with pytest.raises(DeliveryError):
            await notifier.deliver(REQUEST)
        with pytest.raises(DeliveryError):
            await notifier.deliver(REQUEST)
    finally:
        await rest.close()

    assert calls.count("/api/v10/users/@me/channels") == 2


@pytest.mark.anyio
async def test_mark_answered_updates_message_and_strips_buttons() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    notifier, rest = _notifier(handler)
    try:
        await notifier.mark_answered(
            interaction_id="i1",
            interaction_token="t1",
            original_embed={"description": "Deploy now?"},
            answer_label="Yes",
        )
        await notifier.reply_already_resolved(interaction_id="i2", interaction_token="t2")
    finally:
        await rest.close()

    assert bodies[0]["type"] == 7
    assert bodies[0]["data"]["components"] == []
    assert bodies[0]["data"]["embeds"][0]["description"].endswith("✅ **Yes**")
    assert bodies[1] == {
        "type": 4,
        "data": {"content": ALREADY_RESOLVED_TEXT, "flags": 64},
    }


@pytest.mark.anyio
async def test_mark_reply_answered_edits_the_request_message() -> None:
    calls: list[tuple[str, str, dict[str, Any]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"id": "m1"})

    notifier, rest = _notifier(handler)
    delivered = REQUEST.with_external_ref("m1", channel_ref="dm-9")
    try:
        await notifier.mark_reply_answered(delivered, answer_text="ship it")
        await notifier.mark_reply_answered(REQUEST, answer_text="ignored")
    finally:
        await rest.close()

    assert len(calls) == 1
    method, path, body = calls[0]
    assert (method, path) == ("PATCH", "/api/v10/channels/dm-9/messages/m1")
    assert body["components"] == []
    assert body["embeds"][0]["description"].startswith("Deploy now?")
    assert body["embeds"][0]["description"].endswith("✅ **ship it**")
