from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from ...core.pending.models import PendingRequest, RequestKind
from .constants import (
    DISCORD_BUTTON_LABEL_LIMIT,
    DISCORD_BUTTONS_PER_ROW,
    DISCORD_COLOR_ANSWERED,
    DISCORD_COLOR_ASK,
    DISCORD_COLOR_SEND,
    DISCORD_EMBED_DESCRIPTION_LIMIT,
    DISCORD_MAX_BUTTONS,
)

DISCORD_BUTTON_STYLE_PRIMARY = 1
DISCORD_BUTTON_STYLE_SECONDARY = 2

REQUEST_CUSTOM_ID_PREFIX = "req"
_CUSTOM_ID_RE = re.compile(r"^req:([^:]+):(\d+)$")


def build_action_row(components: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "type": 1,
        "components": components,
    }


def build_button(
    label: str,
    custom_id: str,
    *,
    style: int = DISCORD_BUTTON_STYLE_SECONDARY,
    disabled: bool = False,
) -> dict[str, Any]:
    return {
        "type": 2,
        "style": style,
        "label": label,
        "custom_id": custom_id,
        "disabled": disabled,
    }


def option_custom_id(request_id: str, index: int) -> str:
    return f"{REQUEST_CUSTOM_ID_PREFIX}:{request_id}:{index}"


def parse_option_custom_id(custom_id: Optional[str]) -> Optional[tuple[str, int]]:
    if not custom_id:
        return None
    match = _CUSTOM_ID_RE.match(custom_id)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def truncate_label(label: str) -> str:
    return label[:DISCORD_BUTTON_LABEL_LIMIT]


def build_option_rows(request_id: str, options: Sequence[str]) -> list[dict[str, Any]]:
    """Buttons ``req:<id>:<index>``, five per row, at most 25."""
    buttons = [
        build_button(
            truncate_label(option),
            option_custom_id(request_id, index),
            style=DISCORD_BUTTON_STYLE_PRIMARY,
        )
        for index, option in enumerate(options[:DISCORD_MAX_BUTTONS])
    ]
    return [
        build_action_row(buttons[start : start + DISCORD_BUTTONS_PER_ROW])
        for start in range(0, len(buttons), DISCORD_BUTTONS_PER_ROW)
    ]


def _truncate_description(text: str) -> str:
    if len(text) <= DISCORD_EMBED_DESCRIPTION_LIMIT:
        return text
    return text[: DISCORD_EMBED_DESCRIPTION_LIMIT - 3] + "..."


def build_request_embed(request: PendingRequest) -> dict[str, Any]:
    origin = request.origin
    return {
        "color": DISCORD_COLOR_ASK if request.kind is RequestKind.ASK else DISCORD_COLOR_SEND,
        "description": _truncate_description(request.message),
        "footer": {"text": f"{origin.label} • PID {origin.pid}"},
    }


def build_answered_embed(
    original: Optional[dict[str, Any]], answer_label: str
) -> dict[str, Any]:
    embed = dict(original) if isinstance(original, dict) else {}
    description = embed.get("description") or ""
    suffix = f"✅ **{answer_label}**"
    combined = f"{description}\n\n{suffix}" if description else suffix
    embed["description"] = _truncate_description(combined)
    embed["color"] = DISCORD_COLOR_ANSWERED
    return embed


def build_request_message(request: PendingRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {"embeds": [build_request_embed(request)]}
    if request.kind is RequestKind.ASK and request.options:
        payload["components"] = build_option_rows(request.id, request.options)
    return payload
