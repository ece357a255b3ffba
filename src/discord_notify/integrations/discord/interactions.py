from __future__ import annotations

from typing import Any, Optional


def _as_id(value: object) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def extract_interaction_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("id"))


def extract_interaction_token(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("token"))


def extract_guild_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("guild_id"))


def extract_user_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    member = interaction_payload.get("member")
    if isinstance(member, dict):
        member_user = member.get("user")
        if isinstance(member_user, dict):
            user_id = _as_id(member_user.get("id"))
            if user_id:
                return user_id
    user = interaction_payload.get("user")
    if isinstance(user, dict):
        return _as_id(user.get("id"))
    return None


def is_component_interaction(interaction_payload: dict[str, Any]) -> bool:
    return interaction_payload.get("type") == 3


def extract_component_custom_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    data = interaction_payload.get("data")
    if not isinstance(data, dict):
        return None
    return _as_id(data.get("custom_id"))


def _first_embed(message: Any) -> Optional[dict[str, Any]]:
    if not isinstance(message, dict):
        return None
    embeds = message.get("embeds")
    if isinstance(embeds, list) and embeds and isinstance(embeds[0], dict):
        return embeds[0]
    return None


def extract_message_embed(interaction_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
    return _first_embed(interaction_payload.get("message"))


def extract_message_author(message_payload: dict[str, Any]) -> tuple[Optional[str], bool]:
    """(author id, is bot) for a MESSAGE_CREATE payload."""
    author = message_payload.get("author")
    if not isinstance(author, dict):
        return None, False
    return _as_id(author.get("id")), bool(author.get("bot"))


def extract_referenced_message_id(message_payload: dict[str, Any]) -> Optional[str]:
    reference = message_payload.get("message_reference")
    if not isinstance(reference, dict):
        return None
    return _as_id(reference.get("message_id"))


def extract_referenced_message_embed(
    message_payload: dict[str, Any],
) -> Optional[dict[str, Any]]:
    return _first_embed(message_payload.get("referenced_message"))
