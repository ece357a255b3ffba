from __future__ import annotations

import logging
from typing import Any, Optional

from ...core.delivery import DeliveredMessage
from ...core.exceptions import DeliveryError
from ...core.logging_utils import log_event
from ...core.pending.models import PendingRequest
from .components import (
    build_answered_embed,
    build_request_embed,
    build_request_message,
)
from .constants import (
    DISCORD_CALLBACK_CHANNEL_MESSAGE,
    DISCORD_CALLBACK_UPDATE_MESSAGE,
    DISCORD_FLAG_EPHEMERAL,
)
from .errors import DiscordAPIError, DiscordError
from .rest import DiscordRestClient

ALREADY_RESOLVED_TEXT = "This request was already resolved."


class DiscordNotifier:
    """Renders requests as DMs to the configured user."""

    def __init__(
        self,
        rest: DiscordRestClient,
        *,
        user_id: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._rest = rest
        self._user_id = user_id
        self._logger = logger or logging.getLogger(__name__)
        self._dm_channel_id: Optional[str] = None

    async def _dm_channel(self) -> str:
        if self._dm_channel_id is not None:
            return self._dm_channel_id
        channel = await self._rest.create_dm_channel(recipient_id=self._user_id)
        channel_id = channel.get("id")
        if not channel_id:
            raise DiscordAPIError("Discord did not return a DM channel id")
        self._dm_channel_id = str(channel_id)
        return self._dm_channel_id

    async def deliver(self, request: PendingRequest) -> DeliveredMessage:
        try:
            channel_id = await self._dm_channel()
            message = await self._rest.create_channel_message(
                channel_id=channel_id, payload=build_request_message(request)
            )
        except DiscordError as exc:
            if isinstance(exc, DiscordAPIError) and exc.status_code == 404:
                self._dm_channel_id = None
            log_event(
                self._logger,
                logging.WARNING,
                "discord.deliver.failed",
                request_id=request.id,
                exc=exc,
            )
            raise DeliveryError(
                f"Discord delivery failed: {exc}",
                user_message=exc.user_message,
            ) from exc
        message_id = message.get("id")
        if not message_id:
            raise DeliveryError("Discord did not return a message id")
        log_event(
            self._logger,
            logging.INFO,
            "discord.deliver.sent",
            request_id=request.id,
            message_id=message_id,
            channel_id=channel_id,
        )
        return DeliveredMessage(message_id=str(message_id), channel_id=channel_id)

    async def mark_answered(
        self,
        *,
        interaction_id: str,
        interaction_token: str,
        original_embed: Optional[dict[str, Any]],
        answer_label: str,
    ) -> None:
        await self._rest.create_interaction_response(
            interaction_id=interaction_id,
            interaction_token=interaction_token,
            payload={
                "type": DISCORD_CALLBACK_UPDATE_MESSAGE,
                "data": {
                    "embeds": [build_answered_embed(original_embed, answer_label)],
                    "components": [],
                },
            },
        )

    async def mark_reply_answered(
        self,
        request: PendingRequest,
        *,
        answer_text: str,
        original_embed: Optional[dict[str, Any]] = None,
    ) -> None:
        """Edit the request DM after a text reply answered it."""
        if request.channel_ref is None or request.external_message_ref is None:
            return
        embed = original_embed or build_request_embed(request)
        await self._rest.edit_channel_message(
            channel_id=request.channel_ref,
            message_id=request.external_message_ref,
            payload={
                "embeds": [build_answered_embed(embed, answer_text)],
                "components": [],
            },
        )

    async def reply_already_resolved(
        self, *, interaction_id: str, interaction_token: str
    ) -> None:
        await self._rest.create_interaction_response(
            interaction_id=interaction_id,
            interaction_token=interaction_token,
            payload={
                "type": DISCORD_CALLBACK_CHANNEL_MESSAGE,
                "data": {"content": ALREADY_RESOLVED_TEXT, "flags": DISCORD_FLAG_EPHEMERAL},
            },
        )
