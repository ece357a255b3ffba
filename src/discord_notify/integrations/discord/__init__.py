"""Discord edge: REST, gateway, DM notifier and reply routing."""

from .constants import (
    DISCORD_API_BASE_URL,
    DISCORD_GATEWAY_URL,
    DISCORD_INTENT_DIRECT_MESSAGES,
    DISCORD_INTENT_MESSAGE_CONTENT,
    DISCORD_NOTIFY_INTENTS,
)
from .errors import (
    DiscordAPIError,
    DiscordError,
    DiscordPermanentError,
    DiscordTransientError,
)
from .gateway import DiscordGatewayClient
from .notifier import DiscordNotifier
from .rest import DiscordRestClient
from .router import ReplyRouter

__all__ = [
    "DISCORD_API_BASE_URL",
    "DISCORD_GATEWAY_URL",
    "DISCORD_INTENT_DIRECT_MESSAGES",
    "DISCORD_INTENT_MESSAGE_CONTENT",
    "DISCORD_NOTIFY_INTENTS",
    "DiscordAPIError",
    "DiscordError",
    "DiscordGatewayClient",
    "DiscordNotifier",
    "DiscordPermanentError",
    "DiscordRestClient",
    "DiscordTransientError",
    "ReplyRouter",
]
