from __future__ import annotations

DISCORD_API_BASE_URL = "https://discord.com/api/v10"
DISCORD_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

# Gateway intents bitflags (https://discord.com/developers/docs/topics/gateway#gateway-intents).
DISCORD_INTENT_DIRECT_MESSAGES = 1 << 12
DISCORD_INTENT_MESSAGE_CONTENT = 1 << 15
DISCORD_NOTIFY_INTENTS = DISCORD_INTENT_DIRECT_MESSAGES | DISCORD_INTENT_MESSAGE_CONTENT

DISCORD_EMBED_DESCRIPTION_LIMIT = 4096
DISCORD_BUTTON_LABEL_LIMIT = 80
DISCORD_BUTTONS_PER_ROW = 5
DISCORD_MAX_BUTTONS = 25

DISCORD_COLOR_ASK = 0x5865F2
DISCORD_COLOR_SEND = 0x57F287
DISCORD_COLOR_ANSWERED = 0x57F287

# Interaction callback types and message flags.
DISCORD_CALLBACK_CHANNEL_MESSAGE = 4
DISCORD_CALLBACK_UPDATE_MESSAGE = 7
DISCORD_FLAG_EPHEMERAL = 1 << 6
