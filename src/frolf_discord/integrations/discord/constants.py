from __future__ import annotations

DISCORD_API_BASE_URL = "https://discord.com/api/v10"
DISCORD_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

# Discord hard limit for message content.
DISCORD_MAX_MESSAGE_LENGTH = 2000
DISCORD_EPHEMERAL_FLAG = 1 << 6

# Gateway intents bitflags (https://discord.com/developers/docs/topics/gateway#gateway-intents).
DISCORD_INTENT_GUILDS = 1 << 0
DISCORD_INTENT_GUILD_MEMBERS = 1 << 1
DISCORD_INTENT_GUILD_MESSAGES = 1 << 9
DISCORD_INTENT_GUILD_MESSAGE_REACTIONS = 1 << 10
DISCORD_INTENT_DIRECT_MESSAGES = 1 << 12
DISCORD_INTENT_MESSAGE_CONTENT = 1 << 15

DEFAULT_INTENTS = (
    DISCORD_INTENT_GUILDS
    | DISCORD_INTENT_GUILD_MEMBERS
    | DISCORD_INTENT_GUILD_MESSAGES
    | DISCORD_INTENT_GUILD_MESSAGE_REACTIONS
    | DISCORD_INTENT_DIRECT_MESSAGES
    | DISCORD_INTENT_MESSAGE_CONTENT
)

DISCORD_PERMISSION_ADMINISTRATOR = 1 << 3

INTERACTION_TYPE_PING = 1
INTERACTION_TYPE_APPLICATION_COMMAND = 2
INTERACTION_TYPE_MESSAGE_COMPONENT = 3
INTERACTION_TYPE_AUTOCOMPLETE = 4
INTERACTION_TYPE_MODAL_SUBMIT = 5

RESPONSE_CHANNEL_MESSAGE = 4
RESPONSE_DEFERRED_CHANNEL_MESSAGE = 5
RESPONSE_DEFERRED_UPDATE_MESSAGE = 6
RESPONSE_UPDATE_MESSAGE = 7
RESPONSE_MODAL = 9
