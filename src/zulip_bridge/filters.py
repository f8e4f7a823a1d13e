"""Rules deciding which messages are relayed at all."""

from __future__ import annotations

from dataclasses import dataclass

from .config import BridgeConfig
from .models import RELAYABLE_MESSAGE_TYPES, DiscordMessage, ZulipMessage


@dataclass(slots=True)
class FilterDecision:
    """Result of evaluating filters."""

    allowed: bool
    reason: str | None = None


class RelayFilter:
    """Reject echoes of our own messages, ignored users and unsupported messages."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        discord_application_id: str,
        zulip_user_id: int,
    ):
        self._config = config
        self.discord_application_id = discord_application_id
        self.zulip_user_id = zulip_user_id

    def evaluate_discord(self, message: DiscordMessage) -> FilterDecision:
        if not message.guild_id:
            return FilterDecision(False, "direct_message")
        if message.message_type not in RELAYABLE_MESSAGE_TYPES:
            return FilterDecision(False, "system_message")
        if message.application_id and message.application_id == self.discord_application_id:
            return FilterDecision(False, "own_message")
        if message.author_id == self.discord_application_id:
            return FilterDecision(False, "own_message")
        ignored = self._config.ignored_discord_users
        if message.author_id in ignored:
            return FilterDecision(False, "ignored_user")
        if message.application_id and message.application_id in ignored:
            return FilterDecision(False, "ignored_user")
        return FilterDecision(True)

    def evaluate_zulip(self, message: ZulipMessage) -> FilterDecision:
        if message.type != "stream" or message.stream_id is None:
            return FilterDecision(False, "direct_message")
        if message.sender_id == self.zulip_user_id:
            return FilterDecision(False, "own_message")
        if message.sender_id in self._config.ignored_zulip_users:
            return FilterDecision(False, "ignored_user")
        return FilterDecision(True)
