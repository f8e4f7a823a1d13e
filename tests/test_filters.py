from __future__ import annotations

from typing import Any

from zulip_bridge.config import BridgeConfig
from zulip_bridge.filters import RelayFilter
from zulip_bridge.models import DiscordMessage, ZulipMessage


def make_message(**kwargs: Any) -> DiscordMessage:
    return DiscordMessage(
        id=str(kwargs.get("id", "1")),
        channel_id=str(kwargs.get("channel_id", "10")),
        guild_id=kwargs.get("guild_id", "20"),
        author_id=str(kwargs.get("author_id", "42")),
        author_name=str(kwargs.get("author_name", "User")),
        content=str(kwargs.get("content", "")),
        message_type=int(kwargs.get("message_type", 0)),
        application_id=kwargs.get("application_id"),
    )


def make_filter(config: BridgeConfig | None = None) -> RelayFilter:
    return RelayFilter(config or BridgeConfig(), discord_application_id="999", zulip_user_id=1)


def test_discord_filter_reasons() -> None:
    relay_filter = make_filter(
        BridgeConfig(ignored_discord_users=frozenset({"13", "555"}))
    )

    assert relay_filter.evaluate_discord(make_message()).allowed
    assert relay_filter.evaluate_discord(make_message(message_type=19)).allowed
    assert relay_filter.evaluate_discord(make_message(guild_id=None)).reason == "direct_message"
    assert relay_filter.evaluate_discord(make_message(message_type=7)).reason == "system_message"
    assert relay_filter.evaluate_discord(make_message(author_id="999")).reason == "own_message"
    assert (
        relay_filter.evaluate_discord(make_message(application_id="999")).reason == "own_message"
    )
    assert relay_filter.evaluate_discord(make_message(author_id="13")).reason == "ignored_user"
    assert (
        relay_filter.evaluate_discord(make_message(application_id="555")).reason == "ignored_user"
    )


def test_zulip_filter_reasons() -> None:
    relay_filter = make_filter(BridgeConfig(ignored_zulip_users=frozenset({7})))

    def message(**kwargs: Any) -> ZulipMessage:
        base: dict[str, Any] = {
            "id": 1,
            "sender_id": 3,
            "sender_full_name": "Carol",
            "content": "hi",
            "stream_id": 5,
        }
        base.update(kwargs)
        return ZulipMessage(**base)

    assert relay_filter.evaluate_zulip(message()).allowed
    assert relay_filter.evaluate_zulip(message(type="private")).reason == "direct_message"
    assert relay_filter.evaluate_zulip(message(stream_id=None)).reason == "direct_message"
    assert relay_filter.evaluate_zulip(message(sender_id=1)).reason == "own_message"
    assert relay_filter.evaluate_zulip(message(sender_id=7)).reason == "ignored_user"
