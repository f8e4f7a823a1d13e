from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, cast

from zulip_bridge.config import BridgeConfig
from zulip_bridge.discord import DiscordClient
from zulip_bridge.errors import ZulipError
from zulip_bridge.linkifiers import LinkifierRegistry
from zulip_bridge.models import (
    ChannelBinding,
    ChannelInfo,
    FormattedDiscordMessage,
    MessageCorrelation,
    ZulipMessage,
)
from zulip_bridge.store import CorrelationStore
from zulip_bridge.zulip import ZulipClient
from zulip_bridge.zulip_to_discord import ZulipToDiscordTranslator, render_mentions

REALM = "https://chat.example"


class DummyZulip:
    def __init__(self) -> None:
        self.stream_ids = {"dev": 5}

    async def get_stream_id(self, name: str) -> int:
        if name not in self.stream_ids:
            raise ZulipError("Invalid stream name", code="BAD_REQUEST", status=400)
        return self.stream_ids[name]


class DummyDiscord:
    def __init__(self) -> None:
        self.channels: dict[str, ChannelInfo] = {
            "100": ChannelInfo(id="100", type=0, guild_id="1", name="general")
        }

    async def fetch_channel(self, channel_id: str) -> ChannelInfo | None:
        return self.channels.get(channel_id)


class Harness:
    def __init__(self, tmp_path: Path, config: BridgeConfig | None = None) -> None:
        self.store = CorrelationStore(tmp_path / "bridge.db")
        self.store.add_binding(ChannelBinding("100", 5, "general"))
        self.zulip = DummyZulip()
        self.discord = DummyDiscord()
        self.linkifiers = LinkifierRegistry()
        self.translator = ZulipToDiscordTranslator(
            store=self.store,
            zulip=cast(ZulipClient, self.zulip),
            discord=cast(DiscordClient, self.discord),
            config=config or BridgeConfig(),
            realm=REALM,
            linkifiers=self.linkifiers,
        )

    def correlate(self, discord_id: str, zulip_id: int) -> None:
        self.store.insert_message(
            MessageCorrelation(
                discord_message_id=discord_id,
                discord_channel_id="100",
                zulip_message_id=zulip_id,
                zulip_stream_id=5,
                zulip_topic="general",
                source="discord",
            )
        )

    def translate(self, message: ZulipMessage) -> FormattedDiscordMessage:
        return asyncio.run(self.translator.translate(message))

    def content(self, text: str) -> str:
        return self.translate(make_message(content=text)).content


def make_message(**kwargs: Any) -> ZulipMessage:
    base: dict[str, Any] = {
        "id": 10,
        "sender_id": 3,
        "sender_full_name": "Carol",
        "content": "hello",
        "stream_id": 5,
        "topic": "general",
        "avatar_url": "/avatar/3",
    }
    base.update(kwargs)
    return ZulipMessage(**base)


def test_plain_message(tmp_path: Path) -> None:
    harness = Harness(tmp_path, BridgeConfig(mentionable_discord_roles=("77",)))
    formatted = harness.translate(make_message())

    assert formatted.content == "hello"
    assert formatted.username == "Carol"
    assert formatted.avatar_url == f"{REALM}/avatar/3"
    assert formatted.to_payload() == {
        "content": "hello",
        "allowed_mentions": {"parse": ["users"], "roles": ["77"]},
        "username": "Carol",
        "avatar_url": f"{REALM}/avatar/3",
    }


def test_username_prefix_suffix_and_limit(tmp_path: Path) -> None:
    config = BridgeConfig(discord_username_prefix="[Z] ", discord_username_suffix=" (zulip)")
    harness = Harness(tmp_path, config)
    assert harness.translate(make_message()).username == "[Z] Carol (zulip)"

    long_name = harness.translate(make_message(sender_full_name="n" * 100)).username
    assert long_name is not None
    assert len(long_name) == 80
    assert long_name.endswith("…")


def test_me_message(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    message = make_message(content="/me waves", is_me_message=True)
    assert harness.translate(message).content == "_waves_"


def test_render_mentions() -> None:
    text = "@**Bob|12** @_**Ann** @*devs* @**all**"
    assert render_mentions(text) == "**@Bob** **@Ann** **@devs** **@all**"


def test_quotes_and_spoilers(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    assert harness.content("```quote\nsaid\n```\nreply") == "> said\nreply"
    assert harness.content("```spoiler\nhidden\n```") == "||hidden||"


def test_code_is_left_alone(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    text = "`@**Bob**` and\n```\n#**dev**\n```"
    assert harness.content(text) == text


def test_quote_fences_inside_code_stay_literal(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    literal = "````\n```quote\n@**Bob**\n```\n```spoiler\nhidden\n```\n````"
    assert harness.content(literal) == literal

    quoted_code = "````quote\n```\n@**Bob**\n```\n````\nreply"
    assert harness.content(quoted_code) == "> ```\n> @**Bob**\n> ```\nreply"


def test_narrow_links_point_at_discord_copies(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.correlate("800", 555)

    absolute = f"[see]({REALM}/#narrow/channel/5-dev/topic/general/near/555)"
    assert harness.content(absolute) == "[see](<https://discord.com/channels/1/100/800>)"

    relative = "[see](/#narrow/channel/5-dev/topic/general/near/999)"
    assert harness.content(relative) == (
        f"[see](<{REALM}/#narrow/channel/5-dev/topic/general/near/999>)"
    )

    foreign = "[x](https://other.example/#narrow/channel/1/topic/a/near/2)"
    assert harness.content(foreign) == foreign


def test_message_mentions(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.correlate("800", 555)

    assert harness.content("#**dev>general@555**") == "https://discord.com/channels/1/100/800"
    assert harness.content("#**dev>misc@9**") == (
        f"**[#dev>misc@9](<{REALM}/#narrow/channel/dev/topic/misc/near/9>)**"
    )


def test_topic_and_stream_mentions(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert harness.content("#**dev>general**") == "<#100>"
    assert harness.content("#**nope>t**") == (
        f"**[#nope>t](<{REALM}/#narrow/channel/nope/topic/t>)**"
    )
    assert harness.content("#**dev**") == "**#dev**"

    harness.store.add_binding(ChannelBinding("200", 5, None))
    assert harness.content("#**dev**") == "<#200>"
    assert harness.content("#**dev>other**") == "<#200>"


def test_uploads_and_timestamps(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    assert harness.content("[file](/user_uploads/2/ab/x.png)") == (
        f"[file]({REALM}/user_uploads/2/ab/x.png)"
    )
    assert harness.content("at <time:1970-01-01T00:00:00Z>") == "at <t:0:F>"


def test_linkifiers_apply_to_current_rules(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    assert harness.content("fix #12") == "fix #12"

    harness.linkifiers.update(
        [{"id": 1, "pattern": r"#(?P<id>\d+)", "url_template": "https://tracker/{id}"}]
    )
    assert harness.content("fix #12 `#13`") == "fix [#12](<https://tracker/12>) `#13`"


def test_dangling_discord_channel_drops_binding(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.correlate("800", 555)
    harness.discord.channels.clear()

    text = f"[see]({REALM}/#narrow/channel/5-dev/topic/general/near/555)"
    assert harness.content(text) == (
        f"[see](<{REALM}/#narrow/channel/5-dev/topic/general/near/555>)"
    )
    assert harness.store.get_binding("100") is None
    assert harness.store.find_by_zulip_id(555) is None


def test_long_messages_link_to_the_original(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    content = harness.content("word " * 1000)
    suffix = f"\n[…see original](<{REALM}/#narrow/channel/5/topic/general/near/10>)"
    assert len(content) <= 2000
    assert content.endswith(suffix)
