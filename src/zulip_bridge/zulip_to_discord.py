"""Render Zulip messages as Discord webhook payloads."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3

import aiohttp

from .config import DISCORD_MAX_MESSAGE_LENGTH, DISCORD_MAX_USERNAME_LENGTH, BridgeConfig
from .discord import DiscordClient
from .errors import BridgeError, DanglingReferenceError
from .formatting import (
    discord_message_link,
    enforce_length,
    mask_code,
    spoilers_to_discord,
    sub_async,
    unmask_quoted_spans,
    unnest_quotes,
    zulip_narrow_link,
    zulip_timestamps_to_discord,
)
from .linkifiers import LinkifierRegistry, apply_linkifiers
from .models import FormattedDiscordMessage, ZulipMessage
from .store import CorrelationStore
from .utils import truncate_text
from .zulip import ZulipClient

logger = logging.getLogger(__name__)

_ME_PREFIX_RE = re.compile(r"^/me ")
_SILENT_MENTION_RE = re.compile(r"@_(\*)")
_USER_MENTION_RE = re.compile(r"@\*\*([^*|\n]+)(?:\|\d+)?\*\*")
_GROUP_MENTION_RE = re.compile(r"@\*(?!\*)([^*\n]+)\*")
_NARROW_LINK_RE = re.compile(
    r"\]\((?P<url>[^)\s]*/#narrow/(?:channel|stream)/[^)\s]*?/(?:near|with)/(?P<message>\d+))\)"
)
_MESSAGE_MENTION_RE = re.compile(r"#\*\*([^>*\n]+)>([^@*\n]+)@(\d+)\*\*")
_TOPIC_MENTION_RE = re.compile(r"#\*\*([^>*\n]+)>([^*\n]+)\*\*")
_STREAM_MENTION_RE = re.compile(r"#\*\*([^>*\n]+)\*\*")
_UPLOAD_LINK_RE = re.compile(r"\]\(/user_uploads/")

_RECOVERABLE = (BridgeError, aiohttp.ClientError, asyncio.TimeoutError, sqlite3.Error)


def render_mentions(text: str) -> str:
    """Render Zulip user, group and wildcard mentions as bold text."""

    text = _SILENT_MENTION_RE.sub(r"@\1", text)
    text = _USER_MENTION_RE.sub(r"**@\1**", text)
    return _GROUP_MENTION_RE.sub(r"**@\1**", text)


class ZulipToDiscordTranslator:
    """Inbound translation: one Zulip message to one Discord webhook payload."""

    def __init__(
        self,
        *,
        store: CorrelationStore,
        zulip: ZulipClient,
        discord: DiscordClient,
        config: BridgeConfig,
        realm: str,
        linkifiers: LinkifierRegistry,
    ):
        self._store = store
        self._zulip = zulip
        self._discord = discord
        self._config = config
        self._realm = realm.rstrip("/")
        self._linkifiers = linkifiers

    def username(self, message: ZulipMessage) -> str:
        name = (
            f"{self._config.discord_username_prefix}"
            f"{message.sender_full_name}"
            f"{self._config.discord_username_suffix}"
        )
        return truncate_text(name.strip() or "Zulip", DISCORD_MAX_USERNAME_LENGTH)

    def avatar_url(self, message: ZulipMessage) -> str | None:
        if not message.avatar_url:
            return None
        if message.avatar_url.startswith("/"):
            return f"{self._realm}{message.avatar_url}"
        return message.avatar_url

    async def translate(self, message: ZulipMessage) -> FormattedDiscordMessage:
        linkifiers = self._linkifiers.snapshot
        content = message.content
        if message.is_me_message:
            content = f"_{_ME_PREFIX_RE.sub('', content)}_"
        for source, target in self._config.zulip_to_discord_replacements.items():
            if source:
                content = content.replace(source, target)
        masked, saved = mask_code(content)
        masked = spoilers_to_discord(masked)
        masked = unnest_quotes(masked)
        masked = render_mentions(masked)
        masked = await sub_async(_NARROW_LINK_RE, masked, self._rewrite_narrow_link)
        masked = await sub_async(_MESSAGE_MENTION_RE, masked, self._rewrite_message_mention)
        masked = await sub_async(_TOPIC_MENTION_RE, masked, self._rewrite_topic_mention)
        masked = await sub_async(_STREAM_MENTION_RE, masked, self._rewrite_stream_mention)
        masked = _UPLOAD_LINK_RE.sub(f"]({self._realm}/user_uploads/", masked)
        masked = zulip_timestamps_to_discord(masked)
        content = unmask_quoted_spans(masked, saved)
        content = apply_linkifiers(content, linkifiers)

        if message.stream_id is not None:
            source_link = zulip_narrow_link(self._realm, message.stream_id, message.topic, message.id)
            content = enforce_length(
                content, DISCORD_MAX_MESSAGE_LENGTH, f"\n[…see original](<{source_link}>)"
            )
        return FormattedDiscordMessage(
            content=content,
            username=self.username(message),
            avatar_url=self.avatar_url(message),
            allowed_roles=self._config.mentionable_discord_roles,
        )

    # ------------------------------------------------------------------
    # Cross references
    # ------------------------------------------------------------------
    async def _discord_link(self, zulip_message_id: int) -> str | None:
        """Link to the Discord copy of a Zulip message, if it still exists."""

        correlation = self._store.find_by_zulip_id(zulip_message_id)
        if correlation is None or not correlation.discord_message_id:
            return None
        channel = await self._discord.fetch_channel(correlation.discord_channel_id)
        if channel is None:
            raise DanglingReferenceError(
                f"Discord channel {correlation.discord_channel_id} is gone",
                discord_channel_id=correlation.discord_channel_id,
                zulip_stream_id=correlation.zulip_stream_id,
                zulip_topic=correlation.zulip_topic,
            )
        return discord_message_link(channel.guild_id, channel.id, correlation.discord_message_id)

    async def _resolve_link(self, zulip_message_id: int) -> str | None:
        try:
            return await self._discord_link(zulip_message_id)
        except DanglingReferenceError as exc:
            self._drop_dangling(exc)
        except _RECOVERABLE as exc:
            logger.warning("Could not resolve Zulip message %s: %s", zulip_message_id, exc)
        return None

    def _drop_dangling(self, exc: DanglingReferenceError) -> None:
        logger.warning("Dropping stale bindings: %s", exc)
        if exc.discord_channel_id is None:
            return
        try:
            self._store.delete_bindings(discord_channel_id=exc.discord_channel_id)
            self._store.delete_messages(discord_channel_id=exc.discord_channel_id)
        except sqlite3.Error as db_exc:
            logger.warning("Removing stale bindings failed: %s", db_exc)

    async def _rewrite_narrow_link(self, match: re.Match[str]) -> str:
        url = match.group("url")
        if url.startswith("/"):
            url = f"{self._realm}{url}"
        elif not url.startswith(self._realm):
            return match.group(0)
        link = await self._resolve_link(int(match.group("message")))
        return f"](<{link or url}>)"

    async def _rewrite_message_mention(self, match: re.Match[str]) -> str:
        stream, topic, message_id = match.group(1), match.group(2), int(match.group(3))
        link = await self._resolve_link(message_id)
        if link:
            return link
        narrow = zulip_narrow_link(self._realm, stream, topic, message_id)
        return f"**[#{stream}>{topic}@{message_id}](<{narrow}>)**"

    async def _bound_channel(self, stream: str, topic: str | None) -> str | None:
        try:
            stream_id = await self._zulip.get_stream_id(stream)
            if topic is None:
                bindings = self._store.find_bindings(zulip_stream_id=stream_id, zulip_topic=None)
                return bindings[0].discord_channel_id if bindings else None
            binding = self._store.find_binding_for_topic(stream_id, topic)
        except _RECOVERABLE as exc:
            logger.warning("Could not resolve Zulip stream %r: %s", stream, exc)
            return None
        return binding.discord_channel_id if binding else None

    async def _rewrite_topic_mention(self, match: re.Match[str]) -> str:
        stream, topic = match.group(1), match.group(2)
        channel_id = await self._bound_channel(stream, topic)
        if channel_id:
            return f"<#{channel_id}>"
        return f"**[#{stream}>{topic}](<{zulip_narrow_link(self._realm, stream, topic)}>)**"

    async def _rewrite_stream_mention(self, match: re.Match[str]) -> str:
        stream = match.group(1)
        channel_id = await self._bound_channel(stream, None)
        if channel_id:
            return f"<#{channel_id}>"
        return f"**#{stream}**"
