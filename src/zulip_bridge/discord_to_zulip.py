"""Render Discord messages as Zulip markdown."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from typing import Any, Mapping, Sequence

import aiohttp

from .config import ZULIP_MAX_MESSAGE_LENGTH, ZULIP_MAX_UPLOAD_BYTES, BridgeConfig
from .discord import DiscordClient
from .errors import BridgeError, DanglingReferenceError, ZulipError
from .formatting import (
    CODE_SPAN_RE,
    discord_message_link,
    discord_timestamps_to_zulip,
    enforce_length,
    mask_spans,
    nest_quotes,
    replace_outside_code,
    sub_async,
    unmask_spans,
    wrap_quote,
    zulip_narrow_link,
)
from .models import (
    MESSAGE_TYPE_REPLY,
    REFERENCE_TYPE_DEFAULT,
    REFERENCE_TYPE_FORWARD,
    DiscordMessage,
    FormattedZulipMessage,
    MessageCorrelation,
    UploadCorrelation,
)
from .store import CorrelationStore
from .zulip import ZulipClient

logger = logging.getLogger(__name__)

ZWSP = "\u200b"
LOADING_MARKER = "*Loading…*"
REPLY_PREVIEW_LENGTH = 200

_STICKER_FORMAT_PNG = 1
_STICKER_FORMAT_GIF = 4

_USER_MENTION_RE = re.compile(r"<@!?(\d+)>")
_ROLE_MENTION_RE = re.compile(r"<@&(\d+)>")
_CHANNEL_MENTION_RE = re.compile(r"<#(\d+)>")
_CUSTOM_EMOJI_RE = re.compile(r"<a?:(\w+):\d+>")
_SLASH_COMMAND_RE = re.compile(r"</([\w -]+):\d+>")

_PERMALINK_RE = re.compile(
    r"(?P<linked>\]\(<?)?(?P<open><)?"
    r"https://(?:ptb\.|canary\.)?discord(?:app)?\.com/channels/"
    r"(?P<guild>\d+|@me)/(?P<channel>\d+)/(?P<message>\d+)"
    r"(?P<close>>)?"
)
_ASSET_URL_RE = re.compile(
    r"https://(?:cdn|media)\.discordapp\.(?:com|net)/attachments/\d+/\d+/[^\s)<>\]]+"
)
_WILDCARD_MENTION_RE = re.compile(r"@(_?)\*\*(all|everyone|channel|topic|stream)\*\*")
_GROUP_MENTION_RE = re.compile(r"@(_?)\*(?!\*)([^*\n]+)\*")
_QUOTE_LINE_RE = re.compile(r"^>.*$\n?", re.MULTILINE)
_FENCED_QUOTE_RE = re.compile(r"^(`{3,})quote\n.*?\n\1(?!`)[ \t]*\n?", re.MULTILINE | re.DOTALL)

# Failures a single rewrite may hit; they never abort the whole message.
_RECOVERABLE = (BridgeError, aiohttp.ClientError, asyncio.TimeoutError, sqlite3.Error)


def _reply_preview(content: str) -> str:
    text = _FENCED_QUOTE_RE.sub("", content)
    text = _QUOTE_LINE_RE.sub("", text)
    text = " ".join(line.strip() for line in text.split("\n") if line.strip())
    if len(text) > REPLY_PREVIEW_LENGTH:
        return text[:REPLY_PREVIEW_LENGTH] + "…"
    return text


def _apply_replacements(text: str, replacements: Mapping[str, str]) -> str:
    for source, target in replacements.items():
        if source:
            text = text.replace(source, target)
    return text


def render_rich_embed(embed: Mapping[str, Any]) -> str:
    """Render one rich embed as the body of a quote block."""

    lines: list[str] = []
    author = embed.get("author") or {}
    if author.get("name"):
        name = str(author["name"])
        if author.get("url"):
            name = f"[{name}]({author['url']})"
        lines.append(f"{name}:")
    thumbnail = (embed.get("thumbnail") or {}).get("url")
    if embed.get("title"):
        title = str(embed["title"])
        if embed.get("url"):
            title = f"[{title}]({embed['url']})"
        marker = f" [thumbnail]({thumbnail})" if thumbnail else ""
        lines.append(f"**{title}**{marker}")
    elif thumbnail:
        lines.append(f"[thumbnail]({thumbnail})")
    if embed.get("description"):
        lines.append(str(embed["description"]))
    fields = [field for field in embed.get("fields") or [] if isinstance(field, Mapping)]
    for field in fields:
        lines.append(f"- **{field.get('name') or ''}**")
        lines.append(wrap_quote(str(field.get("value") or "")))
    image = (embed.get("image") or {}).get("url")
    if image:
        lines.append(f"[image]({image})")
    footer = (embed.get("footer") or {}).get("text")
    timestamp = embed.get("timestamp")
    if footer:
        lines.append(f"{footer} • <time:{timestamp}>" if timestamp else str(footer))
    elif timestamp:
        lines.append(f"<time:{timestamp}>")
    return "\n".join(lines)


def render_embeds(embeds: Sequence[Mapping[str, Any]]) -> str:
    blocks = [
        wrap_quote(render_rich_embed(embed))
        for embed in embeds
        if str(embed.get("type") or "rich") == "rich"
    ]
    return "\n" + "\n".join(blocks) if blocks else ""


def render_stickers(stickers: Sequence[Mapping[str, Any]]) -> str:
    lines: list[str] = []
    for sticker in stickers:
        name = str(sticker.get("name") or "sticker")
        try:
            sticker_format = int(sticker.get("format_type") or 0)
        except (TypeError, ValueError):
            sticker_format = 0
        if sticker_format == _STICKER_FORMAT_PNG:
            lines.append(f"[{name}](https://media.discordapp.net/stickers/{sticker['id']}.png)")
        elif sticker_format == _STICKER_FORMAT_GIF:
            lines.append(f"[{name}](https://media.discordapp.net/stickers/{sticker['id']}.gif)")
        else:
            lines.append(f"*Sticker: {name}*")
    return "\n" + "\n".join(lines) if lines else ""


def guard_mentions(text: str, allowed_groups: frozenset[str] | set[str]) -> str:
    """Stop wildcard and group mentions from notifying anyone on Zulip."""

    def _transform(masked: str) -> str:
        masked = _WILDCARD_MENTION_RE.sub(rf"@{ZWSP}\1**\2**", masked)

        def _group(match: re.Match[str]) -> str:
            if match.group(2) in allowed_groups:
                return match.group(0)
            return f"@{ZWSP}{match.group(1)}*{match.group(2)}*"

        return _GROUP_MENTION_RE.sub(_group, masked)

    return replace_outside_code(text, _transform)


class DiscordToZulipTranslator:
    """Outbound translation: one Discord message to one Zulip message body."""

    def __init__(
        self,
        *,
        store: CorrelationStore,
        zulip: ZulipClient,
        discord: DiscordClient,
        config: BridgeConfig,
        realm: str,
    ):
        self._store = store
        self._zulip = zulip
        self._discord = discord
        self._config = config
        self._realm = realm.rstrip("/")

    async def translate(self, message: DiscordMessage) -> FormattedZulipMessage:
        cleaned = await self.clean_content(message)
        separator = "\n" if cleaned.startswith("```") else " "
        header = f"@{ZWSP}{message.name}:{separator}{cleaned}".rstrip(" ")

        if message.is_loading:
            return FormattedZulipMessage(content=f"{header} {LOADING_MARKER}")

        content = header
        reference = message.reference
        if (
            message.message_type == MESSAGE_TYPE_REPLY
            and reference is not None
            and reference.type == REFERENCE_TYPE_DEFAULT
        ):
            preview = await self._reply_line(message)
            if preview:
                content = f"{preview}\n\n{content}"

        if reference is not None and reference.type == REFERENCE_TYPE_FORWARD and message.snapshots:
            blocks = [await self._forward_block(message, snapshot) for snapshot in message.snapshots]
            content = "\n".join(blocks)
            if message.content or message.attachments:
                content += f"\n{header}"

        content += render_embeds(message.embeds)
        content = await self._rewrite_permalinks(content)
        if self._config.upload_files_to_zulip:
            content = await self._mirror_asset_urls(content)
        content = replace_outside_code(content, discord_timestamps_to_zulip)
        content += render_stickers(message.stickers)
        content += await self._attachment_links(message.attachments)
        content = guard_mentions(content, self._config.mentionable_zulip_groups)

        source_link = discord_message_link(message.guild_id, message.channel_id, message.id)
        content = enforce_length(
            content, ZULIP_MAX_MESSAGE_LENGTH, f"\n[…see original]({source_link})"
        )
        return FormattedZulipMessage(content=content)

    # ------------------------------------------------------------------
    # Clean content
    # ------------------------------------------------------------------
    async def clean_content(self, message: DiscordMessage) -> str:
        """Resolve Discord mention and emoji syntax, then nest quotes."""

        text = _apply_replacements(message.content, self._config.discord_to_zulip_replacements)
        masked, saved = mask_spans(text, CODE_SPAN_RE)
        masked = _USER_MENTION_RE.sub(
            lambda match: "@" + message.mention_users.get(match.group(1), "unknown-user"),
            masked,
        )
        masked = _ROLE_MENTION_RE.sub(
            lambda match: "@" + message.mention_roles.get(match.group(1), "deleted-role"),
            masked,
        )
        masked = _CUSTOM_EMOJI_RE.sub(r":\1:", masked)
        masked = _SLASH_COMMAND_RE.sub(r"/\1", masked)

        async def _channel(match: re.Match[str]) -> str:
            channel_id = match.group(1)
            name = message.mention_channels.get(channel_id)
            if name:
                return f"#{name}"
            try:
                channel = await self._discord.fetch_channel(channel_id)
            except _RECOVERABLE as exc:
                logger.warning("Could not resolve Discord channel %s: %s", channel_id, exc)
                return match.group(0)
            if channel is None or not channel.name:
                return "#deleted-channel"
            return f"#{channel.name}"

        masked = await sub_async(_CHANNEL_MENTION_RE, masked, _channel)
        masked = nest_quotes(masked)
        return unmask_spans(masked, saved)

    # ------------------------------------------------------------------
    # Replies and forwards
    # ------------------------------------------------------------------
    async def _reply_line(self, message: DiscordMessage) -> str | None:
        reference = message.reference
        replied = message.referenced_message
        try:
            if replied is None and reference is not None and reference.message_id:
                replied = await self._discord.fetch_message(
                    reference.channel_id or message.channel_id, reference.message_id
                )
            if replied is None:
                return None

            label = "Reply to"
            author = f"@{ZWSP}{replied.name}"
            source_content = await self.clean_content(replied)
            correlation = self._store.find_by_discord_id(replied.id)
            if correlation is not None and correlation.zulip_message_id is not None:
                label = f"[Reply to]({self._narrow(correlation)})"
                if correlation.source == "zulip":
                    original = await self._zulip.get_message(correlation.zulip_message_id)
                    if original:
                        source_content = str(original.get("content") or "")
                        author = (
                            f"@_**{original.get('sender_full_name')}|{original.get('sender_id')}**"
                        )
        except _RECOVERABLE as exc:
            logger.warning("Could not build reply preview for message %s: %s", message.id, exc)
            return None

        line = f"> {label} {author}: "
        if replied.attachments:
            line += "🖼️ "
        return (line + _reply_preview(source_content)).rstrip()

    async def _forward_block(self, message: DiscordMessage, snapshot: DiscordMessage) -> str:
        label = "Message"
        reference = message.reference
        if reference is not None and reference.message_id:
            try:
                correlation = self._store.find_by_discord_id(reference.message_id)
            except sqlite3.Error as exc:
                logger.warning("Correlation lookup for forward %s failed: %s", message.id, exc)
                correlation = None
            if correlation is not None and correlation.zulip_message_id is not None:
                label = f"[Message]({self._narrow(correlation)})"
        body = await self.clean_content(snapshot)
        body += render_embeds(snapshot.embeds)
        body += render_stickers(snapshot.stickers)
        body += await self._attachment_links(snapshot.attachments)
        quoted = wrap_quote(body.strip("\n"))
        return f"{label} forwarded by @{ZWSP}{message.name}:\n{quoted}"

    def _narrow(self, correlation: MessageCorrelation) -> str:
        return zulip_narrow_link(
            self._realm,
            correlation.zulip_stream_id,
            correlation.zulip_topic,
            correlation.zulip_message_id,
        )

    # ------------------------------------------------------------------
    # Permalinks
    # ------------------------------------------------------------------
    async def _rewrite_permalinks(self, content: str) -> str:
        masked, saved = mask_spans(content, CODE_SPAN_RE)
        masked = await sub_async(_PERMALINK_RE, masked, self._rewrite_permalink)
        return unmask_spans(masked, saved)

    async def _rewrite_permalink(self, match: re.Match[str]) -> str:
        message_id = match.group("message")
        try:
            correlation = self._store.find_by_discord_id(message_id)
            if correlation is None or correlation.zulip_message_id is None:
                return match.group(0)
            stream_name = await self._stream_name(correlation)
        except DanglingReferenceError as exc:
            self._drop_dangling(exc)
            return match.group(0)
        except _RECOVERABLE as exc:
            logger.warning("Could not rewrite link to Discord message %s: %s", message_id, exc)
            return match.group(0)

        open_bracket = match.group("open") or ""
        close_bracket = match.group("close") or ""
        if match.group("linked"):
            return f"{match.group('linked')}{open_bracket}{self._narrow(correlation)}{close_bracket}"
        token = f"#**{stream_name}>{correlation.zulip_topic}@{correlation.zulip_message_id}**"
        if open_bracket and close_bracket:
            return token
        return f"{open_bracket}{token}{close_bracket}"

    async def _stream_name(self, correlation: MessageCorrelation) -> str:
        try:
            stream = await self._zulip.get_stream(correlation.zulip_stream_id)
        except ZulipError as exc:
            raise DanglingReferenceError(
                f"Zulip stream {correlation.zulip_stream_id} is gone: {exc}",
                discord_channel_id=correlation.discord_channel_id,
                zulip_stream_id=correlation.zulip_stream_id,
                zulip_topic=correlation.zulip_topic,
            ) from exc
        return str(stream.get("name") or correlation.zulip_stream_id)

    def _drop_dangling(self, exc: DanglingReferenceError) -> None:
        logger.warning("Dropping stale bindings: %s", exc)
        if exc.zulip_stream_id is None:
            return
        try:
            removed = self._store.delete_bindings(zulip_stream_id=exc.zulip_stream_id)
            self._store.delete_messages(zulip_stream_id=exc.zulip_stream_id)
        except sqlite3.Error as db_exc:
            logger.warning("Removing stale bindings failed: %s", db_exc)
            return
        for binding in removed:
            logger.info(
                "Removed binding %s -> %s/%s",
                binding.discord_channel_id,
                binding.zulip_stream_id,
                binding.zulip_topic,
            )

    # ------------------------------------------------------------------
    # Uploads and attachments
    # ------------------------------------------------------------------
    async def mirror_upload(
        self,
        url: str,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Return the Zulip copy of ``url``, uploading it the first time it is seen."""

        key = url.split("?", 1)[0]
        existing = self._store.find_upload(key)
        if existing is not None:
            return existing.mirrored_file_url
        data = await self._discord.download(url, ZULIP_MAX_UPLOAD_BYTES)
        if data is None:
            logger.info("Not mirroring %s: larger than the Zulip upload limit", key)
            return url
        mirrored = await self._zulip.upload_file(
            filename or key.rsplit("/", 1)[-1], data, content_type
        )
        if not mirrored:
            return url
        self._store.insert_upload(UploadCorrelation(source_file_url=key, mirrored_file_url=mirrored))
        return mirrored

    async def _mirror_or_keep(self, url: str, **kwargs: Any) -> str:
        try:
            return await self.mirror_upload(url, **kwargs)
        except _RECOVERABLE as exc:
            logger.warning("Mirroring %s to Zulip failed: %s", url, exc)
            return url

    async def _mirror_asset_urls(self, content: str) -> str:
        masked, saved = mask_spans(content, CODE_SPAN_RE)
        masked = await sub_async(
            _ASSET_URL_RE, masked, lambda match: self._mirror_or_keep(match.group(0))
        )
        return unmask_spans(masked, saved)

    async def _attachment_links(self, attachments: Sequence[Mapping[str, Any]]) -> str:
        lines: list[str] = []
        for attachment in attachments:
            url = str(attachment.get("url") or "")
            if not url:
                continue
            name = str(attachment.get("filename") or attachment.get("name") or "file")
            description = str(attachment.get("description") or "")
            if self._config.upload_files_to_zulip:
                url = await self._mirror_or_keep(
                    url, filename=name, content_type=attachment.get("content_type")
                )
            label = f"{description}: {name}" if description else name
            lines.append(f"[{label}]({url})")
        return "\n" + "\n".join(lines) if lines else ""
