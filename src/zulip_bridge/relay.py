"""Event handlers moving messages between Discord and Zulip."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Awaitable, Callable
from typing import Any, Mapping

from .config import ZULIP_MAX_TOPIC_LENGTH, BridgeConfig
from .discord import DiscordClient, WebhookCache, parse_message
from .discord_to_zulip import DiscordToZulipTranslator
from .errors import RemoteValidationError, TransientNetworkError
from .filters import RelayFilter
from .linkifiers import LinkifierRegistry
from .models import ChannelBinding, ChannelInfo, DiscordMessage, MessageCorrelation, ZulipMessage
from .store import CorrelationStore
from .utils import ChannelProcessingGuard, truncate_text
from .zulip import ZulipClient
from .zulip_to_discord import ZulipToDiscordTranslator

logger = logging.getLogger(__name__)

ZulipHandler = Callable[[Mapping[str, Any]], Awaitable[None]]
DiscordHandler = Callable[[Mapping[str, Any]], Awaitable[None]]


class Relay:
    """Dispatch tables for Zulip queue events and Discord gateway events.

    Zulip handlers are keyed by ``(type, op)``; a ``(type, None)`` entry
    catches every operation of that type.
    """

    def __init__(
        self,
        *,
        store: CorrelationStore,
        zulip: ZulipClient,
        discord: DiscordClient,
        webhooks: WebhookCache,
        outbound: DiscordToZulipTranslator,
        inbound: ZulipToDiscordTranslator,
        filters: RelayFilter,
        linkifiers: LinkifierRegistry,
        config: BridgeConfig,
        channel_guard: ChannelProcessingGuard | None = None,
    ):
        self._store = store
        self._zulip = zulip
        self._discord = discord
        self._webhooks = webhooks
        self._outbound = outbound
        self._inbound = inbound
        self._filters = filters
        self._linkifiers = linkifiers
        self._config = config
        self._guard = channel_guard or ChannelProcessingGuard()
        self._channels: dict[str, ChannelInfo] = {}
        self._zulip_handlers: dict[tuple[str, str | None], ZulipHandler] = {
            ("message", None): self._on_zulip_message,
            ("update_message", None): self._on_zulip_update,
            ("delete_message", None): self._on_zulip_delete,
            ("realm_linkifiers", None): self._on_linkifiers,
            ("attachment", "add"): self._on_attachment_stored,
            ("attachment", "update"): self._on_attachment_stored,
            ("attachment", "remove"): self._on_attachment_removed,
            ("stream", "delete"): self._on_stream_delete,
            ("heartbeat", None): self._ignore,
        }
        self._discord_handlers: dict[str, DiscordHandler] = {
            "MESSAGE_CREATE": self._on_discord_create,
            "MESSAGE_UPDATE": self._on_discord_update,
            "MESSAGE_DELETE": self._on_discord_delete,
            "MESSAGE_DELETE_BULK": self._on_discord_delete,
            "THREAD_CREATE": self._on_thread_create,
            "CHANNEL_DELETE": self._on_channel_delete,
            "THREAD_DELETE": self._on_channel_delete,
        }

    @property
    def zulip_event_types(self) -> list[str]:
        # Heartbeats arrive on every queue without being asked for.
        return sorted({event_type for event_type, _ in self._zulip_handlers} - {"heartbeat"})

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def handle_zulip_event(self, event: Mapping[str, Any]) -> None:
        event_type = str(event.get("type") or "")
        op = event.get("op")
        handler = self._zulip_handlers.get((event_type, op)) or self._zulip_handlers.get(
            (event_type, None)
        )
        if handler is None:
            logger.debug("Ignoring Zulip %s/%s event", event_type, op)
            return
        try:
            await handler(event)
        except (TransientNetworkError, RemoteValidationError) as exc:
            logger.warning("Relaying Zulip %s event failed: %s", event_type, exc)

    async def handle_discord_event(self, event_type: str, data: Mapping[str, Any]) -> None:
        handler = self._discord_handlers.get(event_type)
        if handler is None:
            return
        try:
            await handler(data)
        except (TransientNetworkError, RemoteValidationError) as exc:
            logger.warning("Relaying Discord %s event failed: %s", event_type, exc)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def _record(self, correlation: MessageCorrelation) -> None:
        try:
            self._store.insert_message(correlation)
        except sqlite3.Error as exc:
            logger.error(
                "Relayed %s message (discord %s, zulip %s) but storing the correlation failed;"
                " edits, deletions and replies will not resolve for it: %s",
                correlation.source,
                correlation.discord_message_id,
                correlation.zulip_message_id,
                exc,
            )

    async def _channel(self, channel_id: str) -> ChannelInfo | None:
        channel = self._channels.get(channel_id)
        if channel is not None:
            return channel
        channel = await self._discord.fetch_channel(channel_id)
        if channel is None:
            removed = self._store.delete_bindings(discord_channel_id=channel_id)
            if removed:
                logger.warning("Discord channel %s is gone, removed its binding", channel_id)
            return None
        self._channels[channel_id] = channel
        return channel

    async def _ignore(self, event: Mapping[str, Any]) -> None:
        return None

    # ------------------------------------------------------------------
    # Zulip -> Discord
    # ------------------------------------------------------------------
    async def _on_zulip_message(self, event: Mapping[str, Any]) -> None:
        message = ZulipMessage.from_payload(event.get("message") or {})
        decision = self._filters.evaluate_zulip(message)
        if not decision.allowed:
            logger.debug("Skipping Zulip message %s: %s", message.id, decision.reason)
            return
        stream_id = message.stream_id
        if stream_id is None:
            return
        binding = self._store.find_binding_for_topic(stream_id, message.topic)
        if binding is None:
            return

        async with self._guard.lock(binding.discord_channel_id):
            if self._store.find_by_zulip_id(message.id) is not None:
                return
            channel = await self._channel(binding.discord_channel_id)
            if channel is None:
                return
            webhook, thread_id = await self._webhooks.resolve(channel)
            formatted = await self._inbound.translate(message)
            sent = await self._discord.execute_webhook(
                webhook, formatted.to_payload(), thread_id=thread_id
            )
            self._record(
                MessageCorrelation(
                    discord_message_id=sent.id,
                    discord_channel_id=binding.discord_channel_id,
                    zulip_message_id=message.id,
                    zulip_stream_id=stream_id,
                    zulip_topic=message.topic,
                    source="zulip",
                )
            )

    async def _on_zulip_update(self, event: Mapping[str, Any]) -> None:
        if event.get("rendering_only"):
            return
        message_ids = [int(value) for value in event.get("message_ids") or []]
        new_topic = event.get("subject") if "subject" in event else event.get("topic")
        new_stream = event.get("new_stream_id")
        if message_ids and (new_topic is not None or new_stream is not None):
            patch: dict[str, Any] = {}
            if new_topic is not None:
                patch["zulip_topic"] = str(new_topic)
            if new_stream is not None:
                patch["zulip_stream_id"] = int(new_stream)
            moved = self._store.update_messages({"zulip_message_id": message_ids}, patch)
            logger.info("Updated %d correlations after a Zulip topic move", moved)

        if "content" not in event or event.get("message_id") is None:
            return
        if int(event.get("user_id") or 0) == self._filters.zulip_user_id:
            return
        correlation = self._store.find_by_zulip_id(int(event["message_id"]))
        if correlation is None or correlation.source != "zulip" or not correlation.discord_message_id:
            return
        content = str(event["content"])
        message = ZulipMessage(
            id=int(event["message_id"]),
            sender_id=int(event.get("user_id") or 0),
            sender_full_name="",
            content=content,
            stream_id=correlation.zulip_stream_id,
            topic=correlation.zulip_topic,
            is_me_message=content.startswith("/me "),
        )
        async with self._guard.lock(correlation.discord_channel_id):
            channel = await self._channel(correlation.discord_channel_id)
            if channel is None:
                return
            webhook, thread_id = await self._webhooks.resolve(channel)
            formatted = await self._inbound.translate(message)
            payload = formatted.to_payload()
            payload.pop("username", None)
            payload.pop("avatar_url", None)
            await self._discord.edit_webhook_message(
                webhook, correlation.discord_message_id, payload, thread_id=thread_id
            )

    async def _on_zulip_delete(self, event: Mapping[str, Any]) -> None:
        raw_ids = event.get("message_ids") or [event.get("message_id")]
        message_ids = [int(value) for value in raw_ids if value is not None]
        if not message_ids:
            return
        removed = self._store.delete_messages(zulip_message_id=message_ids)
        for correlation in removed:
            if correlation.source != "zulip" or not correlation.discord_message_id:
                continue
            channel = await self._channel(correlation.discord_channel_id)
            if channel is None:
                continue
            webhook, thread_id = await self._webhooks.resolve(channel)
            await self._discord.delete_webhook_message(
                webhook, correlation.discord_message_id, thread_id=thread_id
            )

    async def _on_linkifiers(self, event: Mapping[str, Any]) -> None:
        self._linkifiers.update(event.get("realm_linkifiers") or [])

    async def _on_attachment_stored(self, event: Mapping[str, Any]) -> None:
        attachment = event.get("attachment") or {}
        path_id = attachment.get("path_id")
        if not path_id or attachment.get("id") is None:
            return
        self._store.update_uploads(
            {"mirrored_file_url": f"/user_uploads/{path_id}"},
            {"mirrored_file_id": int(attachment["id"])},
        )

    async def _on_attachment_removed(self, event: Mapping[str, Any]) -> None:
        attachment = event.get("attachment") or {}
        if attachment.get("id") is None:
            return
        self._store.delete_uploads(mirrored_file_id=int(attachment["id"]))

    async def _on_stream_delete(self, event: Mapping[str, Any]) -> None:
        stream_ids = {int(value) for value in event.get("stream_ids") or []}
        for stream in event.get("streams") or []:
            if isinstance(stream, Mapping) and stream.get("stream_id") is not None:
                stream_ids.add(int(stream["stream_id"]))
        if not stream_ids:
            return
        removed = self._store.delete_bindings(zulip_stream_id=sorted(stream_ids))
        self._store.delete_messages(zulip_stream_id=sorted(stream_ids))
        for binding in removed:
            logger.info(
                "Zulip stream %s was deleted, unbound Discord channel %s",
                binding.zulip_stream_id,
                binding.discord_channel_id,
            )

    # ------------------------------------------------------------------
    # Discord -> Zulip
    # ------------------------------------------------------------------
    async def _send_to_zulip(self, message: DiscordMessage, binding: ChannelBinding) -> None:
        if self._store.find_by_discord_id(message.id) is not None:
            return
        topic = binding.zulip_topic or self._config.default_topic
        formatted = await self._outbound.translate(message)
        zulip_id = await self._zulip.send_message(binding.zulip_stream_id, topic, formatted.content)
        self._record(
            MessageCorrelation(
                discord_message_id=message.id,
                discord_channel_id=binding.discord_channel_id,
                zulip_message_id=zulip_id,
                zulip_stream_id=binding.zulip_stream_id,
                zulip_topic=topic,
                source="discord",
            )
        )

    async def _on_discord_create(self, data: Mapping[str, Any]) -> None:
        message = parse_message(data)
        decision = self._filters.evaluate_discord(message)
        if not decision.allowed:
            logger.debug("Skipping Discord message %s: %s", message.id, decision.reason)
            return
        binding = self._store.get_binding(message.channel_id)
        if binding is None:
            return
        async with self._guard.lock(message.channel_id):
            await self._send_to_zulip(message, binding)

    async def _on_discord_update(self, data: Mapping[str, Any]) -> None:
        if "content" not in data and "embeds" not in data:
            return
        message = parse_message(data)
        decision = self._filters.evaluate_discord(message)
        if not decision.allowed:
            return
        correlation = self._store.find_by_discord_id(message.id)
        if correlation is None or correlation.source != "discord" or correlation.zulip_message_id is None:
            return
        async with self._guard.lock(message.channel_id):
            formatted = await self._outbound.translate(message)
            await self._zulip.edit_message(correlation.zulip_message_id, formatted.content)

    async def _on_discord_delete(self, data: Mapping[str, Any]) -> None:
        message_ids = [str(value) for value in data.get("ids") or [data.get("id")] if value]
        if not message_ids:
            return
        removed = self._store.delete_messages(discord_message_id=message_ids)
        for correlation in removed:
            if correlation.source == "discord" and correlation.zulip_message_id is not None:
                await self._zulip.delete_message(correlation.zulip_message_id)

    async def _on_thread_create(self, data: Mapping[str, Any]) -> None:
        if not data.get("newly_created"):
            return
        thread_id = str(data.get("id") or "")
        parent_id = str(data.get("parent_id") or "")
        if not thread_id or not parent_id:
            return
        if str(data.get("owner_id") or "") == self._filters.discord_application_id:
            return
        parent = self._store.get_binding(parent_id)
        if parent is None or not parent.include_threads:
            return

        name = str(data.get("name") or thread_id)
        topic = f"{parent.zulip_topic}/{name}" if parent.zulip_topic else name
        binding = ChannelBinding(
            discord_channel_id=thread_id,
            zulip_stream_id=parent.zulip_stream_id,
            zulip_topic=truncate_text(topic, ZULIP_MAX_TOPIC_LENGTH),
        )
        async with self._guard.lock(thread_id):
            if self._store.get_binding(thread_id) is not None:
                return
            try:
                self._store.add_binding(binding)
            except sqlite3.IntegrityError as exc:
                logger.warning("Could not mirror thread %s as %r: %s", thread_id, binding.zulip_topic, exc)
                return
            logger.info("Mirroring thread %s into topic %r", thread_id, binding.zulip_topic)

            starter = await self._discord.fetch_message(parent_id, thread_id)
            if starter is None:
                starter = await self._discord.fetch_message(thread_id, thread_id)
            if starter is None:
                return
            if starter.guild_id is None:
                # REST message objects carry no guild id.
                starter.guild_id = str(data.get("guild_id") or "") or None
            if not self._filters.evaluate_discord(starter).allowed:
                return
            await self._send_to_zulip(starter, binding)

    async def _on_channel_delete(self, data: Mapping[str, Any]) -> None:
        channel_id = str(data.get("id") or "")
        if not channel_id:
            return
        self._channels.pop(channel_id, None)
        for binding in self._store.delete_bindings(discord_channel_id=channel_id):
            logger.info(
                "Discord channel %s was deleted, unbound %s/%s",
                channel_id,
                binding.zulip_stream_id,
                binding.zulip_topic,
            )
