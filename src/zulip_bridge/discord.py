"""Discord REST API client and payload parsing."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import aiohttp

from . import __version__
from .errors import DiscordError, TransientNetworkError
from .models import ChannelInfo, DiscordMessage, MessageReference, Webhook

_API_BASE = "https://discord.com/api/v10"
_USER_AGENT = f"DiscordBot (https://github.com, {__version__})"
_WEBHOOK_NAME = "Zulip Bridge Webhook"

logger = logging.getLogger(__name__)


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(self, session: aiohttp.ClientSession, token: str, application_id: str = ""):
        self._session = session
        self._token = token.strip()
        self.application_id = application_id

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bot {self._token}",
            "User-Agent": _USER_AGENT,
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        allow_missing: bool = False,
    ) -> Any:
        """Run one API call and return the decoded body.

        A 404 answer returns ``None`` when ``allow_missing`` is set; 401 and 403
        raise :class:`DiscordError` like any other rejection.
        """

        url = f"{_API_BASE}/{path.lstrip('/')}"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.request(
                method,
                url,
                headers=self._headers(),
                params=params,
                json=json,
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                if status == 204:
                    return {}
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"Discord {method} {path} failed: {exc}") from exc

        if status < 400:
            return body
        if allow_missing and status == 404:
            logger.info("Discord answered %s for %s %s", status, method, path)
            return None
        if status >= 500 or status == 429:
            raise TransientNetworkError(f"Discord {method} {path} answered {status}")
        details = body if isinstance(body, Mapping) else {}
        raise DiscordError(
            str(details.get("message") or f"Discord {method} {path} answered {status}"),
            code=str(details.get("code")) if details.get("code") is not None else None,
            status=status,
            body=details,
        )

    # ------------------------------------------------------------------
    # Channels and messages
    # ------------------------------------------------------------------
    async def fetch_channel(self, channel_id: str) -> ChannelInfo | None:
        """Fetch channel metadata or ``None`` when the channel is gone."""

        data = await self._request("GET", f"channels/{channel_id}", allow_missing=True)
        if not isinstance(data, Mapping):
            return None
        return parse_channel(data, channel_id)

    async def fetch_message(self, channel_id: str, message_id: str) -> DiscordMessage | None:
        data = await self._request(
            "GET", f"channels/{channel_id}/messages/{message_id}", allow_missing=True
        )
        if not isinstance(data, Mapping):
            return None
        return parse_message(data, channel_id)

    async def get_current_user(self) -> dict[str, Any]:
        data = await self._request("GET", "users/@me")
        return dict(data or {})

    async def download(self, url: str, max_bytes: int) -> bytes | None:
        """Fetch an attachment body, or ``None`` when it exceeds ``max_bytes``."""

        try:
            timeout_cfg = aiohttp.ClientTimeout(total=60)
            async with self._session.get(url, timeout=timeout_cfg) as resp:
                if resp.status >= 400:
                    raise DiscordError(f"Download of {url} answered {resp.status}", status=resp.status)
                if resp.content_length is not None and resp.content_length > max_bytes:
                    return None
                data = bytearray()
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    data.extend(chunk)
                    if len(data) > max_bytes:
                        return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"Download of {url} failed: {exc}") from exc
        return bytes(data)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    async def fetch_webhooks(self, channel_id: str) -> list[Webhook]:
        data = await self._request("GET", f"channels/{channel_id}/webhooks")
        webhooks: list[Webhook] = []
        for entry in data or []:
            if not isinstance(entry, Mapping) or not entry.get("token"):
                continue
            if self.application_id and str(entry.get("application_id") or "") != self.application_id:
                continue
            webhooks.append(
                Webhook(id=str(entry["id"]), token=str(entry["token"]), channel_id=channel_id)
            )
        return webhooks

    async def create_webhook(self, channel_id: str, name: str = _WEBHOOK_NAME) -> Webhook:
        data = await self._request("POST", f"channels/{channel_id}/webhooks", json={"name": name})
        return Webhook(id=str(data["id"]), token=str(data["token"]), channel_id=channel_id)

    async def execute_webhook(
        self,
        webhook: Webhook,
        payload: Mapping[str, Any],
        *,
        thread_id: str | None = None,
    ) -> DiscordMessage:
        params = {"wait": "true"}
        if thread_id:
            params["thread_id"] = thread_id
        data = await self._request(
            "POST", f"webhooks/{webhook.id}/{webhook.token}", params=params, json=dict(payload)
        )
        return parse_message(data, thread_id or webhook.channel_id)

    async def edit_webhook_message(
        self,
        webhook: Webhook,
        message_id: str,
        payload: Mapping[str, Any],
        *,
        thread_id: str | None = None,
    ) -> None:
        params = {"thread_id": thread_id} if thread_id else None
        await self._request(
            "PATCH",
            f"webhooks/{webhook.id}/{webhook.token}/messages/{message_id}",
            params=params,
            json=dict(payload),
        )

    async def delete_webhook_message(
        self,
        webhook: Webhook,
        message_id: str,
        *,
        thread_id: str | None = None,
    ) -> None:
        params = {"thread_id": thread_id} if thread_id else None
        await self._request(
            "DELETE",
            f"webhooks/{webhook.id}/{webhook.token}/messages/{message_id}",
            params=params,
        )


class WebhookCache:
    """Channel id to relay webhook, filled on first use and never invalidated.

    Threads share the webhook of their parent channel.
    """

    def __init__(self, client: DiscordClient):
        self._client = client
        self._webhooks: dict[str, Webhook] = {}

    async def get(self, channel_id: str) -> Webhook:
        webhook = self._webhooks.get(channel_id)
        if webhook is not None:
            return webhook
        existing = await self._client.fetch_webhooks(channel_id)
        if existing:
            webhook = existing[0]
        else:
            webhook = await self._client.create_webhook(channel_id)
            logger.info("Created relay webhook in channel %s", channel_id)
        return self._webhooks.setdefault(channel_id, webhook)

    async def resolve(self, channel: ChannelInfo) -> tuple[Webhook, str | None]:
        """Return the webhook to post into ``channel`` and the thread id, if any."""

        if channel.is_thread and channel.parent_id:
            return await self.get(channel.parent_id), channel.id
        return await self.get(channel.id), None


def parse_channel(data: Mapping[str, Any], channel_id: str = "") -> ChannelInfo:
    try:
        channel_type = int(str(data.get("type")))
    except (TypeError, ValueError):
        channel_type = 0
    return ChannelInfo(
        id=str(data.get("id") or channel_id),
        type=channel_type,
        guild_id=str(data.get("guild_id")) if data.get("guild_id") else None,
        name=str(data.get("name") or "") if data.get("name") else None,
        parent_id=str(data.get("parent_id")) if data.get("parent_id") else None,
    )


def _display_name(author: Mapping[str, Any], member: Mapping[str, Any] | None) -> str | None:
    if member and member.get("nick"):
        return str(member["nick"])
    return str(author.get("global_name") or "") or None


def _parse_reference(raw: Any) -> MessageReference | None:
    if not isinstance(raw, Mapping):
        return None
    try:
        ref_type = int(raw.get("type") or 0)
    except (TypeError, ValueError):
        ref_type = 0
    return MessageReference(
        type=ref_type,
        channel_id=str(raw["channel_id"]) if raw.get("channel_id") else None,
        message_id=str(raw["message_id"]) if raw.get("message_id") else None,
        guild_id=str(raw["guild_id"]) if raw.get("guild_id") else None,
    )


def parse_message(payload: Mapping[str, Any], channel_id: str = "") -> DiscordMessage:
    """Build a :class:`DiscordMessage` from a REST or gateway payload."""

    message_id = str(payload.get("id") or "0")
    author = payload.get("author") or {}
    member = payload.get("member") if isinstance(payload.get("member"), Mapping) else None
    author_id = str(author.get("id") or "0")
    author_name = str(author.get("username") or "") or "Unknown"
    content = str(payload.get("content") or "")
    attachments = tuple(
        item for item in payload.get("attachments") or [] if isinstance(item, Mapping)
    )
    embeds = tuple(item for item in payload.get("embeds") or [] if isinstance(item, Mapping))
    stickers = tuple(
        item
        for item in payload.get("sticker_items") or payload.get("stickers") or []
        if isinstance(item, Mapping)
    )

    mention_users: dict[str, str] = {}
    for entry in payload.get("mentions") or []:
        if not isinstance(entry, Mapping):
            continue
        user_id = str(entry.get("id") or "")
        if not user_id:
            continue
        entry_member = entry.get("member") if isinstance(entry.get("member"), Mapping) else None
        display = (
            _display_name(entry, entry_member)
            or str(entry.get("username") or "")
            or str(entry.get("name") or "")
        )
        if display:
            mention_users[user_id] = display

    mention_channels: dict[str, str] = {}
    for entry in payload.get("mention_channels") or []:
        if not isinstance(entry, Mapping):
            continue
        channel_ref = str(entry.get("id") or "")
        name = str(entry.get("name") or "").strip()
        if channel_ref and name:
            mention_channels[channel_ref] = name

    mention_roles: dict[str, str] = {}
    for role_id in payload.get("mention_roles") or []:
        if isinstance(role_id, (str, int)) and str(role_id):
            mention_roles[str(role_id)] = str(role_id)

    try:
        message_type = int(str(payload.get("type")))
    except (TypeError, ValueError):
        message_type = 0
    try:
        flags = int(payload.get("flags") or 0)
    except (TypeError, ValueError):
        flags = 0

    resolved_channel = str(payload.get("channel_id") or channel_id)
    referenced = payload.get("referenced_message")
    snapshots = []
    for entry in payload.get("message_snapshots") or []:
        snapshot = entry.get("message") if isinstance(entry, Mapping) else None
        if isinstance(snapshot, Mapping):
            snapshots.append(parse_message(snapshot, resolved_channel))

    return DiscordMessage(
        id=message_id,
        channel_id=resolved_channel,
        guild_id=str(payload.get("guild_id")) if payload.get("guild_id") else None,
        author_id=author_id,
        author_name=author_name,
        content=content,
        attachments=attachments,
        embeds=embeds,
        stickers=stickers,
        display_name=_display_name(author, member),
        mention_users=mention_users,
        mention_roles=mention_roles,
        mention_channels=mention_channels,
        message_type=message_type,
        flags=flags,
        reference=_parse_reference(payload.get("message_reference")),
        referenced_message=(
            parse_message(referenced, resolved_channel)
            if isinstance(referenced, Mapping)
            else None
        ),
        snapshots=tuple(snapshots),
        webhook_id=str(payload["webhook_id"]) if payload.get("webhook_id") else None,
        application_id=(
            str(payload["application_id"]) if payload.get("application_id") else None
        ),
    )
