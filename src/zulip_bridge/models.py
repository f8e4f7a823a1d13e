"""Data models used across the bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

# Discord message types and flags the translators care about.
MESSAGE_TYPE_DEFAULT = 0
MESSAGE_TYPE_REPLY = 19
RELAYABLE_MESSAGE_TYPES: frozenset[int] = frozenset({0, 19, 20, 21, 23})

MESSAGE_FLAG_LOADING = 1 << 7

REFERENCE_TYPE_DEFAULT = 0
REFERENCE_TYPE_FORWARD = 1

THREAD_CHANNEL_TYPES: frozenset[int] = frozenset({10, 11, 12})


@dataclass(slots=True)
class MessageReference:
    """Pointer from a Discord message to the message it replies to or forwards."""

    type: int
    channel_id: str | None
    message_id: str | None
    guild_id: str | None = None


@dataclass(slots=True)
class DiscordMessage:
    """Subset of the Discord payload used by the bridge."""

    id: str
    channel_id: str
    guild_id: str | None
    author_id: str
    author_name: str
    content: str
    attachments: Sequence[Mapping[str, Any]] = ()
    embeds: Sequence[Mapping[str, Any]] = ()
    stickers: Sequence[Mapping[str, Any]] = ()
    display_name: str | None = None
    mention_users: Mapping[str, str] = field(default_factory=dict)
    mention_roles: Mapping[str, str] = field(default_factory=dict)
    mention_channels: Mapping[str, str] = field(default_factory=dict)
    message_type: int = MESSAGE_TYPE_DEFAULT
    flags: int = 0
    reference: MessageReference | None = None
    referenced_message: "DiscordMessage | None" = None
    snapshots: Sequence["DiscordMessage"] = ()
    webhook_id: str | None = None
    application_id: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.author_name

    @property
    def is_loading(self) -> bool:
        return bool(self.flags & MESSAGE_FLAG_LOADING)


@dataclass(slots=True)
class ZulipMessage:
    """Raw (unrendered) Zulip stream message."""

    id: int
    sender_id: int
    sender_full_name: str
    content: str
    stream_id: int | None = None
    topic: str = ""
    avatar_url: str | None = None
    is_me_message: bool = False
    type: str = "stream"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ZulipMessage":
        stream_raw = payload.get("stream_id")
        return cls(
            id=int(payload.get("id") or 0),
            sender_id=int(payload.get("sender_id") or 0),
            sender_full_name=str(payload.get("sender_full_name") or ""),
            content=str(payload.get("content") or ""),
            stream_id=int(stream_raw) if stream_raw is not None else None,
            topic=str(payload.get("subject") or payload.get("topic") or ""),
            avatar_url=str(payload["avatar_url"]) if payload.get("avatar_url") else None,
            is_me_message=bool(payload.get("is_me_message")),
            type=str(payload.get("type") or "stream"),
        )


@dataclass(slots=True)
class ChannelBinding:
    """Discord channel (or thread) bridged to a Zulip stream and topic."""

    discord_channel_id: str
    zulip_stream_id: int
    zulip_topic: str | None = None
    include_threads: bool = False


@dataclass(slots=True)
class MessageCorrelation:
    """Identity pair of one relayed message."""

    discord_message_id: str | None
    discord_channel_id: str
    zulip_message_id: int | None
    zulip_stream_id: int
    zulip_topic: str
    source: str

    def __post_init__(self) -> None:
        if self.source not in {"discord", "zulip"}:
            raise ValueError(f"Unknown correlation source: {self.source!r}")


@dataclass(slots=True)
class UploadCorrelation:
    """Source attachment URL mirrored as a Zulip upload."""

    source_file_url: str
    mirrored_file_url: str
    mirrored_file_id: int | None = None


@dataclass(slots=True)
class ChannelInfo:
    """Basic channel metadata from Discord API."""

    id: str
    type: int
    guild_id: str | None = None
    name: str | None = None
    parent_id: str | None = None

    @property
    def is_thread(self) -> bool:
        return self.type in THREAD_CHANNEL_TYPES


@dataclass(slots=True)
class Webhook:
    """Relay endpoint provisioned in a Discord channel."""

    id: str
    token: str
    channel_id: str


@dataclass(slots=True)
class FormattedZulipMessage:
    """Outgoing Zulip payload produced by the outbound translator."""

    content: str


@dataclass(slots=True)
class FormattedDiscordMessage:
    """Outgoing webhook payload produced by the inbound translator."""

    content: str
    username: str | None = None
    avatar_url: str | None = None
    allowed_roles: Sequence[str] = ()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "content": self.content,
            "allowed_mentions": {"parse": ["users"], "roles": list(self.allowed_roles)},
        }
        if self.username:
            payload["username"] = self.username
        if self.avatar_url:
            payload["avatar_url"] = self.avatar_url
        return payload
