"""Exceptions raised by the bridge components."""

from __future__ import annotations

from typing import Any, Mapping


class BridgeError(Exception):
    """Base class for every bridge failure."""


class TransientNetworkError(BridgeError):
    """The remote side could not be reached; retrying later is safe."""


class RemoteValidationError(BridgeError):
    """The remote API rejected a well-formed request."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        body: Mapping[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.body = dict(body or {})


class ZulipError(RemoteValidationError):
    """Zulip answered with ``{"result": "error"}``."""

    @classmethod
    def from_body(cls, body: Mapping[str, Any] | None, status: int | None = None) -> "ZulipError":
        body = body or {}
        code = str(body.get("code") or "") or None
        message = str(body.get("msg") or "") or f"Zulip request failed with status {status}"
        if code == "BAD_EVENT_QUEUE_ID":
            return StaleSubscriptionError(message, code=code, status=status, body=body)
        return cls(message, code=code, status=status, body=body)


class StaleSubscriptionError(ZulipError):
    """The event queue id is no longer recognised by the server."""


class DiscordError(RemoteValidationError):
    """Discord answered with a 4xx status."""


class RegistrationError(BridgeError):
    """An event queue could not be registered."""


class DanglingReferenceError(BridgeError):
    """A correlated channel or message no longer exists on one side."""

    def __init__(
        self,
        message: str,
        *,
        discord_channel_id: str | None = None,
        zulip_stream_id: int | None = None,
        zulip_topic: str | None = None,
    ):
        super().__init__(message)
        self.discord_channel_id = discord_channel_id
        self.zulip_stream_id = zulip_stream_id
        self.zulip_topic = zulip_topic


class PatternCompilationError(BridgeError):
    """A linkifier pattern could not be turned into a usable rule."""

    def __init__(self, pattern: str, reason: str):
        super().__init__(f"{reason}: {pattern!r}")
        self.pattern = pattern
        self.reason = reason
