from __future__ import annotations

import asyncio
from typing import Any, cast

import aiohttp
import pytest

from zulip_bridge.discord import DiscordClient
from zulip_bridge.errors import DiscordError, TransientNetworkError


class DummyResponse:
    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        self._body = body

    async def __aenter__(self) -> "DummyResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def json(self, content_type: str | None = None) -> Any:
        return self._body


class DummySession:
    def __init__(self, status: int, body: Any = None) -> None:
        self.status = status
        self.body = body
        self.calls: list[tuple[str, str]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> DummyResponse:
        self.calls.append((method, url))
        return DummyResponse(self.status, self.body)


def make_client(session: DummySession) -> DiscordClient:
    return DiscordClient(cast(aiohttp.ClientSession, session), "token", "999")


def test_fetch_channel_parses_payload() -> None:
    session = DummySession(200, {"id": "123", "type": 0, "guild_id": "1", "name": "general"})
    channel = asyncio.run(make_client(session).fetch_channel("123"))

    assert channel is not None
    assert channel.name == "general"
    assert session.calls == [("GET", "https://discord.com/api/v10/channels/123")]


def test_fetch_channel_returns_none_only_when_missing() -> None:
    session = DummySession(404, {"message": "Unknown Channel", "code": 10003})
    assert asyncio.run(make_client(session).fetch_channel("123")) is None


@pytest.mark.parametrize("status", [401, 403])
def test_fetch_channel_rejections_are_errors(status: int) -> None:
    session = DummySession(status, {"message": "Missing Access", "code": 50001})

    with pytest.raises(DiscordError) as excinfo:
        asyncio.run(make_client(session).fetch_channel("123"))
    assert excinfo.value.status == status
    assert excinfo.value.code == "50001"


def test_server_errors_are_transient() -> None:
    session = DummySession(502)
    with pytest.raises(TransientNetworkError):
        asyncio.run(make_client(session).fetch_message("123", "456"))
