"""Zulip REST API client."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable, Mapping, Protocol

import aiohttp

from . import __version__
from .errors import TransientNetworkError, ZulipError

_USER_AGENT = f"ZulipDiscordBridge/{__version__}"
_DEFAULT_TIMEOUT = 15

logger = logging.getLogger(__name__)


class ZulipEventAPIProtocol(Protocol):
    """Subset of the Zulip API used by the event queue client."""

    async def register_queue(
        self,
        event_types: Iterable[str],
        options: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]: ...

    async def get_events(
        self,
        queue_id: str,
        last_event_id: int,
        *,
        dont_block: bool = False,
        timeout: float = 90.0,
    ) -> list[dict[str, Any]]: ...

    async def delete_queue(self, queue_id: str) -> None: ...


def _encode_form(data: Mapping[str, Any]) -> dict[str, str]:
    """Zulip expects non-string form values JSON encoded."""

    encoded: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        encoded[key] = value if isinstance(value, str) else json.dumps(value)
    return encoded


class ZulipClient:
    """Thin asynchronous wrapper around the Zulip REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        realm: str,
        email: str,
        api_key: str,
    ):
        self._session = session
        self.realm = realm.rstrip("/")
        self._auth = aiohttp.BasicAuth(email, api_key)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        data: Any = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> dict[str, Any]:
        url = f"{self.realm}/api/v1/{path.lstrip('/')}"
        if isinstance(data, Mapping):
            data = _encode_form(data)
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=timeout)
            async with self._session.request(
                method,
                url,
                params=_encode_form(params) if params else None,
                data=data,
                auth=self._auth,
                headers={"User-Agent": _USER_AGENT},
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    body = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"Zulip {method} {path} failed: {exc}") from exc

        if not isinstance(body, Mapping):
            if status >= 500 or status == 429:
                raise TransientNetworkError(f"Zulip {method} {path} answered {status}")
            raise ZulipError.from_body(None, status)
        if body.get("result") == "success" and status < 400:
            return dict(body)
        if status >= 500 or status == 429 or body.get("code") == "RATE_LIMIT_HIT":
            raise TransientNetworkError(
                f"Zulip {method} {path} answered {status}: {body.get('msg')}"
            )
        raise ZulipError.from_body(body, status)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def send_message(self, stream_id: int, topic: str, content: str) -> int:
        body = await self._request(
            "POST",
            "messages",
            data={"type": "stream", "to": stream_id, "topic": topic, "content": content},
        )
        return int(body["id"])

    async def edit_message(self, message_id: int, content: str) -> None:
        await self._request("PATCH", f"messages/{message_id}", data={"content": content})

    async def delete_message(self, message_id: int) -> None:
        await self._request("DELETE", f"messages/{message_id}")

    async def get_message(self, message_id: int) -> dict[str, Any]:
        body = await self._request(
            "GET", f"messages/{message_id}", params={"apply_markdown": False}
        )
        return dict(body.get("message") or {})

    async def upload_file(self, filename: str, content: bytes, content_type: str | None) -> str:
        form = aiohttp.FormData()
        form.add_field(
            "filename",
            content,
            filename=filename,
            content_type=content_type or "application/octet-stream",
        )
        body = await self._request("POST", "user_uploads", data=form, timeout=60)
        return str(body.get("url") or body.get("uri") or "")

    # ------------------------------------------------------------------
    # Streams, users and realm settings
    # ------------------------------------------------------------------
    async def get_stream(self, stream_id: int) -> dict[str, Any]:
        body = await self._request("GET", f"streams/{stream_id}")
        return dict(body.get("stream") or {})

    async def get_stream_id(self, name: str) -> int:
        body = await self._request("GET", "get_stream_id", params={"stream": name})
        return int(body["stream_id"])

    async def get_linkifiers(self) -> list[dict[str, Any]]:
        body = await self._request("GET", "realm/linkifiers")
        return [dict(item) for item in body.get("linkifiers") or [] if isinstance(item, Mapping)]

    async def get_own_user(self) -> dict[str, Any]:
        return await self._request("GET", "users/me")

    # ------------------------------------------------------------------
    # Event queues
    # ------------------------------------------------------------------
    async def register_queue(
        self,
        event_types: Iterable[str],
        options: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"event_types": list(event_types)}
        data.update(options or {})
        return await self._request("POST", "register", data=data)

    async def get_events(
        self,
        queue_id: str,
        last_event_id: int,
        *,
        dont_block: bool = False,
        timeout: float = 90.0,
    ) -> list[dict[str, Any]]:
        body = await self._request(
            "GET",
            "events",
            params={"queue_id": queue_id, "last_event_id": last_event_id, "dont_block": dont_block},
            timeout=timeout,
        )
        return [dict(event) for event in body.get("events") or [] if isinstance(event, Mapping)]

    async def delete_queue(self, queue_id: str) -> None:
        await self._request("DELETE", "events", data={"queue_id": queue_id})
