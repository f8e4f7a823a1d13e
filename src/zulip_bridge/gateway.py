"""Minimal Discord gateway connection delivering dispatch events."""

from __future__ import annotations

import asyncio
import json
import logging
import platform
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

INTENT_GUILDS = 1 << 0
INTENT_GUILD_MESSAGES = 1 << 9
INTENT_MESSAGE_CONTENT = 1 << 15
DEFAULT_INTENTS = INTENT_GUILDS | INTENT_GUILD_MESSAGES | INTENT_MESSAGE_CONTENT

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

DispatchHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

logger = logging.getLogger(__name__)


class DiscordGateway:
    """Connect, identify and forward dispatch events until the socket closes.

    :meth:`run` returns when Discord asks for a reconnect or closes the
    connection; the caller is expected to supervise and call it again.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        handler: DispatchHandler,
        *,
        intents: int = DEFAULT_INTENTS,
    ):
        self._session = session
        self._token = token
        self._handler = handler
        self._intents = intents
        self._sequence: int | None = None

    async def run(self) -> None:
        self._sequence = None
        async with self._session.ws_connect(_GATEWAY_URL, heartbeat=None, max_msg_size=0) as ws:
            heartbeat: asyncio.Task[None] | None = None
            try:
                async for raw in ws:
                    if raw.type is not aiohttp.WSMsgType.TEXT:
                        if raw.type in {aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                            break
                        continue
                    payload = json.loads(raw.data)
                    op = payload.get("op")
                    if payload.get("s") is not None:
                        self._sequence = int(payload["s"])
                    if op == OP_HELLO:
                        interval = float(payload["d"]["heartbeat_interval"]) / 1000
                        heartbeat = asyncio.create_task(
                            self._heartbeat(ws, interval), name="discord-heartbeat"
                        )
                        await ws.send_json(self._identify_payload())
                    elif op == OP_HEARTBEAT:
                        await ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
                    elif op == OP_DISPATCH:
                        await self._dispatch(str(payload.get("t") or ""), payload.get("d") or {})
                    elif op in {OP_RECONNECT, OP_INVALID_SESSION}:
                        logger.info("Discord gateway asked to reconnect (op %s)", op)
                        break
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                    await asyncio.gather(heartbeat, return_exceptions=True)
        logger.info("Discord gateway connection closed (code %s)", ws.close_code)

    def _identify_payload(self) -> dict[str, Any]:
        return {
            "op": OP_IDENTIFY,
            "d": {
                "token": self._token,
                "intents": self._intents,
                "properties": {
                    "os": platform.system().lower() or "linux",
                    "browser": "zulip-bridge",
                    "device": "zulip-bridge",
                },
            },
        }

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse, interval: float) -> None:
        while not ws.closed:
            await asyncio.sleep(interval)
            await ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})

    async def _dispatch(self, event_type: str, data: dict[str, Any]) -> None:
        if event_type == "READY":
            user = data.get("user") or {}
            logger.info("Logged in on Discord as %s", user.get("username"))
        try:
            await self._handler(event_type, data)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handling Discord %s event failed", event_type)
