"""Application bootstrap for the Discord/Zulip bridge."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiohttp

from .config import BridgeConfig, Credentials
from .discord import DiscordClient, WebhookCache
from .discord_to_zulip import DiscordToZulipTranslator
from .errors import RegistrationError, RemoteValidationError, TransientNetworkError
from .events import EventQueueClient
from .filters import RelayFilter
from .gateway import DiscordGateway
from .linkifiers import LinkifierRegistry
from .relay import Relay
from .store import CorrelationStore
from .utils import ChannelProcessingGuard, retry_async
from .zulip import ZulipClient
from .zulip_to_discord import ZulipToDiscordTranslator

logger = logging.getLogger(__name__)

_STARTUP_RETRY_ATTEMPTS = 3
_STARTUP_RETRY_DELAY = 2.0

QUEUE_OPTIONS: dict[str, Any] = {
    "apply_markdown": False,
    "all_public_streams": True,
    "client_capabilities": {
        "notification_settings_null": True,
        "bulk_message_deletion": True,
        "linkifier_url_template": True,
    },
}


class BridgeApp:
    """High level coordinator tying together Zulip, Discord and the store."""

    def __init__(
        self,
        *,
        db_path: Path,
        credentials: Credentials,
        config: BridgeConfig | None = None,
    ):
        self._db_path = db_path
        self._credentials = credentials
        self._config = config or BridgeConfig()
        self._channel_guard = ChannelProcessingGuard()
        self._linkifiers = LinkifierRegistry()

    async def run(self) -> None:
        store = CorrelationStore(self._db_path)
        try:
            async with aiohttp.ClientSession() as session:
                await self._run(session, store)
        finally:
            store.close()

    async def _run(self, session: aiohttp.ClientSession, store: CorrelationStore) -> None:
        credentials = self._credentials
        zulip = ZulipClient(
            session,
            credentials.zulip_realm,
            credentials.zulip_username,
            credentials.zulip_api_key,
        )
        discord = DiscordClient(
            session, credentials.discord_token, credentials.discord_application_id
        )
        await self._verify_credentials(zulip, discord)

        relay = self.build_relay(store, zulip, discord)
        events = EventQueueClient(zulip, retry_delay=self._config.poll_retry_delay)
        subscription = await retry_async(
            lambda: events.register(relay.zulip_event_types, QUEUE_OPTIONS, relay.handle_zulip_event),
            attempts=_STARTUP_RETRY_ATTEMPTS,
            delay=_STARTUP_RETRY_DELAY,
            retry_on=(RegistrationError,),
        )
        # Registered first: later changes arrive as realm_linkifiers events.
        await self._load_linkifiers(zulip)

        gateway = DiscordGateway(session, credentials.discord_token, relay.handle_discord_event)
        gateway_task = asyncio.create_task(
            self._supervise("discord-gateway", gateway.run),
            name="discord-gateway-supervisor",
        )
        try:
            tasks: list[asyncio.Task[None]] = [gateway_task]
            if subscription.task is not None:
                tasks.append(subscription.task)
            await asyncio.gather(*tasks)
        finally:
            gateway_task.cancel()
            await asyncio.gather(gateway_task, return_exceptions=True)
            await events.close()

    def build_relay(
        self, store: CorrelationStore, zulip: ZulipClient, discord: DiscordClient
    ) -> Relay:
        credentials = self._credentials
        outbound = DiscordToZulipTranslator(
            store=store,
            zulip=zulip,
            discord=discord,
            config=self._config,
            realm=credentials.zulip_realm,
        )
        inbound = ZulipToDiscordTranslator(
            store=store,
            zulip=zulip,
            discord=discord,
            config=self._config,
            realm=credentials.zulip_realm,
            linkifiers=self._linkifiers,
        )
        filters = RelayFilter(
            self._config,
            discord_application_id=credentials.discord_application_id,
            zulip_user_id=credentials.zulip_user_id,
        )
        return Relay(
            store=store,
            zulip=zulip,
            discord=discord,
            webhooks=WebhookCache(discord),
            outbound=outbound,
            inbound=inbound,
            filters=filters,
            linkifiers=self._linkifiers,
            config=self._config,
            channel_guard=self._channel_guard,
        )

    async def _verify_credentials(self, zulip: ZulipClient, discord: DiscordClient) -> None:
        """Fail fast when either platform rejects our credentials."""

        try:
            me = await retry_async(
                zulip.get_own_user,
                attempts=_STARTUP_RETRY_ATTEMPTS,
                delay=_STARTUP_RETRY_DELAY,
                retry_on=(TransientNetworkError,),
            )
            user = await retry_async(
                discord.get_current_user,
                attempts=_STARTUP_RETRY_ATTEMPTS,
                delay=_STARTUP_RETRY_DELAY,
                retry_on=(TransientNetworkError,),
            )
        except (TransientNetworkError, RemoteValidationError) as exc:
            raise RegistrationError(f"Credential check failed: {exc}") from exc
        if me.get("user_id") is not None and int(me["user_id"]) != self._credentials.zulip_user_id:
            logger.warning(
                "ZULIP_ID is %s but the API key belongs to user %s",
                self._credentials.zulip_user_id,
                me["user_id"],
            )
        logger.info(
            "Connected as %s on Zulip and %s on Discord",
            me.get("email") or self._credentials.zulip_username,
            user.get("username"),
        )

    async def _load_linkifiers(self, zulip: ZulipClient) -> None:
        try:
            entries = await retry_async(
                zulip.get_linkifiers,
                attempts=_STARTUP_RETRY_ATTEMPTS,
                delay=_STARTUP_RETRY_DELAY,
                retry_on=(TransientNetworkError,),
            )
        except (TransientNetworkError, RemoteValidationError) as exc:
            logger.warning("Could not load linkifiers, continuing without them: %s", exc)
            return
        self._linkifiers.update(entries)

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s exited, restarting", name)
            await asyncio.sleep(retry_delay)
