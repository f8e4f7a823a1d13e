"""Long-poll subscription to the Zulip event queue."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .errors import (
    RegistrationError,
    RemoteValidationError,
    StaleSubscriptionError,
    TransientNetworkError,
)
from .zulip import ZulipEventAPIProtocol

logger = logging.getLogger(__name__)

DEFAULT_POLL_TIMEOUT = 90.0

EventDispatcher = Callable[[dict[str, Any]], Awaitable[None]]


class SubscriptionState(enum.Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    POLLING = "polling"
    CLOSED = "closed"


@dataclass(slots=True, eq=False)
class EventQueueSubscription:
    """One registered event queue and its cursor."""

    event_types: tuple[str, ...]
    options: dict[str, Any]
    dispatcher: EventDispatcher
    queue_id: str | None = None
    last_event_id: int = -1
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    state: SubscriptionState = SubscriptionState.UNREGISTERED
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def closed(self) -> bool:
        return self.state is SubscriptionState.CLOSED


class EventQueueClient:
    """Keep event queues registered and deliver their events in order.

    Every subscription runs in its own task: poll, dispatch each event,
    sleep ``retry_delay``, repeat. A ``BAD_EVENT_QUEUE_ID`` answer registers a
    fresh queue with the original event types and options; other failures
    are logged and the next cycle simply tries again.
    """

    def __init__(self, api: ZulipEventAPIProtocol, *, retry_delay: float = 1.0):
        self._api = api
        self._retry_delay = retry_delay
        self._subscriptions: list[EventQueueSubscription] = []

    @property
    def subscriptions(self) -> tuple[EventQueueSubscription, ...]:
        return tuple(self._subscriptions)

    async def register(
        self,
        event_types: Iterable[str],
        options: Mapping[str, Any] | None,
        dispatcher: EventDispatcher,
        *,
        start: bool = True,
    ) -> EventQueueSubscription:
        """Register a queue and, unless ``start`` is false, begin polling it.

        Raises :class:`RegistrationError` when the server refuses or cannot be
        reached.
        """

        subscription = EventQueueSubscription(
            event_types=tuple(event_types),
            options=dict(options or {}),
            dispatcher=dispatcher,
        )
        try:
            await self._register_queue(subscription)
        except (TransientNetworkError, RemoteValidationError) as exc:
            raise RegistrationError(f"Could not register event queue: {exc}") from exc
        self._subscriptions.append(subscription)
        if start:
            subscription.task = asyncio.create_task(
                self._run(subscription), name=f"zulip-events-{subscription.queue_id}"
            )
        return subscription

    async def _register_queue(self, subscription: EventQueueSubscription) -> None:
        body = await self._api.register_queue(subscription.event_types, subscription.options)
        queue_id = body.get("queue_id")
        if not queue_id:
            raise RemoteValidationError("Register response carries no queue_id", body=body)
        subscription.queue_id = str(queue_id)
        subscription.last_event_id = int(body.get("last_event_id", -1))
        timeout = body.get("event_queue_longpoll_timeout_seconds")
        subscription.poll_timeout = float(timeout) if timeout else DEFAULT_POLL_TIMEOUT
        subscription.state = SubscriptionState.REGISTERED
        logger.info(
            "Registered event queue %s (last event %d)",
            subscription.queue_id,
            subscription.last_event_id,
        )

    async def _reregister(self, subscription: EventQueueSubscription) -> None:
        subscription.state = SubscriptionState.UNREGISTERED
        subscription.queue_id = None
        try:
            await self._register_queue(subscription)
        except (TransientNetworkError, RemoteValidationError) as exc:
            logger.warning("Re-registering event queue failed: %s", exc)

    async def poll(self, subscription: EventQueueSubscription) -> int:
        """Run one poll cycle and return the number of events dispatched."""

        if subscription.closed:
            return 0
        if subscription.state is SubscriptionState.UNREGISTERED or subscription.queue_id is None:
            await self._reregister(subscription)
            return 0

        subscription.state = SubscriptionState.POLLING
        try:
            events = await self._api.get_events(
                subscription.queue_id,
                subscription.last_event_id,
                dont_block=False,
                timeout=subscription.poll_timeout,
            )
        except StaleSubscriptionError:
            logger.info("Event queue %s expired, registering a new one", subscription.queue_id)
            await self._reregister(subscription)
            return 0
        except TransientNetworkError as exc:
            logger.warning("Polling event queue %s failed: %s", subscription.queue_id, exc)
            return 0
        except RemoteValidationError as exc:
            logger.warning("Event queue %s rejected the poll: %s", subscription.queue_id, exc)
            return 0

        delivered = 0
        for event in events:
            try:
                event_id = int(event.get("id", -1))
            except (TypeError, ValueError):
                logger.warning("Dropping event without a numeric id: %r", event)
                continue
            if event_id <= subscription.last_event_id:
                continue
            subscription.last_event_id = event_id
            if subscription.closed:
                break
            try:
                await subscription.dispatcher(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Handling event %d (%s) failed", event_id, event.get("type"))
            delivered += 1
        return delivered

    async def _run(self, subscription: EventQueueSubscription) -> None:
        while not subscription.closed:
            await self.poll(subscription)
            await asyncio.sleep(self._retry_delay)

    async def unsubscribe(self, subscription: EventQueueSubscription) -> None:
        """Stop polling and ask the server to drop the queue."""

        if subscription.closed:
            return
        subscription.state = SubscriptionState.CLOSED
        task, subscription.task = subscription.task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

        queue_id = subscription.queue_id
        if queue_id is None:
            return
        try:
            await self._api.delete_queue(queue_id)
        except StaleSubscriptionError:
            pass
        except (TransientNetworkError, RemoteValidationError) as exc:
            logger.warning("Could not delete event queue %s: %s", queue_id, exc)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription)
