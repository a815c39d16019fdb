"""Fan-out of flag change events to live subscriber connections."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, runtime_checkable

import structlog

from . import aio
from .models import ChangeEvent, OrganizationScope, PersonalScope

logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 128


@runtime_checkable
class SubscriberHandle(Protocol):
    """Transport-side connection. ``send`` may be sync or async."""

    def send(self, message: str) -> Any:
        ...


@dataclass
class _Subscriber:
    connection_id: str
    handle: SubscriberHandle
    user_id: str | None
    organization_ids: set[str]
    queue: asyncio.Queue
    task: asyncio.Task | None = field(default=None, repr=False)

    def wants(self, event: ChangeEvent) -> bool:
        if event.audience_user_id is not None:
            return self.user_id == event.audience_user_id
        if self.user_id is None:
            return True
        scope = event.scope
        if isinstance(scope, PersonalScope):
            return scope.owner_id == self.user_id
        if isinstance(scope, OrganizationScope):
            return scope.organization_id in self.organization_ids
        return False


class ChangeBroadcaster:
    """Registry of live connections plus per-connection delivery.

    Each subscriber owns a bounded queue drained by its own pump task, so one
    slow or dead connection never holds up the others. Delivery is
    at-most-once: when a queue is full its oldest pending message is dropped,
    and a connection whose ``send`` raises is unregistered. Nothing is
    persisted or replayed; a reconnecting client pulls current state instead.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.queue_size = queue_size
        self._subscribers: dict[str, _Subscriber] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        connection_id: str,
        handle: SubscriberHandle,
        user_id: str | None = None,
        organization_ids: Iterable[str] = (),
    ) -> None:
        """Start delivering to *handle*. Re-registering an id replaces its handle.

        Anonymous subscribers (no ``user_id``) receive every event that is not
        addressed to a single user.
        """
        loop = asyncio.get_running_loop()
        previous = self._subscribers.pop(connection_id, None)
        if previous is not None:
            self._stop(previous)

        subscriber = _Subscriber(
            connection_id=connection_id,
            handle=handle,
            user_id=user_id,
            organization_ids=set(organization_ids),
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        subscriber.task = loop.create_task(
            self._pump(subscriber), name=f"bandera-subscriber-{connection_id}"
        )
        self._subscribers[connection_id] = subscriber
        logger.info(
            "subscriber_registered",
            connection_id=connection_id,
            user_id=user_id,
            replaced=previous is not None,
        )

    def unregister(self, connection_id: str) -> bool:
        subscriber = self._subscribers.pop(connection_id, None)
        if subscriber is None:
            return False
        self._stop(subscriber)
        logger.info("subscriber_unregistered", connection_id=connection_id)
        return True

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._subscribers

    def connection_count(self) -> int:
        return len(self._subscribers)

    def organizations_of(self, connection_id: str) -> frozenset[str]:
        subscriber = self._subscribers.get(connection_id)
        return frozenset(subscriber.organization_ids) if subscriber else frozenset()

    def grant_organization(self, organization_id: str, user_id: str) -> int:
        """Route *organization_id* events to every connection of *user_id*."""
        granted = 0
        for subscriber in self._subscribers.values():
            if subscriber.user_id == user_id and organization_id not in subscriber.organization_ids:
                subscriber.organization_ids.add(organization_id)
                granted += 1
        return granted

    def revoke_organization(self, organization_id: str, user_id: str | None = None) -> int:
        """Stop routing *organization_id* events to *user_id*, or to everyone when omitted.

        Messages already queued for those connections are still delivered.
        """
        revoked = 0
        for subscriber in self._subscribers.values():
            if user_id is not None and subscriber.user_id != user_id:
                continue
            if organization_id in subscriber.organization_ids:
                subscriber.organization_ids.discard(organization_id)
                revoked += 1
        if revoked:
            logger.info(
                "subscriber_interest_revoked",
                organization_id=organization_id,
                user_id=user_id,
                connections=revoked,
            )
        return revoked

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def publish(self, event: ChangeEvent) -> int:
        """Queue *event* for every interested subscriber; returns how many.

        Never blocks and never raises because of a subscriber.
        """
        message = event.to_message()
        queued = 0
        for subscriber in list(self._subscribers.values()):
            if not subscriber.wants(event):
                continue
            queue = subscriber.queue
            if queue.full():
                queue.get_nowait()
                queue.task_done()
                logger.warning(
                    "subscriber_queue_full",
                    connection_id=subscriber.connection_id,
                    dropped="oldest",
                )
            queue.put_nowait(message)
            queued += 1
        logger.debug(
            "change_published",
            event_name=event.kind.event_name,
            flag_id=event.flag_id,
            queued=queued,
        )
        return queued

    async def _pump(self, subscriber: _Subscriber) -> None:
        queue = subscriber.queue
        while True:
            message = await queue.get()
            try:
                await aio.call(subscriber.handle.send, message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "subscriber_dropped",
                    connection_id=subscriber.connection_id,
                    error=str(exc),
                )
                if self._subscribers.get(subscriber.connection_id) is subscriber:
                    del self._subscribers[subscriber.connection_id]
                _flush(queue)
                return
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until everything queued so far has been handed to a transport."""
        await asyncio.gather(*(s.queue.join() for s in list(self._subscribers.values())))

    async def close(self) -> None:
        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        tasks = [self._stop(s) for s in subscribers]
        await asyncio.gather(*(t for t in tasks if t is not None), return_exceptions=True)

    def _stop(self, subscriber: _Subscriber) -> asyncio.Task | None:
        task = subscriber.task
        if task is not None and not task.done():
            task.cancel()
        _flush(subscriber.queue)
        return task


def publish_after_commit(broadcaster: ChangeBroadcaster, event: ChangeEvent) -> int:
    """Publish an event for a write that has already committed.

    The write stands whatever happens here, so a broadcaster fault is logged
    and reported as zero deliveries.
    """
    try:
        return broadcaster.publish(event)
    except Exception as exc:
        logger.error(
            "change_publish_failed",
            event_name=event.kind.event_name,
            flag_id=event.flag_id,
            error=str(exc),
        )
        return 0


def _flush(queue: asyncio.Queue) -> None:
    while not queue.empty():
        queue.get_nowait()
        queue.task_done()
