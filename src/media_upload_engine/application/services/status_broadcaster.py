"""Coalescing fan-out of status snapshots to slow or fast observers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field

from media_upload_engine.domain.monitoring_models import UploadManagerStatus

logger = logging.getLogger(__name__)

StatusObserver = Callable[[UploadManagerStatus], Awaitable[None]]


@dataclass(slots=True, eq=False)
class _Subscription:
    observer: StatusObserver
    name: str
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    latest: UploadManagerStatus | None = None
    task: asyncio.Task[None] | None = None


class StatusBroadcaster:
    """Deliver the newest status to each observer from its own task.

    ``publish`` never awaits. An observer that is still busy with an older
    snapshot only ever sees the latest one once it returns; intermediate
    snapshots are dropped.
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._latest: UploadManagerStatus | None = None

    @property
    def latest(self) -> UploadManagerStatus | None:
        return self._latest

    def subscribe(self, observer: StatusObserver, *, name: str | None = None) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""

        subscription = _Subscription(observer=observer, name=name or repr(observer))
        subscription.idle.set()
        self._subscriptions.append(subscription)
        if self._latest is not None:
            self._offer(subscription, self._latest)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            if subscription.task is not None:
                subscription.task.cancel()

        return unsubscribe

    def publish(self, status: UploadManagerStatus) -> None:
        self._latest = status
        for subscription in self._subscriptions:
            self._offer(subscription, status)

    async def wait_idle(self) -> None:
        """Wait until every observer has handled the newest snapshot."""

        for subscription in list(self._subscriptions):
            if subscription.latest is not None and (
                subscription.task is None or subscription.task.done()
            ):
                if subscription.wake.is_set():
                    self._offer(subscription, subscription.latest)
            while subscription.wake.is_set() or not subscription.idle.is_set():
                await subscription.idle.wait()
                await asyncio.sleep(0)

    async def close(self) -> None:
        subscriptions = list(self._subscriptions)
        self._subscriptions.clear()
        for subscription in subscriptions:
            task = subscription.task
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def _offer(self, subscription: _Subscription, status: UploadManagerStatus) -> None:
        subscription.latest = status
        subscription.wake.set()
        subscription.idle.clear()
        if subscription.task is None or subscription.task.done():
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            subscription.task = loop.create_task(
                self._deliver(subscription),
                name=f"status-observer-{subscription.name}",
            )

    async def _deliver(self, subscription: _Subscription) -> None:
        while True:
            await subscription.wake.wait()
            subscription.wake.clear()
            status = subscription.latest
            if status is not None:
                try:
                    await subscription.observer(status)
                except Exception:
                    logger.exception("Status observer %s failed.", subscription.name)
            if not subscription.wake.is_set():
                subscription.idle.set()


__all__ = ["StatusBroadcaster", "StatusObserver"]
