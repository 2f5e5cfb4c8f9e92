from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from pqbridge.infra.types.db import Notification

LOGGER = structlog.get_logger(__name__)
NotificationHandler = Callable[[str], Awaitable[None] | None]


class NotificationRouter:
    """Channel name to callback registry for one connection.

    :meth:`dispatch` is called from the dispatcher worker thread; callbacks always
    run later on the event loop that registered them, in the order the server
    sent the notifications.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, NotificationHandler] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active(self) -> bool:
        return bool(self._handlers)

    @property
    def channels(self) -> list[str]:
        return list(self._handlers)

    def subscribe(self, channel: str, handler: NotificationHandler) -> bool:
        """Register ``handler``; return True if the channel was not subscribed before."""
        if not isinstance(channel, str) or not channel:
            raise ValueError("channel must be a non-empty string")
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._loop = asyncio.get_running_loop()
        is_new = channel not in self._handlers
        self._handlers[channel] = handler
        return is_new

    def unsubscribe(self, channel: str) -> bool:
        """Drop the handler; return True if the channel had one."""
        return self._handlers.pop(channel, None) is not None

    def clear(self) -> None:
        self._handlers.clear()

    def dispatch(self, notification: Notification) -> None:
        """Schedule delivery of ``notification`` on the owning event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._deliver, notification)
        except RuntimeError:
            # 事件迴圈已關閉
            LOGGER.debug("db.notify.loop_closed", channel=notification.channel)

    def _deliver(self, notification: Notification) -> None:
        handler = self._handlers.get(notification.channel)
        if handler is None:
            LOGGER.debug("db.notify.unrouted", channel=notification.channel)
            return
        try:
            result = handler(notification.payload)
        except Exception:
            LOGGER.exception("db.notify.handler_failed", channel=notification.channel)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(self._await_handler(notification.channel, result))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _await_handler(self, channel: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception:
            LOGGER.exception("db.notify.handler_failed", channel=channel)
