"""
auth/notifications.py -- Out-of-band notifications (verification, password reset).

Email delivery is an external collaborator. The auth service only ever calls
NotificationQueue.enqueue(), which is a non-blocking put onto an in-memory
queue, so no request waits on a mail server. A background task started in the
API lifespan drains the queue and hands each item to a sender.

LogSender is the default sender: it records that a message would be sent
without writing the token itself to the log.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import asyncio
import logging
import queue
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger("travelauth.notify")

VERIFY_EMAIL = "verify_email"
RESET_PASSWORD = "reset_password"


@dataclass(frozen=True)
class Notification:
    kind: str  # VERIFY_EMAIL | RESET_PASSWORD
    tenant_id: str
    user_id: int
    email: str
    token: str


class NotificationQueue:
    """Thread-safe FIFO between request handlers and the delivery task.

    Route handlers run in FastAPI's thread pool, so the queue is a
    queue.Queue rather than an asyncio.Queue. When full, the newest message
    is dropped and logged; the user can always ask for a new token.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: queue.Queue[Notification] = queue.Queue(maxsize=maxsize)

    def enqueue(self, notification: Notification) -> None:
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            logger.error("Notification queue full; dropping %s for user_id=%s", notification.kind, notification.user_id)

    def drain(self) -> list[Notification]:
        """Remove and return everything currently queued."""
        items: list[Notification] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __len__(self) -> int:
        return self._queue.qsize()


class LogSender:
    def __call__(self, notification: Notification) -> None:
        logger.info(
            "Would send %s to user_id=%s tenant=%s",
            notification.kind,
            notification.user_id,
            notification.tenant_id,
        )


async def delivery_loop(
    notifications: NotificationQueue,
    sender: Callable[[Notification], None],
    interval: float = 1.0,
) -> None:
    """Deliver queued notifications until cancelled.

    A failing sender is logged and the loop carries on; a lost email is
    recoverable by the user, a dead delivery task is not.
    """
    while True:
        for item in notifications.drain():
            try:
                sender(item)
            except Exception:
                logger.exception("Failed to deliver %s for user_id=%s", item.kind, item.user_id)
        await asyncio.sleep(interval)
