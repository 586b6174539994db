"""
Notification Sink
=================
Best-effort fan-out of operational events to the admin feed.

``emit`` never raises and, in background mode, never waits: the record is
persisted and published on a tracked task bounded by its own timeout, so a
slow broker or a broken notifications table can't hold up a webhook
response or undo state that has already been committed.
"""

import asyncio
import os
from typing import Any, Dict, List, Optional, Set

import structlog

from pipeline.event_bus_adapter import DomainEvent, IEventBus
from schemas.domain import Caller, Notification, NotificationType
from services.errors import AuthError, NotFoundError
from storage.repositories import INotificationRepository


class NotificationConfig:
    TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5.0"))
    FEED_LIMIT = 50


class NotificationSink:
    """Persist + publish notifications without ever failing the caller"""

    def __init__(
        self,
        store: INotificationRepository,
        bus: IEventBus,
        background: bool = True,
        timeout_seconds: float = None,
    ):
        self._store = store
        self._bus = bus
        self._background = background
        self._timeout = timeout_seconds or NotificationConfig.TIMEOUT_SECONDS
        self._pending: Set[asyncio.Task] = set()
        self._logger = structlog.get_logger().bind(component="notification_sink")

    async def emit(
        self,
        type: NotificationType,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        notification = Notification(type=type, message=message, meta=meta or {})

        if not self._background:
            await self._deliver(notification, correlation_id)
            return

        task = asyncio.create_task(self._deliver(notification, correlation_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification, correlation_id: Optional[str]) -> None:
        log = self._logger.bind(
            notification_type=notification.type.value,
            correlation_id=correlation_id,
        )
        try:
            async with asyncio.timeout(self._timeout):
                saved = await self._store.add(notification)
                event = DomainEvent(event_type=saved.type, payload=saved.to_json())
                if correlation_id:
                    event.correlation_id = correlation_id
                await self._bus.publish(event)
            log.info("notification_sent", notification_id=saved.id)
        except TimeoutError:
            log.warning("notification_timeout", timeout=self._timeout)
        except Exception as e:
            log.warning("notification_failed", error=str(e), error_type=type(e).__name__)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._pending)


class NotificationCenter:
    """Admin-facing read side of the notification feed"""

    def __init__(self, store: INotificationRepository):
        self._store = store

    async def list_recent(self, caller: Caller, limit: int = NotificationConfig.FEED_LIMIT) -> List[Notification]:
        if not caller.is_admin:
            raise AuthError()
        return await self._store.list_recent(limit)

    async def mark_read(self, caller: Caller, notification_id: str) -> Notification:
        if not caller.is_admin:
            raise AuthError()
        notification = await self._store.mark_read(notification_id)
        if notification is None:
            raise NotFoundError("Notification not found")
        return notification
