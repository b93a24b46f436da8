"""Notification mirror with optimistic read-state tracking."""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import structlog

from shipcode.backend import Backend, CrudOp, EntityKind
from shipcode.errors import BackendError
from shipcode.models import (
    Identity,
    Notification,
    NotificationAction,
    NotificationType,
    is_temporary_id,
    new_temporary_id,
)
from shipcode.records import notification_from_row, notification_to_row

logger = structlog.get_logger()

NOTIFICATION_LIMIT = 50


class NotificationCenter:
    """Newest-first list of the current identity's notifications."""

    def __init__(self, backend: Backend, identity_provider: Callable[[], Identity | None]) -> None:
        self.backend = backend
        self._current_identity = identity_provider
        self.notifications: list[Notification] = []
        self._generation = 0
        self._pending: set[asyncio.Task[Any]] = set()
        self._id_map: dict[str, str] = {}
        # temporary ids whose insert is in flight, and what was asked of them meanwhile
        self._adding: set[str] = set()
        self._read_on_insert: set[str] = set()
        self._remove_on_insert: set[str] = set()

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.read)

    def reset(self) -> None:
        self._generation += 1
        self.notifications = []
        self._id_map.clear()
        self._adding.clear()
        self._read_on_insert.clear()
        self._remove_on_insert.clear()

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def load(self) -> None:
        """Fetch the latest notifications for the signed-in identity."""
        identity = self._current_identity()
        if identity is None:
            self.notifications = []
            return
        generation = self._generation
        try:
            rows = await self.backend.crud(EntityKind.NOTIFICATION, CrudOp.LIST, match={"user_id": identity.id})
        except BackendError as e:
            logger.error("Failed to load notifications", user_id=identity.id, error=str(e))
            if generation == self._generation:
                self.notifications = []
            return
        if generation != self._generation:
            return
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        self.notifications = [notification_from_row(row) for row in rows[:NOTIFICATION_LIMIT]]
        logger.debug("Notifications loaded", count=len(self.notifications), unread=self.unread_count)

    def merge_inbound(self, notification: Notification) -> None:
        """Apply a pushed notification: replace by id, otherwise prepend."""
        for index, existing in enumerate(self.notifications):
            if existing.id == notification.id:
                # Read state only moves forward.
                self.notifications[index] = replace(notification, read=notification.read or existing.read)
                return
        self.notifications.insert(0, notification)
        logger.debug("Inbound notification merged", notification_id=notification.id)

    def add(
        self,
        type: NotificationType,
        title: str,
        message: str,
        action: NotificationAction | None = None,
    ) -> Notification:
        """Show a notification immediately; persist it when someone is signed in."""
        notification = Notification(
            id=new_temporary_id("notification"),
            type=type,
            title=title,
            message=message,
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            action=action,
        )
        self.notifications.insert(0, notification)

        identity = self._current_identity()
        if identity is not None:
            self._adding.add(notification.id)
            self._spawn(self._persist_add(notification, identity.id, self._generation))
        return notification

    async def _persist_add(self, notification: Notification, user_id: str, generation: int) -> None:
        try:
            rows = await self.backend.crud(
                EntityKind.NOTIFICATION, CrudOp.INSERT, notification_to_row(notification, user_id)
            )
        except BackendError as e:
            logger.warning("Failed to save notification; keeping it local", error=str(e))
            self._settle(notification.id, generation)
            return
        if generation != self._generation:
            return

        real_id = str(rows[0]["id"])
        self._id_map[notification.id] = real_id
        read, removed = self._settle(notification.id, generation)
        if removed:
            self.notifications = [n for n in self.notifications if n.id not in (notification.id, real_id)]
            await self._write(CrudOp.DELETE, None, {"id": real_id})
            return

        # The realtime echo may have delivered the authoritative row already.
        if any(n.id == real_id for n in self.notifications):
            self.notifications = [n for n in self.notifications if n.id != notification.id]
        self.notifications = [
            replace(n, id=real_id, read=n.read or read) if n.id in (notification.id, real_id) else n
            for n in self.notifications
        ]
        if read:
            await self._write(CrudOp.UPDATE, {"is_read": True}, {"id": real_id})

    def _settle(self, temp_id: str, generation: int) -> tuple[bool, bool]:
        """Stop tracking an insert; returns whether a read and a removal were requested meanwhile."""
        if generation != self._generation:
            return False, False
        self._adding.discard(temp_id)
        read = temp_id in self._read_on_insert
        removed = temp_id in self._remove_on_insert
        self._read_on_insert.discard(temp_id)
        self._remove_on_insert.discard(temp_id)
        return read, removed

    def _target(self, notification_id: str) -> str | None:
        target = self._id_map.get(notification_id, notification_id)
        return None if is_temporary_id(target) else target

    def mark_as_read(self, notification_id: str) -> None:
        self.notifications = [
            replace(n, read=True) if n.id == notification_id else n for n in self.notifications
        ]
        target = self._target(notification_id)
        if target is not None:
            self._spawn(self._write(CrudOp.UPDATE, {"is_read": True}, {"id": target}))
        elif notification_id in self._adding:
            self._read_on_insert.add(notification_id)

    def mark_all_as_read(self) -> None:
        identity = self._current_identity()
        if identity is None:
            return
        self.notifications = [replace(n, read=True) for n in self.notifications]
        self._read_on_insert |= self._adding
        self._spawn(self._write(CrudOp.UPDATE, {"is_read": True}, {"user_id": identity.id, "is_read": False}))

    def remove(self, notification_id: str) -> None:
        self.notifications = [n for n in self.notifications if n.id != notification_id]
        target = self._target(notification_id)
        if target is not None:
            self._spawn(self._write(CrudOp.DELETE, None, {"id": target}))
        elif notification_id in self._adding:
            self._remove_on_insert.add(notification_id)

    def clear_all(self) -> None:
        identity = self._current_identity()
        if identity is None:
            return
        self.notifications = []
        self._remove_on_insert |= self._adding
        self._spawn(self._write(CrudOp.DELETE, None, {"user_id": identity.id}))

    async def _write(self, op: CrudOp, payload: dict[str, Any] | None, match: dict[str, Any]) -> None:
        try:
            await self.backend.crud(EntityKind.NOTIFICATION, op, payload, match=match)
        except BackendError as e:
            logger.warning("Notification write failed", op=op.value, match=match, error=str(e))
