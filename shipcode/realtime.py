"""Push subscription for the signed-in identity's notifications."""

import asyncio

import structlog

from shipcode.backend import Backend, EntityKind, EventHandler, RealtimeEvent, Unsubscribe
from shipcode.errors import BackendError
from shipcode.models import Identity
from shipcode.notifications import NotificationCenter
from shipcode.records import notification_from_row

logger = structlog.get_logger()


def channel_key_for(identity: Identity) -> str:
    return f"notifications:user:{identity.id}"


class RealtimeSubscriber:
    """Keeps exactly one notification channel open per signed-in identity."""

    def __init__(self, backend: Backend, center: NotificationCenter) -> None:
        self.backend = backend
        self.center = center
        self._channels: dict[str, Unsubscribe] = {}
        self._active_key: str | None = None
        self._lock = asyncio.Lock()

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    async def bind(self, identity: Identity | None) -> None:
        """Drop every open channel, then subscribe for identity (if any)."""
        async with self._lock:
            await self._unsubscribe_all()
            if identity is None:
                return

            key = channel_key_for(identity)
            self._active_key = key
            try:
                unsubscribe = await self.backend.subscribe(
                    key, EntityKind.NOTIFICATION, {"user_id": identity.id}, self._handler(key)
                )
            except BackendError as e:
                logger.warning("Subscription failed; realtime updates paused until next sign-in", channel=key, error=str(e))
                self._active_key = None
                return
            self._channels[key] = unsubscribe

    async def _unsubscribe_all(self) -> None:
        self._active_key = None
        for key in list(self._channels):
            unsubscribe = self._channels.pop(key)
            try:
                await unsubscribe()
            except BackendError as e:
                logger.warning("Unsubscribe failed", channel=key, error=str(e))

    def _handler(self, key: str) -> EventHandler:
        def handle(event: RealtimeEvent) -> None:
            if key != self._active_key:
                logger.debug("Dropping event from stale channel", channel=key)
                return
            if event.type != "INSERT":
                return
            try:
                notification = notification_from_row(event.row)
            except (KeyError, ValueError) as e:
                logger.warning("Malformed realtime notification", channel=key, error=str(e))
                return
            self.center.merge_inbound(notification)

        return handle
