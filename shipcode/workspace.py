"""Composition of session, store, notifications and realtime around one backend."""

import asyncio

import structlog

from shipcode.backend import Backend
from shipcode.models import Identity
from shipcode.notifications import NotificationCenter
from shipcode.permissions import Capabilities, permissions_for
from shipcode.realtime import RealtimeSubscriber
from shipcode.routes import Admission, can_enter
from shipcode.session import DEFAULT_INACTIVITY_TIMEOUT, DEFAULT_LOGIN_TIMEOUT, SessionManager
from shipcode.store import DataStore

logger = structlog.get_logger()


class Workspace:
    """One running client: every component is created here and torn down with the identity."""

    def __init__(
        self,
        backend: Backend,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        login_timeout: float = DEFAULT_LOGIN_TIMEOUT,
    ) -> None:
        self.backend = backend
        self.session = SessionManager(backend, inactivity_timeout=inactivity_timeout, login_timeout=login_timeout)
        self.store = DataStore(backend, self.session.identity)
        self.notifications = NotificationCenter(backend, self.session.identity)
        self.realtime = RealtimeSubscriber(backend, self.notifications)
        self.notices: list[str] = []

        self.session.add_listener(self._on_identity_change)
        self.session.add_expiry_listener(self._on_expired)

    @property
    def identity(self) -> Identity | None:
        return self.session.current_identity

    @property
    def permissions(self) -> Capabilities:
        identity = self.identity
        return permissions_for(identity.role if identity else None)

    def can_enter(self, path: str) -> Admission:
        return can_enter(path, self.identity)

    async def _on_identity_change(self, identity: Identity | None, reason: str) -> None:
        logger.debug("Identity changed", reason=reason, user_id=identity.id if identity else None)
        if identity is None:
            await self.realtime.bind(None)
            self.notifications.reset()
            self.store.reset()
            return
        await self.realtime.bind(identity)
        await asyncio.gather(self.store.load(), self.notifications.load())

    def _on_expired(self, message: str) -> None:
        self.notices.append(message)

    async def start(self) -> bool:
        """Restore a previous session if the backend still has one."""
        return await self.session.restore()

    async def close(self) -> None:
        """Let pending writes finish, then close realtime channels."""
        await self.store.drain()
        await self.notifications.drain()
        await self.realtime.bind(None)
        self.session.detach()
