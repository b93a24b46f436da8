"""In-process backend implementation holding rows in dictionaries."""

import asyncio
import copy
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import structlog

from shipcode.backend import (
    AuthChangeHandler,
    Backend,
    CrudOp,
    EntityKind,
    EventHandler,
    RealtimeEvent,
    Row,
    Unsubscribe,
)
from shipcode.errors import AuthenticationError, BackendError, ProfileNotFoundError
from shipcode.models import Identity, Session
from shipcode.records import identity_from_row

logger = structlog.get_logger()

ID_PREFIXES = {
    EntityKind.ORGANIZATION: "org",
    EntityKind.PROFILE: "u",
    EntityKind.PROJECT: "p",
    EntityKind.TASK: "t",
    EntityKind.FINANCIAL_ITEM: "f",
    EntityKind.CONTRACT: "c",
    EntityKind.PROJECT_MEMBER: "m",
    EntityKind.LEAD: "l",
    EntityKind.NOTIFICATION: "n",
}

DEMO_EMAIL = "admin@shipcode.app"
DEMO_PASSWORD = "shipcode"

PROJECT_CHILDREN = (
    EntityKind.TASK,
    EntityKind.FINANCIAL_ITEM,
    EntityKind.CONTRACT,
    EntityKind.PROJECT_MEMBER,
)


def _matches(row: Row, match: dict[str, Any] | None) -> bool:
    if not match:
        return True
    return all(row.get(key) == value for key, value in match.items())


class MemoryBackend(Backend):
    """Backend keeping every table in memory, with realtime delivery on insert."""

    def __init__(self) -> None:
        """Initialize an empty backend."""
        self.tables: dict[EntityKind, dict[str, Row]] = {kind: {} for kind in EntityKind}
        self.sequences: dict[EntityKind, int] = {kind: 0 for kind in EntityKind}
        self.credentials: dict[str, tuple[str, str]] = {}
        self.session: Session | None = None
        self.subscriptions: dict[str, tuple[EntityKind, dict[str, Any], EventHandler]] = {}
        self.auth_handlers: list[AuthChangeHandler] = []
        self.password_resets: list[tuple[str, str | None]] = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        logger.debug("Memory backend initialized")

    @classmethod
    def demo(cls) -> "MemoryBackend":
        """Backend seeded with one organization, a team, leads and a project."""
        backend = cls()
        org = backend.seed(
            EntityKind.ORGANIZATION,
            {"name": "ShipCode", "primary_color": "#dc2626", "settings": {"taxRate": 0.15, "currency": "BRL"}},
        )
        admin = backend.add_user(DEMO_EMAIL, DEMO_PASSWORD, "Alex Builder", "ADMIN")
        manager = backend.add_user("sarah@shipcode.app", DEMO_PASSWORD, "Sarah PM", "MANAGER")
        dev = backend.add_user("mike@shipcode.app", DEMO_PASSWORD, "Mike Dev", "CONTRIBUTOR")
        backend.add_user("john@client.com", DEMO_PASSWORD, "John Client", "CLIENT")

        for client, name, budget, probability, status, source in [
            ("FinTech Corp", "Digital Wallet MVP", 45000, 75, "QUALIFIED", "REFERRAL"),
            ("EcoStart", "Carbon Dashboard", 22000, 40, "CONTACTED", "MANUAL"),
            ("AutoMotive AI", "Fleet Tracking System", 85000, 20, "NEW", "CAMPAIGN_LINKEDIN"),
        ]:
            backend.seed(
                EntityKind.LEAD,
                {
                    "client_name": client,
                    "project_name": name,
                    "budget": budget,
                    "probability": probability,
                    "status": status,
                    "source": source,
                },
            )

        project = backend.seed(
            EntityKind.PROJECT,
            {
                "name": "E-commerce Redesign",
                "client_name": "RetailGiant",
                "status": "BUILD",
                "description": "Move the legacy monolithic storefront to a composable architecture.",
                "organization_id": org["id"],
            },
        )
        owned = {"project_id": project["id"], "organization_id": org["id"]}
        backend.seed(EntityKind.TASK, {"title": "Set up CI/CD pipelines", "status": "DONE", "assignee_id": admin, **owned})
        backend.seed(EntityKind.TASK, {"title": "Migrate product catalog", "status": "IN_PROGRESS", "assignee_id": dev, **owned})
        backend.seed(
            EntityKind.FINANCIAL_ITEM,
            {"description": "Discovery fee", "amount": 15000, "type": "REVENUE", "category": "FIXED_FEE", **owned},
        )
        backend.seed(
            EntityKind.FINANCIAL_ITEM,
            {"description": "Cloud dev instances", "amount": 450, "type": "COST", "category": "INFRA", **owned},
        )
        backend.seed(
            EntityKind.CONTRACT,
            {"status": "SIGNED", "content": "Master services agreement", "total_value": 120000, **owned},
        )
        for user_id in (admin, manager, dev):
            backend.seed(EntityKind.PROJECT_MEMBER, {"project_id": project["id"], "user_id": user_id, "role": "CONTRIBUTOR"})
        return backend

    def _next_id(self, kind: EntityKind) -> str:
        self.sequences[kind] += 1
        return f"{ID_PREFIXES[kind]}-{self.sequences[kind]}"

    def _timestamp(self) -> str:
        # Strictly increasing so newest-first ordering is deterministic.
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def add_user(self, email: str, password: str, name: str, role: str, **profile: Any) -> str:
        """Register a login and its profile row, returning the user id."""
        user_id = self._next_id(EntityKind.PROFILE)
        self.credentials[email] = (password, user_id)
        self.tables[EntityKind.PROFILE][user_id] = {"id": user_id, "name": name, "role": role, "email": email, **profile}
        logger.debug("Registered user", user_id=user_id, role=role)
        return user_id

    def seed(self, kind: EntityKind, row: Row) -> Row:
        """Insert a row directly, without realtime delivery."""
        stored = {"created_at": self._timestamp(), **copy.deepcopy(row)}
        stored.setdefault("id", self._next_id(kind))
        self.tables[kind][str(stored["id"])] = stored
        return copy.deepcopy(stored)

    async def authenticate(self, email: str, password: str) -> Session:
        """Check the credential against registered users."""
        await asyncio.sleep(0)
        logger.info("Authenticating", email=email)
        entry = self.credentials.get(email)
        if entry is None or entry[0] != password:
            raise AuthenticationError("Invalid login credentials")
        self.session = Session(access_token=uuid4().hex, user_id=entry[1])
        self._emit_auth("SIGNED_IN", self.session)
        return self.session

    async def get_session(self) -> Session | None:
        """Return the active session."""
        await asyncio.sleep(0)
        return self.session

    async def invalidate_session(self, session: Session) -> None:
        """Drop the active session if it matches."""
        await asyncio.sleep(0)
        logger.info("Invalidating session", user_id=session.user_id)
        if self.session is not None and self.session.access_token == session.access_token:
            self.session = None
            self._emit_auth("SIGNED_OUT", None)

    async def fetch_profile(self, identity_id: str) -> Identity:
        """Look up a profile row."""
        await asyncio.sleep(0)
        row = self.tables[EntityKind.PROFILE].get(identity_id)
        if row is None:
            raise ProfileNotFoundError(f"No profile for user {identity_id}")
        return identity_from_row(row)

    async def crud(
        self,
        kind: EntityKind,
        op: CrudOp,
        payload: Row | list[Row] | None = None,
        match: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Run a CRUD operation against an in-memory table."""
        await asyncio.sleep(0)
        table = self.tables[kind]
        logger.debug("Memory crud", kind=kind.value, op=op.value, match=match)

        if op == CrudOp.LIST:
            return [copy.deepcopy(row) for row in table.values() if _matches(row, match)]

        if op == CrudOp.INSERT:
            rows = payload if isinstance(payload, list) else [payload or {}]
            inserted = []
            for row in rows:
                stored = {**copy.deepcopy(row), "id": self._next_id(kind), "created_at": self._timestamp()}
                table[stored["id"]] = stored
                inserted.append(copy.deepcopy(stored))
            for row in inserted:
                self._publish(kind, row)
            return inserted

        if op == CrudOp.UPDATE:
            if not isinstance(payload, dict):
                raise BackendError("Update requires a patch")
            updated = []
            for row in table.values():
                if _matches(row, match):
                    row.update(copy.deepcopy(payload))
                    updated.append(copy.deepcopy(row))
            return updated

        if op == CrudOp.DELETE:
            doomed = [row_id for row_id, row in table.items() if _matches(row, match)]
            for row_id in doomed:
                del table[row_id]
                if kind == EntityKind.PROJECT:
                    for child in PROJECT_CHILDREN:
                        child_table = self.tables[child]
                        for child_id in [cid for cid, c in child_table.items() if c.get("project_id") == row_id]:
                            del child_table[child_id]
            return []

        raise BackendError(f"Unsupported operation: {op}")

    def _publish(self, kind: EntityKind, row: Row) -> None:
        loop = asyncio.get_running_loop()
        for channel_key, (sub_kind, match, handler) in list(self.subscriptions.items()):
            if sub_kind == kind and _matches(row, match):
                logger.debug("Publishing realtime event", channel=channel_key, kind=kind.value, row_id=row["id"])
                loop.call_soon(handler, RealtimeEvent(kind=kind, type="INSERT", row=copy.deepcopy(row)))

    async def subscribe(
        self,
        channel_key: str,
        kind: EntityKind,
        match: dict[str, Any],
        on_event: EventHandler,
    ) -> Unsubscribe:
        """Register a handler for inserts matching the filter."""
        await asyncio.sleep(0)
        self.subscriptions[channel_key] = (kind, dict(match), on_event)
        logger.info("Channel subscribed", channel=channel_key)

        async def unsubscribe() -> None:
            if self.subscriptions.get(channel_key, (None, None, None))[2] is on_event:
                del self.subscriptions[channel_key]
                logger.info("Channel unsubscribed", channel=channel_key)

        return unsubscribe

    def _emit_auth(self, event: str, session: Session | None) -> None:
        for handler in list(self.auth_handlers):
            handler(event, session)

    def on_auth_change(self, handler: AuthChangeHandler) -> Callable[[], None]:
        """Call handler synchronously on every sign in, sign out and user update."""
        self.auth_handlers.append(handler)

        def unregister() -> None:
            if handler in self.auth_handlers:
                self.auth_handlers.remove(handler)

        return unregister

    async def create_user(self, email: str, password: str, name: str, role: str) -> str:
        """Register a login and profile; the active session is left alone."""
        await asyncio.sleep(0)
        if email in self.credentials:
            raise BackendError("User already registered")
        return self.add_user(email, password, name, role)

    async def send_password_reset(self, email: str, redirect_to: str | None = None) -> None:
        """Record the reset request; unknown addresses are accepted silently."""
        await asyncio.sleep(0)
        logger.info("Password reset requested", email=email)
        self.password_resets.append((email, redirect_to))

    async def update_password(self, session: Session, password: str) -> None:
        """Replace the password of the session's user."""
        await asyncio.sleep(0)
        if self.session is None or self.session.access_token != session.access_token:
            raise AuthenticationError("Auth session missing!")
        email = next(email for email, (_, user_id) in self.credentials.items() if user_id == session.user_id)
        self.credentials[email] = (password, session.user_id)
        self._emit_auth("USER_UPDATED", self.session)
