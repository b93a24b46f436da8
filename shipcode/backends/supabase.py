"""Supabase backend implementation using the async supabase client."""

from collections.abc import Callable
from typing import Any

import structlog
from supabase import AsyncClient, AsyncClientOptions, AuthError, acreate_client

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


def _extract_record(payload: dict[str, Any]) -> dict[str, Any]:
    """Pull the changed row out of a postgres_changes payload."""
    data = payload.get("data", payload)
    return data.get("record") or data.get("new") or {}


class SupabaseBackend(Backend):
    """Backend talking to a hosted Supabase project (auth, PostgREST and realtime)."""

    def __init__(self, client: AsyncClient, url: str | None = None, key: str | None = None) -> None:
        """Initialize Supabase backend.

        Args:
            client: Connected async Supabase client
            url: Project url, needed to open side clients for user registration
            key: Anon key for the same project
        """
        self.client = client
        self.url = url
        self.key = key
        logger.info("Supabase backend initialized")

    @classmethod
    async def connect(cls, url: str | None, key: str | None) -> "SupabaseBackend":
        """Create a client for the project at url and wrap it."""
        if not url or not key:
            raise ValueError(
                "Supabase url and key not configured. Set them using:\n"
                "  shipcode config set supabase.url <url>\n"
                "  shipcode config set supabase.key <anon key>"
            )
        logger.debug("Connecting to Supabase", url=url)
        client = await acreate_client(url, key)
        return cls(client, url, key)

    async def authenticate(self, email: str, password: str) -> Session:
        """Sign in with email and password."""
        logger.info("Signing in with password", email=email)
        try:
            response = await self.client.auth.sign_in_with_password({"email": email, "password": password})
        except AuthError as e:
            logger.error("Sign in refused", email=email, error=str(e))
            raise AuthenticationError(str(e)) from e

        if response.session is None or response.user is None:
            raise AuthenticationError("Unknown error: no user returned")
        return Session(access_token=response.session.access_token, user_id=str(response.user.id))

    async def get_session(self) -> Session | None:
        """Return the persisted auth session, if any."""
        try:
            session = await self.client.auth.get_session()
        except AuthError as e:
            raise BackendError(str(e)) from e
        if session is None or session.user is None:
            return None
        return Session(access_token=session.access_token, user_id=str(session.user.id))

    async def invalidate_session(self, session: Session) -> None:
        """Sign out, revoking the session on the server."""
        logger.info("Signing out", user_id=session.user_id)
        try:
            await self.client.auth.sign_out()
        except AuthError as e:
            raise BackendError(str(e)) from e

    async def fetch_profile(self, identity_id: str) -> Identity:
        """Load the profiles row for a user."""
        rows = await self.crud(EntityKind.PROFILE, CrudOp.LIST, match={"id": identity_id})
        if not rows:
            raise ProfileNotFoundError(f"No profile for user {identity_id}")
        return identity_from_row(rows[0])

    async def crud(
        self,
        kind: EntityKind,
        op: CrudOp,
        payload: Row | list[Row] | None = None,
        match: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Run a PostgREST request against the table for kind."""
        logger.debug("Supabase crud", table=kind.value, op=op.value, match=match)
        table = self.client.table(kind.value)

        if op == CrudOp.LIST:
            query = table.select("*")
        elif op == CrudOp.INSERT:
            query = table.insert(payload)
        elif op == CrudOp.UPDATE:
            query = table.update(payload)
        elif op == CrudOp.DELETE:
            query = table.delete()
        else:
            raise ValueError(f"Unsupported operation: {op}")

        for column, value in (match or {}).items():
            query = query.eq(column, value)

        try:
            response = await query.execute()
        except Exception as e:
            logger.error("Supabase request failed", table=kind.value, op=op.value, error=str(e))
            raise BackendError(f"{op.value} on {kind.value} failed: {e}") from e

        if op == CrudOp.DELETE:
            return []
        return list(response.data or [])

    async def subscribe(
        self,
        channel_key: str,
        kind: EntityKind,
        match: dict[str, Any],
        on_event: EventHandler,
    ) -> Unsubscribe:
        """Open a postgres_changes channel for inserts on the table."""
        filter_expr = ",".join(f"{column}=eq.{value}" for column, value in match.items()) or None

        def handle(payload: dict[str, Any]) -> None:
            on_event(RealtimeEvent(kind=kind, type="INSERT", row=_extract_record(payload)))

        channel = self.client.channel(channel_key)
        channel.on_postgres_changes("INSERT", schema="public", table=kind.value, filter=filter_expr, callback=handle)
        try:
            await channel.subscribe()
        except Exception as e:
            raise BackendError(f"Subscribing to {channel_key} failed: {e}") from e
        logger.info("Channel subscribed", channel=channel_key, table=kind.value)

        async def unsubscribe() -> None:
            await self.client.remove_channel(channel)
            logger.info("Channel unsubscribed", channel=channel_key)

        return unsubscribe

    def on_auth_change(self, handler: AuthChangeHandler) -> Callable[[], None]:
        """Forward the auth client's state changes as shipcode sessions."""

        def forward(event: str, session: Any) -> None:
            if session is None or session.user is None:
                handler(event, None)
                return
            handler(event, Session(access_token=session.access_token, user_id=str(session.user.id)))

        subscription = self.client.auth.on_auth_state_change(forward)
        return subscription.unsubscribe

    async def create_user(self, email: str, password: str, name: str, role: str) -> str:
        """Sign up a user through a throwaway client so the admin's session survives."""
        if not self.url or not self.key:
            raise ValueError("Supabase url and key are required to register users")
        signup_client = await acreate_client(
            self.url, self.key, options=AsyncClientOptions(persist_session=False, auto_refresh_token=False)
        )
        logger.info("Registering user", email=email, role=role)
        try:
            response = await signup_client.auth.sign_up(
                {"email": email, "password": password, "options": {"data": {"name": name, "role": role}}}
            )
        except AuthError as e:
            logger.error("Registration refused", email=email, error=str(e))
            raise BackendError(str(e)) from e
        if response.user is None:
            raise BackendError("Registration returned no user")
        return str(response.user.id)

    async def send_password_reset(self, email: str, redirect_to: str | None = None) -> None:
        """Ask the auth service to email a recovery link."""
        logger.info("Requesting password reset", email=email)
        try:
            await self.client.auth.reset_password_for_email(email, {"redirect_to": redirect_to} if redirect_to else None)
        except AuthError as e:
            raise BackendError(str(e)) from e

    async def update_password(self, session: Session, password: str) -> None:
        """Set a new password for the signed-in user."""
        logger.info("Updating password", user_id=session.user_id)
        try:
            await self.client.auth.update_user({"password": password})
        except AuthError as e:
            raise AuthenticationError(str(e)) from e
