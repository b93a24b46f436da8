"""Tests for the Supabase backend."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from supabase import AuthError

from shipcode.backend import CrudOp, EntityKind
from shipcode.backends.supabase import SupabaseBackend
from shipcode.errors import AuthenticationError, BackendError, ProfileNotFoundError
from shipcode.models import Role, Session


def make_client(data: list | None = None) -> tuple[MagicMock, MagicMock]:
    """Client mock whose query builders all resolve to the same query."""
    client = MagicMock()
    query = MagicMock()
    query.eq.return_value = query
    query.execute = AsyncMock(return_value=MagicMock(data=data or []))
    table = client.table.return_value
    table.select.return_value = query
    table.insert.return_value = query
    table.update.return_value = query
    table.delete.return_value = query
    return client, query


@pytest.mark.asyncio
@patch("shipcode.backends.supabase.acreate_client", new_callable=AsyncMock)
async def test_connect(mock_create: AsyncMock) -> None:
    """Test connecting creates an async client."""
    backend = await SupabaseBackend.connect("https://example.supabase.co", "anon")

    mock_create.assert_awaited_once_with("https://example.supabase.co", "anon")
    assert backend.client is mock_create.return_value


@pytest.mark.asyncio
async def test_connect_requires_settings() -> None:
    """Test a missing url or key is reported."""
    with pytest.raises(ValueError):
        await SupabaseBackend.connect(None, "anon")


@pytest.mark.asyncio
async def test_authenticate() -> None:
    """Test password sign-in returns a session."""
    client, _ = make_client()
    response = MagicMock()
    response.session.access_token = "token"
    response.user.id = "user-1"
    client.auth.sign_in_with_password = AsyncMock(return_value=response)

    session = await SupabaseBackend(client).authenticate("a@example.com", "pw")

    assert session == Session(access_token="token", user_id="user-1")
    client.auth.sign_in_with_password.assert_awaited_once_with({"email": "a@example.com", "password": "pw"})


@pytest.mark.asyncio
async def test_authenticate_refused() -> None:
    """Test auth errors become AuthenticationError."""
    client, _ = make_client()
    client.auth.sign_in_with_password = AsyncMock(side_effect=AuthError("Invalid login credentials", None))

    with pytest.raises(AuthenticationError, match="Invalid login credentials"):
        await SupabaseBackend(client).authenticate("a@example.com", "bad")


@pytest.mark.asyncio
async def test_get_session_none() -> None:
    """Test no persisted session maps to None."""
    client, _ = make_client()
    client.auth.get_session = AsyncMock(return_value=None)

    assert await SupabaseBackend(client).get_session() is None


@pytest.mark.asyncio
async def test_invalidate_session() -> None:
    """Test invalidation signs out."""
    client, _ = make_client()
    client.auth.sign_out = AsyncMock()

    await SupabaseBackend(client).invalidate_session(Session(access_token="token", user_id="user-1"))

    client.auth.sign_out.assert_awaited_once()


@pytest.mark.asyncio
async def test_fetch_profile() -> None:
    """Test the profile row is read by id."""
    client, query = make_client([{"id": "user-1", "name": "Alex", "role": "ADMIN"}])

    identity = await SupabaseBackend(client).fetch_profile("user-1")

    assert identity.role == Role.ADMIN
    client.table.assert_called_with("profiles")
    query.eq.assert_called_once_with("id", "user-1")


@pytest.mark.asyncio
async def test_fetch_profile_missing() -> None:
    """Test an empty result raises ProfileNotFoundError."""
    client, _ = make_client([])

    with pytest.raises(ProfileNotFoundError):
        await SupabaseBackend(client).fetch_profile("user-1")


@pytest.mark.asyncio
async def test_crud_insert_and_update() -> None:
    """Test inserts and updates go through the table builders."""
    client, query = make_client([{"id": "l-99", "client_name": "Acme"}])
    backend = SupabaseBackend(client)

    rows = await backend.crud(EntityKind.LEAD, CrudOp.INSERT, {"client_name": "Acme"})
    assert rows == [{"id": "l-99", "client_name": "Acme"}]
    client.table.return_value.insert.assert_called_once_with({"client_name": "Acme"})

    await backend.crud(EntityKind.LEAD, CrudOp.UPDATE, {"probability": 80}, match={"id": "l-99"})
    client.table.return_value.update.assert_called_once_with({"probability": 80})
    query.eq.assert_called_with("id", "l-99")


@pytest.mark.asyncio
async def test_crud_delete_returns_nothing() -> None:
    """Test deletes filter by every match column."""
    client, query = make_client([{"id": "m-1"}])

    rows = await SupabaseBackend(client).crud(
        EntityKind.PROJECT_MEMBER, CrudOp.DELETE, match={"project_id": "p-1", "user_id": "u-1"}
    )

    assert rows == []
    assert query.eq.call_count == 2


@pytest.mark.asyncio
async def test_crud_failure() -> None:
    """Test request failures become BackendError."""
    client, query = make_client()
    query.execute.side_effect = RuntimeError("row level security")

    with pytest.raises(BackendError, match="row level security"):
        await SupabaseBackend(client).crud(EntityKind.PROJECT, CrudOp.LIST)


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe() -> None:
    """Test a postgres_changes channel is opened and removed."""
    client, _ = make_client()
    channel = client.channel.return_value
    channel.subscribe = AsyncMock()
    client.remove_channel = AsyncMock()
    events = []

    unsubscribe = await SupabaseBackend(client).subscribe(
        "notifications:user:u-1", EntityKind.NOTIFICATION, {"user_id": "u-1"}, events.append
    )

    client.channel.assert_called_once_with("notifications:user:u-1")
    kwargs = channel.on_postgres_changes.call_args.kwargs
    assert kwargs["table"] == "notifications"
    assert kwargs["filter"] == "user_id=eq.u-1"

    kwargs["callback"]({"data": {"type": "INSERT", "record": {"id": "n-1", "title": "Hi"}}})
    assert events[0].row == {"id": "n-1", "title": "Hi"}

    await unsubscribe()
    client.remove_channel.assert_awaited_once_with(channel)


@pytest.mark.asyncio
async def test_subscribe_failure() -> None:
    """Test a failed channel join raises BackendError."""
    client, _ = make_client()
    client.channel.return_value.subscribe = AsyncMock(side_effect=RuntimeError("socket closed"))

    with pytest.raises(BackendError):
        await SupabaseBackend(client).subscribe("key", EntityKind.NOTIFICATION, {"user_id": "u-1"}, lambda event: None)


def test_on_auth_change_forwards_sessions() -> None:
    """Test auth client events are forwarded with shipcode sessions."""
    client, _ = make_client()
    events: list[tuple[str, Session | None]] = []

    unregister = SupabaseBackend(client).on_auth_change(lambda event, session: events.append((event, session)))
    forward = client.auth.on_auth_state_change.call_args.args[0]
    signed_in = MagicMock(access_token="token")
    signed_in.user.id = "user-1"
    forward("SIGNED_IN", signed_in)
    forward("SIGNED_OUT", None)

    assert events == [("SIGNED_IN", Session(access_token="token", user_id="user-1")), ("SIGNED_OUT", None)]
    assert unregister is client.auth.on_auth_state_change.return_value.unsubscribe


@pytest.mark.asyncio
@patch("shipcode.backends.supabase.acreate_client", new_callable=AsyncMock)
async def test_create_user_uses_separate_client(mock_create: AsyncMock) -> None:
    """Test registration goes through a non-persisting client with profile metadata."""
    client, _ = make_client()
    signup_client = mock_create.return_value
    signup_client.auth.sign_up = AsyncMock(return_value=MagicMock())
    signup_client.auth.sign_up.return_value.user.id = "user-9"

    backend = SupabaseBackend(client, "https://example.supabase.co", "anon")
    user_id = await backend.create_user("new@example.com", "pw123456", "New Hire", "CONTRIBUTOR")

    assert user_id == "user-9"
    options = mock_create.call_args.kwargs["options"]
    assert options.persist_session is False
    signup_client.auth.sign_up.assert_awaited_once_with(
        {
            "email": "new@example.com",
            "password": "pw123456",
            "options": {"data": {"name": "New Hire", "role": "CONTRIBUTOR"}},
        }
    )
    client.auth.sign_up.assert_not_called()


@pytest.mark.asyncio
async def test_create_user_requires_settings() -> None:
    """Test registration needs the project url and key."""
    client, _ = make_client()

    with pytest.raises(ValueError):
        await SupabaseBackend(client).create_user("new@example.com", "pw123456", "New Hire", "CLIENT")


@pytest.mark.asyncio
async def test_send_password_reset() -> None:
    """Test the reset request carries the redirect."""
    client, _ = make_client()
    client.auth.reset_password_for_email = AsyncMock()

    await SupabaseBackend(client).send_password_reset("a@example.com", redirect_to="/reset-password")

    client.auth.reset_password_for_email.assert_awaited_once_with("a@example.com", {"redirect_to": "/reset-password"})


@pytest.mark.asyncio
async def test_update_password_refused() -> None:
    """Test a missing auth session surfaces as AuthenticationError."""
    client, _ = make_client()
    client.auth.update_user = AsyncMock(side_effect=AuthError("Auth session missing!", None))

    with pytest.raises(AuthenticationError):
        await SupabaseBackend(client).update_password(Session(access_token="t", user_id="u"), "newpassword")
