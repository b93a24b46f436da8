"""Tests for the in-memory backend."""

import asyncio

import pytest

from shipcode.backend import CrudOp, EntityKind, RealtimeEvent
from shipcode.backends.memory import DEMO_EMAIL, DEMO_PASSWORD, MemoryBackend
from shipcode.errors import AuthenticationError, BackendError, ProfileNotFoundError
from shipcode.models import Role


@pytest.mark.asyncio
async def test_authenticate_and_profile() -> None:
    """Test credential exchange and profile lookup."""
    backend = MemoryBackend()
    user_id = backend.add_user("a@example.com", "pw", "Alice", "MANAGER")

    session = await backend.authenticate("a@example.com", "pw")
    assert session.user_id == user_id
    assert await backend.get_session() == session

    identity = await backend.fetch_profile(user_id)
    assert identity.role == Role.MANAGER
    assert identity.email == "a@example.com"

    await backend.invalidate_session(session)
    assert await backend.get_session() is None


@pytest.mark.asyncio
async def test_authenticate_refused() -> None:
    """Test wrong credentials and missing profiles raise."""
    backend = MemoryBackend()
    with pytest.raises(AuthenticationError):
        await backend.authenticate("nobody@example.com", "pw")
    with pytest.raises(ProfileNotFoundError):
        await backend.fetch_profile("u-404")


@pytest.mark.asyncio
async def test_crud_assigns_ids() -> None:
    """Test inserts get sequential ids and rows can be filtered, updated and deleted."""
    backend = MemoryBackend()

    inserted = await backend.crud(EntityKind.LEAD, CrudOp.INSERT, [{"client_name": "A"}, {"client_name": "B"}])
    assert [row["id"] for row in inserted] == ["l-1", "l-2"]
    assert all("created_at" in row for row in inserted)

    updated = await backend.crud(EntityKind.LEAD, CrudOp.UPDATE, {"probability": 90}, match={"id": "l-2"})
    assert updated[0]["probability"] == 90

    assert [r["client_name"] for r in await backend.crud(EntityKind.LEAD, CrudOp.LIST, match={"id": "l-1"})] == ["A"]

    await backend.crud(EntityKind.LEAD, CrudOp.DELETE, match={"id": "l-1"})
    assert [r["id"] for r in await backend.crud(EntityKind.LEAD, CrudOp.LIST)] == ["l-2"]


@pytest.mark.asyncio
async def test_update_requires_patch() -> None:
    """Test an update without a patch is rejected."""
    with pytest.raises(BackendError):
        await MemoryBackend().crud(EntityKind.LEAD, CrudOp.UPDATE, None, match={"id": "l-1"})


@pytest.mark.asyncio
async def test_returned_rows_are_copies() -> None:
    """Test callers cannot mutate stored rows through returned values."""
    backend = MemoryBackend()
    row = (await backend.crud(EntityKind.LEAD, CrudOp.INSERT, {"client_name": "A"}))[0]
    row["client_name"] = "Changed"

    assert backend.tables[EntityKind.LEAD]["l-1"]["client_name"] == "A"


@pytest.mark.asyncio
async def test_project_delete_cascades() -> None:
    """Test deleting a project removes the rows it owns."""
    backend = MemoryBackend.demo()

    await backend.crud(EntityKind.PROJECT, CrudOp.DELETE, match={"id": "p-1"})

    for kind in (EntityKind.TASK, EntityKind.FINANCIAL_ITEM, EntityKind.CONTRACT, EntityKind.PROJECT_MEMBER):
        assert await backend.crud(kind, CrudOp.LIST) == []


@pytest.mark.asyncio
async def test_subscribe_delivers_matching_inserts() -> None:
    """Test subscribers see inserts matching their filter until they unsubscribe."""
    backend = MemoryBackend()
    events: list[RealtimeEvent] = []
    unsubscribe = await backend.subscribe("inbox", EntityKind.NOTIFICATION, {"user_id": "u-1"}, events.append)

    await backend.crud(EntityKind.NOTIFICATION, CrudOp.INSERT, {"user_id": "u-1", "title": "Hi"})
    await backend.crud(EntityKind.NOTIFICATION, CrudOp.INSERT, {"user_id": "u-2", "title": "Other"})
    await asyncio.sleep(0)
    assert [event.row["title"] for event in events] == ["Hi"]
    assert events[0].type == "INSERT"

    await unsubscribe()
    await backend.crud(EntityKind.NOTIFICATION, CrudOp.INSERT, {"user_id": "u-1", "title": "Late"})
    await asyncio.sleep(0)
    assert len(events) == 1
    assert backend.subscriptions == {}


@pytest.mark.asyncio
async def test_demo_backend() -> None:
    """Test the demo data set signs in and lists its content."""
    backend = MemoryBackend.demo()

    session = await backend.authenticate(DEMO_EMAIL, DEMO_PASSWORD)
    identity = await backend.fetch_profile(session.user_id)

    assert identity.role == Role.ADMIN
    assert len(await backend.crud(EntityKind.LEAD, CrudOp.LIST)) == 3
    assert len(await backend.crud(EntityKind.TASK, CrudOp.LIST, match={"project_id": "p-1"})) == 2


@pytest.mark.asyncio
async def test_auth_changes_are_announced() -> None:
    """Test sign in, password change and sign out reach registered handlers until unregistered."""
    backend = MemoryBackend()
    backend.add_user("a@example.com", "pw", "Alice", "MANAGER")
    events: list[str] = []
    unregister = backend.on_auth_change(lambda event, session: events.append(event))

    session = await backend.authenticate("a@example.com", "pw")
    await backend.update_password(session, "better-pw")
    await backend.invalidate_session(session)
    unregister()
    await backend.authenticate("a@example.com", "better-pw")

    assert events == ["SIGNED_IN", "USER_UPDATED", "SIGNED_OUT"]
    with pytest.raises(AuthenticationError):
        await backend.update_password(session, "other-pw")


@pytest.mark.asyncio
async def test_create_user_keeps_current_session() -> None:
    """Test registering a user leaves the signed-in session alone and rejects duplicates."""
    backend = MemoryBackend()
    backend.add_user("a@example.com", "pw", "Alice", "ADMIN")
    session = await backend.authenticate("a@example.com", "pw")

    user_id = await backend.create_user("b@example.com", "pw2", "Bob", "CLIENT")
    await backend.send_password_reset("b@example.com", redirect_to="/reset-password")

    assert (await backend.fetch_profile(user_id)).role == Role.CLIENT
    assert await backend.get_session() == session
    assert backend.password_resets == [("b@example.com", "/reset-password")]
    with pytest.raises(BackendError):
        await backend.create_user("b@example.com", "pw3", "Bob", "CLIENT")
