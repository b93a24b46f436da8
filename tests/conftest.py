"""Shared fixtures: an in-memory backend with controllable latency and failures."""

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from shipcode.backend import CrudOp, EntityKind, Row
from shipcode.backends.memory import MemoryBackend
from shipcode.errors import BackendError
from shipcode.models import Identity, Role, Session
from shipcode.store import DataStore

PASSWORD = "secret"

USERS = {
    Role.ADMIN: "admin@example.com",
    Role.MANAGER: "manager@example.com",
    Role.CONTRIBUTOR: "dev@example.com",
    Role.CLIENT: "client@example.com",
}


class GatedBackend(MemoryBackend):
    """Memory backend whose calls can be held open or made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.gates: dict[tuple[EntityKind, CrudOp], asyncio.Event] = {}
        self.failures: dict[tuple[EntityKind, CrudOp], BackendError] = {}
        self.calls: list[tuple[EntityKind, CrudOp, Any, Any]] = []
        self.auth_gate: asyncio.Event | None = None

    def hold(self, kind: EntityKind, op: CrudOp) -> asyncio.Event:
        """Block matching calls until the returned event is set."""
        gate = asyncio.Event()
        self.gates[(kind, op)] = gate
        return gate

    def fail(self, kind: EntityKind, op: CrudOp, message: str = "backend unavailable") -> None:
        self.failures[(kind, op)] = BackendError(message)

    def heal(self, kind: EntityKind, op: CrudOp) -> None:
        self.failures.pop((kind, op), None)

    async def authenticate(self, email: str, password: str) -> Session:
        if self.auth_gate is not None:
            await self.auth_gate.wait()
        return await super().authenticate(email, password)

    async def crud(
        self,
        kind: EntityKind,
        op: CrudOp,
        payload: Row | list[Row] | None = None,
        match: dict[str, Any] | None = None,
    ) -> list[Row]:
        self.calls.append((kind, op, payload, match))
        gate = self.gates.get((kind, op))
        if gate is not None:
            await gate.wait()
        error = self.failures.get((kind, op))
        if error is not None:
            raise error
        return await super().crud(kind, op, payload, match)

    def rows(self, kind: EntityKind) -> list[Row]:
        return list(self.tables[kind].values())


class ActingIdentity:
    """Identity provider whose answer a test can change."""

    def __init__(self, identity: Identity | None = None) -> None:
        self.identity = identity

    def __call__(self) -> Identity | None:
        return self.identity


@pytest.fixture
def backend() -> GatedBackend:
    """Backend with an organization, one user per role, a lead and a project."""
    backend = GatedBackend()
    org = backend.seed(
        EntityKind.ORGANIZATION,
        {"name": "Initech", "primary_color": "#112233", "settings": {"taxRate": 0.1, "currency": "USD"}},
    )
    user_ids = {
        role: backend.add_user(email, PASSWORD, f"{role.value.title()} User", role.value) for role, email in USERS.items()
    }
    backend.seed(
        EntityKind.LEAD,
        {"client_name": "Globex", "project_name": "Portal", "budget": 5000, "probability": 30, "status": "NEW"},
    )
    project = backend.seed(
        EntityKind.PROJECT,
        {"name": "Intranet", "client_name": "Initrode", "status": "BUILD", "organization_id": org["id"]},
    )
    owned = {"project_id": project["id"], "organization_id": org["id"]}
    backend.seed(EntityKind.TASK, {"title": "Wireframes", "status": "DONE", **owned})
    backend.seed(EntityKind.FINANCIAL_ITEM, {"description": "Build fee", "amount": 10000, "type": "REVENUE", **owned})
    backend.seed(EntityKind.FINANCIAL_ITEM, {"description": "Hosting", "amount": 2500, "type": "COST", **owned})
    backend.seed(EntityKind.CONTRACT, {"status": "SIGNED", "content": "MSA", "total_value": 10000, **owned})
    backend.seed(
        EntityKind.PROJECT_MEMBER, {"project_id": project["id"], "user_id": user_ids[Role.CONTRIBUTOR], "role": "CONTRIBUTOR"}
    )
    return backend


@pytest.fixture
def identities(backend: GatedBackend) -> dict[Role, Identity]:
    """Identity per role, matching the users registered on the backend."""
    return {
        role: Identity(id=backend.credentials[email][1], display_name=f"{role.value.title()} User", role=role, email=email)
        for role, email in USERS.items()
    }


@pytest.fixture
def acting(identities: dict[Role, Identity]) -> ActingIdentity:
    """Identity provider, signed in as the administrator by default."""
    return ActingIdentity(identities[Role.ADMIN])


@pytest_asyncio.fixture
async def store(backend: GatedBackend, acting: ActingIdentity) -> DataStore:
    """Loaded store acting as the administrator."""
    store = DataStore(backend, acting)
    await store.load()
    return store
