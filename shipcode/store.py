"""In-memory mirror of remote entities with optimistic mutations.

Every mutation updates the mirror synchronously, before the caller regains
control, and then schedules the remote write as an asyncio task. Remote
failures are logged and the optimistic state is kept: the user keeps seeing
what they entered even when it was not persisted (see ``unpersisted()``).

Creates are reconciled by a full refetch (``load()``) once the remote insert
resolves, so temporary identifiers on the entity and on everything it owns
are replaced in one pass. Merges are keyed by identifier, which makes them
idempotent and lets writes complete in any order.
"""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

import structlog

from shipcode.backend import Backend, CrudOp, EntityKind, Row
from shipcode.errors import BackendError, InvalidTransitionError, PermissionDeniedError, ValidationError
from shipcode.models import (
    Contract,
    ContractStatus,
    FinancialItem,
    Identity,
    Lead,
    LeadStatus,
    Organization,
    Project,
    Role,
    Task,
    is_temporary_id,
    new_temporary_id,
)
from shipcode.permissions import permissions_for
from shipcode.records import (
    assemble_projects,
    contract_to_row,
    financial_item_to_row,
    identity_from_row,
    lead_from_row,
    lead_to_row,
    organization_from_row,
    organization_patch_to_row,
    project_to_row,
    task_to_row,
)

logger = structlog.get_logger()

T = TypeVar("T", Project, Lead)


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _upsert(items: list[T], entity: T) -> None:
    """Replace the entry with the same id, or prepend when absent."""
    for index, existing in enumerate(items):
        if existing.id == entity.id:
            items[index] = entity
            return
    items.insert(0, entity)


def _find(items: list[T], entity_id: str) -> T | None:
    return next((item for item in items if item.id == entity_id), None)


class DataStore:
    """Mirror of organization, projects, leads and team for the current identity."""

    def __init__(self, backend: Backend, identity_provider: Callable[[], Identity | None]) -> None:
        """Initialize an empty store.

        Args:
            backend: Backend collaborator used for every remote read and write
            identity_provider: Returns the signed-in identity, or None
        """
        self.backend = backend
        self._current_identity = identity_provider

        self.organization: Organization | None = None
        self.projects: list[Project] = []
        self.leads: list[Lead] = []
        self.users: list[Identity] = []
        self.state = LoadState.IDLE
        self.last_error: str | None = None

        self._generation = 0
        self._pending: set[asyncio.Task[Any]] = set()
        # temporary id -> in-flight create
        self._creates: dict[str, asyncio.Task[Any]] = {}
        # temporary id -> entity not yet reconciled (in flight or failed)
        self._local_only: dict[str, Project | Lead] = {}
        self._failed: set[str] = set()
        # temporary id -> authoritative id, for entities and their nested rows
        self._id_map: dict[str, str] = {}
        self._deleted_temps: set[str] = set()
        # deleted id -> load ticket current when the delete was confirmed (None while in flight)
        self._tombstones: dict[str, int | None] = {}
        self._load_ticket = 0
        # project updates are written one at a time, in the order they were made
        self._project_writes = asyncio.Lock()
        self._queued_project_writes = 0
        self._project_reload = False

    # -- lifecycle -----------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    def reset(self) -> None:
        """Tear the mirror down; completions of earlier writes are ignored afterwards."""
        self._generation += 1
        logger.info("Resetting data store", generation=self._generation)
        self._clear_mirror()
        self._creates.clear()
        self._local_only.clear()
        self._failed.clear()
        self._id_map.clear()
        self._deleted_temps.clear()
        self._tombstones.clear()
        self._project_reload = False
        self.state = LoadState.IDLE
        self.last_error = None

    def _clear_mirror(self) -> None:
        self.organization = None
        self.projects = []
        self.leads = []
        self.users = []

    async def drain(self) -> None:
        """Wait for every in-flight remote write and its reconciliation."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    # -- permissions -----------------------------------------------------------

    def _require(self, capability: str, action: str) -> Identity:
        identity = self._current_identity()
        capabilities = permissions_for(identity.role if identity else None)
        if identity is None or not capabilities.allows(capability):
            logger.warning("Mutation denied", capability=capability, action=action)
            raise PermissionDeniedError(capability, action)
        return identity

    # -- load ----------------------------------------------------------------

    async def load(self) -> None:
        """Replace the mirror with everything the current identity may see.

        Fails closed: on any backend error the mirror is emptied and the
        error is exposed through ``state``/``last_error`` instead of raised.
        """
        generation = self._generation
        self._load_ticket += 1
        ticket = self._load_ticket
        if self._current_identity() is None:
            self._clear_mirror()
            self.state = LoadState.IDLE
            return

        logger.info("Loading data", generation=generation)
        self.state = LoadState.LOADING
        try:
            (
                org_rows,
                profile_rows,
                lead_rows,
                project_rows,
                task_rows,
                financial_rows,
                contract_rows,
                member_rows,
            ) = await asyncio.gather(
                self.backend.crud(EntityKind.ORGANIZATION, CrudOp.LIST),
                self.backend.crud(EntityKind.PROFILE, CrudOp.LIST),
                self.backend.crud(EntityKind.LEAD, CrudOp.LIST),
                self.backend.crud(EntityKind.PROJECT, CrudOp.LIST),
                self.backend.crud(EntityKind.TASK, CrudOp.LIST),
                self.backend.crud(EntityKind.FINANCIAL_ITEM, CrudOp.LIST),
                self.backend.crud(EntityKind.CONTRACT, CrudOp.LIST),
                self.backend.crud(EntityKind.PROJECT_MEMBER, CrudOp.LIST),
            )
        except BackendError as e:
            if generation != self._generation:
                return
            logger.error("Failed to load data", error=str(e))
            self._clear_mirror()
            self.state = LoadState.ERROR
            self.last_error = str(e)
            return

        if generation != self._generation:
            logger.debug("Discarding load from an earlier generation", generation=generation)
            return

        if org_rows:
            self.organization = organization_from_row(org_rows[0])
        else:
            logger.warning("No organization visible to current identity")
            self.organization = None
        self._settle_tombstones(ticket, {str(row["id"]) for row in (*lead_rows, *project_rows)})
        self.users = [identity_from_row(row) for row in profile_rows]

        leads = [lead_from_row(row) for row in sorted(lead_rows, key=lambda r: r.get("created_at") or "", reverse=True)]
        projects = assemble_projects(project_rows, task_rows, financial_rows, contract_rows, member_rows)
        self.leads = self._overlay_local(leads, Lead)
        self.projects = self._overlay_local(projects, Project)
        self.state = LoadState.READY
        self.last_error = None
        if self._queued_project_writes:
            # Queued project writes may not be reflected in what was just fetched.
            self._project_reload = True
        logger.info("Data loaded", projects=len(self.projects), leads=len(self.leads), users=len(self.users))

    def _overlay_local(self, items: list[T], entity_type: type[T]) -> list[T]:
        """Drop locally deleted rows and re-add entries the backend does not know yet."""
        items = [item for item in items if item.id not in self._tombstones]
        present = {item.id for item in items}
        for temp_id, entity in reversed(list(self._local_only.items())):
            if not isinstance(entity, entity_type) or temp_id in present:
                continue
            if self._id_map.get(temp_id) in present:
                continue
            items.insert(0, entity)
        return items

    def _settle_tombstones(self, ticket: int, returned: set[str]) -> None:
        """Forget confirmed deletes once a load started after confirmation no longer returns the row."""
        for entity_id, confirmed_at in list(self._tombstones.items()):
            if confirmed_at is not None and ticket > confirmed_at and entity_id not in returned:
                del self._tombstones[entity_id]

    def unpersisted(self) -> list[Project | Lead]:
        """Entities whose remote create failed and that are only visible locally."""
        return [entity for temp_id, entity in self._local_only.items() if temp_id in self._failed]

    # -- shared remote steps -------------------------------------------------

    async def _resolve_id(self, entity_id: str) -> str | None:
        """Return the authoritative id, waiting for an in-flight create if needed."""
        if not is_temporary_id(entity_id):
            return entity_id
        create = self._creates.get(entity_id)
        if create is not None and not create.done():
            await asyncio.wait([create])
        return self._id_map.get(entity_id)

    def authoritative_id(self, entity_id: str | None) -> str | None:
        """The backend id for an entity, or None while it only exists locally."""
        if entity_id is None:
            return None
        mapped = self._id_map.get(entity_id, entity_id)
        return None if is_temporary_id(mapped) else mapped

    def _mapped(self, entity_id: str) -> str:
        return self._id_map.get(entity_id, entity_id)

    async def _finish_create(self, temp_id: str, generation: int) -> None:
        """Reconcile after a confirmed insert, unless superseded."""
        if generation == self._generation:
            await self.load()
            self._local_only.pop(temp_id, None)
        self._creates.pop(temp_id, None)

    def _record_failure(self, kind: EntityKind, temp_id: str, generation: int, error: BackendError) -> None:
        logger.warning(
            "Remote create failed; keeping unpersisted entry visible",
            kind=kind.value,
            entity_id=temp_id,
            error=str(error),
        )
        if generation == self._generation:
            self._failed.add(temp_id)
        self._creates.pop(temp_id, None)

    async def _remote_delete(self, kind: EntityKind, entity_id: str) -> None:
        try:
            await self.backend.crud(kind, CrudOp.DELETE, match={"id": entity_id})
            logger.info("Remote delete confirmed", kind=kind.value, entity_id=entity_id)
        except BackendError as e:
            # No rollback: the row reappears on the next load if the backend still has it.
            logger.warning("Remote delete failed", kind=kind.value, entity_id=entity_id, error=str(e))
            self._tombstones.pop(entity_id, None)
            return
        if entity_id in self._tombstones:
            self._tombstones[entity_id] = self._load_ticket

    def _delete(self, kind: EntityKind, items: list[T], entity_id: str) -> list[T]:
        remaining = [item for item in items if item.id != entity_id]
        if not is_temporary_id(entity_id):
            self._tombstones[entity_id] = None
            self._spawn(self._remote_delete(kind, entity_id))
            return remaining

        self._local_only.pop(entity_id, None)
        self._failed.discard(entity_id)
        create = self._creates.get(entity_id)
        if create is not None and not create.done():
            self._deleted_temps.add(entity_id)
        elif entity_id in self._id_map:
            real_id = self._id_map[entity_id]
            self._tombstones[real_id] = None
            self._spawn(self._remote_delete(kind, real_id))
        return remaining

    # -- organization --------------------------------------------------------

    def update_organization(self, **patch: Any) -> Organization:
        """Merge-patch the organization."""
        self._require("can_edit_settings", "update organization")
        if self.organization is None:
            raise ValidationError("No organization loaded")
        known = {f.name for f in fields(Organization)} - {"id"}
        unknown = set(patch) - known
        if unknown:
            raise ValidationError(f"Unknown organization fields: {sorted(unknown)}")

        self.organization = replace(self.organization, **patch)
        logger.info("Updating organization", organization_id=self.organization.id, fields=sorted(patch))
        self._spawn(self._persist_organization(self.organization.id, organization_patch_to_row(patch)))
        return self.organization

    async def _persist_organization(self, organization_id: str, row: Row) -> None:
        try:
            await self.backend.crud(EntityKind.ORGANIZATION, CrudOp.UPDATE, row, match={"id": organization_id})
        except BackendError as e:
            logger.warning("Remote organization update failed", organization_id=organization_id, error=str(e))

    # -- leads ---------------------------------------------------------------

    def create_lead(self, draft: Lead) -> Lead:
        """Insert a lead optimistically and persist it in the background."""
        identity = self._require("can_manage_leads", "create lead")
        self._validate_lead(draft)
        lead = replace(
            draft,
            id=draft.id if is_temporary_id(draft.id) else new_temporary_id("lead"),
            created_at=draft.created_at or _now(),
        )
        logger.info("Creating lead", temp_id=lead.id, client_name=lead.client_name)
        _upsert(self.leads, lead)
        self._local_only[lead.id] = lead
        self._creates[lead.id] = self._spawn(self._persist_lead_create(lead, identity.id, self._generation))
        return lead

    async def _persist_lead_create(self, lead: Lead, user_id: str, generation: int) -> None:
        try:
            rows = await self.backend.crud(EntityKind.LEAD, CrudOp.INSERT, {**lead_to_row(lead), "user_id": user_id})
        except BackendError as e:
            self._record_failure(EntityKind.LEAD, lead.id, generation, e)
            return

        real_id = str(rows[0]["id"])
        self._id_map[lead.id] = real_id
        logger.info("Lead persisted", temp_id=lead.id, entity_id=real_id)
        if lead.id in self._deleted_temps:
            self._deleted_temps.discard(lead.id)
            self._creates.pop(lead.id, None)
            self._tombstones[real_id] = None
            await self._remote_delete(EntityKind.LEAD, real_id)
            return
        await self._finish_create(lead.id, generation)

    def update_lead(self, lead: Lead) -> Lead:
        """Replace a lead in the mirror and persist the change."""
        self._require("can_manage_leads", "update lead")
        existing = _find(self.leads, lead.id)
        if existing is None:
            raise ValidationError(f"Unknown lead: {lead.id}")
        self._validate_lead(lead)
        if lead.status == LeadStatus.NEW and existing.status != LeadStatus.NEW:
            raise InvalidTransitionError("A reviewed lead cannot return to NEW")

        logger.info("Updating lead", entity_id=lead.id, status=lead.status.value)
        _upsert(self.leads, lead)
        if lead.id in self._local_only:
            self._local_only[lead.id] = lead
        self._spawn(self._persist_lead_update(lead, self._generation))
        return lead

    async def _persist_lead_update(self, lead: Lead, generation: int) -> None:
        target = await self._resolve_id(lead.id)
        if target is None:
            logger.warning("Skipping remote update of unpersisted lead", entity_id=lead.id)
            return
        try:
            await self.backend.crud(EntityKind.LEAD, CrudOp.UPDATE, lead_to_row(lead), match={"id": target})
        except BackendError as e:
            logger.warning("Remote lead update failed", entity_id=target, error=str(e))
            return
        if target != lead.id and generation == self._generation:
            # The create's reconciliation may have shown the pre-update row.
            await self.load()

    def review_lead(self, lead_id: str, approved: bool) -> Lead:
        """Move an unreviewed lead to QUALIFIED or LOST."""
        lead = _find(self.leads, lead_id)
        if lead is None:
            raise ValidationError(f"Unknown lead: {lead_id}")
        if lead.status != LeadStatus.NEW:
            raise InvalidTransitionError(f"Lead {lead_id} was already reviewed")
        status = LeadStatus.QUALIFIED if approved else LeadStatus.LOST
        return self.update_lead(replace(lead, status=status))

    def pending_leads(self) -> list[Lead]:
        return [lead for lead in self.leads if lead.status == LeadStatus.NEW]

    def delete_lead(self, lead_id: str) -> None:
        """Remove a lead locally; the remote delete is not rolled back on failure."""
        self._require("can_manage_leads", "delete lead")
        logger.info("Deleting lead", entity_id=lead_id)
        self.leads = self._delete(EntityKind.LEAD, self.leads, lead_id)

    def merge_lead(self, lead: Lead) -> None:
        """Apply an externally delivered lead by identifier."""
        _upsert(self.leads, lead)

    @staticmethod
    def _validate_lead(lead: Lead) -> None:
        if not 0 <= lead.probability <= 100:
            raise ValidationError(f"Probability must be between 0 and 100, got {lead.probability}")
        if not lead.client_name:
            raise ValidationError("Lead requires a client name")

    # -- projects ------------------------------------------------------------

    def get_project(self, project_id: str) -> Project | None:
        return _find(self.projects, project_id)

    def _check_team(self, team_ids: list[str], previous: list[str]) -> None:
        known = {user.id for user in self.users}
        unknown = [member for member in team_ids if member not in known and member not in previous]
        if unknown:
            raise ValidationError(f"Unknown team members: {unknown}")

    def create_project(self, draft: Project) -> Project:
        """Insert a project with its nested rows optimistically."""
        self._require("can_create_project", "create project")
        self._check_team(draft.team_ids, [])
        if draft.contract is not None and draft.contract.status == ContractStatus.SIGNED:
            self._require("can_sign_contracts", "create signed contract")

        project = replace(
            draft,
            id=draft.id if is_temporary_id(draft.id) else new_temporary_id("project"),
            start_date=draft.start_date or _now(),
            tasks=[t if is_temporary_id(t.id) else replace(t, id=new_temporary_id("task")) for t in draft.tasks],
            financial_items=[
                f if is_temporary_id(f.id) else replace(f, id=new_temporary_id("financial"))
                for f in draft.financial_items
            ],
            contract=(
                draft.contract
                if draft.contract is None or is_temporary_id(draft.contract.id)
                else replace(draft.contract, id=new_temporary_id("contract"))
            ),
        )
        logger.info("Creating project", temp_id=project.id, name=project.name, tasks=len(project.tasks))
        _upsert(self.projects, project)
        self._local_only[project.id] = project
        self._creates[project.id] = self._spawn(self._persist_project_create(project, self._generation))
        return project

    def _scope(self) -> dict[str, str]:
        return {"organization_id": self.organization.id} if self.organization else {}

    async def _insert_children(self, kind: EntityKind, temp_ids: list[str], rows: list[Row]) -> None:
        if not rows:
            return
        inserted = await self.backend.crud(kind, CrudOp.INSERT, rows)
        for temp_id, row in zip(temp_ids, inserted):
            self._id_map[temp_id] = str(row["id"])

    async def _persist_project_create(self, project: Project, generation: int) -> None:
        row = {**project_to_row(project), **self._scope()}
        row["lead_id"] = self.authoritative_id(project.lead_id)
        try:
            rows = await self.backend.crud(EntityKind.PROJECT, CrudOp.INSERT, row)
        except BackendError as e:
            self._record_failure(EntityKind.PROJECT, project.id, generation, e)
            return

        real_id = str(rows[0]["id"])
        self._id_map[project.id] = real_id
        logger.info("Project persisted", temp_id=project.id, entity_id=real_id)

        owned = {"project_id": real_id, **self._scope()}
        try:
            await self._insert_children(
                EntityKind.TASK,
                [t.id for t in project.tasks],
                [{**task_to_row(t), "assignee_id": self.authoritative_id(t.assignee_id), **owned} for t in project.tasks],
            )
            await self._insert_children(
                EntityKind.FINANCIAL_ITEM,
                [f.id for f in project.financial_items],
                [{**financial_item_to_row(f), **owned} for f in project.financial_items],
            )
            if project.contract is not None:
                await self._insert_children(
                    EntityKind.CONTRACT, [project.contract.id], [{**contract_to_row(project.contract), **owned}]
                )
            if project.team_ids:
                await self.backend.crud(
                    EntityKind.PROJECT_MEMBER,
                    CrudOp.INSERT,
                    [{"project_id": real_id, "user_id": user_id, "role": Role.CONTRIBUTOR.value} for user_id in project.team_ids],
                )
        except BackendError as e:
            logger.warning("Persisting project children failed", entity_id=real_id, error=str(e))

        if project.id in self._deleted_temps:
            self._deleted_temps.discard(project.id)
            self._creates.pop(project.id, None)
            self._tombstones[real_id] = None
            await self._remote_delete(EntityKind.PROJECT, real_id)
            return
        await self._finish_create(project.id, generation)

    def update_project(self, project: Project, *, override: bool = False) -> Project:
        """Replace a project and persist it.

        Phases only move forward unless ``override`` is set, which only
        administrators may do. A signed contract can no longer change.
        """
        self._require("can_edit_project", "update project")
        existing = _find(self.projects, project.id)
        if existing is None:
            raise ValidationError(f"Unknown project: {project.id}")

        if project.status.ordinal < existing.status.ordinal:
            if not override:
                raise InvalidTransitionError(
                    f"Project phase cannot move back from {existing.status.value} to {project.status.value}"
                )
            identity = self._current_identity()
            if identity is None or identity.role != Role.ADMIN:
                raise PermissionDeniedError("can_edit_settings", "phase override")
            logger.info("Administrative phase override", entity_id=project.id, status=project.status.value)

        self._check_contract(existing.contract, project.contract)
        self._check_team(project.team_ids, existing.team_ids)
        return self._commit_project_update(existing, project)

    def _check_contract(self, previous: Contract | None, contract: Contract | None) -> None:
        if previous is not None and previous.status == ContractStatus.SIGNED:
            if contract != previous:
                raise InvalidTransitionError("A signed contract is immutable")
            return
        if contract is None:
            return
        if previous is not None and contract.id == previous.id and contract.status.ordinal < previous.status.ordinal:
            raise InvalidTransitionError(
                f"Contract status cannot move back from {previous.status.value} to {contract.status.value}"
            )
        if contract.status == ContractStatus.SIGNED:
            self._require("can_sign_contracts", "sign contract")

    def _commit_project_update(self, previous: Project, project: Project) -> Project:
        logger.info("Updating project", entity_id=project.id, status=project.status.value)
        _upsert(self.projects, project)
        if project.id in self._local_only:
            self._local_only[project.id] = project
        self._queued_project_writes += 1
        self._spawn(self._persist_project_update(previous, project, self._generation))
        return project

    def save_task(self, project_id: str, task: Task) -> Task:
        """Add or replace a task on a project."""
        self._require("can_manage_tasks", "save task")
        project = _find(self.projects, project_id)
        if project is None:
            raise ValidationError(f"Unknown project: {project_id}")

        if not task.id:
            task = replace(task, id=new_temporary_id("task"))
        if any(t.id == task.id for t in project.tasks):
            tasks = [task if t.id == task.id else t for t in project.tasks]
        else:
            tasks = [*project.tasks, task]
        self._commit_project_update(project, replace(project, tasks=tasks))
        return task

    def add_financial_item(self, project_id: str, item: FinancialItem) -> FinancialItem:
        self._require("can_edit_project", "add financial item")
        project = _find(self.projects, project_id)
        if project is None:
            raise ValidationError(f"Unknown project: {project_id}")
        item = replace(item, id=new_temporary_id("financial"), amount=Decimal(str(item.amount)))
        self._commit_project_update(project, replace(project, financial_items=[*project.financial_items, item]))
        return item

    def set_contract(self, project_id: str, contract: Contract) -> Contract:
        """Attach or revise the project's contract; signing goes through ``sign_contract``."""
        self._require("can_edit_project", "set contract")
        project = _find(self.projects, project_id)
        if project is None:
            raise ValidationError(f"Unknown project: {project_id}")
        if contract.status == ContractStatus.SIGNED:
            raise InvalidTransitionError("Use sign_contract to sign")
        if not contract.id:
            contract = replace(contract, id=new_temporary_id("contract"))
        self._check_contract(project.contract, contract)
        self._commit_project_update(project, replace(project, contract=contract))
        return contract

    def sign_contract(self, project_id: str) -> Contract:
        self._require("can_sign_contracts", "sign contract")
        project = _find(self.projects, project_id)
        if project is None or project.contract is None:
            raise ValidationError(f"Project {project_id} has no contract")
        if project.contract.status == ContractStatus.SIGNED:
            raise InvalidTransitionError("Contract already signed")
        contract = replace(project.contract, status=ContractStatus.SIGNED, signed_at=_now())
        self._commit_project_update(project, replace(project, contract=contract))
        return contract

    async def _persist_project_update(self, previous: Project, project: Project, generation: int) -> None:
        """Write one project update after every earlier one; reload once the queue is empty.

        Nested rows are diffed against the snapshot each update was made from.
        A row inserted by an earlier update is mapped by the time a later
        update keeps, changes or removes it.
        """
        async with self._project_writes:
            try:
                reconcile = await self._write_project_update(previous, project)
            finally:
                self._queued_project_writes -= 1
            self._project_reload |= reconcile
            if self._queued_project_writes or not self._project_reload:
                return
            self._project_reload = False
        if generation == self._generation:
            await self.load()

    async def _write_project_update(self, previous: Project, project: Project) -> bool:
        project_id = await self._resolve_id(project.id)
        if project_id is None:
            logger.warning("Skipping remote update of unpersisted project", entity_id=project.id)
            return False

        reconcile = project_id != project.id
        owned = {"project_id": project_id, **self._scope()}
        try:
            await self.backend.crud(
                EntityKind.PROJECT,
                CrudOp.UPDATE,
                {"name": project.name, "status": project.status.value, "description": project.description},
                match={"id": project_id},
            )
            reconcile |= await self._sync_children(
                EntityKind.TASK,
                previous.tasks,
                project.tasks,
                lambda t: {**task_to_row(t), "assignee_id": self.authoritative_id(t.assignee_id)},
                owned,
            )
            reconcile |= await self._sync_children(
                EntityKind.FINANCIAL_ITEM,
                previous.financial_items,
                project.financial_items,
                financial_item_to_row,
                owned,
            )
            previous_contracts = [previous.contract] if previous.contract else []
            contracts = [project.contract] if project.contract else []
            reconcile |= await self._sync_children(
                EntityKind.CONTRACT, previous_contracts, contracts, contract_to_row, owned
            )
            await self._sync_members(project_id, previous.team_ids, project.team_ids)
        except BackendError as e:
            logger.warning("Remote project update failed", entity_id=project_id, error=str(e))
        return reconcile

    async def _sync_children(
        self,
        kind: EntityKind,
        previous: list[Any],
        current: list[Any],
        to_row: Callable[[Any], Row],
        owned: dict[str, str],
    ) -> bool:
        """Insert temporary rows, patch changed ones, delete removed ones.

        Returns True when something was inserted.
        """
        before = {item.id: item for item in previous}
        inserted = False
        for item in current:
            target = self._mapped(item.id)
            if is_temporary_id(target):
                rows = await self.backend.crud(kind, CrudOp.INSERT, {**to_row(item), **owned})
                self._id_map[item.id] = str(rows[0]["id"])
                inserted = True
            elif before.get(item.id) != item:
                await self.backend.crud(kind, CrudOp.UPDATE, to_row(item), match={"id": target})

        current_ids = {item.id for item in current}
        for item_id in before:
            target = self._mapped(item_id)
            if item_id not in current_ids and not is_temporary_id(target):
                await self.backend.crud(kind, CrudOp.DELETE, match={"id": target})
        return inserted

    async def _sync_members(self, project_id: str, previous: list[str], current: list[str]) -> None:
        added = [user_id for user_id in current if user_id not in previous]
        removed = [user_id for user_id in previous if user_id not in current]
        if added:
            await self.backend.crud(
                EntityKind.PROJECT_MEMBER,
                CrudOp.INSERT,
                [{"project_id": project_id, "user_id": user_id, "role": Role.CONTRIBUTOR.value} for user_id in added],
            )
        for user_id in removed:
            await self.backend.crud(
                EntityKind.PROJECT_MEMBER, CrudOp.DELETE, match={"project_id": project_id, "user_id": user_id}
            )

    def delete_project(self, project_id: str) -> None:
        """Remove a project locally; the remote delete is not rolled back on failure."""
        self._require("can_delete_project", "delete project")
        logger.info("Deleting project", entity_id=project_id)
        self.projects = self._delete(EntityKind.PROJECT, self.projects, project_id)

    def merge_project(self, project: Project) -> None:
        """Apply an externally delivered project by identifier."""
        _upsert(self.projects, project)
