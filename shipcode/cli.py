"""CLI for the shipcode client data layer."""

import asyncio
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Annotated, Literal

import structlog
from cyclopts import App, Parameter

from shipcode.assistant import DEFAULT_MODEL, Assistant
from shipcode.backend import Backend
from shipcode.backends import MemoryBackend, SupabaseBackend
from shipcode.backends.memory import DEMO_EMAIL, DEMO_PASSWORD
from shipcode.config import Config, get_config
from shipcode.config_commands import config_app
from shipcode.finance import pipeline_value, summarize
from shipcode.models import Identity, Lead, Role
from shipcode.permissions import CAPABILITY_NAMES, ROLE_LABELS, permissions_for
from shipcode.routes import can_enter
from shipcode.session import DEFAULT_INACTIVITY_TIMEOUT, DEFAULT_LOGIN_TIMEOUT
from shipcode.workspace import Workspace

logger = structlog.get_logger()

app = App(
    help="ShipCode - synchronized data layer for the agency OS",
)

app.command(config_app)

RoleName = Literal["ADMIN", "MANAGER", "CONTRIBUTOR", "CLIENT"]


def configure_logging(log_level: str) -> None:
    """Configure structlog with the given log level."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(min_level=log_level.lower()))


async def get_backend(config: Config) -> Backend:
    """Get the configured backend."""
    backend_type = config.get("backend", "supabase")

    if backend_type == "supabase":
        return await SupabaseBackend.connect(config.get("supabase.url"), config.get("supabase.key"))
    elif backend_type == "memory":
        return MemoryBackend.demo()
    else:
        raise ValueError(f"Unknown backend: {backend_type}")


async def open_workspace(config: Config) -> Workspace:
    """Build a workspace and sign in, restoring a session when possible."""
    backend = await get_backend(config)
    workspace = Workspace(
        backend,
        inactivity_timeout=config.get_float("session.inactivity_timeout", DEFAULT_INACTIVITY_TIMEOUT),
        login_timeout=config.get_float("session.login_timeout", DEFAULT_LOGIN_TIMEOUT),
    )
    if await workspace.start():
        return workspace

    email = config.get("auth.email")
    password = config.get("auth.password")
    if isinstance(backend, MemoryBackend):
        email, password = email or DEMO_EMAIL, password or DEMO_PASSWORD
    if not email or not password:
        raise ValueError(
            "Not signed in. Set credentials using:\n"
            "  shipcode config set auth.email <email>\n"
            "  shipcode config set auth.password <password>"
        )
    result = await workspace.session.login(email, password)
    if not result.success:
        raise ValueError(f"Login failed: {result.error}")
    return workspace


def run_with_workspace(operation: Callable[[Workspace], Awaitable[None]]) -> None:
    """Sign in, run operation, wait for pending writes, sign out."""

    async def main() -> None:
        workspace = await open_workspace(get_config())
        try:
            await operation(workspace)
        finally:
            await workspace.close()
            await workspace.session.logout()

    asyncio.run(main())


@app.command
def permissions(role: RoleName) -> None:
    """Show the capability set of a role."""
    capabilities = permissions_for(Role(role))
    print(f"{ROLE_LABELS[Role(role)]} ({role}):\n")
    for name in CAPABILITY_NAMES:
        marker = "✓" if capabilities.allows(name) else "✗"
        print(f"  {marker} {name}")


@app.command
def route(path: str, role: RoleName | None = None) -> None:
    """Check whether a role may open a screen."""
    identity = Identity(id="cli", display_name="cli", role=Role(role)) if role else None
    admission = can_enter(path, identity)
    if admission.admit:
        print(f"{path}: admitted")
    else:
        print(f"{path}: redirected to {admission.redirect_to}")


@app.command
def projects() -> None:
    """List projects visible to the signed-in user."""

    async def operation(workspace: Workspace) -> None:
        store = workspace.store
        print(f"Found {len(store.projects)} project(s):\n")
        for project in store.projects:
            summary = summarize(project, store.organization)
            print(
                f"● {project.id}: {project.name} [{project.status.value}] "
                f"client={project.client_name} tasks={len(project.tasks)} margin={summary.margin_percent}%"
            )

    run_with_workspace(operation)


@app.command
def leads(pending: bool = False) -> None:
    """List leads in the pipeline."""

    async def operation(workspace: Workspace) -> None:
        store = workspace.store
        items = store.pending_leads() if pending else store.leads
        print(f"Found {len(items)} lead(s), weighted pipeline {pipeline_value(items)}:\n")
        for lead in items:
            marker = "●" if lead.status.value == "NEW" else "○"
            print(
                f"{marker} {lead.id}: {lead.client_name} / {lead.project_name} "
                f"[{lead.status.value}] {lead.budget} @ {lead.probability}%"
            )

    run_with_workspace(operation)


@app.command
def add_lead(
    client_name: str,
    project_name: str = "",
    budget: float = 0,
    probability: int = 50,
    notes: str | None = None,
) -> None:
    """Add a lead to the pipeline."""

    async def operation(workspace: Workspace) -> None:
        lead = workspace.store.create_lead(
            Lead(
                id="",
                client_name=client_name,
                project_name=project_name,
                budget=Decimal(str(budget)),
                probability=probability,
                notes=notes,
            )
        )
        await workspace.store.drain()
        if workspace.store.unpersisted():
            print(f"Lead {lead.id} could not be saved")
            return
        print(f"Created lead {workspace.store.authoritative_id(lead.id)}: {lead.client_name}")

    run_with_workspace(operation)


@app.command
def review_lead(lead_id: str, reject: bool = False) -> None:
    """Approve (or reject with --reject) an incoming lead."""

    async def operation(workspace: Workspace) -> None:
        lead = workspace.store.review_lead(lead_id, approved=not reject)
        print(f"Lead {lead.id} is now {lead.status.value}")

    run_with_workspace(operation)


@app.command
def invite(email: str, name: str, role: RoleName = "CONTRIBUTOR") -> None:
    """Invite a team member; they receive a link to choose a password."""

    async def operation(workspace: Workspace) -> None:
        user_id = await workspace.session.invite_member(email, name, Role(role))
        print(f"Invited {name} ({role}) as {user_id}")

    run_with_workspace(operation)


@app.command
def finance(project_id: str) -> None:
    """Show revenue, cost and margin for a project."""

    async def operation(workspace: Workspace) -> None:
        project = workspace.store.get_project(project_id)
        if project is None:
            raise ValueError(f"Unknown project: {project_id}")
        summary = summarize(project, workspace.store.organization)
        print(f"Project: {project.name}")
        print(f"Revenue: {summary.revenue}")
        print(f"Cost: {summary.cost}")
        print(f"Profit: {summary.profit}")
        print(f"Margin: {summary.margin_percent}%")
        print(f"Tax: {summary.tax}")
        print(f"Net: {summary.net}")

    run_with_workspace(operation)


@app.command
def notifications() -> None:
    """List the signed-in user's notifications."""

    async def operation(workspace: Workspace) -> None:
        center = workspace.notifications
        print(f"{center.unread_count} unread of {len(center.notifications)}:\n")
        for item in center.notifications:
            marker = "●" if not item.read else "○"
            print(f"{marker} [{item.type.value}] {item.title}: {item.message}")

    run_with_workspace(operation)


@app.command
def suggest(project_name: str, client_name: str, description: str = "") -> None:
    """Ask the AI assistant for a stack, budget and timeline."""
    config = get_config()
    assistant = Assistant(config.get("gemini.api_key"), model=config.get("gemini.model", DEFAULT_MODEL))
    suggestion = asyncio.run(assistant.suggest(project_name, client_name, description))
    if suggestion is None:
        print("Suggestions unavailable")
        return
    print(f"Architecture:\n{suggestion.architecture}\n")
    print(f"Estimated budget: {suggestion.estimated_budget:,.2f}")
    print(f"Estimated timeline: {suggestion.estimated_timeline}")
    print(f"Reasoning: {suggestion.reasoning}")


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "critical",
) -> None:
    """Main entry point with global options."""
    configure_logging(log_level)
    app(tokens)


def run() -> None:
    app.meta()


if __name__ == "__main__":
    run()
