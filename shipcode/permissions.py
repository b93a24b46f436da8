"""Role-based capability table."""

from dataclasses import dataclass, fields
from typing import assert_never

from shipcode.models import Role


@dataclass(frozen=True)
class Capabilities:
    """What a role may view (can_view_*) or do (everything else)."""

    can_view_dashboard: bool = False
    can_view_projects: bool = False
    can_view_leads: bool = False
    can_view_team: bool = False
    can_view_settings: bool = False
    can_view_finance: bool = False

    can_create_project: bool = False
    can_edit_project: bool = False
    can_delete_project: bool = False
    can_manage_leads: bool = False
    can_manage_tasks: bool = False
    can_invite_members: bool = False
    can_edit_settings: bool = False
    can_sign_contracts: bool = False

    def allows(self, capability: str) -> bool:
        if capability not in CAPABILITY_NAMES:
            raise ValueError(f"Unknown capability: {capability}")
        return getattr(self, capability)

    def granted(self) -> list[str]:
        return [name for name in CAPABILITY_NAMES if getattr(self, name)]


CAPABILITY_NAMES = tuple(f.name for f in fields(Capabilities))

NO_CAPABILITIES = Capabilities()

ROLE_LABELS = {
    Role.ADMIN: "Administrator",
    Role.MANAGER: "Manager",
    Role.CONTRIBUTOR: "Developer",
    Role.CLIENT: "Client",
}


def permissions_for(role: Role | None) -> Capabilities:
    """Return the capability set for a role; None means signed out."""
    if role is None:
        return NO_CAPABILITIES

    match role:
        case Role.ADMIN:
            return Capabilities(**{name: True for name in CAPABILITY_NAMES})
        case Role.MANAGER:
            return Capabilities(
                can_view_dashboard=True,
                can_view_projects=True,
                can_view_leads=True,
                can_view_team=True,
                can_view_finance=True,
                can_create_project=True,
                can_edit_project=True,
                can_manage_leads=True,
                can_manage_tasks=True,
                can_invite_members=True,
                can_sign_contracts=True,
            )
        case Role.CONTRIBUTOR:
            return Capabilities(
                can_view_dashboard=True,
                can_view_projects=True,
                can_view_team=True,
                can_manage_tasks=True,
            )
        case Role.CLIENT:
            # Clients see only their own projects; row scoping is the backend's job.
            return Capabilities(
                can_view_dashboard=True,
                can_view_projects=True,
                can_manage_tasks=True,
            )
        case _:
            assert_never(role)
