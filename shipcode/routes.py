"""Navigation admission for the client's screens."""

from dataclasses import dataclass

import structlog

from shipcode.models import Identity
from shipcode.permissions import permissions_for

logger = structlog.get_logger()

HOME_PATH = "/"
LOGIN_PATH = "/login"
RESET_PASSWORD_PATH = "/reset-password"

PUBLIC_ROUTES = frozenset({LOGIN_PATH, RESET_PASSWORD_PATH})

# Ordered: literal segments must win over parameters ("/projects/new" before "/projects/:id").
ROUTE_CAPABILITIES: dict[str, str] = {
    "/": "can_view_dashboard",
    "/projects": "can_view_projects",
    "/projects/new": "can_create_project",
    "/projects/:id": "can_view_projects",
    "/leads": "can_view_leads",
    "/team": "can_view_team",
    "/settings": "can_view_settings",
    "/reports": "can_view_finance",
}


@dataclass(frozen=True)
class Admission:
    admit: bool
    redirect_to: str | None = None


def normalize(path: str) -> str:
    path = path.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    return path.rstrip("/") or "/"


def match_route(path: str) -> str | None:
    """Return the route pattern matching path, if any."""
    segments = normalize(path).strip("/").split("/")
    for pattern in ROUTE_CAPABILITIES:
        parts = pattern.strip("/").split("/")
        if len(parts) != len(segments):
            continue
        if all(part.startswith(":") or part == segment for part, segment in zip(parts, segments)):
            return pattern
    return None


def can_enter(path: str, identity: Identity | None) -> Admission:
    """Decide whether identity may open path; evaluate on every navigation."""
    path = normalize(path)
    if path in PUBLIC_ROUTES:
        if identity is not None and path == LOGIN_PATH:
            return Admission(False, HOME_PATH)
        return Admission(True)

    if identity is None:
        return Admission(False, LOGIN_PATH)

    pattern = match_route(path)
    if pattern is None:
        logger.debug("Unknown route", path=path)
        return Admission(False, HOME_PATH)

    capability = ROUTE_CAPABILITIES[pattern]
    if permissions_for(identity.role).allows(capability):
        return Admission(True)

    logger.info("Route denied", path=path, role=identity.role.value, capability=capability)
    return Admission(False, LOGIN_PATH if pattern == HOME_PATH else HOME_PATH)
