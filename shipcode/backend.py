"""Backend interface for the hosted persistence and auth service."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shipcode.models import Identity, Session


class EntityKind(str, Enum):
    """Remote collections, named after their backend tables."""

    ORGANIZATION = "organizations"
    PROFILE = "profiles"
    PROJECT = "projects"
    TASK = "tasks"
    FINANCIAL_ITEM = "financial_items"
    CONTRACT = "contracts"
    PROJECT_MEMBER = "project_members"
    LEAD = "leads"
    NOTIFICATION = "notifications"


class CrudOp(str, Enum):
    LIST = "list"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class RealtimeEvent:
    """A server-initiated change on a subscribed collection."""

    kind: EntityKind
    type: str
    row: dict[str, Any] = field(default_factory=dict)


Row = dict[str, Any]
EventHandler = Callable[[RealtimeEvent], None]
Unsubscribe = Callable[[], Awaitable[None]]
# (event name, session or None), e.g. ("SIGNED_OUT", None)
AuthChangeHandler = Callable[[str, Session | None], None]


class Backend(ABC):
    """Abstract base class for backend collaborators."""

    @abstractmethod
    async def authenticate(self, email: str, password: str) -> Session:
        """Exchange a credential for a session.

        Raises:
            AuthenticationError: If the credential is refused.
        """
        pass

    @abstractmethod
    async def get_session(self) -> Session | None:
        """Return the existing session, if any."""
        pass

    @abstractmethod
    async def invalidate_session(self, session: Session) -> None:
        """Invalidate a session on the backend."""
        pass

    @abstractmethod
    async def fetch_profile(self, identity_id: str) -> Identity:
        """Resolve a user id to its profile.

        Raises:
            ProfileNotFoundError: If no profile matches.
        """
        pass

    @abstractmethod
    async def crud(
        self,
        kind: EntityKind,
        op: CrudOp,
        payload: Row | list[Row] | None = None,
        match: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Run a CRUD operation against a collection.

        Args:
            kind: Collection to operate on
            op: Operation to perform
            payload: Row(s) to insert, or the patch to apply on update
            match: Equality filters selecting rows for list, update and delete

        Returns:
            Rows listed, inserted (with authoritative ids) or updated; empty on delete

        Raises:
            BackendError: If the backend rejects the request.
        """
        pass

    @abstractmethod
    async def subscribe(
        self,
        channel_key: str,
        kind: EntityKind,
        match: dict[str, Any],
        on_event: EventHandler,
    ) -> Unsubscribe:
        """Subscribe to inserts on a collection, returning an unsubscribe coroutine function."""
        pass

    @abstractmethod
    def on_auth_change(self, handler: AuthChangeHandler) -> Callable[[], None]:
        """Register for auth state changes, including ones made elsewhere.

        Returns:
            Callable that removes the registration
        """
        pass

    @abstractmethod
    async def create_user(self, email: str, password: str, name: str, role: str) -> str:
        """Register a login whose profile carries name and role, without touching the current session.

        Returns:
            The new user's id

        Raises:
            BackendError: If the backend refuses the registration.
        """
        pass

    @abstractmethod
    async def send_password_reset(self, email: str, redirect_to: str | None = None) -> None:
        """Send a password reset link to email."""
        pass

    @abstractmethod
    async def update_password(self, session: Session, password: str) -> None:
        """Change the password of the user behind session.

        Raises:
            AuthenticationError: If session is no longer valid.
        """
        pass
