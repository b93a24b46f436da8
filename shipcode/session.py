"""Authentication state and inactivity expiry."""

import asyncio
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from shipcode.backend import Backend
from shipcode.errors import AuthenticationError, BackendError, PermissionDeniedError, ValidationError
from shipcode.models import Identity, Role, Session
from shipcode.permissions import permissions_for
from shipcode.routes import RESET_PASSWORD_PATH

logger = structlog.get_logger()

DEFAULT_INACTIVITY_TIMEOUT = 3 * 60 * 60
DEFAULT_LOGIN_TIMEOUT = 15.0

ACTIVITY_SIGNALS = frozenset({"mousedown", "mousemove", "keydown", "scroll", "touchstart", "click"})

# Auth events that end the session no matter where they originated.
REMOTE_SIGNOUT_EVENTS = frozenset({"SIGNED_OUT", "USER_DELETED"})

MIN_PASSWORD_LENGTH = 6

PROFILE_MISSING_MESSAGE = "Signed in, but the user profile could not be loaded. Check that the user has a profile record."

IdentityListener = Callable[[Identity | None, str], Awaitable[None]]
ExpiryListener = Callable[[str], None]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRING = "expiring"


@dataclass
class LoginResult:
    success: bool
    error: str | None = None


class SessionManager:
    """Owns the current identity and the backend session behind it.

    Identity listeners are awaited on every transition with the new identity
    (None when signed out) and a reason: ``login``, ``restore``, ``logout`` or
    ``expired``.
    """

    def __init__(
        self,
        backend: Backend,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        login_timeout: float = DEFAULT_LOGIN_TIMEOUT,
    ) -> None:
        self.backend = backend
        self.inactivity_timeout = inactivity_timeout
        self.login_timeout = login_timeout
        self.state = SessionState.UNAUTHENTICATED

        self._identity: Identity | None = None
        self._session: Session | None = None
        self._pending_session: Session | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._timer_epoch = 0
        self._expiry: asyncio.Task[bool] | None = None
        self._listeners: list[IdentityListener] = []
        self._expiry_listeners: list[ExpiryListener] = []
        self._remote_signout: asyncio.Task[None] | None = None
        self._unregister = backend.on_auth_change(self._on_auth_change)

    @property
    def current_identity(self) -> Identity | None:
        return self._identity

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def identity(self) -> Identity | None:
        """Callable form of ``current_identity`` for injection into other components."""
        return self._identity

    def add_listener(self, listener: IdentityListener) -> None:
        self._listeners.append(listener)

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        self._expiry_listeners.append(listener)

    async def _notify(self, reason: str) -> None:
        for listener in self._listeners:
            try:
                await listener(self._identity, reason)
            except Exception as e:
                logger.error("Identity listener failed", reason=reason, error=str(e))

    # -- sign in -------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        """Exchange a credential for a session and resolve it to an identity.

        Never raises; failures are reported in the result.
        """
        if self.state == SessionState.AUTHENTICATING:
            return LoginResult(False, "A sign-in attempt is already in progress")
        if self.state != SessionState.UNAUTHENTICATED:
            return LoginResult(False, "Already signed in")

        logger.info("Starting login", email=email)
        self.state = SessionState.AUTHENTICATING
        try:
            result = await asyncio.wait_for(self._login(email, password), timeout=self.login_timeout)
        except asyncio.TimeoutError:
            logger.error("Login timed out", email=email, timeout=self.login_timeout)
            await self._abandon()
            if self.is_authenticated:
                return LoginResult(True)
            return LoginResult(False, f"Connection timed out after {self.login_timeout:g}s")

        if not result.success:
            self.state = SessionState.UNAUTHENTICATED
        return result

    async def _login(self, email: str, password: str) -> LoginResult:
        try:
            session = await self.backend.authenticate(email, password)
        except AuthenticationError as e:
            logger.warning("Credential refused", email=email, error=str(e))
            return LoginResult(False, str(e))
        except BackendError as e:
            logger.error("Login failed", email=email, error=str(e))
            return LoginResult(False, str(e))

        self._pending_session = session
        if not await self._establish(session, "login"):
            logger.warning("Profile missing after sign in; tearing session down", user_id=session.user_id)
            await self._invalidate(session)
            self._pending_session = None
            return LoginResult(False, PROFILE_MISSING_MESSAGE)
        return LoginResult(True)

    async def _abandon(self) -> None:
        """Clean up after an interrupted login so no backend session is left behind."""
        session, self._pending_session = self._pending_session, None
        if session is not None and self._session is None:
            await self._invalidate(session)
        if self._session is None:
            self.state = SessionState.UNAUTHENTICATED

    async def restore(self) -> bool:
        """Resolve a pre-existing backend session at startup; a missing session is not an error."""
        if self.state != SessionState.UNAUTHENTICATED:
            return self.is_authenticated
        try:
            session = await self.backend.get_session()
        except BackendError as e:
            logger.warning("Session check failed", error=str(e))
            return False
        if session is None:
            logger.debug("No session to restore")
            return False

        self.state = SessionState.AUTHENTICATING
        if not await self._establish(session, "restore"):
            await self._invalidate(session)
            self.state = SessionState.UNAUTHENTICATED
            return False
        return True

    async def _establish(self, session: Session, reason: str) -> bool:
        try:
            identity = await self.backend.fetch_profile(session.user_id)
        except BackendError as e:
            logger.error("Failed to fetch profile", user_id=session.user_id, error=str(e))
            return False

        self._session = session
        self._pending_session = None
        self._identity = identity
        self.state = SessionState.AUTHENTICATED
        self._arm()
        logger.info("Authenticated", user_id=identity.id, role=identity.role.value, reason=reason)
        await self._notify(reason)
        return True

    # -- sign out ------------------------------------------------------------

    async def logout(self) -> None:
        """Invalidate the backend session and clear the identity; safe to repeat."""
        if self._session is None and self._identity is None:
            logger.debug("Logout with no active session")
            return
        await self._terminate("logout")

    async def _terminate(self, reason: str, invalidate: bool = True) -> None:
        session = self._session
        # Cleared before the first await so a concurrent logout or expiry is a no-op.
        self._session = None
        self._identity = None
        self._disarm()
        if session is not None and invalidate:
            await self._invalidate(session)
        self.state = SessionState.UNAUTHENTICATED
        logger.info("Signed out", reason=reason)
        await self._notify(reason)

    async def _invalidate(self, session: Session) -> None:
        try:
            await self.backend.invalidate_session(session)
        except BackendError as e:
            logger.warning("Backend session invalidation failed", user_id=session.user_id, error=str(e))

    # -- changes made elsewhere ----------------------------------------------

    def detach(self) -> None:
        """Stop following backend auth changes."""
        self._unregister()

    def _on_auth_change(self, event: str, session: Session | None) -> None:
        if event not in REMOTE_SIGNOUT_EVENTS or self.state != SessionState.AUTHENTICATED:
            return
        logger.warning("Session ended outside this client", auth_event=event)
        self._remote_signout = asyncio.ensure_future(self._follow_remote_signout())

    async def _follow_remote_signout(self) -> None:
        # A local logout or expiry may have run first.
        if self._session is None:
            return
        await self._terminate("logout", invalidate=False)

    # -- account -------------------------------------------------------------

    async def invite_member(self, email: str, name: str, role: Role, redirect_to: str = RESET_PASSWORD_PATH) -> str:
        """Register a teammate with a random password and email them a link to choose their own.

        Args:
            email: Address of the new member
            name: Display name stored on the profile
            role: Role granted to the member
            redirect_to: Where the emailed link lands

        Returns:
            The new member's user id

        Raises:
            PermissionDeniedError: If the current identity may not invite members.
            BackendError: If the backend refuses the registration.
        """
        identity = self._identity
        if identity is None or not permissions_for(identity.role).can_invite_members:
            raise PermissionDeniedError("can_invite_members", "invite member")

        user_id = await self.backend.create_user(email, secrets.token_urlsafe(12), name, role.value)
        logger.info("Member invited", email=email, user_id=user_id, role=role.value)
        try:
            await self.backend.send_password_reset(email, redirect_to=redirect_to)
        except BackendError as e:
            logger.warning("Invite email could not be sent", email=email, error=str(e))
        return user_id

    async def request_password_reset(self, email: str, redirect_to: str = RESET_PASSWORD_PATH) -> None:
        await self.backend.send_password_reset(email, redirect_to=redirect_to)

    async def update_password(self, password: str, confirmation: str) -> None:
        """Set a new password for the signed-in user, or the user of a recovery session."""
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must have at least {MIN_PASSWORD_LENGTH} characters")
        if password != confirmation:
            raise ValidationError("Passwords do not match")
        session = self._session or await self.backend.get_session()
        if session is None:
            raise AuthenticationError("No session to change the password for")
        await self.backend.update_password(session, password)
        logger.info("Password updated", user_id=session.user_id)

    # -- inactivity ----------------------------------------------------------

    def record_activity(self, signal: str) -> bool:
        """Reset the inactivity timer for a qualifying interaction signal."""
        if signal not in ACTIVITY_SIGNALS or self.state != SessionState.AUTHENTICATED:
            return False
        self._arm()
        return True

    def _arm(self) -> None:
        self._disarm()
        self._timer_epoch += 1
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.inactivity_timeout, self._on_timeout, self._timer_epoch)

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, epoch: int) -> None:
        if epoch != self._timer_epoch or self.state != SessionState.AUTHENTICATED:
            return
        self._timer = None
        self._expiry = asyncio.ensure_future(self.expire())

    async def expire(self) -> bool:
        """Force the session closed after inactivity. Returns False if nothing was expired."""
        if self.state != SessionState.AUTHENTICATED:
            return False
        logger.warning("Session expired after inactivity", timeout=self.inactivity_timeout)
        self.state = SessionState.EXPIRING
        await self._terminate("expired")

        hours = self.inactivity_timeout / 3600
        message = f"Your session expired after {hours:g} hours of inactivity. Please sign in again."
        for listener in self._expiry_listeners:
            listener(message)
        return True
