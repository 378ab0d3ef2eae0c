"""Facebook connection lifecycle for a company.

States:
    Disconnected -(start_connect)-> Connecting -(OAuth callback ok)-> Connected
    Connected -(disconnect)-> Disconnecting -> Disconnected
    ConnectionFailed: the status itself could not be read

A failed REST call while Connecting or Disconnecting falls back to
Disconnected or Connected respectively, with an error message that is shown
for a short display window. Page sync runs only from Connected and never
changes the state.

Only admin users may connect, sync or disconnect.
"""

import inspect
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from inbox_sync.api_client import InboxApiClient
from inbox_sync.models import FacebookConnectionStatus, FacebookPage, PageSyncResult, SyncStatus, UserProfile
from inbox_sync.utils.exceptions import (
    CacheError,
    FacebookOAuthError,
    InboxAPIError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from inbox_sync.utils.logger import logger
from inbox_sync.utils.redis_conn import get_redis_client, redis_delete, redis_get, redis_set


OAUTH_STATE_KEY_PREFIX = "facebook_oauth_state:"
OAUTH_STATE_TTL_SECONDS = 10 * 60

REDIRECT_TARGET = "/dashboard"
SUCCESS_REDIRECT_DELAY = 2
FAILURE_REDIRECT_DELAY = 3

# Error messages disappear after this many seconds
ERROR_DISPLAY_SECONDS = 5


# =============================================================================
# States
# =============================================================================

@dataclass(frozen=True)
class Disconnected:
    name: str = "disconnected"


@dataclass(frozen=True)
class Connecting:
    name: str = "connecting"


@dataclass(frozen=True)
class Connected:
    status: FacebookConnectionStatus = field(default_factory=FacebookConnectionStatus)
    name: str = "connected"


@dataclass(frozen=True)
class Disconnecting:
    previous: Connected = field(default_factory=Connected)
    name: str = "disconnecting"


@dataclass(frozen=True)
class ConnectionFailed:
    message: str = ""
    name: str = "error"


ConnectionState = Union[Disconnected, Connecting, Connected, Disconnecting, ConnectionFailed]


@dataclass
class OAuthCallbackResult:
    """Outcome of the OAuth redirect, with where to send the user next."""

    success: bool
    message: str
    redirect_to: str = REDIRECT_TARGET
    delay_seconds: int = FAILURE_REDIRECT_DELAY


ConfirmCallback = Callable[[], Union[bool, Awaitable[bool]]]


class FacebookConnectionManager:
    """Drives the company's Facebook connection through its states.

    Usage:
        manager = FacebookConnectionManager(api, user)
        await manager.refresh_status()
        if manager.can_connect:
            url = await manager.start_connect()
            # ... user authorizes on Facebook, browser comes back ...
            result = await manager.handle_oauth_callback(query_params)
    """

    def __init__(
        self,
        api: InboxApiClient,
        user: Optional[UserProfile] = None,
        store: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api = api
        self.user = user
        self._store = store if store is not None else get_redis_client()
        self._clock = clock

        self.state: ConnectionState = Disconnected()
        self.pages: List[FacebookPage] = []
        self._error: Optional[str] = None
        self._error_at: float = 0.0
        self._listeners: List[Callable[[ConnectionState], None]] = []

    # -------------------------------------------------------------------------
    # State helpers
    # -------------------------------------------------------------------------

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_admin

    @property
    def can_connect(self) -> bool:
        return isinstance(self.state, (Disconnected, ConnectionFailed))

    @property
    def can_sync(self) -> bool:
        return isinstance(self.state, Connected)

    @property
    def can_disconnect(self) -> bool:
        return isinstance(self.state, Connected)

    @property
    def status(self) -> Optional[FacebookConnectionStatus]:
        return self.state.status if isinstance(self.state, Connected) else None

    @property
    def error_message(self) -> Optional[str]:
        """The last error, or None once its display window has passed."""
        if self._error is None:
            return None
        if self._clock() - self._error_at >= ERROR_DISPLAY_SECONDS:
            self._error = None
            return None
        return self._error

    def _set_error(self, message: Optional[str]) -> None:
        self._error = message
        self._error_at = self._clock()

    def _transition(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.debug(f"Facebook connection: {self.state.name} -> {state.name}")
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Connection listener failed: {e}")

    def add_listener(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def _require(self, operation: str, allowed: bool) -> None:
        if not self.is_admin:
            raise PermissionDeniedError(operation)
        if not allowed:
            raise InvalidTransitionError(operation, self.state.name)

    # -------------------------------------------------------------------------
    # Status and pages
    # -------------------------------------------------------------------------

    async def refresh_status(self) -> ConnectionState:
        """Read the connection status from the server."""
        try:
            status = await self.api.get_facebook_status()
        except InboxAPIError as e:
            logger.error(f"Failed to read Facebook connection status: {e}")
            self._set_error(e.user_message)
            self._transition(ConnectionFailed(message=e.user_message))
            return self.state

        if status.is_connected:
            self._transition(Connected(status=status))
        else:
            self.pages = []
            self._transition(Disconnected())
        return self.state

    async def refresh_pages(self) -> List[FacebookPage]:
        """Reload the connected pages; on failure the previous list is kept."""
        try:
            self.pages = await self.api.get_facebook_pages()
        except InboxAPIError as e:
            logger.error(f"Failed to load Facebook pages: {e}")
            self._set_error(f"Could not load pages: {e.user_message}")
        return self.pages

    # -------------------------------------------------------------------------
    # Connect (OAuth)
    # -------------------------------------------------------------------------

    def _state_key(self) -> str:
        user_id = self.user.user_id if self.user else ""
        return f"{OAUTH_STATE_KEY_PREFIX}{user_id}"

    async def start_connect(self) -> Optional[str]:
        """Enter Connecting and return the Facebook authorization URL.

        The OAuth ``state`` is stored so the callback can be verified.

        Returns:
            The URL to send the user to, or None if it could not be issued
        """
        self._require("connect Facebook", self.can_connect)
        self._set_error(None)
        self._transition(Connecting())

        try:
            oauth = await self.api.get_oauth_url()
        except InboxAPIError as e:
            logger.error(f"Failed to get Facebook OAuth URL: {e}")
            self._set_error(e.user_message)
            self._transition(Disconnected())
            return None

        oauth_state = oauth.state or secrets.token_urlsafe(24)
        try:
            redis_set(
                self._state_key(),
                {"state": oauth_state},
                expire=OAUTH_STATE_TTL_SECONDS,
                client=self._store,
            )
        except CacheError as e:
            logger.error(f"Failed to store OAuth state: {e}")
            self._set_error("Could not start Facebook connection")
            self._transition(Disconnected())
            return None

        logger.info("Issued Facebook OAuth URL")
        return oauth.oauth_url

    def _check_authorization(self, params: Dict[str, Any]) -> str:
        """Return the authorization code from the callback parameters.

        Raises:
            FacebookOAuthError: If Facebook reported an error or sent no code
        """
        error = params.get("error")
        if error:
            description = params.get("error_description") or params.get("error_reason") or error
            raise FacebookOAuthError(f"Facebook authorization failed: {description}", error_code=error)

        code = params.get("code")
        if not code:
            raise FacebookOAuthError("No authorization code received from Facebook")
        return code

    def _check_state(self, oauth_state: Optional[str]) -> None:
        """Compare the returned state with the stored one and consume it.

        Only a mismatch fails; a missing value on either side is accepted.

        Raises:
            FacebookOAuthError: If both states are present and differ
        """
        try:
            stored = redis_get(self._state_key(), client=self._store)
            if stored is not None:
                redis_delete(self._state_key(), client=self._store)
        except CacheError as e:
            logger.error(f"Failed to read OAuth state: {e}")
            stored = None
        expected = stored.get("state") if isinstance(stored, dict) else None
        if expected and oauth_state and expected != oauth_state:
            raise FacebookOAuthError("Invalid OAuth state")

    async def handle_oauth_callback(self, params: Dict[str, Any]) -> OAuthCallbackResult:
        """Complete the connection from the OAuth redirect query parameters.

        May be called on a fresh manager (the redirect lands in a new page
        load), in which case the manager moves to Connecting first. An error
        or missing code is reported as a failed result from any state.
        """
        try:
            code = self._check_authorization(params)
        except FacebookOAuthError as e:
            return self._fail_connect(e.message)

        if not isinstance(self.state, Connecting):
            self._require("complete Facebook connection", self.can_connect)
            self._transition(Connecting())

        try:
            self._check_state(params.get("state"))
            status = await self.api.connect_facebook(code, params.get("state"))
        except FacebookOAuthError as e:
            return self._fail_connect(e.message)
        except InboxAPIError as e:
            return self._fail_connect(e.user_message)

        status = status.model_copy(update={"is_connected": True})
        self._set_error(None)
        self._transition(Connected(status=status))
        logger.info(f"Facebook connected by {status.facebook_user_name or status.connected_by}")
        await self.refresh_pages()
        return OAuthCallbackResult(
            success=True,
            message="Facebook connected successfully",
            delay_seconds=SUCCESS_REDIRECT_DELAY,
        )

    def _fail_connect(self, message: str) -> OAuthCallbackResult:
        logger.warning(f"Facebook connection failed: {message}")
        self._set_error(message)
        if isinstance(self.state, Connecting):
            self._transition(Disconnected())
        return OAuthCallbackResult(success=False, message=message)

    # -------------------------------------------------------------------------
    # Sync and disconnect
    # -------------------------------------------------------------------------

    async def sync_pages(self) -> PageSyncResult:
        """Sync the company's pages; the connection state does not change."""
        self._require("sync Facebook pages", self.can_sync)
        try:
            result = await self.api.sync_facebook_pages()
        except InboxAPIError as e:
            logger.error(f"Facebook page sync failed: {e}")
            result = PageSyncResult.failed(e.user_message, pages_total=len(self.pages))
            self._set_error(result.summary)
            return result

        logger.info(f"Facebook page sync: {result.summary}")
        if result.sync_status != SyncStatus.SUCCESS:
            self._set_error(result.summary)
        if result.pages_synced > 0:
            await self.refresh_pages()
        return result

    async def disconnect(self, confirm: ConfirmCallback) -> bool:
        """Disconnect after the user confirms. Declining is a no-op.

        Returns:
            True if the company is now disconnected
        """
        self._require("disconnect Facebook", self.can_disconnect)
        answer = confirm()
        if inspect.isawaitable(answer):
            answer = await answer
        if not answer:
            logger.debug("Facebook disconnect declined")
            return False
        # The state may have moved while the user was answering
        self._require("disconnect Facebook", self.can_disconnect)

        previous = self.state
        self._transition(Disconnecting(previous=previous))
        try:
            await self.api.disconnect_facebook()
        except InboxAPIError as e:
            logger.error(f"Failed to disconnect Facebook: {e}")
            self._set_error(e.user_message)
            self._transition(previous)
            return False

        self.pages = []
        self._set_error(None)
        self._transition(Disconnected())
        logger.info("Facebook disconnected")
        return True
