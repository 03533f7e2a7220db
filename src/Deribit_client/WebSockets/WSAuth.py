import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import ApiError, AuthError, ProtocolError
from ..logger_config import BaseLogger
from ..scope import Scope
from .WSConnection import ConnectionState

AUTH_METHOD = "public/auth"
EXCHANGE_TOKEN_METHOD = "public/exchange_token"
LOGOUT_METHOD = "private/logout"


@dataclass
class Credentials:
    """API key pair. The secret is never shown in reprs or logs."""

    client_id: str
    client_secret: str = field(repr=False)

    def __repr__(self) -> str:
        return f"Credentials(client_id={self.client_id!r}, client_secret='***')"


@dataclass
class AccessToken:
    """A short-lived token returned by ``public/auth``. Times are monotonic clock seconds."""

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: float
    refresh_at: float
    scope: Scope
    token_type: str = "bearer"
    enabled_features: List[str] = field(default_factory=list)
    sid: Optional[str] = None

    @classmethod
    def from_result(
        cls, result: Dict[str, Any], now: float, safety_margin: float
    ) -> "AccessToken":
        try:
            expires_in = float(result["expires_in"])
            access_token = result["access_token"]
            refresh_token = result["refresh_token"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed authentication result: {exc}") from exc
        if expires_in <= safety_margin:
            raise ProtocolError(
                f"Token lifetime {expires_in}s does not exceed the safety margin {safety_margin}s",
                data=expires_in,
            )
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + expires_in,
            refresh_at=now + expires_in - safety_margin,
            scope=Scope.parse(result.get("scope", "")),
            token_type=result.get("token_type", "bearer"),
            enabled_features=list(result.get("enabled_features") or []),
            sid=result.get("sid"),
        )

    def is_valid(self, now: float) -> bool:
        return now < self.refresh_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class AuthManager(BaseLogger):
    """
    Keeps the session's access token valid without involving callers.

    The first authenticated request triggers a login; afterwards a timer
    refreshes the token ``safety_margin`` seconds before it expires. Every
    new transport needs a fresh authentication, so a reconnect invalidates
    the current token and the handshake authenticates again before other
    requests go out. A rejected credential login is fatal for the session.
    Without credentials every operation is a no-op.
    """

    def __init__(
        self,
        correlator,
        credentials: Optional[Credentials] = None,
        safety_margin: float = 30.0,
        scope: Optional[Scope] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._correlator = correlator
        self._credentials = credentials
        self.safety_margin = safety_margin
        self.requested_scope = scope
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._needs_reauth = True
        self._fatal: Optional[AuthError] = None
        self._lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_public(self) -> bool:
        return self._credentials is None

    @property
    def is_authenticated(self) -> bool:
        return self._token_usable()

    @property
    def scope(self) -> Optional[Scope]:
        return self._token.scope if self._token else None

    @property
    def failure(self) -> Optional[AuthError]:
        return self._fatal

    def _token_usable(self) -> bool:
        return (
            self._token is not None
            and not self._needs_reauth
            and self._token.is_valid(self._clock())
        )

    async def ensure_authenticated(self) -> None:
        """
        Makes sure a valid token is installed, logging in or refreshing if needed.

        Concurrent callers share a single authentication round trip.

        Raises:
            AuthError: The credentials were rejected (now or earlier in the session).
        """
        if self.is_public:
            return
        if self._fatal is not None:
            raise self._fatal
        if self._token_usable():
            return
        async with self._lock:
            if self._fatal is not None:
                raise self._fatal
            if self._token_usable():
                return
            await self._authenticate()

    async def _authenticate(self) -> None:
        token = self._token
        if token is not None:
            try:
                result = await self._correlator.call(
                    AUTH_METHOD,
                    {"grant_type": "refresh_token", "refresh_token": token.refresh_token},
                )
                self._install(result, grant="refresh_token")
                return
            except ApiError as exc:
                self.log.warning(
                    "Token refresh rejected, logging in with credentials",
                    code=exc.code,
                    error=exc.message,
                )
        await self._login()

    async def _login(self) -> None:
        params: Dict[str, Any] = {
            "grant_type": "client_credentials",
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
        }
        if self.requested_scope is not None:
            params["scope"] = self.requested_scope.dump()
        try:
            result = await self._correlator.call(AUTH_METHOD, params)
        except ApiError as exc:
            error = AuthError(
                f"Authentication rejected: {exc.message}", code=exc.code, data=exc.data
            )
            self._fatal = error
            self._cancel_refresh()
            self.log.error(
                "Authentication failed", client_id=self._credentials.client_id, code=exc.code
            )
            raise error from exc
        self._install(result, grant="client_credentials")

    def _install(self, result: Dict[str, Any], grant: str) -> None:
        token = AccessToken.from_result(result, self._clock(), self.safety_margin)
        self._token = token
        self._needs_reauth = False
        self.log.info(
            "Access token installed",
            grant=grant,
            scope=token.scope.dump(),
            expires_in=round(token.expires_at - self._clock(), 1),
        )
        self._schedule_refresh(token)

    def _schedule_refresh(self, token: AccessToken) -> None:
        self._cancel_refresh()
        delay = max(token.refresh_at - self._clock(), 0.0)
        self._refresh_task = asyncio.create_task(
            self._refresh_later(delay), name="AuthRefreshTimer"
        )

    def _cancel_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _refresh_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self.log.info("Refreshing access token before expiry")
        # Detached so that installing the new token does not cancel this task.
        self._refresh_task = None
        try:
            await self.ensure_authenticated()
        except AuthError as exc:
            self.log.error("Scheduled token refresh failed", error=str(exc))
        except Exception as exc:
            # The next authenticated call retries; a lost connection re-authenticates anyway.
            self.log.warning("Scheduled token refresh did not complete", error=str(exc))

    def on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        """Connection state listener: a new transport needs a new authentication."""
        if new is ConnectionState.RECONNECTING:
            self._needs_reauth = True
            self._cancel_refresh()
        elif new in (ConnectionState.CLOSING, ConnectionState.DISCONNECTED):
            self._cancel_refresh()

    async def handshake(self) -> None:
        """
        Re-authenticates a freshly opened transport before it is handed to callers.

        A session that never logged in stays lazy: the first authenticated
        request performs the login.
        """
        if self.is_public or self._token is None:
            return
        self._needs_reauth = True
        await self.ensure_authenticated()

    def authorize(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Returns a copy of ``params`` carrying the current access token."""
        authorized = dict(params or {})
        if self._token is not None:
            authorized["access_token"] = self._token.access_token
        return authorized

    async def exchange_token(self, subject_id: int) -> AccessToken:
        """Obtains a token for the subaccount ``subject_id`` without installing it."""
        await self.ensure_authenticated()
        result = await self._correlator.call(
            EXCHANGE_TOKEN_METHOD,
            {"refresh_token": self._token.refresh_token, "subject_id": subject_id},
        )
        return AccessToken.from_result(result, self._clock(), self.safety_margin)

    async def switch_subaccount(self, subject_id: int) -> Scope:
        """Makes the subaccount ``subject_id`` the session's authentication context."""
        await self.ensure_authenticated()
        async with self._lock:
            result = await self._correlator.call(
                EXCHANGE_TOKEN_METHOD,
                {"refresh_token": self._token.refresh_token, "subject_id": subject_id},
            )
            self._install(result, grant="exchange_token")
        self.log.info("Switched subaccount", subject_id=subject_id)
        return self._token.scope

    async def logout(self, invalidate_token: bool = True) -> None:
        """Sends ``private/logout`` (the server does not reply) and forgets the token."""
        if self._token is None:
            return
        await self._correlator.notify(
            LOGOUT_METHOD,
            {"invalidate_token": invalidate_token, "access_token": self._token.access_token},
        )
        self.close()
        self.log.info("Logged out", invalidate_token=invalidate_token)

    def reset_failure(self) -> None:
        """Forgets a rejected login so a new session may try the credentials again."""
        self._fatal = None

    def close(self) -> None:
        self._cancel_refresh()
        self._token = None
        self._needs_reauth = True
