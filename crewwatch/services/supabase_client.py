"""HTTP client for the hosted Supabase project (PostgREST, auth and realtime endpoints)."""
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode

import aiohttp
from aiohttp import ClientTimeout, ClientError

from crewwatch.config import get_settings
from crewwatch.schemas.crew import AuthUser

logger = logging.getLogger(__name__)

REALTIME_PROTOCOL_VERSION = "1.0.0"

TokenListener = Callable[[str], Awaitable[None]]


class SupabaseError(RuntimeError):
    """A remote call failed: HTTP error, timeout or transport failure.

    PostgREST errors carry ``code``, ``details`` and ``hint``; they are kept for logging.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        details: str | None = None,
        hint: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details
        self.hint = hint

    def describe(self) -> dict:
        return {
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "details": self.details,
            "hint": self.hint,
        }


def build_select_params(
    columns: str = "*",
    *,
    eq: Optional[dict[str, Any]] = None,
    gte: Optional[dict[str, Any]] = None,
    lte: Optional[dict[str, Any]] = None,
    in_: Optional[dict[str, Iterable[Any]]] = None,
    order: Optional[str] = None,
    descending: bool = True,
    limit: Optional[int] = None,
) -> list[tuple[str, str]]:
    """Translate filters into PostgREST query parameters.

    Filters whose value is None are skipped so callers can pass optional filters through.
    """
    params: list[tuple[str, str]] = [("select", columns)]

    for operator, filters in (("eq", eq), ("gte", gte), ("lte", lte)):
        for column, value in (filters or {}).items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            params.append((column, f"{operator}.{value}"))

    for column, values in (in_ or {}).items():
        if values is None:
            continue
        joined = ",".join(str(value) for value in values)
        params.append((column, f"in.({joined})"))

    if order:
        params.append(("order", f"{order}.{'desc' if descending else 'asc'}"))
    if limit is not None:
        params.append(("limit", str(limit)))

    return params


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class SupabaseClient:
    """
    Async client for one Supabase project.

    Manages the HTTP session lifecycle: the session is created lazily on first use
    and must be closed on shutdown. Clients derived with :meth:`with_access_token`
    share their parent's session and never close it.

    A signed-in client keeps its refresh token. A request rejected with 401 is
    retried once after refreshing the session, and listeners registered with
    :meth:`add_token_listener` receive every new access token.
    """

    def __init__(
        self,
        url: str | None = None,
        anon_key: str | None = None,
        access_token: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.settings = get_settings()
        self.base_url = (url or self.settings.supabase_url).rstrip('/')
        self.anon_key = anon_key if anon_key is not None else self.settings.supabase_anon_key
        self.access_token = access_token
        self.refresh_token: Optional[str] = None
        self.expires_at: Optional[float] = None  # Epoch seconds
        self.timeout = ClientTimeout(total=timeout_seconds or self.settings.request_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self._parent: Optional["SupabaseClient"] = None
        self._refresh_lock = asyncio.Lock()
        self._token_listeners: list[TokenListener] = []

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - ensure session is closed."""
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure session exists and is not closed."""
        if self._parent is not None:
            return await self._parent._ensure_session()
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            logger.debug("Created new aiohttp session for Supabase client")
        return self._session

    async def close(self):
        """Close the underlying aiohttp client session."""
        if self._parent is not None:
            return
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session for Supabase client")
            self._session = None

    def with_access_token(self, access_token: str) -> "SupabaseClient":
        """Return a client acting as another user, sharing this client's HTTP session."""
        child = SupabaseClient(url=self.base_url, anon_key=self.anon_key, access_token=access_token)
        child.timeout = self.timeout
        child._parent = self._parent or self
        return child

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.access_token or self.anon_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
        refresh_on_401: bool = True,
    ) -> Any:
        """Make an HTTP request and return the decoded JSON body.

        An expired access token is refreshed once and the request repeated.
        """
        token = self.access_token
        try:
            return await self._send(method, path, params=params, payload=payload, headers=headers)
        except SupabaseError as e:
            if not (refresh_on_401 and e.status == 401 and self.refresh_token):
                raise
            logger.info(f"Access token rejected on {path} ({e.message}), refreshing session")

        await self._refresh_if_current(token)
        return await self._send(method, path, params=params, payload=payload, headers=headers)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        session = await self._ensure_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(headers),
            ) as response:
                body = _decode_body(await response.text())
                if response.status >= 400:
                    raise self._error_from_response(response.status, body, path)
                return body

        except asyncio.TimeoutError as e:
            raise SupabaseError(f"Timeout calling {path}") from e
        except ClientError as e:
            raise SupabaseError(f"Transport error calling {path}: {e}") from e

    @staticmethod
    def _error_from_response(status: int, body: Any, path: str) -> SupabaseError:
        if isinstance(body, dict):
            message = (
                body.get("message")
                or body.get("msg")
                or body.get("error_description")
                or body.get("error")
                or f"HTTP {status}"
            )
            return SupabaseError(
                str(message),
                status=status,
                code=body.get("code") and str(body.get("code")),
                details=body.get("details"),
                hint=body.get("hint"),
            )
        return SupabaseError(f"HTTP {status} from {path}: {body}", status=status)

    # --- PostgREST -----------------------------------------------------------------

    async def rpc(self, function: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Invoke a stored procedure. None-valued parameters are omitted."""
        payload = {key: value for key, value in (params or {}).items() if value is not None}
        return await self._request("POST", f"/rest/v1/rpc/{function}", payload=payload)

    async def select(self, table: str, columns: str = "*", **filters) -> list[dict[str, Any]]:
        """Read rows from a table; see :func:`build_select_params` for the filters."""
        params = build_select_params(columns, **filters)
        rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise SupabaseError(f"Unexpected response shape from {table}: {type(rows).__name__}")
        return rows

    # --- Auth ----------------------------------------------------------------------

    async def sign_in_with_password(self, email: str, password: str) -> AuthUser:
        """Sign in and keep the session tokens on this client."""
        data = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            payload={"email": email, "password": password},
            refresh_on_401=False,
        )
        if not isinstance(data, dict) or not data.get("access_token"):
            raise SupabaseError("Sign-in response did not include an access token")

        await self._store_session(data)
        user = AuthUser.model_validate(data.get("user") or {"id": ""})
        logger.info(f"Signed in to Supabase as {user.email or user.id}")
        return user

    async def refresh_session(self) -> None:
        """Exchange the refresh token for a new access token."""
        if not self.refresh_token:
            raise SupabaseError("No refresh token available")

        data = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            payload={"refresh_token": self.refresh_token},
            refresh_on_401=False,
        )
        if not isinstance(data, dict) or not data.get("access_token"):
            raise SupabaseError("Refresh response did not include an access token")

        await self._store_session(data)
        logger.info("Refreshed Supabase session")

    async def _refresh_if_current(self, token: Optional[str]) -> None:
        # Concurrent 401s share one refresh; refresh tokens are single use
        async with self._refresh_lock:
            if self.access_token == token:
                await self.refresh_session()

    async def _store_session(self, data: dict[str, Any]) -> None:
        self.access_token = data["access_token"]
        self.refresh_token = data.get("refresh_token") or self.refresh_token
        if data.get("expires_at"):
            self.expires_at = float(data["expires_at"])
        elif data.get("expires_in"):
            self.expires_at = time.time() + float(data["expires_in"])
        else:
            self.expires_at = None

        for listener in list(self._token_listeners):
            try:
                await listener(self.access_token)
            except Exception as e:
                logger.error(f"Error in access token listener: {e}")

    def seconds_until_expiry(self) -> Optional[float]:
        """Seconds left on the access token, or None when the expiry is unknown."""
        if self.expires_at is None:
            return None
        return self.expires_at - time.time()

    def add_token_listener(self, listener: TokenListener) -> None:
        if listener not in self._token_listeners:
            self._token_listeners.append(listener)

    def remove_token_listener(self, listener: TokenListener) -> None:
        if listener in self._token_listeners:
            self._token_listeners.remove(listener)

    async def get_current_user(self) -> Optional[AuthUser]:
        """Return the user behind the current access token, or None when there is none."""
        if not self.access_token:
            return None
        try:
            data = await self._request("GET", "/auth/v1/user")
        except SupabaseError as e:
            if e.status in (401, 403):
                return None
            raise
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return AuthUser.model_validate(data)

    async def sign_out(self) -> None:
        """Revoke the current session; local tokens are dropped even if the call fails."""
        if not self.access_token:
            return
        try:
            await self._request("POST", "/auth/v1/logout", refresh_on_401=False)
        finally:
            self.access_token = None
            self.refresh_token = None
            self.expires_at = None

    # --- Realtime ------------------------------------------------------------------

    def realtime_url(self) -> str:
        """Websocket URL of the realtime endpoint."""
        if self.base_url.startswith("https://"):
            ws_base = "wss://" + self.base_url[len("https://"):]
        else:
            ws_base = "ws://" + self.base_url[len("http://"):]
        query = urlencode({"apikey": self.anon_key, "vsn": REALTIME_PROTOCOL_VERSION})
        return f"{ws_base}/realtime/v1/websocket?{query}"

    async def ws_connect(self) -> aiohttp.ClientWebSocketResponse:
        """Open a websocket to the realtime endpoint."""
        session = await self._ensure_session()
        try:
            return await session.ws_connect(self.realtime_url())
        except (ClientError, asyncio.TimeoutError) as e:
            raise SupabaseError(f"Unable to open realtime websocket: {e}") from e


# Singleton instance
_supabase_client: SupabaseClient | None = None


def get_supabase_client() -> SupabaseClient:
    """Get singleton Supabase client instance."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = SupabaseClient()
    return _supabase_client
