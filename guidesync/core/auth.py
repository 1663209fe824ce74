"""
Auth session tracking and the Supabase (GoTrue) sign-in client
"""
import asyncio
import json
import time
from pathlib import Path
from typing import Callable, Optional
import aiohttp
from .. import config as _cfg
from ..errors import AuthError, TransportError
from ..state.record import UserIdentity
from ..utils.logging import log, vlog, warn
from ..utils.retry import retried
from .events import EventBus, AuthEvent, AuthEventKind, AUTH_TOPIC

# Refresh a restored session when it has less than this many seconds left
REFRESH_MARGIN = 60


class AuthSessionObserver:
    """
    Current user identity plus SIGNED_IN / SIGNED_OUT / TOKEN_REFRESHED events.

    Queries are synchronous; whoever owns the real sign-in flow calls the
    publishing methods.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus or EventBus()
        self._user: Optional[UserIdentity] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._expires_at: Optional[float] = None

    # ── queries ─────────────────────────────────────────────────────────────

    def is_authenticated(self) -> bool:
        return self._user is not None

    def current_user(self) -> Optional[UserIdentity]:
        return self._user

    def access_token(self) -> Optional[str]:
        return self._access_token

    def subscribe(self, handler: Callable[[AuthEvent], None]) -> Callable[[], None]:
        return self.bus.subscribe(AUTH_TOPIC, handler)

    async def ensure_fresh(self):
        """Hook for observers whose tokens expire; nothing to do here."""

    # ── state changes ───────────────────────────────────────────────────────

    def _set(self, user, access_token, refresh_token, expires_at):
        self._user = user
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._expires_at = expires_at

    def restore(self, user: UserIdentity, access_token: Optional[str] = None,
                refresh_token: Optional[str] = None, expires_at: Optional[float] = None):
        """Adopt an existing session without announcing a sign-in."""
        self._set(user, access_token, refresh_token, expires_at)

    def signed_in(self, user: UserIdentity, access_token: Optional[str] = None,
                  refresh_token: Optional[str] = None, expires_at: Optional[float] = None):
        self._set(user, access_token, refresh_token, expires_at)
        log(f"[auth] signed in as {user.email or user.id}")
        self.bus.publish(AUTH_TOPIC, AuthEvent(AuthEventKind.SIGNED_IN, user))

    def token_refreshed(self, access_token: str, refresh_token: Optional[str] = None,
                        expires_at: Optional[float] = None):
        self._access_token = access_token
        if refresh_token:
            self._refresh_token = refresh_token
        self._expires_at = expires_at
        vlog("[auth] token refreshed")
        self.bus.publish(AUTH_TOPIC, AuthEvent(AuthEventKind.TOKEN_REFRESHED, self._user))

    def signed_out(self):
        self._set(None, None, None, None)
        log("[auth] signed out")
        self.bus.publish(AUTH_TOPIC, AuthEvent(AuthEventKind.SIGNED_OUT))


class SupabaseAuth(AuthSessionObserver):
    """
    Password sign-in, token refresh and sign-out against Supabase GoTrue.
    The session is kept in a JSON file so later runs start signed in.
    """

    def __init__(self, url: Optional[str] = None, anon_key: Optional[str] = None,
                 bus: Optional[EventBus] = None, session_file: Optional[Path] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(bus)
        self._url = (url or _cfg.SUPABASE_URL).rstrip("/")
        self._anon_key = anon_key or _cfg.SUPABASE_ANON_KEY or ""
        self._session_file = session_file
        self._clock = clock
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def session_file(self) -> Path:
        return self._session_file or _cfg.get_session_file()

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            timeout = aiohttp.ClientTimeout(total=_cfg.REQUEST_TIMEOUT)
            self._http = aiohttp.ClientSession(timeout=timeout)
        return self._http

    async def close(self):
        if self._http is not None and not self._http.closed:
            await self._http.close()

    # ── HTTP ────────────────────────────────────────────────────────────────

    @retried(TransportError)
    async def _post(self, path: str, payload: Optional[dict] = None,
                    token: Optional[str] = None) -> dict:
        headers = {"apikey": self._anon_key, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self._url}/auth/v1/{path}"
        try:
            async with self._client().post(url, json=payload or {}, headers=headers) as resp:
                text = await resp.text()
                if resp.status >= 500:
                    raise TransportError(f"auth service error {resp.status}: {text[:200]}", resp.status)
                if resp.status >= 400:
                    raise AuthError(_error_message(text) or f"auth rejected ({resp.status})")
                if not text:
                    return {}
                return json.loads(text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"auth request failed: {exc}") from exc

    def _adopt(self, data: dict) -> tuple:
        user = data.get("user") or {}
        if not data.get("access_token") or not user.get("id"):
            raise AuthError("auth response did not contain a session")
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = self._clock() + float(data["expires_in"])
        identity = UserIdentity(id=str(user["id"]), email=user.get("email") or "")
        return identity, data["access_token"], data.get("refresh_token"), expires_at

    # ── public API ──────────────────────────────────────────────────────────

    async def sign_in_with_password(self, email: str, password: str) -> UserIdentity:
        data = await self._post("token?grant_type=password",
                                {"email": email, "password": password})
        user, access, refresh, expires_at = self._adopt(data)
        self._set(user, access, refresh, expires_at)
        self.save_session()
        self.signed_in(user, access, refresh, expires_at)
        return user

    async def refresh_session(self) -> bool:
        if not self._refresh_token:
            return False
        data = await self._post("token?grant_type=refresh_token",
                                {"refresh_token": self._refresh_token})
        user, access, refresh, expires_at = self._adopt(data)
        self._user = user
        self.token_refreshed(access, refresh, expires_at)
        self.save_session()
        return True

    async def sign_out(self):
        token = self._access_token
        try:
            if token:
                await self._post("logout", token=token)
        except (AuthError, TransportError) as exc:
            warn(f"[auth] server sign-out failed ({exc}); clearing local session anyway")
        finally:
            self.clear_session()
            self.signed_out()

    async def ensure_fresh(self):
        """Refresh the access token when it is about to expire."""
        if self._expires_at is not None and self._expires_at - self._clock() < REFRESH_MARGIN:
            await self.refresh_session()

    # ── persistence ─────────────────────────────────────────────────────────

    def save_session(self):
        if self._user is None:
            return
        doc = {
            "access_token": self._access_token,
            "refresh_token": self._refresh_token,
            "expires_at": self._expires_at,
            "user": {"id": self._user.id, "email": self._user.email},
        }
        try:
            self.session_file.parent.mkdir(parents=True, exist_ok=True)
            self.session_file.write_text(json.dumps(doc, indent=2), "utf-8")
        except OSError as exc:
            warn(f"[auth] cannot save session: {exc}")

    def clear_session(self):
        try:
            self.session_file.unlink(missing_ok=True)
        except OSError as exc:
            warn(f"[auth] cannot remove session file: {exc}")

    async def load_session(self) -> bool:
        """Restore a saved session without emitting SIGNED_IN. Returns True if signed in."""
        f = self.session_file
        if not f.exists():
            return False
        try:
            doc = json.loads(f.read_text("utf-8"))
            user = doc["user"]
            identity = UserIdentity(id=str(user["id"]), email=user.get("email") or "")
        except (OSError, ValueError, KeyError, TypeError):
            warn("[auth] saved session is unreadable; signed out")
            return False
        self.restore(identity, doc.get("access_token"), doc.get("refresh_token"),
                     doc.get("expires_at"))
        try:
            await self.ensure_fresh()
        except (AuthError, TransportError) as exc:
            warn(f"[auth] session refresh failed ({exc}); signed out")
            self._set(None, None, None, None)
            return False
        return True


def _error_message(text: str) -> str:
    try:
        data = json.loads(text)
    except ValueError:
        return text.strip()[:200]
    if not isinstance(data, dict):
        return ""
    return data.get("error_description") or data.get("msg") or data.get("message") or ""
