"""
Remote progress service: one row per user in Supabase (PostgREST)
"""
import asyncio
import json
from typing import Optional
import aiohttp
from .. import config as _cfg
from ..errors import AuthError, NotFoundError, TransportError
from ..state.record import RemoteProgressRow, RemoteHistoryEntry, CONTENT_FIELDS
from ..utils.logging import vlog
from .auth import AuthSessionObserver

# PostgREST: a single-object request matched zero rows
NO_ROWS_CODE = "PGRST116"
OBJECT_JSON = "application/vnd.pgrst.object+json"


class RemoteProgressService:
    """
    Contract the sync coordinator relies on.

    get_row raises NotFoundError when the user has no row yet; every other
    failure is a TransportError. upsert_row must never create a second row for
    the same user, and the service appends an audit snapshot whenever the
    content of a row changes.
    """

    async def get_row(self, user_id: str) -> RemoteProgressRow:
        raise NotImplementedError

    async def upsert_row(self, user_id: str, content: dict) -> RemoteProgressRow:
        raise NotImplementedError

    async def get_history(self, user_id: str, limit: int = 10) -> list:
        raise NotImplementedError

    async def close(self):
        pass


class SupabaseProgressService(RemoteProgressService):
    """PostgREST client for the user_progress and progress_history tables."""

    def __init__(self, auth: AuthSessionObserver, url: Optional[str] = None,
                 anon_key: Optional[str] = None, timeout: Optional[float] = None):
        self._auth = auth
        self._url = (url or _cfg.SUPABASE_URL).rstrip("/")
        self._anon_key = anon_key or _cfg.SUPABASE_ANON_KEY or ""
        self._timeout = timeout
        self._http: Optional[aiohttp.ClientSession] = None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            total = self._timeout if self._timeout is not None else _cfg.REQUEST_TIMEOUT
            self._http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=total))
        return self._http

    async def close(self):
        if self._http is not None and not self._http.closed:
            await self._http.close()

    async def _headers(self, **extra) -> dict:
        try:
            await self._auth.ensure_fresh()
        except AuthError as exc:
            raise TransportError(f"session refresh rejected: {exc}", 401) from exc
        token = self._auth.access_token() or self._anon_key
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {token}",
        }
        headers.update(extra)
        return headers

    async def _request(self, method: str, table: str, params: dict,
                       headers: dict, payload=None):
        url = f"{self._url}/rest/v1/{table}"
        vlog(f"[remote] {method} {table} {params}")
        try:
            async with self._client().request(method, url, params=params,
                                              json=payload, headers=headers) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    code = _error_code(text)
                    if code == NO_ROWS_CODE or (resp.status == 406 and not code):
                        raise NotFoundError(f"no {table} row")
                    raise TransportError(
                        f"{method} {table} failed ({resp.status}): {text[:200]}",
                        resp.status,
                    )
                return json.loads(text) if text else None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method} {table} failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"{method} {table} returned invalid JSON") from exc

    async def get_row(self, user_id: str) -> RemoteProgressRow:
        data = await self._request(
            "GET", _cfg.PROGRESS_TABLE,
            {"select": "*", "user_id": f"eq.{user_id}"},
            await self._headers(Accept=OBJECT_JSON),
        )
        if not isinstance(data, dict):
            raise NotFoundError("no progress row")
        return RemoteProgressRow.from_api(data)

    async def upsert_row(self, user_id: str, content: dict) -> RemoteProgressRow:
        body = {"user_id": user_id}
        body.update({k: content[k] for k in CONTENT_FIELDS if k in content})
        data = await self._request(
            "POST", _cfg.PROGRESS_TABLE,
            {"on_conflict": "user_id"},
            await self._headers(
                Accept=OBJECT_JSON,
                Prefer="resolution=merge-duplicates,return=representation",
            ),
            payload=body,
        )
        if not isinstance(data, dict):
            raise TransportError("upsert returned no row")
        return RemoteProgressRow.from_api(data)

    async def get_history(self, user_id: str, limit: int = 10) -> list:
        data = await self._request(
            "GET", _cfg.HISTORY_TABLE,
            {"select": "*", "user_id": f"eq.{user_id}",
             "order": "created_at.desc", "limit": str(limit)},
            await self._headers(),
        )
        return [RemoteHistoryEntry.from_api(item) for item in data or []]


def _error_code(text: str) -> str:
    try:
        data = json.loads(text)
    except ValueError:
        return ""
    return str(data.get("code") or "") if isinstance(data, dict) else ""
