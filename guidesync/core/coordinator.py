"""
Sync coordinator - keeps the local progress store and the account's remote
row convergent while a user is signed in.

Local writes are synchronous and happen first; the network tail runs on the
asyncio loop. Uploads are debounced (short window for step toggles, longer
for selections), only one upload is ever in flight, and failures are retried
a bounded number of times before the status settles on "error".
"""
import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional
from .. import config as _cfg
from ..errors import ImportValidationError, NotFoundError, RemoteError, TransportError
from ..state.local_store import LocalProgressStore
from ..state.record import (
    ProgressRecord, RemoteProgressRow, SyncMetadata, default_record,
    validate_content, HIRING_CHOICES, REVENUE_CHOICES,
)
from ..utils.logging import log, vlog, warn
from ..utils.retry import retry_delay
from .auth import AuthSessionObserver
from .events import AuthEvent, AuthEventKind, EventBus, SyncEvent, SYNC_TOPIC
from .migration import MigrationResolver, MigrationStrategy, Chooser, merge_records
from .remote import RemoteProgressService

EXPORT_SOURCE = "business-startup-guide-canada"


class SyncPhase(str, Enum):
    OFFLINE = "offline"
    SYNCING_DOWN = "syncing-down"
    SYNCING_UP = "syncing-up"
    SYNCED = "synced"
    ERROR = "error"


_STATUS = {
    SyncPhase.OFFLINE: "offline",
    SyncPhase.SYNCING_DOWN: "syncing",
    SyncPhase.SYNCING_UP: "syncing",
    SyncPhase.SYNCED: "synced",
    SyncPhase.ERROR: "error",
}


class SyncCoordinator:
    """
    Owns the in-memory ProgressRecord for one application session.

    Presentation code reads and mutates progress only through this object and
    never sees remote errors; they surface as get_sync_status() == "error".
    """

    def __init__(self, store: LocalProgressStore, remote: RemoteProgressService,
                 auth: AuthSessionObserver, bus: Optional[EventBus] = None, *,
                 chooser: Optional[Chooser] = None,
                 clock: Callable[[], float] = time.time,
                 step_debounce: Optional[float] = None,
                 field_debounce: Optional[float] = None,
                 retry_max: Optional[int] = None,
                 retry_base_delay: Optional[float] = None,
                 request_timeout: Optional[float] = None,
                 stale_after: Optional[float] = None,
                 migration_timeout: Optional[float] = None):
        self._store = store
        self._remote = remote
        self._auth = auth
        self._bus = bus or auth.bus
        self._resolver = MigrationResolver(chooser, migration_timeout)
        self._clock = clock
        self._step_debounce = step_debounce
        self._field_debounce = field_debounce
        self._retry_max = retry_max
        self._retry_base_delay = retry_base_delay
        self._request_timeout = request_timeout
        self._stale_after = stale_after

        self._record: ProgressRecord = store.load()
        self._phase = SyncPhase.OFFLINE
        self._online = True
        self._generation = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._failures = 0
        self._upload_task: Optional[asyncio.Task] = None
        self._upload_again = False
        self._signing_in = False
        self._tasks: set = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.last_sync_time: Optional[float] = None

    # ── settings (read at call time so profiles apply) ─────────────────────

    def _debounce(self, step: bool) -> float:
        if step:
            return self._step_debounce if self._step_debounce is not None else _cfg.STEP_DEBOUNCE
        return self._field_debounce if self._field_debounce is not None else _cfg.FIELD_DEBOUNCE

    def _max_attempts(self) -> int:
        return self._retry_max if self._retry_max is not None else _cfg.RETRY_MAX

    def _timeout(self) -> float:
        return self._request_timeout if self._request_timeout is not None else _cfg.REQUEST_TIMEOUT

    # ── lifecycle ───────────────────────────────────────────────────────────

    async def start(self):
        """Subscribe to auth events; pull from the cloud if already signed in."""
        if self._unsubscribe is None:
            self._unsubscribe = self._auth.subscribe(self._on_auth_event)
        if self._can_sync():
            await self._sync_down()
        else:
            self._set_phase(SyncPhase.OFFLINE)

    async def flush(self):
        """Send a pending debounced upload now and wait for all sync work."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._kick_upload()
        await self.wait_idle()

    async def wait_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        await self.flush()
        self._cancel_retry()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_visible(self) -> bool:
        """App came to the foreground; pull if the last sync is stale."""
        if not self._can_sync():
            return False
        stale = self._stale_after if self._stale_after is not None else _cfg.STALE_SYNC_AFTER
        now = self._clock()
        if self.last_sync_time is not None and now - self.last_sync_time < stale:
            return False
        log("[sync] visible after a long pause — checking the cloud")
        self._spawn(self._sync_down())
        return True

    def set_online(self, online: bool):
        was_online = self._online
        self._online = online
        if not online:
            self._cancel_timer()
            self._cancel_retry()
            log("[sync] offline — changes stay local until the connection returns")
            self._set_phase(SyncPhase.OFFLINE)
            return
        if not was_online:
            log("[sync] back online")
            self._reset_retries()
            if self._can_sync() and self._record.meta.has_local_changes:
                self._kick_upload()
            elif self._can_sync():
                self._set_phase(SyncPhase.SYNCED)

    # ── presentation API ────────────────────────────────────────────────────

    def get_state(self) -> dict:
        return self._record.content()

    def get_sync_meta(self) -> dict:
        return self._record.meta.to_dict()

    @property
    def record(self) -> ProgressRecord:
        return self._record

    def get_sync_status(self) -> str:
        if not self._auth.is_authenticated() or not self._online:
            return "offline"
        return _STATUS[self._phase]

    def has_unsynced_changes(self) -> bool:
        return self._auth.is_authenticated() and self._record.meta.has_local_changes

    def is_step_completed(self, key: str) -> bool:
        return self._record.is_step_completed(key)

    def set_province(self, province: str):
        self._mutate(False, province=str(province))

    def set_industry(self, industry: str):
        self._mutate(False, industry=str(industry))

    def set_hiring(self, hiring: str):
        if hiring not in HIRING_CHOICES:
            raise ValueError(f"hiring must be one of {HIRING_CHOICES}")
        self._mutate(False, hiring=hiring)

    def set_revenue(self, revenue: str):
        if revenue not in REVENUE_CHOICES:
            raise ValueError(f"revenue must be one of {REVENUE_CHOICES}")
        self._mutate(False, revenue=revenue)

    def set_step_completed(self, key: str, completed: bool):
        steps = dict(self._record.completed)
        steps[key] = bool(completed)
        self._mutate(True, completed=steps)

    async def force_sync(self) -> bool:
        """User-triggered sync: pull, then push whatever is still pending."""
        if not self._auth.is_authenticated():
            log("[sync] sign in to sync your progress")
            return False
        if not self._online:
            warn("[sync] no connection")
            return False
        self._cancel_timer()
        self._reset_retries()
        await self._wait_upload()
        return await self._sync_down()

    def reset(self):
        """Forget all progress locally and, when signed in, in the cloud."""
        self._cancel_timer()
        self._record = default_record(self._clock())
        self._generation += 1
        self._store.clear()
        log("[sync] progress reset")
        if self._can_sync():
            self._record.meta.has_local_changes = True
            self._reset_retries()
            self._spawn(self._upload_now(force=True))

    def export_progress(self) -> dict:
        snapshot = self._record.content()
        snapshot["_exported_at"] = datetime.now(timezone.utc).isoformat(timespec="seconds")
        snapshot["_version"] = self._record.meta.version
        snapshot["_sync_meta"] = {
            "status": self.get_sync_status(),
            "last_sync_time": self.last_sync_time,
            "source": EXPORT_SOURCE,
        }
        return snapshot

    def import_progress(self, snapshot) -> bool:
        """Apply a snapshot's known fields; nothing is applied if any is invalid."""
        try:
            clean = validate_content(snapshot)
        except ImportValidationError as exc:
            warn(f"[import] rejected: {exc}")
            return False
        self._cancel_timer()
        self._record.apply_content(clean)
        self._generation += 1
        self._store.save(self._record)
        log(f"[import] applied {', '.join(sorted(clean)) or 'nothing'}")
        if self._can_sync():
            self._reset_retries()
            self._spawn(self._upload_now())
        return True

    # ── local mutation path ─────────────────────────────────────────────────

    def _mutate(self, step: bool, **changes):
        for name, value in changes.items():
            setattr(self._record, name, value)
        self._generation += 1
        self._store.save(self._record)
        vlog(f"[store] saved {', '.join(changes)}")
        self._reset_retries()
        self._schedule_upload(self._debounce(step))

    def _schedule_upload(self, delay: float):
        if not self._can_sync():
            return
        loop = _running_loop()
        if loop is None:
            return
        self._cancel_timer()
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self):
        self._timer = None
        self._kick_upload()

    # ── upload ──────────────────────────────────────────────────────────────

    def _kick_upload(self, force: bool = False):
        if not self._can_sync():
            return
        if self._signing_in or (self._upload_task is not None and not self._upload_task.done()):
            self._upload_again = True
            return
        self._start_upload(force)

    def _start_upload(self, force: bool) -> asyncio.Task:
        task = self._spawn(self._upload(force))
        task.add_done_callback(self._upload_finished)
        self._upload_task = task
        return task

    def _upload_finished(self, task: asyncio.Task):
        if self._upload_task is task:
            self._upload_task = None
        if self._upload_again and not self._signing_in:
            self._upload_again = False
            if self._record.meta.has_local_changes:
                self._kick_upload()

    async def _wait_upload(self):
        while self._upload_task is not None and not self._upload_task.done():
            await asyncio.wait([self._upload_task])

    async def _upload_now(self, force: bool = False) -> bool:
        await self._wait_upload()
        if not self._can_sync():
            return False
        return await self._start_upload(force)

    async def _upload(self, force: bool = False) -> bool:
        user = self._auth.current_user()
        if user is None or not self._online:
            return False
        meta = self._record.meta
        if not force and not meta.has_local_changes:
            return True
        generation = self._generation
        content = self._record.content()
        self._set_phase(SyncPhase.SYNCING_UP)
        try:
            row = await self._call(self._remote.upsert_row(user.id, content))
        except RemoteError as exc:
            self._sync_failed("upload", exc, lambda: self._kick_upload(force))
            return False

        meta = self._record.meta
        meta.version = row.version
        meta.synced_at = self._clock()
        if generation == self._generation:
            if row.updated_at is not None:
                meta.last_modified_at = row.updated_at
            meta.has_local_changes = False
        self._store.persist(self._record)
        self._failures = 0
        self.last_sync_time = self._clock()
        log(f"[sync] uploaded progress (version {row.version})")
        self._set_phase(SyncPhase.SYNCED, "Progress synced to cloud")
        return True

    # ── download ────────────────────────────────────────────────────────────

    async def _fetch_row(self, user_id: str) -> Optional[RemoteProgressRow]:
        try:
            return await self._call(self._remote.get_row(user_id))
        except NotFoundError:
            return None

    async def _sync_down(self, overwrite: bool = False) -> bool:
        user = self._auth.current_user()
        if user is None or not self._online:
            return False
        generation = self._generation
        self._set_phase(SyncPhase.SYNCING_DOWN)
        try:
            row = await self._fetch_row(user.id)
        except RemoteError as exc:
            self._sync_failed("download", exc,
                              lambda: self._spawn(self._sync_down(overwrite)))
            return False

        self._failures = 0
        self.last_sync_time = self._clock()
        if row is None:
            if self._record.has_progress_data():
                log("[sync] no cloud progress yet — uploading local progress")
                return await self._upload_now(force=True)
            self._set_phase(SyncPhase.SYNCED)
            return True

        meta = self._record.meta
        remote_newer = row.updated_at is not None and row.updated_at > meta.last_modified_at
        if generation != self._generation:
            vlog("[sync] local progress changed during download — keeping it")
        elif overwrite or remote_newer or meta.synced_at is None:
            self._adopt_remote(row)

        if self._record.meta.has_local_changes:
            return await self._upload_now()
        self._set_phase(SyncPhase.SYNCED, "Progress synced from cloud")
        return True

    def _adopt_remote(self, row: RemoteProgressRow):
        self._cancel_timer()
        self._record.apply_content(row.content())
        now = self._clock()
        self._record.meta = SyncMetadata(
            last_modified_at=row.updated_at if row.updated_at is not None else now,
            version=row.version,
            synced_at=now,
            has_local_changes=False,
        )
        self._store.persist(self._record)
        log(f"[sync] took cloud progress (version {row.version})")

    # ── sign-in / sign-out ──────────────────────────────────────────────────

    def _on_auth_event(self, event: AuthEvent):
        if event.kind == AuthEventKind.SIGNED_IN:
            self._spawn(self._handle_sign_in())
        elif event.kind == AuthEventKind.SIGNED_OUT:
            self._handle_sign_out()
        else:
            vlog(f"[sync] auth event {event.kind.value}")

    async def _handle_sign_in(self) -> bool:
        self._reset_retries()
        if not self._can_sync():
            self._set_phase(SyncPhase.OFFLINE)
            return False
        self._signing_in = True
        try:
            if self._record.has_progress_data():
                strategy = await self._resolver.choose()
                log(f"[migrate] resolving local and cloud progress: {strategy.value}")
                return await self._apply_strategy(strategy)
            return await self._sync_down()
        finally:
            self._signing_in = False
            if self._upload_again:
                self._upload_again = False
                self._kick_upload()

    async def _apply_strategy(self, strategy: MigrationStrategy) -> bool:
        if strategy == MigrationStrategy.USE_CLOUD:
            return await self._sync_down(overwrite=True)
        if strategy == MigrationStrategy.USE_LOCAL:
            return await self._upload_now(force=True)
        return await self._merge()

    async def _merge(self) -> bool:
        user = self._auth.current_user()
        if user is None:
            return False
        self._set_phase(SyncPhase.SYNCING_DOWN)
        try:
            row = await self._fetch_row(user.id)
        except RemoteError as exc:
            self._sync_failed("merge", exc, lambda: self._spawn(self._merge()))
            return False
        if row is None:
            return await self._upload_now(force=True)
        merged = merge_records(self._record, row)
        self._record.apply_content(merged)
        self._generation += 1
        self._store.save(self._record)
        log("[migrate] merged local and cloud progress")
        return await self._upload_now(force=True)

    def _handle_sign_out(self):
        self._cancel_timer()
        self._cancel_retry()
        self._failures = 0
        self._upload_again = False
        self.last_sync_time = None
        self._set_phase(SyncPhase.OFFLINE, "Signed out — progress kept on this device")

    # ── failures and retry ──────────────────────────────────────────────────

    async def _call(self, aw: Awaitable):
        try:
            return await asyncio.wait_for(aw, self._timeout())
        except asyncio.TimeoutError as exc:
            raise TransportError(f"no response within {self._timeout():.0f}s") from exc

    def _sync_failed(self, what: str, exc: Exception, retry: Callable[[], None]):
        self._failures += 1
        attempts = self._max_attempts()
        warn(f"[sync] {what} failed (attempt {self._failures}/{attempts}): {exc}")
        self._set_phase(SyncPhase.ERROR, f"Failed to sync progress: {exc}")
        if self._failures >= attempts or not self._can_sync():
            log(f"[sync] giving up after {self._failures} attempt(s) until the next change")
            return
        loop = _running_loop()
        if loop is None:
            return
        delay = retry_delay(self._failures, self._retry_base_delay)
        log(f"  retrying in {delay:.0f}s …")
        self._cancel_retry()
        self._retry_timer = loop.call_later(delay, self._fire_retry, retry)

    def _fire_retry(self, retry: Callable[[], None]):
        self._retry_timer = None
        if self._can_sync():
            retry()

    def _reset_retries(self):
        self._failures = 0
        self._cancel_retry()

    def _cancel_retry(self):
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ── helpers ─────────────────────────────────────────────────────────────

    def _can_sync(self) -> bool:
        return self._online and self._auth.is_authenticated()

    def _set_phase(self, phase: SyncPhase, message: str = ""):
        self._phase = phase
        self._bus.publish(SYNC_TOPIC, SyncEvent(self.get_sync_status(), message,
                                                self.last_sync_time))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            warn(f"[sync] background task failed: {task.exception()!r}")


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
