"""
Local progress store (persistent across runs)

On-disk format is one JSON object:
  {"province": str, "industry": str, "hiring": "yes"|"no",
   "revenue": "lt30"|"gte30", "completed": {step: bool},
   "_meta": {"last_modified_at": float, "version": int,
             "synced_at": float|null, "has_local_changes": bool}}
"""
import copy
import json
import os
import time
from pathlib import Path
from typing import Callable, Optional
from .. import config as _cfg
from ..errors import LocalPersistenceError
from ..utils.logging import vlog, warn
from .record import (
    ProgressRecord, SyncMetadata, default_record, _clean_completed,
    HIRING_CHOICES, REVENUE_CHOICES,
    DEFAULT_PROVINCE, DEFAULT_INDUSTRY, DEFAULT_HIRING, DEFAULT_REVENUE,
)


class LocalProgressStore:
    """
    One progress document per device.

    Write failures switch the store to in-memory mode for the rest of the
    session; the app keeps working without persistence.
    """

    def __init__(self, path: Optional[Path] = None,
                 clock: Callable[[], float] = time.time):
        self._path = path
        self._clock = clock
        self._memory: Optional[ProgressRecord] = None
        self.persistent = True

    @property
    def path(self) -> Path:
        return self._path or _cfg.get_progress_file()

    # ── read ────────────────────────────────────────────────────────────────

    def load(self) -> ProgressRecord:
        """Read the persisted record; missing or malformed values take defaults."""
        if not self.persistent:
            return copy.deepcopy(self._memory) if self._memory else default_record(self._clock())
        try:
            data = self._read()
        except LocalPersistenceError as exc:
            warn(f"[store] {exc} — using defaults")
            return default_record(self._clock())
        if data is None:
            return default_record(self._clock())
        return self._decode(data)

    def _read(self) -> Optional[dict]:
        path = self.path
        if not path.exists():
            return None
        try:
            text = path.read_text("utf-8")
        except OSError as exc:
            raise LocalPersistenceError(f"cannot read {path}: {exc}") from exc
        try:
            data = json.loads(text)
        except ValueError:
            vlog(f"[store] {path.name} is not valid JSON — ignoring it")
            return None
        return data if isinstance(data, dict) else None

    def _decode(self, data: dict) -> ProgressRecord:
        now = self._clock()
        province = data.get("province")
        industry = data.get("industry")
        hiring = data.get("hiring")
        revenue = data.get("revenue")
        completed = data.get("completed")
        return ProgressRecord(
            province=province if isinstance(province, str) else DEFAULT_PROVINCE,
            industry=industry if isinstance(industry, str) and industry else DEFAULT_INDUSTRY,
            hiring=hiring if hiring in HIRING_CHOICES else DEFAULT_HIRING,
            revenue=revenue if revenue in REVENUE_CHOICES else DEFAULT_REVENUE,
            completed=_clean_completed(completed) if isinstance(completed, dict) else {},
            meta=SyncMetadata.from_dict(data.get("_meta"), now),
        )

    # ── write ───────────────────────────────────────────────────────────────

    def save(self, record: ProgressRecord):
        """Persist a user change: stamps the modification time and marks it unsynced."""
        record.meta.last_modified_at = self._clock()
        record.meta.has_local_changes = True
        self.persist(record)

    def persist(self, record: ProgressRecord):
        """Write *record* exactly as given (used after sync completions)."""
        self._memory = copy.deepcopy(record)
        if not self.persistent:
            return
        doc = record.content()
        doc["_meta"] = record.meta.to_dict()
        try:
            self._write(json.dumps(doc, indent=2, sort_keys=True))
        except LocalPersistenceError as exc:
            warn(f"[store] {exc} — progress will only be kept in memory this session")
            self.persistent = False

    def _write(self, text: str):
        path = self.path
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, "utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise LocalPersistenceError(f"cannot write {path}: {exc}") from exc

    def clear(self):
        """Remove the persisted record; a no-op when nothing was saved."""
        self._memory = None
        if not self.persistent:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            warn(f"[store] cannot remove {self.path}: {exc}")
