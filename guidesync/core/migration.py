"""
Sign-in migration: what to do when this device already has progress and
the account may have its own.
"""
import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional
from .. import config as _cfg
from ..state.record import ProgressRecord, RemoteProgressRow
from ..utils.logging import log, warn

MERGED_FIELDS = ("province", "industry", "hiring", "revenue")


class MigrationStrategy(str, Enum):
    MERGE = "merge"
    USE_CLOUD = "use-cloud"
    USE_LOCAL = "use-local"


Chooser = Callable[[], Awaitable[Optional[str]]]


def most_recent(local_value, cloud_value,
                local_time: Optional[float], cloud_time: Optional[float]):
    """
    Pick the value edited last.

    Without both timestamps there is nothing to compare, so the side that has
    a value wins (local first). Equal timestamps go to the cloud.
    """
    if local_time is None or cloud_time is None:
        return local_value or cloud_value
    return local_value if local_time > cloud_time else cloud_value


def merge_completed(local: dict, cloud: dict) -> dict:
    """Union of both maps; a step done on either side stays done."""
    merged = {}
    for key in list(cloud) + [k for k in local if k not in cloud]:
        merged[key] = bool(local.get(key)) or bool(cloud.get(key))
    return merged


def merge_records(local: ProgressRecord, remote: RemoteProgressRow) -> dict:
    """Field-by-field merge of local progress with the account's row."""
    local_time = local.meta.last_modified_at
    cloud_time = remote.updated_at
    merged = {
        name: most_recent(getattr(local, name), getattr(remote, name),
                          local_time, cloud_time)
        for name in MERGED_FIELDS
    }
    merged["completed"] = merge_completed(local.completed, remote.completed)
    return merged


def parse_strategy(answer) -> Optional[MigrationStrategy]:
    if isinstance(answer, MigrationStrategy):
        return answer
    if not isinstance(answer, str):
        return None
    key = answer.strip().lower()
    aliases = {
        "m": MigrationStrategy.MERGE, "merge": MigrationStrategy.MERGE,
        "c": MigrationStrategy.USE_CLOUD, "cloud": MigrationStrategy.USE_CLOUD,
        "use-cloud": MigrationStrategy.USE_CLOUD,
        "l": MigrationStrategy.USE_LOCAL, "local": MigrationStrategy.USE_LOCAL,
        "use-local": MigrationStrategy.USE_LOCAL,
    }
    return aliases.get(key)


class MigrationResolver:
    """
    Asks the user (through *chooser*) which strategy to apply.

    No chooser, no answer in time, a failing chooser or an unknown answer all
    resolve to MERGE, the only choice that keeps both sides' data.
    """

    def __init__(self, chooser: Optional[Chooser] = None,
                 timeout: Optional[float] = None):
        self._chooser = chooser
        self._timeout = timeout

    async def choose(self) -> MigrationStrategy:
        if self._chooser is None:
            return MigrationStrategy.MERGE
        timeout = self._timeout if self._timeout is not None else _cfg.MIGRATION_TIMEOUT
        try:
            answer = await asyncio.wait_for(self._chooser(), timeout)
        except asyncio.TimeoutError:
            log("[migrate] no answer in time — merging")
            return MigrationStrategy.MERGE
        except Exception as exc:
            warn(f"[migrate] could not ask for a strategy ({exc}) — merging")
            return MigrationStrategy.MERGE
        strategy = parse_strategy(answer)
        if strategy is None:
            log(f"[migrate] unrecognised choice {answer!r} — merging")
            return MigrationStrategy.MERGE
        return strategy
