"""
Progress data model: the user's guide selections, step completion and the
sync metadata attached to them.
"""
import re
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional
from ..errors import ImportValidationError

CONTENT_FIELDS = ("province", "industry", "hiring", "revenue", "completed")

DEFAULT_PROVINCE = ""
DEFAULT_INDUSTRY = "general"
DEFAULT_HIRING = "no"
DEFAULT_REVENUE = "gte30"

HIRING_CHOICES = ("yes", "no")
REVENUE_CHOICES = ("lt30", "gte30")

# Postgres trims trailing zeros from fractional seconds; fromisoformat before
# 3.11 only takes 3 or 6 digits.
_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds from a number or an ISO-8601 string; None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        text = str(value).strip().replace("Z", "+00:00")
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def format_timestamp(ts: Optional[float]) -> str:
    if ts is None:
        return "never"
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="seconds")


@dataclass
class SyncMetadata:
    last_modified_at: float
    version: int = 1
    synced_at: Optional[float] = None
    has_local_changes: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any, now: float) -> "SyncMetadata":
        """Build from persisted data; any malformed field takes its default."""
        if not isinstance(data, dict):
            return cls(last_modified_at=now)
        lm = parse_timestamp(data.get("last_modified_at"))
        version = data.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            version = 1
        return cls(
            last_modified_at=now if lm is None else lm,
            version=version,
            synced_at=parse_timestamp(data.get("synced_at")),
            has_local_changes=data.get("has_local_changes") is True,
        )


@dataclass
class ProgressRecord:
    province: str = DEFAULT_PROVINCE
    industry: str = DEFAULT_INDUSTRY
    hiring: str = DEFAULT_HIRING
    revenue: str = DEFAULT_REVENUE
    completed: dict = field(default_factory=dict)
    meta: SyncMetadata = field(default_factory=lambda: SyncMetadata(time.time()))

    def content(self) -> dict:
        """The content fields only, metadata stripped."""
        return {
            "province": self.province,
            "industry": self.industry,
            "hiring": self.hiring,
            "revenue": self.revenue,
            "completed": dict(self.completed),
        }

    def apply_content(self, content: dict):
        for name in CONTENT_FIELDS:
            if name in content:
                value = content[name]
                setattr(self, name, dict(value) if name == "completed" else value)

    def has_progress_data(self) -> bool:
        """True when anything differs from a fresh guide."""
        return bool(
            self.province
            or self.completed
            or self.industry != DEFAULT_INDUSTRY
            or self.hiring != DEFAULT_HIRING
            or self.revenue != DEFAULT_REVENUE
        )

    def is_step_completed(self, key: str) -> bool:
        return bool(self.completed.get(key))

    @property
    def gst_required(self) -> bool:
        return self.revenue == "gte30"

    @property
    def shows_hiring_steps(self) -> bool:
        return self.hiring == "yes"


def default_record(now: Optional[float] = None) -> ProgressRecord:
    return ProgressRecord(meta=SyncMetadata(time.time() if now is None else now))


@dataclass
class UserIdentity:
    id: str
    email: str = ""


@dataclass
class RemoteProgressRow:
    user_id: str
    province: str
    industry: str
    hiring: str
    revenue: str
    completed: dict
    updated_at: Optional[float]
    version: int = 1

    def content(self) -> dict:
        return {
            "province": self.province,
            "industry": self.industry,
            "hiring": self.hiring,
            "revenue": self.revenue,
            "completed": dict(self.completed),
        }

    @classmethod
    def from_api(cls, data: dict) -> "RemoteProgressRow":
        """Parse a PostgREST row; null columns fall back to defaults."""
        completed = data.get("completed")
        return cls(
            user_id=str(data.get("user_id", "")),
            province=data.get("province") or DEFAULT_PROVINCE,
            industry=data.get("industry") or DEFAULT_INDUSTRY,
            hiring=data.get("hiring") or DEFAULT_HIRING,
            revenue=data.get("revenue") or DEFAULT_REVENUE,
            completed=_clean_completed(completed) if isinstance(completed, dict) else {},
            updated_at=parse_timestamp(data.get("updated_at")),
            version=int(data.get("version") or 1),
        )


@dataclass
class RemoteHistoryEntry:
    user_id: str
    snapshot: dict
    description: str
    created_at: Optional[float]

    @classmethod
    def from_api(cls, data: dict) -> "RemoteHistoryEntry":
        snapshot = data.get("progress_snapshot")
        return cls(
            user_id=str(data.get("user_id", "")),
            snapshot=snapshot if isinstance(snapshot, dict) else {},
            description=data.get("change_description") or "",
            created_at=parse_timestamp(data.get("created_at")),
        )


def _clean_completed(raw: dict) -> dict:
    return {str(k): v for k, v in raw.items() if isinstance(v, bool)}


def validate_content(data: Any) -> dict:
    """
    Check an imported snapshot and return only its known content fields.

    Unknown keys are dropped silently. Any known key with a bad value raises
    ImportValidationError, so callers never apply half of a snapshot.
    """
    if not isinstance(data, dict):
        raise ImportValidationError("snapshot must be a JSON object")

    clean: dict = {}
    for name in ("province", "industry"):
        if name in data:
            if not isinstance(data[name], str):
                raise ImportValidationError(f"{name} must be a string")
            clean[name] = data[name]
    if "hiring" in data:
        if data["hiring"] not in HIRING_CHOICES:
            raise ImportValidationError(f"hiring must be one of {HIRING_CHOICES}")
        clean["hiring"] = data["hiring"]
    if "revenue" in data:
        if data["revenue"] not in REVENUE_CHOICES:
            raise ImportValidationError(f"revenue must be one of {REVENUE_CHOICES}")
        clean["revenue"] = data["revenue"]
    if "completed" in data:
        completed = data["completed"]
        if not isinstance(completed, dict):
            raise ImportValidationError("completed must be an object")
        for key, value in completed.items():
            if not isinstance(key, str) or not isinstance(value, bool):
                raise ImportValidationError("completed must map step keys to true/false")
        clean["completed"] = dict(completed)
    return clean
