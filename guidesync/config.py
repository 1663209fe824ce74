"""
Configuration constants for guidesync
"""
import os
from pathlib import Path
from typing import Optional

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── overridden by YAML config or apply_profile()
# ══════════════════════════════════════════════════════════════════════════════

SUPABASE_URL = "https://example.supabase.co"
SUPABASE_ANON_KEY: Optional[str] = None

# Where the local progress document and the auth session live
STATE_DIR = Path(".")

# Debounce windows (seconds) between a local change and its upload
STEP_DEBOUNCE = 0.5
FIELD_DEBOUNCE = 2.0

# Retry settings: attempt N waits N * RETRY_BASE_DELAY
RETRY_MAX = 3
RETRY_BASE_DELAY = 5.0

# Upper bound for any single remote call
REQUEST_TIMEOUT = 20.0

# Becoming visible after this long without a sync pulls from the cloud
STALE_SYNC_AFTER = 5 * 60

# How long a sign-in waits for the merge/cloud/local answer
MIGRATION_TIMEOUT = 120.0

PROGRESS_TABLE = "user_progress"
HISTORY_TABLE = "progress_history"


# ══════════════════════════════════════════════════════════════════════════════
#  DYNAMIC PATHS  ── computed from STATE_DIR at call time
# ══════════════════════════════════════════════════════════════════════════════

def get_progress_file() -> Path:
    """Return the local progress document path based on the current STATE_DIR."""
    return STATE_DIR / ".guidesync_progress.json"


def get_session_file() -> Path:
    """Return the persisted auth session path based on the current STATE_DIR."""
    return STATE_DIR / ".guidesync_session.json"


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/guidesync/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for guidesync."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "guidesync"
    if os.name == "nt":
        appdata = os.environ.get("APPDATA", "")
        if appdata:
            return Path(appdata) / "guidesync"
    return Path.home() / ".config" / "guidesync"


def load_global_config() -> dict:
    """Load global config from the guidesync config directory."""
    import yaml

    cfg_path = get_global_config_dir() / "config.yaml"
    if not cfg_path.is_file():
        return {}
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return {}


# ══════════════════════════════════════════════════════════════════════════════
#  PROJECT CONFIG FILE  ── .guidesync (searched upward)
# ══════════════════════════════════════════════════════════════════════════════

def find_project_config(start: Optional[Path] = None) -> Optional[Path]:
    """
    Search upward from *start* (default: cwd) for a .guidesync YAML file.
    Returns the Path if found, or None if no .guidesync exists in any parent.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / ".guidesync"
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_project_file(path: Path) -> dict:
    """Parse a .guidesync YAML file and return its contents as a dict."""
    import yaml

    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_profile(data: dict, profile_name: str = "default") -> dict:
    """
    Extract a named profile from a .guidesync or config.yaml data dict.
    Falls back to the first profile if the named one is not found.
    Returns a flat profile dict merged with top-level defaults.
    """
    defaults = data.get("defaults", {}) or {}
    profiles = data.get("profiles", []) or []
    if not profiles:
        return defaults.copy()
    profile = next((p for p in profiles if p.get("name") == profile_name), None)
    if profile is None:
        profile = profiles[0]
    merged = defaults.copy()
    merged.update(profile)
    return merged


# ══════════════════════════════════════════════════════════════════════════════
#  APPLY PROFILE  ── mutates module-level variables
# ══════════════════════════════════════════════════════════════════════════════

def apply_profile(profile: dict):
    """
    Apply a profile dict to the module-level config variables.
    Supports keys: supabase_url, anon_key, state_dir (relative paths resolve
    against *base_dir* key when present), step_debounce, field_debounce,
    retry_max, retry_delay, request_timeout, stale_sync_after,
    migration_timeout.
    """
    global SUPABASE_URL, SUPABASE_ANON_KEY, STATE_DIR
    global STEP_DEBOUNCE, FIELD_DEBOUNCE, RETRY_MAX, RETRY_BASE_DELAY
    global REQUEST_TIMEOUT, STALE_SYNC_AFTER, MIGRATION_TIMEOUT

    if "supabase_url" in profile:
        SUPABASE_URL = str(profile["supabase_url"]).rstrip("/")
    if "anon_key" in profile:
        SUPABASE_ANON_KEY = str(profile["anon_key"]) if profile["anon_key"] else None
    if "state_dir" in profile:
        sd = Path(str(profile["state_dir"])).expanduser()
        base = profile.get("base_dir")
        if base and not sd.is_absolute():
            sd = Path(str(base)) / sd
        STATE_DIR = sd.resolve()
    if "step_debounce" in profile:
        STEP_DEBOUNCE = float(profile["step_debounce"])
    if "field_debounce" in profile:
        FIELD_DEBOUNCE = float(profile["field_debounce"])
    if "retry_max" in profile:
        RETRY_MAX = int(profile["retry_max"])
    if "retry_delay" in profile:
        RETRY_BASE_DELAY = float(profile["retry_delay"])
    if "request_timeout" in profile:
        REQUEST_TIMEOUT = float(profile["request_timeout"])
    if "stale_sync_after" in profile:
        STALE_SYNC_AFTER = float(profile["stale_sync_after"])
    if "migration_timeout" in profile:
        MIGRATION_TIMEOUT = float(profile["migration_timeout"])
