#!/usr/bin/env python3
"""
guidesync  —  Canadian business startup guide progress, synced to your account
===============================================================================

Subcommands:
  init      Create a .guidesync config file in the current directory.
  status    Show selections, completed steps and sync state.
  set       Change province / industry / hiring / revenue.
  done      Mark a checklist step complete.
  undo      Mark a checklist step not complete.
  login     Sign in; local progress is merged with your account.
  logout    Sign out (progress stays on this device).
  sync      Sync now.
  export    Write progress as JSON.
  import    Load progress from a JSON export.
  reset     Forget all progress (also in the cloud when signed in).
  history   Show the account's recent progress snapshots.

Run 'guidesync <subcommand> --help' for more details.
"""
import sys
import json
import asyncio
import argparse
import getpass
import threading
from contextlib import asynccontextmanager
from pathlib import Path


# ── session ──────────────────────────────────────────────────────────────────

def _apply_config(args) -> Path:
    """Load the nearest .guidesync and apply the selected profile."""
    import guidesync.config as _cfg
    from guidesync.utils.logging import set_verbose

    set_verbose(getattr(args, "verbose", False))
    path = _cfg.find_project_config()
    if path is None:
        print("error: no .guidesync file found in this directory or any parent.", file=sys.stderr)
        print("Run 'guidesync init' to create one.", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "verbose", False):
        print(f"[config] Using {path}")
    data = _cfg.load_project_file(path)
    profile = _cfg.get_profile(data, getattr(args, "profile", None) or "default")
    profile.setdefault("base_dir", str(path.parent))
    _cfg.apply_profile(profile)
    return path


def _ask_strategy() -> str:
    print()
    print("  Progress was found on this device and may also exist in your account.")
    print("  [m] Smart merge — combine both (recommended)")
    print("  [c] Use cloud data — replace progress on this device")
    print("  [l] Use local data — upload this device's progress")
    print()
    while True:
        try:
            choice = input("  Your choice [m/c/l]: ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            return "m"
        if choice in ("", "m", "c", "l"):
            return choice or "m"
        print("  Please enter m, c, or l.")


async def _prompt_migration():
    """Ask on the terminal without blocking the event loop."""
    if not sys.stdin.isatty():
        return None
    loop = asyncio.get_running_loop()
    answer = loop.create_future()

    def worker():
        choice = _ask_strategy()
        try:
            loop.call_soon_threadsafe(lambda: answer.done() or answer.set_result(choice))
        except RuntimeError:
            pass  # loop already closed

    threading.Thread(target=worker, daemon=True).start()
    return await answer


@asynccontextmanager
async def _session(chooser=None):
    import guidesync.config as _cfg
    from guidesync.core import SupabaseAuth, SupabaseProgressService, SyncCoordinator
    from guidesync.state import LocalProgressStore

    auth = SupabaseAuth()
    if _cfg.SUPABASE_ANON_KEY:
        await auth.load_session()
    remote = SupabaseProgressService(auth)
    coord = SyncCoordinator(LocalProgressStore(), remote, auth, chooser=chooser)
    try:
        await coord.start()
        yield auth, remote, coord
    finally:
        await coord.close()
        await remote.close()
        await auth.close()


def _run(coro):
    code = asyncio.run(coro)
    if code:
        sys.exit(code)


# ── init ─────────────────────────────────────────────────────────────────────

def cmd_init(args):
    """Create a .guidesync profile file in the current directory."""
    from guidesync import config as _cfg

    target = Path.cwd() / ".guidesync"

    if target.exists() and not args.force:
        print(f"error: .guidesync already exists in {Path.cwd()}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    global_cfg = _cfg.load_global_config()
    g_defaults = global_cfg.get("defaults", {}) or {}

    url = args.url or g_defaults.get("supabase_url", _cfg.SUPABASE_URL)
    if not args.url and sys.stdin.isatty():
        val = input(f"Supabase URL [{url}]: ").strip()
        if val:
            url = val

    anon_key = args.anon_key or g_defaults.get("anon_key", "")
    if not args.anon_key and sys.stdin.isatty():
        val = input("Supabase anon key (leave empty to stay offline): ").strip()
        if val:
            anon_key = val

    state_dir = args.state_dir or g_defaults.get("state_dir", ".")
    profile_name = args.profile or "default"

    def _yq(value: str) -> str:
        """Wrap a string in YAML single quotes, escaping embedded single quotes."""
        return "'" + str(value).replace("'", "''") + "'"

    lines = [
        "# .guidesync — guidesync project configuration",
        "#",
        "# profiles: list of profiles for this project.",
        "# state_dir is relative to this file unless absolute.",
        "profiles:",
        f"  - name: {profile_name}",
        f"    supabase_url: {_yq(url)}",
        f"    anon_key: {_yq(anon_key)}",
        f"    state_dir: {_yq(str(state_dir).replace(chr(92), '/'))}",
        f"    step_debounce: {_cfg.STEP_DEBOUNCE}",
        f"    field_debounce: {_cfg.FIELD_DEBOUNCE}",
        f"    request_timeout: {_cfg.REQUEST_TIMEOUT}",
    ]
    content = "\n".join(lines) + "\n"

    if args.dry_run:
        print(f"[dry-run] Would write {target}:")
        print(content)
        return

    target.write_text(content, encoding="utf-8")
    print(f"Created {target}")
    if args.verbose:
        print(content)


# ── status ───────────────────────────────────────────────────────────────────

async def _status(args) -> int:
    import guidesync.config as _cfg
    from guidesync.state.record import format_timestamp

    async with _session() as (auth, _remote, coord):
        record = coord.record
        meta = record.meta
        user = auth.current_user()
        print(f"\nProfile   : {args.profile or 'default'}")
        print(f"State dir : {_cfg.STATE_DIR}")
        print(f"Account   : {(user.email or user.id) if user else 'not signed in'}")
        print(f"Province  : {record.province or '(not set)'}")
        print(f"Industry  : {record.industry}")
        print(f"Hiring    : {record.hiring}")
        print(f"Revenue   : {'under $30k' if record.revenue == 'lt30' else '$30k or more'}"
              f"{'  (GST/HST registration required)' if record.gst_required else ''}")
        done = sorted(k for k, v in record.completed.items() if v)
        print(f"Completed : {len(done)} step(s)")
        for key in done:
            print(f"    ✓ {key}")
        print(f"\nSync      : {coord.get_sync_status()}")
        print(f"Version   : {meta.version}")
        print(f"Modified  : {format_timestamp(meta.last_modified_at)}")
        print(f"Synced    : {format_timestamp(meta.synced_at)}")
        if coord.has_unsynced_changes():
            print("\n⚠  Local changes have not been uploaded yet.")
    return 0


def cmd_status(args):
    """Show progress and sync metadata."""
    from guidesync.utils.logging import set_quiet

    _apply_config(args)
    set_quiet(not args.verbose)
    _run(_status(args))


# ── mutations ────────────────────────────────────────────────────────────────

async def _set(args) -> int:
    async with _session() as (_auth, _remote, coord):
        if args.province is not None:
            coord.set_province(args.province.upper())
        if args.industry is not None:
            coord.set_industry(args.industry)
        if args.hiring is not None:
            coord.set_hiring(args.hiring)
        if args.revenue is not None:
            coord.set_revenue(args.revenue)
        state = coord.get_state()
    print(f"province={state['province'] or '-'} industry={state['industry']} "
          f"hiring={state['hiring']} revenue={state['revenue']}")
    return 0


def cmd_set(args):
    """Change guide selections."""
    _apply_config(args)
    _run(_set(args))


async def _mark(args, completed: bool) -> int:
    async with _session() as (_auth, _remote, coord):
        for step in args.steps:
            coord.set_step_completed(step, completed)
    mark = "✓" if completed else "✗"
    for step in args.steps:
        print(f"  {mark} {step}")
    return 0


def cmd_done(args):
    """Mark steps complete."""
    _apply_config(args)
    _run(_mark(args, True))


def cmd_undo(args):
    """Mark steps not complete."""
    _apply_config(args)
    _run(_mark(args, False))


# ── auth ─────────────────────────────────────────────────────────────────────

async def _login(args) -> int:
    from guidesync.errors import AuthError, TransportError

    password = args.password or getpass.getpass("Password: ")
    async with _session(chooser=_prompt_migration) as (auth, _remote, coord):
        try:
            await auth.sign_in_with_password(args.email, password)
        except (AuthError, TransportError) as exc:
            print(f"error: sign-in failed: {exc}", file=sys.stderr)
            return 1
        await coord.wait_idle()
        status = coord.get_sync_status()
    print(f"Signed in as {args.email} (sync: {status})")
    return 0


def cmd_login(args):
    """Sign in to the configured Supabase project."""
    import guidesync.config as _cfg

    _apply_config(args)
    if not _cfg.SUPABASE_ANON_KEY:
        print("error: no anon_key configured; add one to .guidesync to enable sync.",
              file=sys.stderr)
        sys.exit(1)
    _run(_login(args))


async def _logout(args) -> int:
    async with _session() as (auth, _remote, _coord):
        if not auth.is_authenticated():
            print("Not signed in.")
            return 0
        await auth.sign_out()
    print("Signed out. Progress stays on this device.")
    return 0


def cmd_logout(args):
    """Sign out."""
    _apply_config(args)
    _run(_logout(args))


# ── sync ─────────────────────────────────────────────────────────────────────

async def _sync(args) -> int:
    async with _session() as (_auth, _remote, coord):
        ok = await coord.force_sync()
    if not ok:
        print("error: sync failed (are you signed in and online?)", file=sys.stderr)
        return 1
    print("Progress synced.")
    return 0


def cmd_sync(args):
    """Sync now, bypassing the debounce."""
    _apply_config(args)
    _run(_sync(args))


# ── export / import ──────────────────────────────────────────────────────────

async def _export(args) -> int:
    async with _session() as (_auth, _remote, coord):
        snapshot = coord.export_progress()
    text = json.dumps(snapshot, indent=2, sort_keys=True)
    if args.file:
        Path(args.file).write_text(text + "\n", encoding="utf-8")
        print(f"Exported to {args.file}", file=sys.stderr)
    else:
        print(text)
    return 0


def cmd_export(args):
    """Write progress as JSON."""
    from guidesync.utils.logging import set_quiet

    _apply_config(args)
    set_quiet(not args.verbose)
    _run(_export(args))


async def _import(args, data) -> int:
    async with _session() as (_auth, _remote, coord):
        ok = coord.import_progress(data)
    if not ok:
        print(f"error: {args.file} is not a valid progress export.", file=sys.stderr)
        return 1
    print(f"Imported {args.file}")
    return 0


def cmd_import(args):
    """Load progress from a JSON export."""
    _apply_config(args)
    try:
        data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"error: cannot read {args.file}: {exc}", file=sys.stderr)
        sys.exit(1)
    _run(_import(args, data))


# ── reset ────────────────────────────────────────────────────────────────────

async def _reset(args) -> int:
    async with _session() as (_auth, _remote, coord):
        coord.reset()
    print("Progress reset.")
    return 0


def cmd_reset(args):
    """Forget all progress."""
    _apply_config(args)
    if not args.yes:
        if not sys.stdin.isatty():
            print("error: refusing to reset without --yes.", file=sys.stderr)
            sys.exit(1)
        try:
            choice = input("Reset all progress? [y/N]: ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            choice = "n"
        if choice not in ("y", "yes"):
            print("Nothing changed.")
            return
    _run(_reset(args))


# ── history ──────────────────────────────────────────────────────────────────

async def _history(args) -> int:
    from guidesync.errors import RemoteError
    from guidesync.state.record import format_timestamp

    async with _session() as (auth, remote, _coord):
        user = auth.current_user()
        if user is None:
            print("error: sign in to see your progress history.", file=sys.stderr)
            return 1
        try:
            entries = await remote.get_history(user.id, args.limit)
        except RemoteError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
    if not entries:
        print("No history yet.")
    for entry in entries:
        snap = entry.snapshot
        done = sum(1 for v in (snap.get("completed") or {}).values() if v)
        print(f"{format_timestamp(entry.created_at)}  v{snap.get('version', '?')}  "
              f"{snap.get('province') or '-'}/{snap.get('industry', '-')}  "
              f"{done} step(s) done  {entry.description}")
    return 0


def cmd_history(args):
    """Show the account's recent progress snapshots."""
    _apply_config(args)
    _run(_history(args))


# ── main ─────────────────────────────────────────────────────────────────────

def _common(p):
    p.add_argument("--profile", metavar="NAME", default="default",
                   help="Profile to use (default: default)")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Show extra output")


def main():
    """CLI entry point for guidesync"""
    from guidesync.state.record import HIRING_CHOICES, REVENUE_CHOICES

    parser = argparse.ArgumentParser(
        prog="guidesync",
        description="Business startup guide progress, synced to your account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # ── init ──────────────────────────────────────────────────────────────────
    init_p = subparsers.add_parser(
        "init",
        help="Create a .guidesync config file in the current directory",
        description="Create a .guidesync YAML config file for this project.",
    )
    init_p.add_argument("--url", metavar="URL", help="Supabase project URL")
    init_p.add_argument("--anon-key", metavar="KEY", help="Supabase anon (public) key")
    init_p.add_argument("--state-dir", metavar="PATH",
                        help="Where local progress is stored (default: .)")
    init_p.add_argument("--profile", metavar="NAME", default="default",
                        help="Profile name to create (default: default)")
    init_p.add_argument("--force", action="store_true", help="Overwrite existing .guidesync")
    init_p.add_argument("-n", "--dry-run", action="store_true",
                        help="Preview without writing files")
    init_p.add_argument("-v", "--verbose", action="store_true", help="Show extra output")

    # ── status ────────────────────────────────────────────────────────────────
    status_p = subparsers.add_parser("status", help="Show progress and sync state")
    _common(status_p)

    # ── set ───────────────────────────────────────────────────────────────────
    set_p = subparsers.add_parser("set", help="Change guide selections")
    set_p.add_argument("--province", metavar="CODE", help="Province or territory code, e.g. ON")
    set_p.add_argument("--industry", metavar="NAME", help="Industry (default: general)")
    set_p.add_argument("--hiring", choices=HIRING_CHOICES, help="Will you hire employees?")
    set_p.add_argument("--revenue", choices=REVENUE_CHOICES,
                       help="Expected revenue: lt30 (< $30k) or gte30")
    _common(set_p)

    # ── done / undo ───────────────────────────────────────────────────────────
    done_p = subparsers.add_parser("done", help="Mark checklist steps complete")
    done_p.add_argument("steps", nargs="+", metavar="STEP", help="Step key(s)")
    _common(done_p)
    undo_p = subparsers.add_parser("undo", help="Mark checklist steps not complete")
    undo_p.add_argument("steps", nargs="+", metavar="STEP", help="Step key(s)")
    _common(undo_p)

    # ── login / logout ────────────────────────────────────────────────────────
    login_p = subparsers.add_parser("login", help="Sign in and sync")
    login_p.add_argument("email", metavar="EMAIL")
    login_p.add_argument("--password", metavar="PASSWORD",
                         help="Password (prompted when omitted)")
    _common(login_p)
    logout_p = subparsers.add_parser("logout", help="Sign out")
    _common(logout_p)

    # ── sync ──────────────────────────────────────────────────────────────────
    sync_p = subparsers.add_parser("sync", help="Sync now")
    _common(sync_p)

    # ── export / import ───────────────────────────────────────────────────────
    export_p = subparsers.add_parser("export", help="Write progress as JSON")
    export_p.add_argument("file", nargs="?", metavar="FILE", help="Output file (default: stdout)")
    _common(export_p)
    import_p = subparsers.add_parser("import", help="Load progress from a JSON export")
    import_p.add_argument("file", metavar="FILE")
    _common(import_p)

    # ── reset ─────────────────────────────────────────────────────────────────
    reset_p = subparsers.add_parser("reset", help="Forget all progress")
    reset_p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    _common(reset_p)

    # ── history ───────────────────────────────────────────────────────────────
    history_p = subparsers.add_parser("history", help="Show recent cloud snapshots")
    history_p.add_argument("--limit", type=int, default=10, metavar="N",
                           help="Number of snapshots (default: 10)")
    _common(history_p)

    args = parser.parse_args()

    if args.command == "init":
        cmd_init(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "set":
        if all(v is None for v in (args.province, args.industry, args.hiring, args.revenue)):
            set_p.error("nothing to set (use --province/--industry/--hiring/--revenue)")
        cmd_set(args)
    elif args.command == "done":
        cmd_done(args)
    elif args.command == "undo":
        cmd_undo(args)
    elif args.command == "login":
        cmd_login(args)
    elif args.command == "logout":
        cmd_logout(args)
    elif args.command == "sync":
        cmd_sync(args)
    elif args.command == "export":
        cmd_export(args)
    elif args.command == "import":
        cmd_import(args)
    elif args.command == "reset":
        cmd_reset(args)
    elif args.command == "history":
        if args.limit < 1:
            history_p.error("--limit must be at least 1")
        cmd_history(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
