"""Administrative CLI over the tdcore engine.

Convention-based: discovers .todos/ by walking up from cwd.

Usage:
    tdcore init                                  # Create .todos/ in cwd
    tdcore migrate                               # Bring the schema up to date
    tdcore create "Fix the bug" --type=bug       # Create issue (journaled)
    tdcore show <id>                             # Show issue details
    tdcore list --status=open                    # List issues
    tdcore update <id> --status=closed           # Update issue (cascades)
    tdcore delete <id> / tdcore restore <id>     # Soft delete / restore
    tdcore undo-info                             # Last undoable action of the session
    tdcore pending                               # Unsynced action-log rows
    tdcore stats                                 # Project statistics
    tdcore lock-status                           # Current write-lock holder

Every invocation appends a command-usage line to .todos/command_usage.jsonl
(unless TD_ANALYTICS disables it); failures also go to agent_errors.jsonl.
"""

from __future__ import annotations

import json as json_mod
import logging
import sys
import time
from pathlib import Path
from typing import Any, NoReturn

import click

from tdcore import __version__
from tdcore.core import TODOS_DIR_NAME, TodoDB, find_todos_root
from tdcore.db_query import ListIssuesOptions
from tdcore.errors import TodoError
from tdcore.ids import action_log_timestamp_now
from tdcore.lock import WriteLock
from tdcore.logging import setup_logging
from tdcore.models import (
    ACTION_CLOSE,
    ACTION_REOPEN,
    ACTION_REVIEW,
    ACTION_UPDATE,
    STATUS_CLOSED,
    STATUS_IN_REVIEW,
    Issue,
)
from tdcore.sideband import analytics_enabled, log_agent_error, log_command_usage, sanitize_flags
from tdcore.types.core import ISOTimestamp
from tdcore.types.events import CommandUsageEvent

_ARGV_KEY = "tdcore.argv"
_ERROR_KEY = "tdcore.error"

DEFAULT_SESSION = "cli"

logger = logging.getLogger(__name__)


def _project_root() -> Path:
    try:
        return find_todos_root()
    except FileNotFoundError:
        return Path.cwd()


def _parse_flags(argv: list[str]) -> dict[str, str]:
    flags: dict[str, str] = {}
    for token in argv:
        if not token.startswith("--"):
            continue
        name, _, value = token[2:].partition("=")
        flags[name] = value
    return sanitize_flags(flags)


class _RecordingGroup(click.Group):
    """Group that records usage and failures to the sideband logs."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.meta[_ARGV_KEY] = list(args)
        return super().parse_args(ctx, args)

    def invoke(self, ctx: click.Context) -> Any:
        start = time.monotonic()
        ok = False
        error = ""
        try:
            rv = super().invoke(ctx)
            ok = True
            return rv
        except SystemExit as exc:
            ok = exc.code in (0, None)
            raise
        except click.exceptions.Exit as exc:
            ok = exc.exit_code == 0
            raise
        except click.ClickException as exc:
            error = exc.format_message()
            raise
        except Exception as exc:
            error = str(exc)
            raise
        finally:
            self._record(ctx, ok, error or ctx.meta.get(_ERROR_KEY, ""), time.monotonic() - start)

    def _record(self, ctx: click.Context, ok: bool, error: str, elapsed: float) -> None:
        argv: list[str] = ctx.meta.get(_ARGV_KEY, [])
        session = (ctx.obj or {}).get("session", "")
        base_dir = _project_root()
        cmd = ctx.invoked_subcommand or ""
        dur_ms = int(elapsed * 1000)
        extra: dict[str, Any] = {"op": cmd, "duration_ms": dur_ms}
        if error:
            extra["error"] = error
        logger.info("command", extra=extra)
        if analytics_enabled():
            event: CommandUsageEvent = {
                "ts": ISOTimestamp(action_log_timestamp_now()),
                "cmd": cmd,
                "ok": ok,
                "dur_ms": dur_ms,
            }
            flags = _parse_flags(argv)
            if flags:
                event["flags"] = flags
            if session:
                event["session"] = session
            if error:
                event["err"] = error
            log_command_usage(base_dir, event)
        if not ok:
            log_agent_error(base_dir, argv, error or "command failed", session)


def _fail(message: str, as_json: bool = False) -> NoReturn:
    """Report *message* and exit 1, remembering it for the agent-error log."""
    ctx = click.get_current_context(silent=True)
    if ctx is not None:
        ctx.meta[_ERROR_KEY] = message
    if as_json:
        click.echo(json_mod.dumps({"error": message}))
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _get_db() -> TodoDB:
    """Discover .todos/ and return an open, migrated TodoDB."""
    try:
        root = find_todos_root()
    except FileNotFoundError:
        _fail(f"No {TODOS_DIR_NAME}/ found. Run 'tdcore init' first.")
    ctx = click.get_current_context(silent=True)
    session = (ctx.obj or {}).get("session", "") if ctx is not None else ""
    setup_logging(root / TODOS_DIR_NAME, session=session)
    try:
        return TodoDB.open(root)
    except TodoError as e:
        _fail(str(e))


def _echo_issue_line(issue: Issue) -> None:
    click.echo(f"{issue.priority} {issue.id} [{issue.type}] {issue.status:<12} {issue.title}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group(cls=_RecordingGroup)
@click.version_option(version=__version__, prog_name="tdcore")
@click.option(
    "--session",
    envvar="TD_SESSION_ID",
    default=DEFAULT_SESSION,
    show_default=True,
    help="Session id recorded in the action log (env: TD_SESSION_ID)",
)
@click.pass_context
def cli(ctx: click.Context, session: str) -> None:
    """tdcore — local issue store with a journaled action log."""
    ctx.ensure_object(dict)
    ctx.obj["session"] = session


@cli.command()
def init() -> None:
    """Create .todos/ and the database in the current directory."""
    cwd = Path.cwd()
    existed = (cwd / TODOS_DIR_NAME / "issues.db").exists()
    try:
        with TodoDB.initialize(cwd) as db:
            version = db.get_schema_version()
    except TodoError as e:
        _fail(str(e))
    if existed:
        click.echo(f"{TODOS_DIR_NAME}/ already exists in {cwd} (schema v{version})")
    else:
        click.echo(f"Initialized {TODOS_DIR_NAME}/ in {cwd} (schema v{version})")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def migrate(as_json: bool) -> None:
    """Apply pending schema migrations."""
    try:
        root = find_todos_root()
    except FileNotFoundError:
        _fail(f"No {TODOS_DIR_NAME}/ found. Run 'tdcore init' first.", as_json)
    db = TodoDB(root)
    if not db.db_path.exists():
        _fail("database not found: run 'tdcore init' first", as_json)
    with db:
        before = db.get_schema_version()
        try:
            applied = db.ensure_schema()
        except TodoError as e:
            _fail(str(e), as_json)
        after = db.get_schema_version()
    if as_json:
        click.echo(json_mod.dumps({"from": before, "to": after, "applied": applied}))
    elif applied:
        click.echo(f"Migrated schema v{before} -> v{after} ({applied} step(s))")
    else:
        click.echo(f"Schema already current (v{after})")


@cli.command()
@click.argument("title")
@click.option("--type", "issue_type", default="task", help="Issue type (bug, feature, task, epic, chore)")
@click.option("--priority", "-p", default="P2", help="Priority P0-P4")
@click.option("--description", "-d", default="", help="Description")
@click.option("--label", "-l", multiple=True, help="Labels (repeatable)")
@click.option("--parent", default="", help="Parent issue ID")
@click.option("--points", default=0, type=int, help="Story points")
@click.option("--minor", is_flag=True, help="Allow self-review")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(
    ctx: click.Context,
    title: str,
    issue_type: str,
    priority: str,
    description: str,
    label: tuple[str, ...],
    parent: str,
    points: int,
    minor: bool,
    as_json: bool,
) -> None:
    """Create a new issue."""
    session = ctx.obj["session"]
    issue = Issue(
        title=title,
        type=issue_type,
        priority=priority.upper(),
        description=description,
        labels=list(label),
        parent_id=parent,
        points=points,
        minor=minor,
        creator_session=session,
    )
    with _get_db() as db:
        try:
            db.create_issue_logged(issue, session)
        except TodoError as e:
            _fail(str(e), as_json)
        created = db.get_issue(issue.id)
    if as_json:
        click.echo(json_mod.dumps(created.to_dict(), indent=2, default=str))
    else:
        click.echo(f"Created {created.id}: {created.title}")


@cli.command()
@click.argument("issue_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(issue_id: str, as_json: bool) -> None:
    """Show issue details."""
    with _get_db() as db:
        try:
            issue = db.get_issue(issue_id)
        except KeyError as e:
            _fail(str(e), as_json)
        deps = db.get_dependencies(issue.id)
        blocks = db.get_blocked_by(issue.id)

    if as_json:
        data = dict(issue.to_dict())
        data["depends_on"] = deps
        data["blocks"] = blocks
        click.echo(json_mod.dumps(data, indent=2, default=str))
        return

    click.echo(f"ID:       {issue.id}")
    click.echo(f"Title:    {issue.title}")
    click.echo(f"Status:   {issue.status}")
    click.echo(f"Priority: {issue.priority}")
    click.echo(f"Type:     {issue.type}")
    if issue.parent_id:
        click.echo(f"Parent:   {issue.parent_id}")
    if issue.labels:
        click.echo(f"Labels:   {', '.join(issue.labels)}")
    click.echo(f"Created:  {issue.created_at}")
    if issue.closed_at:
        click.echo(f"Closed:   {issue.closed_at}")
    if issue.deleted_at:
        click.echo(f"Deleted:  {issue.deleted_at}")
    if deps:
        click.echo(f"Depends on: {', '.join(deps)}")
    if blocks:
        click.echo(f"Blocks:   {', '.join(blocks)}")
    if issue.description:
        click.echo(f"\n--- Description ---\n{issue.description}")


@cli.command("list")
@click.option("--status", multiple=True, help="Filter by status (repeatable)")
@click.option("--type", "issue_type", multiple=True, help="Filter by type (repeatable)")
@click.option("--priority", "-p", default="", help="Priority filter: P1, <=P2 or >=P1")
@click.option("--label", multiple=True, help="Filter by label (repeatable)")
@click.option("--search", "-s", default="", help="Substring match on id, title and description")
@click.option("--parent", default="", help="Filter by parent ID")
@click.option("--epic", default="", help="Only descendants of this epic")
@click.option("--sort", "sort_by", default="", help="Sort column (default: priority)")
@click.option("--desc", "sort_desc", is_flag=True, help="Sort descending")
@click.option("--include-deleted", is_flag=True, help="Include soft-deleted issues")
@click.option("--limit", default=0, type=int, help="Max results (0 = unlimited)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_issues(
    status: tuple[str, ...],
    issue_type: tuple[str, ...],
    priority: str,
    label: tuple[str, ...],
    search: str,
    parent: str,
    epic: str,
    sort_by: str,
    sort_desc: bool,
    include_deleted: bool,
    limit: int,
    as_json: bool,
) -> None:
    """List issues with optional filters."""
    opts = ListIssuesOptions(
        status=list(status),
        type=list(issue_type),
        priority=priority.upper(),
        labels=list(label),
        search=search,
        parent_id=parent,
        epic_id=epic,
        sort_by=sort_by,
        sort_desc=sort_desc,
        include_deleted=include_deleted,
        limit=limit,
    )
    with _get_db() as db:
        try:
            issues = db.list_issues(opts)
        except TodoError as e:
            _fail(str(e), as_json)

    if as_json:
        click.echo(json_mod.dumps([i.to_dict() for i in issues], indent=2, default=str))
        return
    for issue in issues:
        _echo_issue_line(issue)
    click.echo(f"\n{len(issues)} issues")


def _action_for_status(old: str, new: str) -> str:
    if new == old:
        return ACTION_UPDATE
    if new == STATUS_CLOSED:
        return ACTION_CLOSE
    if new == STATUS_IN_REVIEW:
        return ACTION_REVIEW
    if old == STATUS_CLOSED:
        return ACTION_REOPEN
    return ACTION_UPDATE


@cli.command()
@click.argument("issue_id")
@click.option("--title", default=None, help="New title")
@click.option("--status", default=None, help="New status")
@click.option("--priority", "-p", default=None, help="New priority")
@click.option("--description", "-d", default=None, help="New description")
@click.option("--label", "-l", multiple=True, help="Replace labels (repeatable)")
@click.option("--points", default=None, type=int, help="New story points")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def update(
    ctx: click.Context,
    issue_id: str,
    title: str | None,
    status: str | None,
    priority: str | None,
    description: str | None,
    label: tuple[str, ...],
    points: int | None,
    as_json: bool,
) -> None:
    """Update an issue. Closing or reviewing an epic's last child cascades upward."""
    session = ctx.obj["session"]
    cascaded: list[str] = []
    with _get_db() as db:
        try:
            issue = db.get_issue(issue_id)
        except KeyError as e:
            _fail(str(e), as_json)
        old_status = issue.status
        if title is not None:
            issue.title = title
        if status is not None:
            issue.status = status
        if priority is not None:
            issue.priority = priority.upper()
        if description is not None:
            issue.description = description
        if label:
            issue.labels = list(label)
        if points is not None:
            issue.points = points

        action = _action_for_status(old_status, issue.status)
        if action == ACTION_CLOSE:
            issue.closed_at = action_log_timestamp_now()
        elif action == ACTION_REOPEN:
            issue.closed_at = None
        try:
            db.update_issue_logged(issue, session, action)
            if action == ACTION_CLOSE:
                _, cascaded = db.cascade_up_parent_status(issue.id, STATUS_CLOSED, session)
                db.cascade_unblock_dependents(issue.id, session)
            elif action == ACTION_REVIEW:
                _, cascaded = db.cascade_up_parent_status(issue.id, STATUS_IN_REVIEW, session)
        except TodoError as e:
            _fail(str(e), as_json)
        updated = db.get_issue(issue.id)

    if as_json:
        data = dict(updated.to_dict())
        data["cascaded"] = cascaded
        click.echo(json_mod.dumps(data, indent=2, default=str))
        return
    click.echo(f"Updated {updated.id}: {updated.status}")
    for parent_id in cascaded:
        click.echo(f"  cascaded {parent_id} -> {updated.status}")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def delete(ctx: click.Context, issue_id: str) -> None:
    """Soft-delete an issue."""
    with _get_db() as db:
        try:
            db.delete_issue_logged(issue_id, ctx.obj["session"])
        except (KeyError, TodoError) as e:
            _fail(str(e))
    click.echo(f"Deleted {issue_id}")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def restore(ctx: click.Context, issue_id: str) -> None:
    """Restore a soft-deleted issue."""
    with _get_db() as db:
        try:
            db.restore_issue_logged(issue_id, ctx.obj["session"])
        except (KeyError, TodoError) as e:
            _fail(str(e))
    click.echo(f"Restored {issue_id}")


@cli.command("undo-info")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def undo_info(ctx: click.Context, as_json: bool) -> None:
    """Show the last undoable action of the current session."""
    with _get_db() as db:
        action = db.get_last_action(ctx.obj["session"])
    if as_json:
        click.echo(json_mod.dumps(action.to_dict() if action else None, indent=2))
        return
    if action is None:
        click.echo("Nothing to undo")
        return
    click.echo(f"{action.id} {action.action_type} {action.entity_type} {action.entity_id} at {action.timestamp}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def pending(as_json: bool) -> None:
    """Count action-log rows not yet pushed to a sync server."""
    with _get_db() as db:
        count = db.count_pending_events()
    if as_json:
        click.echo(json_mod.dumps({"pending": count}))
    else:
        click.echo(f"{count} pending event(s)")


@cli.command()
@click.option("--extended", is_flag=True, help="Include breakdowns and highlights")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def stats(extended: bool, as_json: bool) -> None:
    """Show project statistics."""
    with _get_db() as db:
        data: dict[str, Any] = dict(db.get_extended_stats()) if extended else dict(db.get_stats())
    if as_json:
        click.echo(json_mod.dumps(data, indent=2, default=str))
        return
    for key, value in data.items():
        if isinstance(value, dict) and value and "id" in value:
            value = f"{value['id']} {value.get('title', '')}"
        click.echo(f"{key:<22} {value}")


@cli.command("lock-status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def lock_status(as_json: bool) -> None:
    """Show who holds the write lock, if anyone."""
    try:
        root = find_todos_root()
    except FileNotFoundError:
        _fail(f"No {TODOS_DIR_NAME}/ found. Run 'tdcore init' first.", as_json)
    holder = WriteLock(root / TODOS_DIR_NAME).holder()
    if as_json:
        click.echo(json_mod.dumps({"locked": bool(holder), "holder": holder}))
    elif holder:
        click.echo(f"Locked by {holder}")
    else:
        click.echo("Unlocked")


if __name__ == "__main__":
    cli()
