"""CLI entry point for markco."""

import asyncio
import json
import os
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import click

from markco.config import get_settings
from markco.document import FileDocument, Range
from markco.git_ops import StaticAuthorProvider
from markco.locking import LockTimeout
from markco.logging import init_logger
from markco.models import Comment, Reply, sort_for_display
from markco.preview import HighlightStyle, render_markdown
from markco.service import CommentService, find_text_selection

T = TypeVar("T")

FILE_ARG = click.Path(exists=True, dir_okay=False, path_type=Path)


# ============================================================================
# Helpers
# ============================================================================


def _fail(message: str, code: int = 1) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a service coroutine, mapping lock and I/O failures to exit code 2."""
    try:
        return asyncio.run(coro)
    except LockTimeout as e:
        _fail(str(e), 2)
    except OSError as e:
        _fail(f"Failed to write document: {e}", 2)


def _make_service(author: str | None = None) -> CommentService:
    provider = StaticAuthorProvider(author) if author else None
    return CommentService(author_provider=provider, settings=get_settings())


def _load(file_path: Path) -> FileDocument:
    try:
        return FileDocument(file_path)
    except (OSError, ValueError) as e:
        _fail(f"Cannot read {file_path}: {e}", 2)


def _resolve_id(candidates: list[T], id_prefix: str, kind: str) -> T:
    """Pick the entity whose id equals id_prefix, else the one it uniquely prefixes."""
    for candidate in candidates:
        if candidate.id == id_prefix:  # type: ignore[attr-defined]
            return candidate
    matches = [c for c in candidates if c.id.startswith(id_prefix)]  # type: ignore[attr-defined]
    if not matches:
        _fail(f"{kind} not found: {id_prefix}")
    if len(matches) > 1:
        _fail(f"{kind} id prefix is ambiguous: {id_prefix} ({len(matches)} matches)")
    return matches[0]


def _find_selection(document: FileDocument, text: str, occurrence: int) -> Range:
    """Range of the n-th (1-based) occurrence of text outside the metadata block."""
    if not text.strip():
        _fail("--match text must not be blank")
    if occurrence < 1:
        _fail(f"--occurrence must be >= 1, got {occurrence}")

    selection = find_text_selection(document, text, occurrence)
    if selection is None:
        if occurrence == 1:
            _fail(f"Text not found in document: {text!r}")
        _fail(f"Occurrence {occurrence} of {text!r} not found in document")
    return selection


def _truncate(text: str, limit: int = 40) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


def _status_labels(comment: Comment, use_color: bool) -> str:
    status = "resolved" if comment.resolved else "open"
    labels = [click.style(status, fg="blue" if comment.resolved else "green") if use_color else status]
    if comment.orphaned:
        labels.append(click.style("orphaned", fg="red") if use_color else "orphaned")
    return " ".join(f"[{label}]" for label in labels)


def _format_comment_line(comment: Comment, use_color: bool) -> str:
    anchor = comment.anchor
    replies = len(comment.replies or [])
    return (
        f"{comment.id[:8]} {_status_labels(comment, use_color)} "
        f"{anchor.start_line + 1}:{anchor.start_char + 1} "
        f'"{_truncate(anchor.text)}" {comment.author}: {_truncate(comment.content, 60)} '
        f"({replies} replies)"
    )


def _format_reactions(names: list[str] | None) -> str:
    return f"  +1 {', '.join(names)}" if names else ""


# ============================================================================
# Commands
# ============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="markco")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug output")
def cli(verbose: bool):
    """Comments anchored to text, stored inside the markdown file itself."""
    verbose = verbose or get_settings().verbose
    init_logger(verbose=verbose, use_colors=os.environ.get("NO_COLOR") is None)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.option("--match", "match_text", required=True, metavar="TEXT", help="Text to comment on")
@click.option(
    "--occurrence",
    type=int,
    default=1,
    show_default=True,
    help="Which occurrence of TEXT to anchor to (1-based)",
)
@click.option("-a", "--author", help="Author name (defaults to git user.name)")
@click.argument("body", required=True)
def add(file_path: Path, match_text: str, occurrence: int, author: str | None, body: str):
    """
    Add a comment anchored to text in FILE_PATH.

    Examples:

        markco add PLAN.md --match "linear scaling" "Optimize this"

        markco add PLAN.md --match "TODO" --occurrence 2 "This one too"
    """
    try:
        if not body.strip():
            _fail("Comment body must not be blank")

        document = _load(file_path)
        selection = _find_selection(document, match_text, occurrence)
        comment = _run(_make_service(author).add_comment(document, selection, body))
        if comment is None:
            _fail(f"Could not save comment to {file_path}", 2)

        click.echo(f"Added comment {comment.id} at line {comment.anchor.start_line + 1}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command(name="list")
@click.argument("file_path", type=FILE_ARG)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--orphaned", is_flag=True, help="Only orphaned comments")
@click.option("--unresolved", is_flag=True, help="Only unresolved comments")
def list_comments(file_path: Path, json_output: bool, orphaned: bool, unresolved: bool):
    """
    List the comments in FILE_PATH in document order.

    Examples:

        markco list PLAN.md

        markco list PLAN.md --unresolved --json
    """
    try:
        document = _load(file_path)
        comments = sort_for_display(_make_service().get_comments(document))
        if orphaned:
            comments = [c for c in comments if c.orphaned]
        if unresolved:
            comments = [c for c in comments if not c.resolved]

        if json_output:
            click.echo(json.dumps([c.to_wire() for c in comments], indent=2, ensure_ascii=False))
            return

        if not comments:
            click.echo("No matching comments found.")
            return

        use_color = os.environ.get("NO_COLOR") is None
        for comment in comments:
            click.echo(_format_comment_line(comment, use_color))

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def show(file_path: Path, comment_id: str, json_output: bool):
    """Show a comment with its anchor, reactions and replies."""
    try:
        document = _load(file_path)
        comment = _resolve_id(_make_service().get_comments(document), comment_id, "Comment")

        if json_output:
            click.echo(json.dumps(comment.to_wire(), indent=2, ensure_ascii=False))
            return

        use_color = os.environ.get("NO_COLOR") is None
        anchor = comment.anchor
        click.echo(f"Comment {comment.id} {_status_labels(comment, use_color)}")
        click.echo(
            f"Anchor: {anchor.start_line + 1}:{anchor.start_char + 1}"
            f"-{anchor.end_line + 1}:{anchor.end_char + 1}"
        )
        for line in anchor.text.splitlines() or [""]:
            click.echo(f"  > {line}")
        click.echo("")
        edited = f" (edited {comment.updated_at})" if comment.updated_at else ""
        click.echo(f"[{comment.created_at}] {comment.author}{edited}:")
        click.echo(f"  {comment.content}{_format_reactions(comment.thumbs_up)}")

        for reply in comment.replies or []:
            click.echo("")
            edited = f" (edited {reply.updated_at})" if reply.updated_at else ""
            click.echo(f"  {reply.id[:8]} [{reply.created_at}] {reply.author}{edited}:")
            click.echo(f"    {reply.content}{_format_reactions(reply.thumbs_up)}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
@click.option("-a", "--author", help="Author name (defaults to git user.name)")
@click.argument("body", required=True)
def reply(file_path: Path, comment_id: str, author: str | None, body: str):
    """Reply to a comment."""
    try:
        if not body.strip():
            _fail("Reply body must not be blank")

        document = _load(file_path)
        service = _make_service(author)
        comment = _resolve_id(service.get_comments(document), comment_id, "Comment")
        new_reply = _run(service.add_reply(document, comment.id, body))
        if new_reply is None:
            _fail(f"Could not save reply to {file_path}", 2)

        click.echo(f"Added reply {new_reply.id} to comment {comment.id}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
@click.option("--reply", "reply_id", metavar="REPLY_ID", help="Edit a reply instead of the comment")
@click.argument("body", required=True)
def edit(file_path: Path, comment_id: str, reply_id: str | None, body: str):
    """Replace the text of a comment (or of one of its replies)."""
    try:
        if not body.strip():
            _fail("New text must not be blank")

        document = _load(file_path)
        service = _make_service()
        comment = _resolve_id(service.get_comments(document), comment_id, "Comment")

        updated: Comment | Reply | None
        if reply_id is not None:
            target = _resolve_id(comment.replies or [], reply_id, "Reply")
            updated = _run(service.update_reply(document, comment.id, target.id, body))
        else:
            updated = _run(service.update_comment(document, comment.id, body))
        if updated is None:
            _fail(f"Could not save edit to {file_path}", 2)

        click.echo(f"Updated {updated.id}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
def resolve(file_path: Path, comment_id: str):
    """Toggle a comment between open and resolved."""
    try:
        document = _load(file_path)
        service = _make_service()
        comment = _resolve_id(service.get_comments(document), comment_id, "Comment")
        updated = _run(service.resolve_comment(document, comment.id))
        if updated is None:
            _fail(f"Could not save change to {file_path}", 2)

        state = "resolved" if updated.resolved else "reopened"
        click.echo(f"Comment {updated.id} {state}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
@click.option("--reply", "reply_id", metavar="REPLY_ID", help="Delete a reply instead of the comment")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
def delete(file_path: Path, comment_id: str, reply_id: str | None, force: bool):
    """
    Delete a comment (with all its replies) or a single reply.

    Examples:

        markco delete PLAN.md 3f2a9c1e

        markco delete PLAN.md 3f2a9c1e --reply 77b0 --force
    """
    try:
        document = _load(file_path)
        service = _make_service()
        comment = _resolve_id(service.get_comments(document), comment_id, "Comment")

        if reply_id is not None:
            target = _resolve_id(comment.replies or [], reply_id, "Reply")
            if not force:
                click.confirm(f"Delete reply {target.id}? This cannot be undone.", abort=True)
            deleted = _run(service.delete_reply(document, comment.id, target.id))
            label = f"Reply {target.id}"
        else:
            if not force:
                replies = len(comment.replies or [])
                click.confirm(
                    f"Delete comment {comment.id} and {replies} replies? This cannot be undone.",
                    abort=True,
                )
            deleted = _run(service.delete_comment(document, comment.id))
            label = f"Comment {comment.id}"

        if not deleted:
            _fail(f"Could not save deletion to {file_path}", 2)
        click.echo(f"{label} deleted")

    except click.Abort:
        click.echo("Delete cancelled")
        sys.exit(0)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
@click.option("--match", "match_text", required=True, metavar="TEXT", help="New text to anchor to")
@click.option("--occurrence", type=int, default=1, show_default=True, help="Which occurrence of TEXT")
def reanchor(file_path: Path, comment_id: str, match_text: str, occurrence: int):
    """Move a comment (typically an orphaned one) onto new text."""
    try:
        document = _load(file_path)
        service = _make_service()
        comment = _resolve_id(service.get_comments(document), comment_id, "Comment")
        selection = _find_selection(document, match_text, occurrence)
        updated = _run(service.re_anchor_comment(document, comment.id, selection))
        if updated is None:
            _fail(f"Could not save change to {file_path}", 2)

        click.echo(f"Comment {updated.id} re-anchored at line {updated.anchor.start_line + 1}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.argument("comment_id")
@click.option("--reply", "reply_id", metavar="REPLY_ID", help="React to a reply instead")
@click.option("-a", "--author", help="Author name (defaults to git user.name)")
def thumbs(file_path: Path, comment_id: str, reply_id: str | None, author: str | None):
    """Toggle your thumbs-up on a comment or reply."""
    try:
        document = _load(file_path)
        service = _make_service(author)
        comment = _resolve_id(service.get_comments(document), comment_id, "Comment")

        target: Comment | Reply | None
        if reply_id is not None:
            reply_target = _resolve_id(comment.replies or [], reply_id, "Reply")
            target = _run(service.toggle_thumbs_up_reply(document, comment.id, reply_target.id))
        else:
            target = _run(service.toggle_thumbs_up_comment(document, comment.id))
        if target is None:
            _fail(f"Could not save change to {file_path}", 2)

        count = len(target.thumbs_up or [])
        click.echo(f"{target.id}: {count} thumbs up")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.option("--json", "json_output", is_flag=True, help="Output the report as JSON")
def reconcile(file_path: Path, json_output: bool):
    """
    Re-locate every anchor in FILE_PATH after it was edited.

    Moved text gets updated positions; text that no longer exists marks its
    comment orphaned; orphans whose text reappeared are restored.
    """
    try:
        document = _load(file_path)
        report = _run(_make_service().reconcile_anchors(document))

        if json_output:
            click.echo(report.model_dump_json(indent=2))
            return

        click.echo(
            f"{report.total_comments} comments: {report.unchanged_count} unchanged, "
            f"{report.relocated_count} relocated, {report.restored_count} restored, "
            f"{report.orphaned_count} orphaned ({report.newly_orphaned_count} new)"
        )
        if report.changed and not report.saved:
            _fail(f"Could not save updated anchors to {file_path}", 2)

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_path", type=FILE_ARG)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write HTML to this file instead of stdout",
)
def render(file_path: Path, output: Path | None):
    """Render FILE_PATH to HTML with commented text highlighted."""
    try:
        settings = get_settings()
        document = _load(file_path)
        style = HighlightStyle(settings.highlight_class, settings.resolved_class)
        html = render_markdown(document.get_text(), style=style)

        if output is None:
            click.echo(html, nl=False)
            return
        try:
            output.write_text(html, encoding="utf-8")
        except OSError as e:
            _fail(f"Cannot write {output}: {e}", 2)
        click.echo(f"Wrote {output}")

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.argument("file_paths", type=FILE_ARG, nargs=-1, required=True)
def watch(file_paths: tuple[Path, ...]):
    """Reconcile anchors automatically whenever a watched file is saved."""
    from markco.watch import watch_files

    def _report(path: Path, report) -> None:
        if report.changed:
            click.echo(
                f"{path.name}: {report.relocated_count} relocated, "
                f"{report.restored_count} restored, {report.newly_orphaned_count} newly orphaned"
            )

    try:
        watch_files(list(file_paths), settings=get_settings(), on_report=_report)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(2)


if __name__ == "__main__":
    cli()
