"""Tests for the markco CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from markco.cli import cli
from markco.storage import COMMENT_BLOCK_START, parse_comments_text


@pytest.fixture
def runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def plan(tmp_path: Path) -> Path:
    """A small markdown document without comments."""
    path = tmp_path / "PLAN.md"
    path.write_text("# Plan\n\nUse linear scaling for now.\n\nTODO: benchmark. TODO: ship.\n", encoding="utf-8")
    return path


def _comments(path: Path):
    return parse_comments_text(path.read_text(encoding="utf-8"))


def _add(runner: CliRunner, path: Path, match: str, body: str, *extra: str) -> str:
    result = runner.invoke(cli, ["add", str(path), "--match", match, "--author", "alice", *extra, body])
    assert result.exit_code == 0, result.output
    return _comments(path)[-1].id


# ============================================================================
# add / list / show
# ============================================================================


class TestAdd:
    """Tests for markco add."""

    def test_add_writes_block(self, runner, plan):
        """A comment is anchored to the matched text and stored in the file."""
        result = runner.invoke(
            cli, ["add", str(plan), "--match", "linear scaling", "-a", "alice", "Optimize this"]
        )

        assert result.exit_code == 0, result.output
        assert "Added comment" in result.output
        comments = _comments(plan)
        assert len(comments) == 1
        assert comments[0].anchor.text == "linear scaling"
        assert comments[0].anchor.start_line == 2
        assert comments[0].author == "alice"
        assert plan.read_text(encoding="utf-8").startswith("# Plan\n\nUse linear scaling")

    def test_add_second_occurrence(self, runner, plan):
        """--occurrence picks the n-th match."""
        _add(runner, plan, "TODO", "second one", "--occurrence", "2")
        anchor = _comments(plan)[0].anchor
        assert anchor.start_char == len("TODO: benchmark. ")

    def test_add_missing_text_fails(self, runner, plan):
        """Text that does not occur is a user error (exit 1)."""
        result = runner.invoke(cli, ["add", str(plan), "--match", "quantum", "-a", "alice", "body"])

        assert result.exit_code == 1
        assert "Text not found" in result.output
        assert COMMENT_BLOCK_START not in plan.read_text(encoding="utf-8")

    def test_add_blank_body_fails(self, runner, plan):
        """Blank bodies are rejected."""
        result = runner.invoke(cli, ["add", str(plan), "--match", "Plan", "-a", "alice", "   "])
        assert result.exit_code == 1

    def test_text_inside_block_is_not_matchable(self, runner, plan):
        """Anchor text stored in the block cannot be targeted by --match."""
        _add(runner, plan, "linear", "first")
        result = runner.invoke(cli, ["add", str(plan), "--match", "createdAt", "-a", "alice", "x"])
        assert result.exit_code == 1


class TestListAndShow:
    """Tests for markco list and markco show."""

    def test_list_human_readable(self, runner, plan, monkeypatch):
        """Comments are listed in document order with status and position."""
        monkeypatch.setenv("NO_COLOR", "1")
        _add(runner, plan, "TODO: ship", "later")
        _add(runner, plan, "# Plan", "earlier")

        result = runner.invoke(cli, ["list", str(plan)])

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 2
        assert "[open]" in lines[0] and "earlier" in lines[0]
        assert "later" in lines[1]

    def test_list_json_and_filters(self, runner, plan):
        """--json emits wire-format comments; --unresolved filters."""
        first = _add(runner, plan, "linear", "one")
        _add(runner, plan, "Plan", "two")
        runner.invoke(cli, ["resolve", str(plan), first])

        result = runner.invoke(cli, ["list", str(plan), "--json", "--unresolved"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [c["content"] for c in data] == ["two"]
        assert "createdAt" in data[0]

    def test_list_empty(self, runner, plan):
        """A file without comments says so."""
        result = runner.invoke(cli, ["list", str(plan)])
        assert result.exit_code == 0
        assert "No matching comments" in result.output

    def test_show_by_prefix(self, runner, plan, monkeypatch):
        """show accepts a unique id prefix and prints replies."""
        monkeypatch.setenv("NO_COLOR", "1")
        comment_id = _add(runner, plan, "linear scaling", "Why linear?")
        runner.invoke(cli, ["reply", str(plan), comment_id, "-a", "bob", "Because it is simple"])

        result = runner.invoke(cli, ["show", str(plan), comment_id[:8]])

        assert result.exit_code == 0, result.output
        assert f"Comment {comment_id}" in result.output
        assert "> linear scaling" in result.output
        assert "Why linear?" in result.output
        assert "bob" in result.output and "Because it is simple" in result.output

    def test_show_unknown_id(self, runner, plan):
        """Unknown ids exit with status 1."""
        result = runner.invoke(cli, ["show", str(plan), "deadbeef"])
        assert result.exit_code == 1
        assert "Comment not found" in result.output


# ============================================================================
# Mutations
# ============================================================================


class TestMutations:
    """Tests for reply, edit, resolve, thumbs, delete and reanchor."""

    def test_reply_and_edit_reply(self, runner, plan):
        """Replies can be added and edited via --reply."""
        comment_id = _add(runner, plan, "linear", "question")
        result = runner.invoke(cli, ["reply", str(plan), comment_id, "-a", "bob", "answer"])
        assert result.exit_code == 0
        reply_id = _comments(plan)[0].replies[0].id

        result = runner.invoke(cli, ["edit", str(plan), comment_id, "--reply", reply_id, "better"])

        assert result.exit_code == 0, result.output
        reply = _comments(plan)[0].replies[0]
        assert reply.content == "better"
        assert reply.author == "bob"

    def test_edit_comment(self, runner, plan):
        """edit replaces the comment text."""
        comment_id = _add(runner, plan, "linear", "old")
        result = runner.invoke(cli, ["edit", str(plan), comment_id, "new"])
        assert result.exit_code == 0
        assert _comments(plan)[0].content == "new"

    def test_resolve_toggles(self, runner, plan):
        """resolve flips between resolved and reopened."""
        comment_id = _add(runner, plan, "linear", "x")

        result = runner.invoke(cli, ["resolve", str(plan), comment_id])
        assert "resolved" in result.output
        assert _comments(plan)[0].resolved is True

        result = runner.invoke(cli, ["resolve", str(plan), comment_id])
        assert "reopened" in result.output
        assert _comments(plan)[0].resolved is False

    def test_thumbs(self, runner, plan):
        """thumbs toggles the given author's reaction."""
        comment_id = _add(runner, plan, "linear", "x")
        result = runner.invoke(cli, ["thumbs", str(plan), comment_id, "-a", "carol"])
        assert result.exit_code == 0
        assert _comments(plan)[0].thumbs_up == ["carol"]

    def test_delete_with_confirmation(self, runner, plan):
        """delete asks for confirmation and removes the comment."""
        comment_id = _add(runner, plan, "linear", "x")

        result = runner.invoke(cli, ["delete", str(plan), comment_id], input="y\n")

        assert result.exit_code == 0
        assert "deleted" in result.output
        assert _comments(plan) == []

    def test_delete_cancelled(self, runner, plan):
        """Declining the prompt keeps the comment."""
        comment_id = _add(runner, plan, "linear", "x")

        result = runner.invoke(cli, ["delete", str(plan), comment_id], input="n\n")

        assert result.exit_code == 0
        assert "Delete cancelled" in result.output
        assert len(_comments(plan)) == 1

    def test_delete_reply_force(self, runner, plan):
        """--reply --force deletes a single reply without prompting."""
        comment_id = _add(runner, plan, "linear", "x")
        runner.invoke(cli, ["reply", str(plan), comment_id, "-a", "bob", "r"])
        reply_id = _comments(plan)[0].replies[0].id

        result = runner.invoke(cli, ["delete", str(plan), comment_id, "--reply", reply_id, "--force"])

        assert result.exit_code == 0
        assert _comments(plan)[0].replies == []

    def test_reanchor_orphan(self, runner, plan):
        """An orphaned comment can be moved onto new text."""
        comment_id = _add(runner, plan, "linear scaling", "x")
        plan.write_text(plan.read_text(encoding="utf-8").replace("Use linear scaling", "Use log scaling"))
        runner.invoke(cli, ["reconcile", str(plan)])
        assert _comments(plan)[0].orphaned is True

        result = runner.invoke(cli, ["reanchor", str(plan), comment_id, "--match", "log scaling"])

        assert result.exit_code == 0, result.output
        comment = _comments(plan)[0]
        assert comment.anchor.text == "log scaling"
        assert comment.orphaned is False


# ============================================================================
# reconcile / render
# ============================================================================


class TestReconcileAndRender:
    """Tests for markco reconcile and markco render."""

    def test_reconcile_relocates_after_edit(self, runner, plan):
        """Inserting lines above an anchor moves it on reconcile."""
        _add(runner, plan, "linear scaling", "x")
        plan.write_text("Preamble\n\n" + plan.read_text(encoding="utf-8"), encoding="utf-8")

        result = runner.invoke(cli, ["reconcile", str(plan), "--json"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["relocated_count"] == 1
        assert report["saved"] is True
        assert _comments(plan)[0].anchor.start_line == 4

    def test_reconcile_summary(self, runner, plan):
        """Human-readable reconcile prints counts."""
        _add(runner, plan, "linear", "x")
        result = runner.invoke(cli, ["reconcile", str(plan)])
        assert result.exit_code == 0
        assert "1 comments: 1 unchanged" in result.output

    def test_render_to_file(self, runner, plan, tmp_path):
        """render writes highlighted HTML."""
        comment_id = _add(runner, plan, "linear scaling", "x")
        out = tmp_path / "plan.html"

        result = runner.invoke(cli, ["render", str(plan), "-o", str(out)])

        assert result.exit_code == 0, result.output
        html = out.read_text(encoding="utf-8")
        assert f'data-comment-id="{comment_id}"' in html
        assert "<h1>Plan</h1>" in html

    def test_render_to_stdout(self, runner, plan):
        """Without -o the HTML goes to stdout."""
        result = runner.invoke(cli, ["render", str(plan)])
        assert result.exit_code == 0
        assert "<h1>Plan</h1>" in result.output


def test_missing_file_is_usage_error(runner, tmp_path):
    """click rejects paths that do not exist."""
    result = runner.invoke(cli, ["list", str(tmp_path / "nope.md")])
    assert result.exit_code == 2
