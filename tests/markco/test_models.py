"""Unit tests for markco data models."""

import pytest
from pydantic import ValidationError

from markco.models import (
    Comment,
    CommentAnchor,
    CommentData,
    ReconciliationReport,
    Reply,
    sort_for_display,
    utc_now,
)


def _anchor(**overrides) -> CommentAnchor:
    data = {"text": "hello", "start_line": 0, "start_char": 0, "end_line": 0, "end_char": 5}
    data.update(overrides)
    return CommentAnchor(**data)


class TestCommentAnchor:
    """Tests for CommentAnchor validation and comparison."""

    def test_rejects_negative_positions(self):
        """Line and character positions must be >= 0."""
        with pytest.raises(ValidationError):
            _anchor(start_char=-1)

    def test_rejects_end_line_before_start_line(self):
        """end_line must not precede start_line."""
        with pytest.raises(ValidationError) as exc:
            _anchor(start_line=3, end_line=2)
        assert "end_line" in str(exc.value)

    def test_same_position_ignores_text(self):
        """same_position compares the four positional fields only."""
        assert _anchor().same_position(_anchor(text="other"))
        assert not _anchor().same_position(_anchor(start_char=1))


class TestWireFormat:
    """Tests for camelCase serialization and unknown-key preservation."""

    def test_keys_are_camel_case_and_none_is_omitted(self):
        """Optional fields left as None do not appear on the wire."""
        comment = Comment(anchor=_anchor(), content="Looks good", author="alice")
        wire = comment.to_wire()

        assert set(wire) == {"id", "anchor", "content", "author", "createdAt"}
        assert wire["anchor"] == {
            "text": "hello",
            "startLine": 0,
            "startChar": 0,
            "endLine": 0,
            "endChar": 5,
        }

    def test_parses_camel_case_payload(self):
        """Wire payloads with camelCase keys validate into models."""
        data = CommentData.model_validate(
            {
                "version": 2,
                "comments": [
                    {
                        "id": "c1",
                        "anchor": {"text": "x", "startLine": 1, "startChar": 2, "endLine": 1, "endChar": 3},
                        "content": "note",
                        "author": "bob",
                        "createdAt": "2026-02-01T10:00:00.000Z",
                        "thumbsUp": ["alice"],
                        "replies": [
                            {"id": "r1", "content": "ok", "author": "alice", "createdAt": "2026-02-01T10:05:00.000Z"}
                        ],
                    }
                ],
            }
        )
        comment = data.comments[0]
        assert comment.anchor.start_char == 2
        assert comment.thumbs_up == ["alice"]
        assert comment.replies is not None and comment.replies[0].id == "r1"

    def test_unknown_keys_survive_round_trip(self):
        """Keys written by newer versions are kept through validate/dump."""
        raw = {
            "id": "c1",
            "anchor": {"text": "x", "startLine": 0, "startChar": 0, "endLine": 0, "endChar": 1},
            "content": "note",
            "author": "bob",
            "createdAt": "2026-02-01T10:00:00.000Z",
            "priority": "high",
        }
        assert Comment.model_validate(raw).to_wire()["priority"] == "high"

    def test_rejects_empty_id(self):
        """Ids must be non-empty strings."""
        with pytest.raises(ValidationError):
            Comment(id="", anchor=_anchor(), content="x", author="bob")


class TestTimestamps:
    """Tests for timestamp format and validation."""

    def test_utc_now_has_milliseconds_and_z_suffix(self):
        """utc_now produces e.g. 2026-02-01T10:00:00.123Z."""
        stamp = utc_now()
        assert stamp.endswith("Z")
        assert len(stamp.split(".")[1]) == 4  # three digits + Z

    def test_rejects_non_utc_timestamp(self):
        """Timestamps with a non-zero offset are rejected."""
        with pytest.raises(ValidationError) as exc:
            Comment(
                anchor=_anchor(),
                content="x",
                author="bob",
                created_at="2026-02-01T10:00:00+05:00",
            )
        assert "UTC" in str(exc.value)

    def test_rejects_garbage_timestamp(self):
        """Non-ISO strings are rejected."""
        with pytest.raises(ValidationError):
            Reply(content="x", author="bob", created_at="yesterday")


class TestCommentMutations:
    """Tests for in-place comment operations."""

    def test_edit_stamps_updated_at(self):
        """Editing replaces content and sets updated_at."""
        comment = Comment(anchor=_anchor(), content="old", author="bob")
        comment.edit("new")
        assert comment.content == "new"
        assert comment.updated_at is not None

    def test_toggle_resolved_flips_flag(self):
        """toggle_resolved goes open -> resolved -> open."""
        comment = Comment(anchor=_anchor(), content="x", author="bob")
        comment.toggle_resolved()
        assert comment.resolved is True
        comment.toggle_resolved()
        assert comment.resolved is False

    def test_thumbs_up_toggle_drops_empty_list(self):
        """Removing the last reaction collapses thumbs_up back to None."""
        comment = Comment(anchor=_anchor(), content="x", author="bob")
        comment.toggle_thumbs_up("alice")
        comment.toggle_thumbs_up("carol")
        assert comment.thumbs_up == ["alice", "carol"]

        comment.toggle_thumbs_up("alice")
        comment.toggle_thumbs_up("carol")
        assert comment.thumbs_up is None
        assert "thumbsUp" not in comment.to_wire()

    def test_re_anchor_clears_orphaned(self):
        """re_anchor replaces the anchor and clears the orphaned flag."""
        comment = Comment(anchor=_anchor(), content="x", author="bob", orphaned=True)
        comment.re_anchor(_anchor(text="world", start_line=4, end_line=4))
        assert comment.anchor.text == "world"
        assert comment.orphaned is False

    def test_replies_add_find_remove(self):
        """Replies are appended in order and can be removed by id."""
        comment = Comment(anchor=_anchor(), content="x", author="bob")
        first = comment.add_reply(author="alice", content="one")
        second = comment.add_reply(author="carol", content="two")

        assert comment.find_reply(second.id) is second
        assert comment.remove_reply(first.id) is True
        assert comment.remove_reply(first.id) is False
        assert [r.content for r in comment.replies or []] == ["two"]


class TestReconciliationReport:
    """Tests for the reconciliation summary."""

    def test_changed_counts_relocated_restored_and_new_orphans(self):
        """changed is True only when a comment was modified."""
        base = dict(total_comments=3, unchanged_count=3, relocated_count=0, orphaned_count=0,
                    newly_orphaned_count=0, restored_count=0, saved=False)
        assert not ReconciliationReport(**base).changed
        assert ReconciliationReport(**{**base, "relocated_count": 1}).changed
        assert ReconciliationReport(**{**base, "restored_count": 1}).changed
        assert ReconciliationReport(**{**base, "newly_orphaned_count": 1}).changed


def test_sort_for_display_orders_by_position_without_mutating():
    """sort_for_display orders by (line, char) and leaves the input alone."""
    late = Comment(anchor=_anchor(start_line=5, end_line=5), content="late", author="a")
    early = Comment(anchor=_anchor(start_line=1, start_char=4, end_line=1), content="early", author="a")
    earliest = Comment(anchor=_anchor(start_line=1, end_line=1), content="earliest", author="a")
    stored = [late, early, earliest]

    assert [c.content for c in sort_for_display(stored)] == ["earliest", "early", "late"]
    assert stored[0] is late
