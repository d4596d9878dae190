"""Data models for comments, replies, and the text anchors they attach to."""

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CURRENT_VERSION = 2


def utc_now() -> str:
    """Current UTC time as ISO 8601 with millisecond precision (e.g., 2026-02-01T10:00:00.000Z)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid4())


def _check_utc_timestamp(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if dt.tzinfo is None or dt.tzinfo.utcoffset(None) != timezone.utc.utcoffset(None):
            raise ValueError("Timestamp must be in UTC timezone")
        return v
    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid ISO 8601 UTC timestamp: {v}") from e


def _toggle_name(names: list[str] | None, name: str) -> list[str] | None:
    """Add name if absent, remove it if present. An emptied list collapses to None."""
    updated = list(names or [])
    if name in updated:
        updated.remove(name)
    else:
        updated.append(name)
    return updated or None


class _WireModel(BaseModel):
    """Base for models persisted in the metadata block (camelCase keys on the wire).

    Unknown keys are kept so that blocks written by newer versions survive a
    read-modify-write cycle.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CommentAnchor(_WireModel):
    """Text snippet plus the line/character range it was last seen at.

    ``text`` is authoritative. The positional fields are a cache that the
    reconciler refreshes after edits. Lines and characters are 0-based and the
    end position is exclusive.
    """

    text: str
    start_line: int = Field(..., ge=0)
    start_char: int = Field(..., ge=0)
    end_line: int = Field(..., ge=0)
    end_char: int = Field(..., ge=0)

    @field_validator("end_line")
    @classmethod
    def validate_line_range(cls, v: int, info) -> int:
        """Validate that end_line >= start_line."""
        if "start_line" in info.data and v < info.data["start_line"]:
            raise ValueError(f"end_line ({v}) must be >= start_line ({info.data['start_line']})")
        return v

    def same_position(self, other: "CommentAnchor") -> bool:
        return (
            self.start_line == other.start_line
            and self.start_char == other.start_char
            and self.end_line == other.end_line
            and self.end_char == other.end_char
        )


class Reply(_WireModel):
    """A reply inside a comment thread. Owned by its parent Comment."""

    id: str = Field(default_factory=new_id, min_length=1)
    content: str
    author: str
    created_at: str = Field(default_factory=utc_now)
    updated_at: str | None = None
    thumbs_up: list[str] | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_utc_timestamp(cls, v: str | None) -> str | None:
        """Validate that timestamps are ISO 8601 UTC."""
        return _check_utc_timestamp(v)

    def edit(self, content: str) -> None:
        self.content = content
        self.updated_at = utc_now()

    def toggle_thumbs_up(self, author: str) -> None:
        self.thumbs_up = _toggle_name(self.thumbs_up, author)


class Comment(_WireModel):
    """A comment attached to an anchored span of the document."""

    id: str = Field(default_factory=new_id, min_length=1)
    anchor: CommentAnchor
    content: str
    author: str
    created_at: str = Field(default_factory=utc_now)
    updated_at: str | None = None
    resolved: bool | None = None
    orphaned: bool | None = None
    thumbs_up: list[str] | None = None
    replies: list[Reply] | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_utc_timestamp(cls, v: str | None) -> str | None:
        """Validate that timestamps are ISO 8601 UTC."""
        return _check_utc_timestamp(v)

    def edit(self, content: str) -> None:
        self.content = content
        self.updated_at = utc_now()

    def toggle_resolved(self) -> None:
        """Flip the resolved flag. Display-only; never affects anchor matching."""
        self.resolved = not self.resolved
        self.updated_at = utc_now()

    def toggle_thumbs_up(self, author: str) -> None:
        self.thumbs_up = _toggle_name(self.thumbs_up, author)

    def re_anchor(self, anchor: CommentAnchor) -> None:
        """Replace the anchor wholesale and clear the orphaned flag."""
        self.anchor = anchor
        self.orphaned = False
        self.updated_at = utc_now()

    def add_reply(self, author: str, content: str) -> Reply:
        """Append a new reply to the thread.

        Args:
            author: Name of the reply author
            content: Reply text

        Returns:
            The newly created Reply object
        """
        reply = Reply(author=author, content=content)
        if self.replies is None:
            self.replies = []
        self.replies.append(reply)
        return reply

    def find_reply(self, reply_id: str) -> Reply | None:
        for reply in self.replies or []:
            if reply.id == reply_id:
                return reply
        return None

    def remove_reply(self, reply_id: str) -> bool:
        reply = self.find_reply(reply_id)
        if reply is None:
            return False
        assert self.replies is not None  # Type narrowing
        self.replies.remove(reply)
        return True


class CommentData(_WireModel):
    """Full payload stored in the metadata block.

    ``comments`` keeps insertion order; display code re-sorts by position.
    """

    version: int = CURRENT_VERSION
    comments: list[Comment] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation pass over a document's comments."""

    total_comments: int = Field(..., ge=0)
    unchanged_count: int = Field(..., ge=0, description="Found at the cached position")
    relocated_count: int = Field(..., ge=0, description="Found at a different position")
    orphaned_count: int = Field(..., ge=0, description="Not found; orphaned after the pass")
    newly_orphaned_count: int = Field(..., ge=0, description="Orphaned by this pass")
    restored_count: int = Field(..., ge=0, description="Previously orphaned, found again")
    saved: bool = Field(..., description="Whether updated anchors were written back")

    @property
    def changed(self) -> bool:
        """True when at least one comment was modified by the pass."""
        return (self.relocated_count + self.restored_count + self.newly_orphaned_count) > 0


def sort_for_display(comments: list[Comment]) -> list[Comment]:
    """Order comments by anchor position without touching the stored order."""
    return sorted(comments, key=lambda c: (c.anchor.start_line, c.anchor.start_char))
