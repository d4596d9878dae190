"""MCP server exposing markco comment operations as agent tools.

All operations take and return JSON. Failures are reported as
``{"error": {"code": ..., "message": ...}}`` rather than raised.
"""

import json
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field, ValidationError

from markco.config import get_settings
from markco.document import FileDocument
from markco.git_ops import StaticAuthorProvider
from markco.locking import DocumentLocks, LockTimeout
from markco.models import sort_for_display
from markco.preview import HighlightStyle, render_markdown
from markco.service import CommentService, find_text_selection
from markco.storage import AnchorStore

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (FILE_NOT_FOUND, COMMENT_NOT_FOUND, etc.)")
    message: str = Field(..., description="Human-readable error message")


class ToolError(Exception):
    """Raised inside handlers; converted to an ErrorResponse by call_tool."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


# ============================================================================
# Request/Response Models
# ============================================================================


class FileRequest(BaseModel):
    file: str = Field(..., min_length=1, description="Path to the markdown file")


class CommentAddRequest(FileRequest):
    """Request model for markco_add tool."""

    match: str = Field(..., min_length=1, description="Exact text to comment on")
    occurrence: int = Field(default=1, ge=1, description="Which occurrence of match (1-based)")
    body: str = Field(..., min_length=1, max_length=10000, description="Comment body")
    author: str = Field(default="agent", min_length=1, description="Author name")


class CommentAddResponse(BaseModel):
    comment_id: str
    file: str
    start_line: int = Field(..., description="0-based line of the anchor start")
    start_char: int


class CommentListRequest(FileRequest):
    """Request model for markco_list tool."""

    unresolved: bool = Field(default=False, description="Only unresolved comments")
    orphaned: bool = Field(default=False, description="Only orphaned comments")


class CommentListResponse(BaseModel):
    comments: list[dict[str, Any]] = Field(..., description="Comments in document order")


class CommentReplyRequest(FileRequest):
    """Request model for markco_reply tool."""

    comment_id: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=10000, description="Reply body")
    author: str = Field(default="agent", min_length=1, description="Author name")


class CommentReplyResponse(BaseModel):
    comment_id: str
    reply_id: str
    reply_count: int


class CommentTargetRequest(FileRequest):
    """Request model for tools addressing a single comment (resolve)."""

    comment_id: str = Field(..., min_length=1)


class CommentResolveResponse(BaseModel):
    comment_id: str
    resolved: bool


class CommentReanchorRequest(FileRequest):
    """Request model for markco_reanchor tool."""

    comment_id: str = Field(..., min_length=1)
    match: str = Field(..., min_length=1, description="Exact text to move the comment onto")
    occurrence: int = Field(default=1, ge=1)


class CommentReanchorResponse(BaseModel):
    comment_id: str
    anchor: dict[str, Any]


class CommentDeleteRequest(FileRequest):
    """Request model for markco_delete tool."""

    comment_id: str = Field(..., min_length=1)
    reply_id: str | None = Field(default=None, description="Delete only this reply")


class CommentDeleteResponse(BaseModel):
    deleted: str = Field(..., description="Id of the deleted comment or reply")


class CommentReconcileResponse(BaseModel):
    file: str
    report: dict[str, Any]


class CommentRenderResponse(BaseModel):
    file: str
    html: str


# ============================================================================
# Shared state
# ============================================================================

# One store and one set of write queues for the server's lifetime
_settings = get_settings()
_store = AnchorStore(schema_version=_settings.schema_version, json_indent=_settings.json_indent)
_locks = DocumentLocks()


def _service(author: str | None = None) -> CommentService:
    provider = StaticAuthorProvider(author or _settings.default_author)
    return CommentService(_store, locks=_locks, author_provider=provider, settings=_settings)


def _open_document(file: str) -> FileDocument:
    """Load the file fresh from disk; the cached parse is dropped since it may have changed."""
    path = Path(file)
    if not path.is_absolute():
        path = Path.cwd() / path
    if not path.is_file():
        raise ToolError("FILE_NOT_FOUND", f"File not found: {file}")
    try:
        document = FileDocument(path)
    except (OSError, ValueError) as e:
        raise ToolError("READ_FAILED", f"Cannot read {file}: {e}") from e
    _store.invalidate(document.uri)
    return document


def _require_comment(service: CommentService, document: FileDocument, comment_id: str):
    comment = service.find_comment(document, comment_id)
    if comment is None:
        raise ToolError("COMMENT_NOT_FOUND", f"Comment not found: {comment_id}")
    return comment


def _write_failed(file: str) -> ToolError:
    return ToolError("WRITE_FAILED", f"Failed to write comments to {file}")


def _text(payload: dict[str, Any]) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, ensure_ascii=False))]


def _error(code: str, message: str) -> list[TextContent]:
    error = ErrorResponse(code=code, message=message)
    return _text({"error": error.model_dump()})


# ============================================================================
# MCP Server
# ============================================================================


mcp = Server("markco")

_FILE_PROPERTY = {"type": "string", "description": "Path to the markdown file"}
_COMMENT_ID_PROPERTY = {"type": "string", "description": "Comment id"}


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List all available MCP tools."""
    return [
        Tool(
            name="markco_add",
            description="Add a comment anchored to exact text in a markdown file",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": _FILE_PROPERTY,
                    "match": {"type": "string", "description": "Exact text to comment on", "minLength": 1},
                    "occurrence": {
                        "type": "integer",
                        "description": "Which occurrence of match (1-based, default 1)",
                        "minimum": 1,
                        "default": 1,
                    },
                    "body": {"type": "string", "minLength": 1, "maxLength": 10000},
                    "author": {"type": "string", "default": "agent"},
                },
                "required": ["file", "match", "body"],
            },
        ),
        Tool(
            name="markco_list",
            description="List comments in a markdown file in document order",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": _FILE_PROPERTY,
                    "unresolved": {"type": "boolean", "default": False},
                    "orphaned": {"type": "boolean", "default": False},
                },
                "required": ["file"],
            },
        ),
        Tool(
            name="markco_reply",
            description="Reply to a comment",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": _FILE_PROPERTY,
                    "comment_id": _COMMENT_ID_PROPERTY,
                    "body": {"type": "string", "minLength": 1, "maxLength": 10000},
                    "author": {"type": "string", "default": "agent"},
                },
                "required": ["file", "comment_id", "body"],
            },
        ),
        Tool(
            name="markco_resolve",
            description="Toggle a comment between open and resolved",
            inputSchema={
                "type": "object",
                "properties": {"file": _FILE_PROPERTY, "comment_id": _COMMENT_ID_PROPERTY},
                "required": ["file", "comment_id"],
            },
        ),
        Tool(
            name="markco_reanchor",
            description="Move a comment (e.g. an orphaned one) onto new text",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": _FILE_PROPERTY,
                    "comment_id": _COMMENT_ID_PROPERTY,
                    "match": {"type": "string", "minLength": 1},
                    "occurrence": {"type": "integer", "minimum": 1, "default": 1},
                },
                "required": ["file", "comment_id", "match"],
            },
        ),
        Tool(
            name="markco_delete",
            description="Delete a comment with its replies, or a single reply",
            inputSchema={
                "type": "object",
                "properties": {
                    "file": _FILE_PROPERTY,
                    "comment_id": _COMMENT_ID_PROPERTY,
                    "reply_id": {"type": "string", "description": "Delete only this reply"},
                },
                "required": ["file", "comment_id"],
            },
        ),
        Tool(
            name="markco_reconcile",
            description="Re-locate all anchors after the file was edited; orphans missing text",
            inputSchema={
                "type": "object",
                "properties": {"file": _FILE_PROPERTY},
                "required": ["file"],
            },
        ),
        Tool(
            name="markco_render",
            description="Render the file to HTML with commented text highlighted",
            inputSchema={
                "type": "object",
                "properties": {"file": _FILE_PROPERTY},
                "required": ["file"],
            },
        ),
    ]


@mcp.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle MCP tool calls."""
    handler = _HANDLERS.get(name)
    if handler is None:
        return _error("UNKNOWN_TOOL", f"Unknown tool: {name}")
    try:
        return await handler(arguments or {})
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")
    except ToolError as e:
        return _error(e.code, e.message)
    except LockTimeout as e:
        return _error("LOCK_TIMEOUT", str(e))
    except Exception as e:
        # Catch-all for unexpected errors
        return _error("INTERNAL_ERROR", str(e))


async def handle_markco_add(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_add tool call."""
    req = CommentAddRequest(**arguments)
    document = _open_document(req.file)

    selection = find_text_selection(document, req.match, req.occurrence)
    if selection is None:
        raise ToolError(
            "TEXT_NOT_FOUND", f"Occurrence {req.occurrence} of {req.match!r} not found in {req.file}"
        )

    comment = await _service(req.author).add_comment(document, selection, req.body)
    if comment is None:
        raise _write_failed(req.file)

    response = CommentAddResponse(
        comment_id=comment.id,
        file=req.file,
        start_line=comment.anchor.start_line,
        start_char=comment.anchor.start_char,
    )
    return _text(response.model_dump())


async def handle_markco_list(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_list tool call."""
    req = CommentListRequest(**arguments)
    document = _open_document(req.file)

    comments = sort_for_display(_service().get_comments(document))
    if req.unresolved:
        comments = [c for c in comments if not c.resolved]
    if req.orphaned:
        comments = [c for c in comments if c.orphaned]

    response = CommentListResponse(comments=[c.to_wire() for c in comments])
    return _text(response.model_dump())


async def handle_markco_reply(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_reply tool call."""
    req = CommentReplyRequest(**arguments)
    document = _open_document(req.file)
    service = _service(req.author)
    _require_comment(service, document, req.comment_id)

    reply = await service.add_reply(document, req.comment_id, req.body)
    if reply is None:
        raise _write_failed(req.file)

    updated = _require_comment(service, document, req.comment_id)
    response = CommentReplyResponse(
        comment_id=req.comment_id, reply_id=reply.id, reply_count=len(updated.replies or [])
    )
    return _text(response.model_dump())


async def handle_markco_resolve(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_resolve tool call."""
    req = CommentTargetRequest(**arguments)
    document = _open_document(req.file)
    service = _service()
    _require_comment(service, document, req.comment_id)

    comment = await service.resolve_comment(document, req.comment_id)
    if comment is None:
        raise _write_failed(req.file)

    response = CommentResolveResponse(comment_id=comment.id, resolved=bool(comment.resolved))
    return _text(response.model_dump())


async def handle_markco_reanchor(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_reanchor tool call."""
    req = CommentReanchorRequest(**arguments)
    document = _open_document(req.file)
    service = _service()
    _require_comment(service, document, req.comment_id)

    selection = find_text_selection(document, req.match, req.occurrence)
    if selection is None:
        raise ToolError(
            "TEXT_NOT_FOUND", f"Occurrence {req.occurrence} of {req.match!r} not found in {req.file}"
        )

    comment = await service.re_anchor_comment(document, req.comment_id, selection)
    if comment is None:
        raise _write_failed(req.file)

    response = CommentReanchorResponse(comment_id=comment.id, anchor=comment.anchor.to_wire())
    return _text(response.model_dump())


async def handle_markco_delete(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_delete tool call."""
    req = CommentDeleteRequest(**arguments)
    document = _open_document(req.file)
    service = _service()
    comment = _require_comment(service, document, req.comment_id)

    if req.reply_id is not None:
        if comment.find_reply(req.reply_id) is None:
            raise ToolError("REPLY_NOT_FOUND", f"Reply not found: {req.reply_id}")
        deleted = await service.delete_reply(document, req.comment_id, req.reply_id)
        deleted_id = req.reply_id
    else:
        deleted = await service.delete_comment(document, req.comment_id)
        deleted_id = req.comment_id

    if not deleted:
        raise _write_failed(req.file)
    return _text(CommentDeleteResponse(deleted=deleted_id).model_dump())


async def handle_markco_reconcile(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_reconcile tool call."""
    req = FileRequest(**arguments)
    document = _open_document(req.file)

    report = await _service().reconcile_anchors(document)
    if report.changed and not report.saved:
        raise _write_failed(req.file)

    response = CommentReconcileResponse(file=req.file, report=report.model_dump())
    return _text(response.model_dump())


async def handle_markco_render(arguments: dict[str, Any]) -> list[TextContent]:
    """Handle markco_render tool call."""
    req = FileRequest(**arguments)
    document = _open_document(req.file)

    style = HighlightStyle(_settings.highlight_class, _settings.resolved_class)
    html = render_markdown(document.get_text(), style=style)
    return _text(CommentRenderResponse(file=req.file, html=html).model_dump())


_HANDLERS = {
    "markco_add": handle_markco_add,
    "markco_list": handle_markco_list,
    "markco_reply": handle_markco_reply,
    "markco_resolve": handle_markco_resolve,
    "markco_reanchor": handle_markco_reanchor,
    "markco_delete": handle_markco_delete,
    "markco_reconcile": handle_markco_reconcile,
    "markco_render": handle_markco_render,
}


# ============================================================================
# Main Entry Point
# ============================================================================


async def main() -> None:
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(read_stream, write_stream, mcp.create_initialization_options())


def run_server() -> None:
    """Synchronous entry point for running the server."""
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run_server()
