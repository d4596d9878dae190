"""Shared fixtures for markco tests."""

import pytest

from markco.config import Settings
from markco.document import InMemoryDocument
from markco.git_ops import StaticAuthorProvider
from markco.models import Comment, CommentAnchor
from markco.service import CommentService


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def service(settings: Settings) -> CommentService:
    """CommentService with a fixed author and a fresh cache."""
    return CommentService(author_provider=StaticAuthorProvider("alice"), settings=settings)


@pytest.fixture
def make_document():
    """Factory for in-memory documents with unique uris."""
    counter = 0

    def _make(text: str) -> InMemoryDocument:
        nonlocal counter
        counter += 1
        return InMemoryDocument(text, uri=f"untitled:doc-{counter}.md")

    return _make


@pytest.fixture
def make_comment():
    """Factory for single-line comments anchored at (line, char)."""

    def _make(text: str, line: int = 0, char: int = 0, content: str = "note", **kwargs) -> Comment:
        anchor = CommentAnchor(
            text=text,
            start_line=line,
            start_char=char,
            end_line=line,
            end_char=char + len(text),
        )
        return Comment(anchor=anchor, content=content, author=kwargs.pop("author", "alice"), **kwargs)

    return _make
