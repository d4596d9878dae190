"""markco: comments anchored to text, stored inside the markdown file itself."""

__version__ = "0.1.0"
