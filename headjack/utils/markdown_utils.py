"""
Utility functions for converting markdown to Matrix-compatible HTML.
"""
import re
from typing import Dict

import markdown


class MatrixMarkdownFormatter:
    """Converts markdown into the plain/HTML pair a Matrix message carries."""

    def __init__(self):
        self.md = markdown.Markdown(extensions=["fenced_code", "tables", "nl2br", "sane_lists"])

    def convert(self, markdown_text: str) -> Dict[str, str]:
        """Convert markdown to both plain text and HTML for Matrix."""
        # Parser keeps state between calls
        self.md.reset()
        html_content = self.md.convert(markdown_text)
        return {"plain": self.to_plain(markdown_text), "html": html_content}

    def to_plain(self, markdown_text: str) -> str:
        """Convert markdown to plain text by removing formatting."""
        # Fenced blocks keep their content, only the fences go
        text = re.sub(r"```[^\n]*\n([\s\S]*?)```", r"\1", markdown_text)
        text = re.sub(r"`([^`]+)`", r"\1", text)

        # Remove links but keep text
        text = re.sub(r"\[([^\]]+)\]\([^\)]+\)", r"\1", text)

        # Remove bold/italic
        text = re.sub(r"\*\*([^\*]+)\*\*", r"\1", text)
        text = re.sub(r"\*([^\*]+)\*", r"\1", text)
        text = re.sub(r"__([^_]+)__", r"\1", text)

        # Remove headers
        text = re.sub(r"^#+\s*", "", text, flags=re.MULTILINE)

        # Remove block quotes
        text = re.sub(r"^\s*>\s*", "", text, flags=re.MULTILINE)

        # Clean up extra whitespace
        text = re.sub(r"\n\s*\n", "\n\n", text)

        return text.strip()


_formatter = MatrixMarkdownFormatter()


def format_for_matrix(content: str) -> Dict[str, str]:
    """Convert markdown content for Matrix messaging."""
    return _formatter.convert(content)


def strip_markdown(content: str) -> str:
    """Strip markdown formatting, e.g. for notices and logs."""
    return _formatter.to_plain(content)
