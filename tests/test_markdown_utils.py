"""
Tests for Matrix markdown formatting functionality.
"""
import pytest
from headjack.utils.markdown_utils import MatrixMarkdownFormatter, format_for_matrix, strip_markdown


class TestMarkdownFormatting:

    def test_basic_formatting(self):
        """Test basic markdown formatting conversion."""
        content = "**Bold text** and *italic text*"
        result = format_for_matrix(content)

        assert result["plain"] == "Bold text and italic text"
        assert "<strong>Bold text</strong>" in result["html"]
        assert "<em>italic text</em>" in result["html"]

    def test_code_blocks(self):
        """Test that fenced code keeps its content in both renderings."""
        markdown_text = "Here's some code:\n\n```python\ndef hello():\n    print(\"Hello\")\n```"
        result = format_for_matrix(markdown_text)

        assert "<pre>" in result["html"]
        assert "def hello():" in result["html"]
        assert "```" not in result["plain"]
        assert "def hello():" in result["plain"]

    def test_inline_code(self):
        content = "Use the `!help` command"
        result = format_for_matrix(content)

        assert result["plain"] == "Use the !help command"
        assert "<code>!help</code>" in result["html"]

    def test_links(self):
        content = "Check out [the docs](https://example.org/docs)"
        result = format_for_matrix(content)

        assert result["plain"] == "Check out the docs"
        assert 'href="https://example.org/docs"' in result["html"]

    def test_headers_and_quotes(self):
        content = "# Status\n\n> all good"
        result = format_for_matrix(content)

        assert "#" not in result["plain"]
        assert ">" not in result["plain"]
        assert "<h1>Status</h1>" in result["html"]
        assert "<blockquote>" in result["html"]

    def test_line_breaks_are_kept(self):
        result = format_for_matrix("first\nsecond")
        assert "<br" in result["html"]

    def test_formatter_is_reusable(self):
        """The parser is reset between conversions."""
        formatter = MatrixMarkdownFormatter()
        first = formatter.convert("# One")
        second = formatter.convert("plain")
        assert "<h1>" in first["html"]
        assert "<h1>" not in second["html"]

    @pytest.mark.parametrize("text, expected", [
        ("__underlined__", "underlined"),
        ("no markup", "no markup"),
        ("a\n\n\n\nb", "a\n\nb"),
    ])
    def test_strip_markdown(self, text, expected):
        assert strip_markdown(text) == expected
