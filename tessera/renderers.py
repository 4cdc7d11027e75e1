"""Content renderers for Tessera.

Each renderer turns the body of one kind of content file into an HTML
fragment. Rendering must be deterministic, and a body the Markdown
pipeline cannot handle degrades to escaped literal text instead of
failing the page.

Key classes:
- MarkdownRenderer: Renders Markdown to HTML with syntax highlighting.
- HTMLRenderer: Passes through HTML content.
- RendererRegistry: Picks the renderer for a content file.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path

import mistune
from markupsafe import escape
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .logging import get_logger
from .protocols import ContentRenderer
from .utils import is_html, is_markdown

logger = get_logger("renderers")


def _heading_slug(text: str) -> str:
    plain = re.sub(r"<[^>]+>", "", text).lower()
    words = re.findall(r"[\w-]+", plain)
    return re.sub(r"-{2,}", "-", "-".join(words)).strip("-") or "section"


def _lexer_for(lang: str | None):
    if not lang:
        return None
    try:
        return get_lexer_by_name(lang, stripall=True)
    except ClassNotFound:
        return None


class _HighlightRenderer(mistune.HTMLRenderer):
    """Markdown renderer with heading anchors, link rewriting and highlighting.

    Attributes:
        url_for: Maps root-relative link targets to final URLs.
    """

    def __init__(self, url_for: Callable[[str], str] | None = None):
        super().__init__(escape=False)
        self.url_for = url_for
        self._slugs: dict[str, int] = {}

    def heading(self, text: str, level: int, **attrs) -> str:
        slug = _heading_slug(text)
        seen = self._slugs.get(slug)
        self._slugs[slug] = 0 if seen is None else seen + 1
        anchor = slug if seen is None else f"{slug}-{seen + 1}"
        return f'<h{level} id="{anchor}">{text}</h{level}>\n'

    def link(self, text: str, url: str, title: str | None = None) -> str:
        return super().link(text, self._rewrite(url), title)

    def image(self, text: str, url: str, title: str | None = None) -> str:
        return super().image(text, self._rewrite(url), title)

    def _rewrite(self, url: str) -> str:
        if self.url_for and url.startswith("/") and not url.startswith("//"):
            return self.url_for(url)
        return url

    def block_code(self, code: str, info: str | None = None) -> str:
        """Highlight fenced code whose language Pygments knows."""
        lang = info.split()[0] if info and info.strip() else None
        lexer = _lexer_for(lang)
        if lexer is not None:
            return highlight(code, lexer, HtmlFormatter(cssclass="highlight"))
        attr = f' class="language-{escape(lang)}"' if lang else ""
        return f"<pre><code{attr}>{escape(code)}</code></pre>\n"


class MarkdownRenderer:
    """Renders Markdown content to HTML."""

    def __init__(self, url_for: Callable[[str], str] | None = None):
        self.url_for = url_for

    @property
    def source_type(self) -> str:
        return "markdown"

    def can_render(self, path: Path) -> bool:
        return is_markdown(path)

    def render(self, body: str) -> str:
        """Render Markdown content to HTML.

        A fresh mistune instance is created per call so renders on
        different worker threads never share parser state.
        """
        renderer = _HighlightRenderer(self.url_for)
        markdown = mistune.create_markdown(
            renderer=renderer, plugins=["strikethrough", "footnotes", "table", "url"]
        )
        try:
            return markdown(body)
        except Exception as exc:
            logger.warning("Markdown rendering failed (%s); emitting body literally", exc)
            return f"<pre>{escape(body)}</pre>\n"


class HTMLRenderer:
    """Passes through HTML content unchanged."""

    @property
    def source_type(self) -> str:
        return "html"

    def can_render(self, path: Path) -> bool:
        return is_html(path)

    def render(self, body: str) -> str:
        return body


class RendererRegistry:
    """Registry for content renderers.

    The first registered renderer that accepts a path wins.
    """

    def __init__(self, renderers: list[ContentRenderer] | None = None):
        self._renderers: list[ContentRenderer] = []
        for renderer in renderers if renderers is not None else [MarkdownRenderer(), HTMLRenderer()]:
            self.register(renderer)

    def register(self, renderer: ContentRenderer) -> None:
        self._renderers.append(renderer)

    def get_renderer(self, path: Path) -> ContentRenderer | None:
        for renderer in self._renderers:
            if renderer.can_render(path):
                return renderer
        return None
