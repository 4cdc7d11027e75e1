"""Front-matter parsing and metadata extraction for Tessera.

A content file may open with a YAML front-matter block fenced by ``---``
lines::

    ---
    title: Hello
    layout: post.html
    ---
    Body text in Markdown.

Files without the opening fence have empty front matter. An opening fence
that is never closed, or fenced text that is not a YAML mapping, raises
``MalformedFrontMatter``.

Key classes:
- ParsedContent: Front matter plus body of one file.
- TitleExtractor: Defaults the title from the first heading or the filename.
- LayoutExtractor: Defaults the layout to the configured template.
- CompositeMetadataExtractor: Runs extractors in order and merges defaults.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import MalformedFrontMatter
from .protocols import MetadataExtractor
from .utils import titleize
from .values import FrontMatter, Text, Value

FENCE = "---"
CLOSING_FENCES = ("---", "...")
BOM = "\ufeff"
HEADING_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$")


@dataclass(frozen=True)
class ParsedContent:
    """Result of splitting one content file.

    Attributes:
        front_matter: Typed front-matter values (empty for unmarked files).
        body: Text following the front-matter block.
    """

    front_matter: FrontMatter
    body: str


def split_frontmatter(text: str, path: Path | None = None) -> tuple[str | None, str]:
    """Split raw text into (front-matter source, body).

    Returns ``(None, text)`` for files without an opening fence.

    Raises:
        MalformedFrontMatter: If the opening fence is never closed.
    """
    if text.startswith(BOM):
        text = text[len(BOM) :]
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip() != FENCE:
        return None, text
    for index in range(1, len(lines)):
        if lines[index].rstrip() in CLOSING_FENCES:
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            return header, body
    raise MalformedFrontMatter("front matter opened with '---' but never closed", path)


def parse_content(data: bytes, path: Path) -> ParsedContent:
    """Parse raw file bytes into front matter and body.

    Pure function of its input; the path is only used in error messages.

    Raises:
        MalformedFrontMatter: If the block is unclosed or not valid YAML mapping data.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedFrontMatter(f"content is not valid UTF-8: {exc}", path) from exc
    header, body = split_frontmatter(text, path)
    if header is None:
        return ParsedContent(FrontMatter(), body)
    try:
        raw = yaml.safe_load(header)
    except yaml.YAMLError as exc:
        raise MalformedFrontMatter(f"invalid YAML in front matter: {exc}", path) from exc
    return ParsedContent(FrontMatter.from_yaml(raw, path), body)


class TitleExtractor:
    """Defaults the title to the first level-1 heading, then the filename."""

    def extract(
        self, front_matter: FrontMatter, body: str, path: Path
    ) -> dict[str, Value]:
        for line in body.splitlines():
            match = HEADING_RE.match(line.strip())
            if match:
                return {"title": Text(match.group(1))}
        return {"title": Text(titleize(path.name))}


class LayoutExtractor:
    """Defaults the layout to the configured template name."""

    def __init__(self, default_layout: str):
        self.default_layout = default_layout

    def extract(
        self, front_matter: FrontMatter, body: str, path: Path
    ) -> dict[str, Value]:
        return {"layout": Text(self.default_layout)}


class CompositeMetadataExtractor:
    """Combines multiple metadata extractors.

    Extractors run in order; later extractors override defaults produced by
    earlier ones. Explicit front matter always wins over every default.
    """

    def __init__(self, extractors: list[MetadataExtractor] | None = None):
        self._extractors: list[MetadataExtractor] = list(extractors or [])

    def add_extractor(self, extractor: MetadataExtractor) -> None:
        self._extractors.append(extractor)

    def apply(self, parsed: ParsedContent, path: Path) -> ParsedContent:
        """Return *parsed* with defaults filled in for missing keys."""
        defaults: dict[str, Value] = {}
        for extractor in self._extractors:
            defaults.update(extractor.extract(parsed.front_matter, parsed.body, path))
        return ParsedContent(parsed.front_matter.with_defaults(defaults), parsed.body)


def default_metadata_extractor(default_layout: str) -> CompositeMetadataExtractor:
    return CompositeMetadataExtractor([TitleExtractor(), LayoutExtractor(default_layout)])
