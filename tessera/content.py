"""Content discovery and parsing for Tessera.

Key classes:
- ContentItem: One parsed content file, identified by its source path.
- FileContentLoader: Discovers content files under the content root.
- OutputRouter: Derives output paths and URLs from the routing rules.
- ContentParser: Reads a file, splits front matter, applies metadata
  defaults and renders the body, producing a ContentItem.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from .config import BuildConfig
from .errors import IOFailure, MalformedFrontMatter
from .extractors import CompositeMetadataExtractor, default_metadata_extractor, parse_content
from .renderers import HTMLRenderer, MarkdownRenderer, RendererRegistry
from .utils import content_hash, is_content_file, is_ignored_name, relative_to
from .values import Flag, FrontMatter, Text

NO_LAYOUT = ("", "none", "false")


@dataclass(frozen=True)
class ContentItem:
    """A parsed content file.

    Attributes:
        source_path: Absolute path of the source file (identity).
        rel_path: Path relative to the content root.
        front_matter: Typed front matter with defaults applied.
        body: Raw body text after the front-matter block.
        html: Rendered body fragment.
        layout: Template name to render into, or None for body-only output.
        output: Output path relative to the output root (artifact identity).
        url: Public URL of the page.
        source_type: "markdown" or "html".
        digest: Hash of the source bytes the item was parsed from.
    """

    source_path: Path
    rel_path: PurePosixPath
    front_matter: FrontMatter
    body: str
    html: str
    layout: str | None
    output: str
    url: str
    source_type: str
    digest: str

    def page_context(self) -> dict[str, Any]:
        """Return the ``page`` mapping exposed to templates."""
        page = self.front_matter.unwrap()
        page.update(
            url=self.url,
            source=self.rel_path.as_posix(),
            output=self.output,
        )
        return page


class FileContentLoader:
    """Discovers content files in a directory.

    Draft files and directories (leading ``_``) and hidden files are skipped.
    """

    def __init__(self, content_root: Path):
        self.content_root = content_root

    def iter_files(self) -> list[Path]:
        """Return every content file, sorted for deterministic builds."""
        if not self.content_root.exists():
            return []
        files: list[Path] = []
        for path in self.content_root.rglob("*"):
            if path.is_dir():
                continue
            if self.accepts(path):
                files.append(path)
        return sorted(files)

    def accepts(self, path: Path) -> bool:
        """Check whether *path* is a content file this loader would discover."""
        rel = relative_to(path, self.content_root)
        if rel is None or not rel.parts:
            return False
        if any(is_ignored_name(part) for part in rel.parts):
            return False
        return is_content_file(path)


class OutputRouter:
    """Derives output paths and URLs for content files."""

    def __init__(self, config: BuildConfig):
        self.config = config

    def output_for(self, rel: PurePosixPath) -> str:
        return self.config.route(rel)

    def url_for_output(self, output: str) -> str:
        if output == "index.html":
            return self.config.url_for("/")
        if output.endswith("/index.html"):
            return self.config.url_for("/" + output[: -len("index.html")])
        return self.config.url_for("/" + output)


class ContentParser:
    """Builds ContentItem records from source files.

    Rendered bodies are cached by source digest, so re-parsing an unchanged
    file skips the Markdown pass. The cache is safe to share between worker
    threads.
    """

    def __init__(
        self,
        config: BuildConfig,
        renderer_registry: RendererRegistry | None = None,
        metadata_extractor: CompositeMetadataExtractor | None = None,
    ):
        self.config = config
        self.router = OutputRouter(config)
        self.renderer_registry = renderer_registry or RendererRegistry(
            [MarkdownRenderer(config.url_for), HTMLRenderer()]
        )
        self.metadata_extractor = metadata_extractor or default_metadata_extractor(
            config.default_layout
        )
        self._html_cache: dict[tuple[Path, str], str] = {}
        self._lock = threading.Lock()

    def output_for(self, path: Path) -> str:
        """Return the artifact identity for a content path without reading it."""
        return self.router.output_for(self._rel(path))

    def parse(self, path: Path) -> ContentItem:
        """Read and parse one content file.

        Raises:
            IOFailure: If the file cannot be read.
            MalformedFrontMatter: If its front matter is broken.
            TypeMismatch: If ``layout`` is not text.
        """
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise IOFailure(f"cannot read content: {exc}", path) from exc
        return self.parse_bytes(data, path)

    def parse_bytes(self, data: bytes, path: Path) -> ContentItem:
        rel = self._rel(path)
        digest = content_hash(data)
        parsed = self.metadata_extractor.apply(parse_content(data, path), path)
        renderer = self.renderer_registry.get_renderer(path)
        if renderer is None:
            raise MalformedFrontMatter("no renderer for content type", path)
        html = self._render_body(path, digest, parsed.body, renderer)
        output = self.router.output_for(rel)
        return ContentItem(
            source_path=path,
            rel_path=rel,
            front_matter=parsed.front_matter,
            body=parsed.body,
            html=html,
            layout=self._layout(parsed.front_matter, path),
            output=output,
            url=self.router.url_for_output(output),
            source_type=renderer.source_type,
            digest=digest,
        )

    def forget(self, path: Path) -> None:
        """Drop cached renders for a deleted or changed source."""
        with self._lock:
            for key in [k for k in self._html_cache if k[0] == path]:
                del self._html_cache[key]

    def _render_body(self, path: Path, digest: str, body: str, renderer) -> str:
        key = (path, digest)
        with self._lock:
            cached = self._html_cache.get(key)
        if cached is not None:
            return cached
        html = renderer.render(body)
        self.forget(path)
        with self._lock:
            self._html_cache[key] = html
        return html

    def _layout(self, front_matter: FrontMatter, path: Path) -> str | None:
        value = front_matter.get("layout")
        if isinstance(value, Flag) and not value.value:
            return None
        layout = front_matter.expect("layout", Text, path)
        if layout is None or layout.value.strip().lower() in NO_LAYOUT:
            return None
        name = layout.value.strip()
        return name if PurePosixPath(name).suffix else f"{name}.html"

    def _rel(self, path: Path) -> PurePosixPath:
        rel = relative_to(path, self.config.content_root)
        if rel is None:
            raise IOFailure("content file is outside the content root", path)
        return rel
