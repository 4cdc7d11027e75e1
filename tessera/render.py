"""Render engine for Tessera.

Composes a content item's rendered body into its resolved template using
Jinja2. Plans are compiled straight from their flattened syntax trees, and
templates reach Jinja2 at run time only through ``StoreLoader``, so
includes and imports see the same flattened plans the build validated. The
loader reports every name it is asked for, which is how a page learns about
templates it includes by a computed name.

Rendering context, later entries winning:
- every site variable at top level, and all of them as ``site``;
- every front-matter key at top level, except reserved names;
- ``page``: front matter plus ``url``, ``source`` and ``output``;
- ``content``: the rendered body, marked safe;
- ``config``: ``environment``, ``base_url`` and ``build_revision``;
- ``pages``: the content set as a PageCollection;
- ``asset(name)``, ``url_for(path)`` and ``relative_url(path)`` helpers and
  the ``date`` filter.

Undefined variables are errors (``StrictUndefined``); use
``{{ name | default("x") }}`` for optional values.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from jinja2 import (
    BaseLoader,
    Environment,
    StrictUndefined,
    Template,
    TemplateError,
    TemplateSyntaxError,
    UndefinedError,
    select_autoescape,
)
from jinja2 import TemplateNotFound as JinjaTemplateNotFound
from markupsafe import Markup

from .assets import AssetIndex
from .collections import PageCollection
from .config import BuildConfig
from .content import ContentItem
from .errors import (
    MalformedTemplate,
    MissingVariable,
    RenderError,
    TemplateNotFound,
    TesseraError,
)
from .logging import get_logger
from .templates import ResolvedTemplate, TemplateStore, copy_tree
from .values import Text

logger = get_logger("render")

RESERVED_NAMES = frozenset(
    {"content", "page", "site", "config", "pages", "asset", "url_for", "relative_url"}
)


def format_date(value: Any, fmt: str = "%Y-%m-%d") -> Any:
    """Format an ISO date string with ``strftime``.

    Values that are not dates pass through unchanged.

    Examples:
        >>> format_date("2024-01-15", "%d %b %Y")
        '15 Jan 2024'
    """
    if isinstance(value, (date, datetime)):
        return value.strftime(fmt)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return value
        return parsed.strftime(fmt)
    return value


class StoreLoader(BaseLoader):
    """Jinja2 loader serving compiled plans from a TemplateStore.

    Every requested name is passed to ``on_load`` before lookup, found or
    not.
    """

    has_source_access = False

    def __init__(
        self,
        store: TemplateStore,
        compile: Callable[[ResolvedTemplate], Template],
        on_load: Callable[[str], None] | None = None,
    ):
        self.store = store
        self.compile = compile
        self.on_load = on_load

    def load(self, environment: Environment, name: str, globals=None) -> Template:
        if self.on_load is not None:
            self.on_load(name)
        try:
            resolved = self.store.resolve(name)
        except TemplateNotFound as exc:
            if exc.name != name:
                raise
            raise JinjaTemplateNotFound(name) from exc
        return self.compile(resolved)


@dataclass
class RenderLog:
    """What one render pulled in while it ran."""

    assets: list[str] = field(default_factory=list)
    templates: list[str] = field(default_factory=list)
    listing: bool = False


@dataclass(frozen=True)
class RenderOutcome:
    """Rendered page bytes plus what the render depended on.

    Attributes:
        html: UTF-8 output.
        assets: Assets requested through ``asset()``.
        templates: Templates loaded at run time by includes and imports.
        listing: Whether the render read the ``pages`` collection.
    """

    html: bytes
    assets: tuple[str, ...] = ()
    templates: tuple[str, ...] = ()
    listing: bool = False


class RenderEngine:
    """Renders content items into their resolved templates.

    Compiled plans are cached by digest; rendering is safe from several
    worker threads at once, each keeping its own RenderLog.

    Attributes:
        store: Template store backing includes and imports.
        config: Build configuration for the session.
        env: Jinja2 environment.
        pages: Current content set, as seen by templates.
    """

    def __init__(
        self,
        store: TemplateStore,
        config: BuildConfig,
        assets: AssetIndex | None = None,
    ):
        self.store = store
        self.config = config
        self.assets = assets or AssetIndex(config)
        # No template cache: every include goes through the loader and is logged.
        self.env = Environment(
            loader=StoreLoader(store, self.compile, self._record_template),
            undefined=StrictUndefined,
            autoescape=select_autoescape(["html", "xml"], default_for_string=True),
            keep_trailing_newline=True,
            cache_size=0,
        )
        self._compiled: dict[str, Template] = {}
        self._lock = threading.Lock()
        self._local = threading.local()
        self.pages = PageCollection((), self._record_listing)
        self._install_globals()

    def _install_globals(self) -> None:
        self.env.globals["asset"] = self._asset
        self.env.globals["url_for"] = self.config.url_for
        self.env.globals["relative_url"] = self.config.url_for
        self.env.globals["pages"] = self.pages
        self.env.filters["date"] = format_date

    def set_pages(self, items: Iterable[ContentItem]) -> None:
        """Replace the content set templates see as ``pages``."""
        self.pages = PageCollection.from_items(items, self._record_listing)
        self.env.globals["pages"] = self.pages

    def _log(self) -> RenderLog | None:
        return getattr(self._local, "log", None)

    def _record_template(self, name: str) -> None:
        log = self._log()
        if log is not None:
            log.templates.append(name)

    def _record_listing(self) -> None:
        log = self._log()
        if log is not None:
            log.listing = True

    def _asset(self, name: str) -> str:
        log = self._log()
        if log is not None:
            log.assets.append(self.assets.normalize(name))
        if not self.assets.exists(name):
            logger.warning("Asset %s referenced but not found under %s", name, self.config.asset_root)
        return self.assets.url(name)

    def compile(self, resolved: ResolvedTemplate) -> Template:
        """Compile a plan, reusing an earlier compilation of the same tree.

        Raises:
            MalformedTemplate: If Jinja2 rejects the flattened tree.
        """
        with self._lock:
            cached = self._compiled.get(resolved.digest)
            if cached is not None:
                return cached
            # Jinja2's optimizer rewrites the tree it compiles.
            tree = copy_tree(resolved.tree)
            tree.set_environment(self.env)
            try:
                code = self.env.compile(
                    tree, resolved.name, str(self.store.path_for(resolved.name))
                )
            except TemplateSyntaxError as exc:
                raise MalformedTemplate(
                    f"template '{resolved.name}' does not compile: {exc.message}",
                    self.store.path_for(resolved.name),
                ) from exc
            template = self.env.template_class.from_code(
                self.env, code, self.env.make_globals(None)
            )
            self._compiled[resolved.digest] = template
            return template

    def context_for(self, item: ContentItem, config: BuildConfig) -> dict[str, Any]:
        """Build the rendering context for one item.

        Raises:
            TypeMismatch: If the item's title is not text.
        """
        item.front_matter.expect("title", Text, item.source_path)
        site = dict(config.variables)
        context: dict[str, Any] = dict(site)
        context["site"] = site
        for key, value in item.front_matter.unwrap().items():
            if key not in RESERVED_NAMES:
                context[key] = value
        context["page"] = item.page_context()
        context["content"] = Markup(item.html)
        context["config"] = {
            "environment": config.environment,
            "base_url": config.base_url,
            "build_revision": config.build_revision,
        }
        return context

    def render(
        self,
        item: ContentItem,
        resolved: ResolvedTemplate | None,
        config: BuildConfig | None = None,
    ) -> bytes:
        """Render *item* into *resolved* and return UTF-8 HTML bytes."""
        return self.render_outcome(item, resolved, config).html

    def render_outcome(
        self,
        item: ContentItem,
        resolved: ResolvedTemplate | None,
        config: BuildConfig | None = None,
    ) -> RenderOutcome:
        """Render *item* and report what the render depended on.

        Without a template the body fragment is emitted on its own.

        Raises:
            MissingVariable: If the template uses an undefined variable.
            RenderError: If the template fails at render time otherwise.
        """
        config = config or self.config
        context = self.context_for(item, config)
        if resolved is None:
            return RenderOutcome(_finish(item.html))
        template = self.compile(resolved)
        log = RenderLog()
        self._local.log = log
        try:
            html = template.render(**context)
        except UndefinedError as exc:
            raise MissingVariable(
                f"undefined variable in template '{resolved.name}': {exc.message}",
                item.source_path,
            ) from exc
        except TesseraError:
            raise
        except TemplateError as exc:
            raise RenderError(
                f"template '{resolved.name}' failed: {exc.message}", item.source_path
            ) from exc
        except (TypeError, ValueError, ArithmeticError, LookupError) as exc:
            raise RenderError(
                f"template '{resolved.name}' failed: {type(exc).__name__}: {exc}",
                item.source_path,
            ) from exc
        finally:
            self._local.log = None
        return RenderOutcome(
            _finish(html),
            assets=tuple(dict.fromkeys(log.assets)),
            templates=tuple(dict.fromkeys(log.templates)),
            listing=log.listing,
        )


def _finish(html: str) -> bytes:
    if not html.endswith("\n"):
        html += "\n"
    return html.encode("utf-8")
