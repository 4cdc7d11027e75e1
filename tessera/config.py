"""Build configuration for Tessera.

``BuildConfig`` is the immutable, process-wide context for one build or
watch session: where sources live, where output goes, the site variables
handed to templates, and the routing rules that map content paths to output
paths. The core never parses configuration files itself; ``load_config`` is
the thin boundary adapter the CLI uses to build a ``BuildConfig`` from one
YAML file.
"""

from __future__ import annotations

import fnmatch
import posixpath
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

import yaml

from .errors import ConfigError
from .utils import git_revision, slugify

DEFAULT_CONFIG = {
    "content_dir": "content",
    "template_dir": "templates",
    "asset_dir": "assets",
    "output_dir": "output",
    "default_layout": "default.html",
    "pretty_urls": False,
    "base_url": "",
    "workers": 4,
    "debounce": 0.2,
}


@dataclass(frozen=True)
class Route:
    """Maps content paths matching ``pattern`` to an output path template.

    The target is formatted with ``{path}`` (content path without suffix),
    ``{dir}``, ``{stem}`` and ``{slug}``. The result must stay inside the
    output root.
    """

    pattern: str
    target: str

    def matches(self, rel: PurePosixPath) -> bool:
        return fnmatch.fnmatchcase(rel.as_posix(), self.pattern)

    def apply(self, rel: PurePosixPath) -> str:
        """Return the output path for *rel*.

        Raises:
            ConfigError: If the formatted target leaves the output root.
        """
        parent = "" if str(rel.parent) == "." else rel.parent.as_posix()
        stem_path = rel.with_suffix("").as_posix()
        target = self.target.format(
            path=stem_path,
            dir=parent,
            stem=rel.stem,
            slug=slugify(rel.stem),
        )
        output = posixpath.normpath(target.lstrip("/")) if target.strip("/") else ""
        if output in ("", ".", "..") or output.startswith("../"):
            raise ConfigError(
                f"route {self.pattern!r} -> {self.target!r} maps '{rel}' to "
                f"'{target}', outside the output root"
            )
        return output


@dataclass(frozen=True)
class BuildConfig:
    """Read-only context shared by every component of one build session.

    Attributes:
        source_root: Project directory holding content, templates and assets.
        output_root: Directory the HTML tree is written to.
        variables: Site-wide template variables.
        environment: Environment variant name (e.g. "production").
        routes: Ordered routing rules; the first match wins.
        pretty_urls: Route ``a/b.md`` to ``a/b/index.html`` by default.
        default_layout: Template used when content does not declare one.
        base_url: Prefix applied to root-relative links and asset URLs.
        workers: Thread pool size for parsing and rendering.
        debounce: Seconds a path must stay quiet before the watcher reports it.
        config_path: File the configuration was loaded from, if any.
        build_revision: Short commit hash of the source tree, or "" outside git.
    """

    source_root: Path
    output_root: Path
    content_dir: str = "content"
    template_dir: str = "templates"
    asset_dir: str = "assets"
    variables: Mapping[str, Any] = field(default_factory=dict)
    environment: str = ""
    routes: tuple[Route, ...] = ()
    pretty_urls: bool = False
    default_layout: str = "default.html"
    base_url: str = ""
    workers: int = 4
    debounce: float = 0.2
    config_path: Path | None = None
    build_revision: str = ""

    def __post_init__(self):
        object.__setattr__(self, "source_root", Path(self.source_root).resolve())
        output_root = Path(self.output_root)
        if not output_root.is_absolute():
            output_root = self.source_root / output_root
        object.__setattr__(self, "output_root", output_root.resolve())
        object.__setattr__(
            self, "variables", MappingProxyType(dict(self.variables))
        )
        object.__setattr__(self, "routes", tuple(self.routes))
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")

    @property
    def content_root(self) -> Path:
        return self.source_root / self.content_dir

    @property
    def template_root(self) -> Path:
        return self.source_root / self.template_dir

    @property
    def asset_root(self) -> Path:
        return self.source_root / self.asset_dir

    def with_environment(self, environment: str) -> BuildConfig:
        return replace(self, environment=environment)

    def route(self, rel: PurePosixPath) -> str:
        """Return the output path (relative POSIX string) for a content path.

        Args:
            rel: Content path relative to the content root.

        Returns:
            Output path relative to the output root.
        """
        for rule in self.routes:
            if rule.matches(rel):
                return rule.apply(rel)
        stem_path = rel.with_suffix("")
        if self.pretty_urls and stem_path.name != "index":
            return (stem_path / "index.html").as_posix()
        return stem_path.with_suffix(".html").as_posix()

    def url_for(self, path: str) -> str:
        """Generate a URL for a root-relative path, applying base_url if set."""
        if path.startswith(("http://", "https://", "//", "#", "mailto:")):
            return path
        path = path if path.startswith("/") else f"/{path}"
        if self.base_url:
            return self.base_url.rstrip("/") + path
        return path


def load_config(
    path: Path, environment: str | None = None, overrides: Mapping[str, Any] | None = None
) -> BuildConfig:
    """Load a BuildConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.
        environment: Optional environment variant name; overrides the file.
        overrides: Extra keys applied on top of the file (CLI flags).

    Returns:
        The loaded configuration, with defaults applied.

    Raises:
        ConfigError: If the file is unreadable or has the wrong shape.
    """
    config: dict[str, Any] = DEFAULT_CONFIG.copy()
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot load configuration: {exc}", path) from exc
        if not isinstance(loaded, dict):
            raise ConfigError("configuration must be a mapping", path)
        config.update(loaded)
    if overrides:
        config.update(overrides)
    env = environment if environment is not None else str(config.get("environment") or "")

    routes = config.get("routes") or {}
    if not isinstance(routes, dict):
        raise ConfigError("routes must map glob patterns to output paths", path)
    variables = config.get("variables") or {}
    if not isinstance(variables, dict):
        raise ConfigError("variables must be a mapping", path)

    output_dir = str(config["output_dir"])
    for marker in ("{{variant}}", "{variant}"):
        output_dir = output_dir.replace(marker, env)

    try:
        return BuildConfig(
            source_root=path.parent,
            output_root=Path(output_dir),
            content_dir=str(config["content_dir"]),
            template_dir=str(config["template_dir"]),
            asset_dir=str(config["asset_dir"]),
            variables=variables,
            environment=env,
            routes=tuple(Route(str(k), str(v)) for k, v in routes.items()),
            pretty_urls=bool(config["pretty_urls"]),
            default_layout=str(config["default_layout"] or ""),
            base_url=str(config["base_url"] or ""),
            workers=int(config["workers"]),
            debounce=float(config["debounce"]),
            config_path=path.resolve(),
            build_revision=git_revision(path.parent),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid configuration value: {exc}", path) from exc
