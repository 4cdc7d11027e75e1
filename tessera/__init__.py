"""Tessera static site builder.

This package turns a tree of Markdown content with YAML front matter and
Jinja2 layout templates into a static HTML output tree. Builds are
incremental: a dependency graph tracks which source files every output
page depends on, so a change to a content file, layout, partial or asset
only re-renders the pages it can affect.

The three entry points used by the CLI are re-exported here:
- build_all: Full build of every content item.
- build_incremental: Targeted rebuild for a set of changed source paths.
- watch: File-watching rebuild loop.
"""

from .build import BuildResult, BuildScheduler, BuildStatus, build_all, build_incremental
from .config import BuildConfig, Route
from .watcher import watch

__all__ = [
    "BuildConfig",
    "BuildResult",
    "BuildScheduler",
    "BuildStatus",
    "Route",
    "__version__",
    "build_all",
    "build_incremental",
    "watch",
]
__version__ = "0.1.0"
