"""Site building for Tessera.

The BuildScheduler runs full and incremental builds of one site:

Full build (``IDLE -> SCANNING -> RENDERING -> WRITING -> IDLE``):
    Discover and parse every content file, load and resolve every template,
    check that no two files route to the same output, render every page,
    write the outputs, and rebuild the dependency graph from scratch.

Incremental build (``IDLE -> INVALIDATING -> RENDERING -> WRITING -> IDLE``):
    Given changed source paths, re-parse or reload only those sources,
    collect the affected artifacts from the dependency graph, and render
    and write just those.

Failures come in two kinds. Build-fatal errors (template cycles, unresolved
blocks, unreadable templates, output collisions) abort before anything is
written. Page-local errors (bad front matter, missing variables, unreadable
content) fail one artifact and the rest of the build carries on.

Outputs are only written when their content hash changed, so rebuilding an
unchanged page never touches the filesystem.

Key functions:
- build_all: Build every page of a site.
- build_incremental: Rebuild the pages affected by a set of changes.
"""

from __future__ import annotations

import os
import tempfile
import threading
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union

from .assets import AssetIndex
from .config import BuildConfig
from .content import ContentItem, ContentParser, FileContentLoader
from .errors import (
    IOFailure,
    OutputCollision,
    TemplateNotFound,
    TesseraError,
    is_fatal,
)
from .graph import DependencyGraph
from .logging import get_logger
from .render import RenderEngine
from .templates import ResolvedTemplate, TemplateStore
from .utils import content_hash, ensure_clean_dir, file_hash, relative_to

logger = get_logger("build")


class BuildState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    INVALIDATING = "invalidating"
    RENDERING = "rendering"
    WRITING = "writing"


class BuildStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class Change:
    """One settled filesystem change."""

    kind: ChangeKind
    path: Path


ChangeLike = Union[Change, Path, str]


@dataclass
class BuildArtifact:
    """Freshness record for one output file.

    Attributes:
        output: Output path relative to the output root (identity).
        source_path: Content file the artifact is rendered from.
        dependencies: Every source path the last render depended on.
        content_hash: Hash of the last rendered bytes.
        written_at: Time of the last write, or None if never written.
    """

    output: str
    source_path: Path
    dependencies: frozenset = frozenset()
    content_hash: str | None = None
    written_at: float | None = None


@dataclass(frozen=True)
class ArtifactFailure:
    """A page-local failure reported in a BuildResult."""

    artifact: str | None
    source_path: Path | None
    kind: str
    message: str

    @classmethod
    def from_error(cls, artifact: str | None, exc: TesseraError) -> ArtifactFailure:
        return cls(artifact, exc.source_path, exc.kind, exc.message)


@dataclass
class BuildResult:
    """Outcome of one build pass.

    Attributes:
        succeeded: Artifacts rendered successfully in this pass.
        failed: Page-local failures in this pass.
        written: Artifacts whose output file was (re)written.
        unchanged: Artifacts whose output already had identical content.
        removed: Artifacts whose output was deleted.
        elapsed: Wall time of the pass in seconds.
        fatal: The build-fatal error that aborted the pass, if any.
        incremental: Whether this was an incremental pass.
    """

    succeeded: list[str] = field(default_factory=list)
    failed: list[ArtifactFailure] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    elapsed: float = 0.0
    fatal: TesseraError | None = None
    incremental: bool = False

    @property
    def status(self) -> BuildStatus:
        if self.fatal is not None:
            return BuildStatus.FATAL
        if self.failed:
            return BuildStatus.PARTIAL
        return BuildStatus.SUCCESS

    @property
    def ok(self) -> bool:
        return self.status is BuildStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        return {BuildStatus.SUCCESS: 0, BuildStatus.PARTIAL: 1, BuildStatus.FATAL: 2}[
            self.status
        ]

    def summary(self) -> str:
        """Return a multi-line, human-readable summary of the pass."""
        mode = "Incremental build" if self.incremental else "Build"
        if self.fatal is not None:
            where = f"{self.fatal.source_path}: " if self.fatal.source_path else ""
            return f"{mode} aborted: {self.fatal.kind}: {where}{self.fatal.message}"
        lines = [
            f"{mode} finished in {self.elapsed:.2f}s: {len(self.succeeded)} succeeded, "
            f"{len(self.failed)} failed, {len(self.written)} written, "
            f"{len(self.unchanged)} unchanged, {len(self.removed)} removed"
        ]
        for failure in self.failed:
            lines.append(
                f"  {failure.kind}: {failure.source_path or failure.artifact}: {failure.message}"
            )
        return "\n".join(lines)


@dataclass
class _Parsed:
    path: Path
    output: str
    item: ContentItem | None = None
    failure: ArtifactFailure | None = None


@dataclass
class _Rendered:
    output: str
    source_path: Path
    dependencies: frozenset
    html: bytes | None = None
    failure: ArtifactFailure | None = None


class BuildScheduler:
    """Runs full and incremental builds for one BuildConfig.

    The scheduler owns the content set, the template store and the
    dependency graph. Worker threads only parse and render; every graph
    mutation and every write happens on the thread that called the build.
    One build runs at a time.

    Attributes:
        config: Build configuration.
        graph: Dependency graph between sources and artifacts.
        store: Template store.
        state: Current BuildState.
    """

    def __init__(self, config: BuildConfig, graph: DependencyGraph | None = None):
        self.graph = graph or DependencyGraph()
        self.state = BuildState.IDLE
        self._build_lock = threading.Lock()
        self._configure(config)

    def _configure(self, config: BuildConfig) -> None:
        self.config = config
        self.loader = FileContentLoader(config.content_root)
        self.parser = ContentParser(config)
        self.store = TemplateStore(config.template_root)
        self.assets = AssetIndex(config)
        self.engine = RenderEngine(self.store, config, self.assets)
        self.items: dict[Path, ContentItem] = {}
        self.failures: dict[Path, ArtifactFailure] = {}
        self.outputs: dict[str, Path] = {}
        self.artifacts: dict[str, BuildArtifact] = {}
        self.plans: dict[str, ResolvedTemplate] = {}
        self._built = False

    def reconfigure(self, config: BuildConfig) -> None:
        """Switch to a new configuration; the next build is a full build."""
        with self._build_lock:
            artifacts = self.artifacts if config.output_root == self.config.output_root else {}
            self._configure(config)
            self.artifacts = artifacts

    @property
    def built(self) -> bool:
        return self._built

    # -- public operations -------------------------------------------------

    def build_all(self, clean: bool = False) -> BuildResult:
        """Build every page.

        Args:
            clean: Empty the output root before writing (after rendering
                succeeded, so a fatal error still leaves it untouched).
        """
        with self._build_lock:
            return self._run(lambda result: self._full_build(result, clean), incremental=False)

    def build_incremental(self, changes: Iterable[ChangeLike]) -> BuildResult:
        """Rebuild only the pages affected by *changes*.

        Falls back to a full build when nothing has been built yet, or when a
        change is structurally ambiguous (configuration, new or deleted
        templates).
        """
        with self._build_lock:
            if not self._built:
                logger.debug("No previous build; running a full build")
                return self._run(lambda result: self._full_build(result, False), incremental=False)
            normalized = self._normalize(changes)
            return self._run(
                lambda result: self._incremental_build(result, normalized), incremental=True
            )

    # -- build passes ------------------------------------------------------

    def _run(self, body, incremental: bool) -> BuildResult:
        result = BuildResult(incremental=incremental)
        start = time.perf_counter()
        try:
            body(result)
        except TesseraError as exc:
            if not is_fatal(exc):
                raise
            # State may be half-updated; only a full build can be trusted next.
            self._built = False
            self.graph.take_stale()
            result.fatal = exc
            logger.error("Build aborted: %s", exc)
        finally:
            self._set_state(BuildState.IDLE)
            result.elapsed = time.perf_counter() - start
        if result.fatal is None:
            logger.info(result.summary())
        return result

    def _full_build(self, result: BuildResult, clean: bool) -> None:
        result.incremental = False
        self._set_state(BuildState.SCANNING)
        paths = self.loader.iter_files()
        parsed = self._parse_many(paths)
        self.store.clear()
        plans = self._resolve_templates()
        self._check_collisions({p.path: p.output for p in parsed})

        self._set_state(BuildState.RENDERING)
        items = [p.item for p in parsed if p.item is not None]
        self.engine.set_pages(items)
        rendered = self._render_many(items, plans)

        if clean:
            ensure_clean_dir(self.config.output_root)
            for record in self.artifacts.values():
                record.content_hash = None

        previous_outputs = set(self.artifacts)
        self.items = {p.path: p.item for p in parsed if p.item is not None}
        self.failures = {p.path: p.failure for p in parsed if p.failure is not None}
        self.outputs = {p.output: p.path for p in parsed}
        self.plans = plans

        self.graph.clear()
        self._record_template_edges(self.store.names())
        for p in parsed:
            if p.failure is not None:
                self.graph.replace_dependencies(p.output, {p.path})
                result.failed.append(p.failure)

        self._set_state(BuildState.WRITING)
        self._commit(result, rendered)
        for output in sorted(previous_outputs - set(self.outputs)):
            self._remove_output(output, result)
        self._built = True

    def _incremental_build(self, result: BuildResult, changes: list[Change]) -> None:
        self._set_state(BuildState.INVALIDATING)
        content: list[Change] = []
        templates: list[tuple[Change, str]] = []
        assets: list[Change] = []
        for change in changes:
            category = self._classify(change.path)
            if category == "config":
                logger.info("Configuration changed; running a full build")
                self._full_build(result, False)
                return
            if category == "template":
                name = self.store.name_for(change.path)
                if change.kind is not ChangeKind.MODIFIED or name not in self.plans:
                    logger.info("Template %s was %s; running a full build", name, change.kind.value)
                    self._full_build(result, False)
                    return
                templates.append((change, name))
            elif category == "content":
                content.append(change)
            elif category == "asset":
                assets.append(change)

        # Structural checks first: nothing below may fail fatally once the
        # content set or the graph has been touched.
        if templates:
            for _, name in templates:
                self.store.reload(name)
            self.plans = self._resolve_templates()

        updated = [c for c in content if c.kind is not ChangeKind.DELETED]
        deleted = [c for c in content if c.kind is ChangeKind.DELETED]
        for change in content:
            self.parser.forget(change.path)
        parsed = self._parse_many([c.path for c in updated])
        proposed = {path: output for output, path in self.outputs.items()}
        for change in deleted:
            proposed.pop(change.path, None)
        for p in parsed:
            proposed[p.path] = p.output
        self._check_collisions(proposed)

        for change, name in templates:
            self._record_template_edges([name])
            self.graph.invalidate(change.path)
        for change in assets:
            self.graph.invalidate(change.path)

        removed_outputs: list[str] = []
        for change in deleted:
            output = self._forget_content(change.path)
            self.graph.remove_source(change.path)
            if output is not None:
                removed_outputs.append(output)

        for p in parsed:
            old_output = self._forget_content(p.path)
            if old_output is not None and old_output != p.output:
                removed_outputs.append(old_output)
            self.outputs[p.output] = p.path
            if p.item is not None:
                self.items[p.path] = p.item
            else:
                self.failures[p.path] = p.failure
                self.graph.replace_dependencies(p.output, {p.path})
                result.failed.append(p.failure)

        if content:
            # Listings render from the whole content set.
            self.graph.invalidate(self.config.content_root)
        stale = self.graph.take_stale() | {p.output for p in parsed}
        targets = sorted(
            output
            for output in stale
            if output in self.outputs and self.outputs[output] in self.items
        )
        logger.debug("Invalidated %d artifact(s): %s", len(targets), targets)

        self._set_state(BuildState.RENDERING)
        self.engine.set_pages(self.items.values())
        rendered = self._render_many(
            [self.items[self.outputs[output]] for output in targets], self.plans
        )

        self._set_state(BuildState.WRITING)
        self._commit(result, rendered)
        for output in sorted(set(removed_outputs)):
            if output not in self.outputs:
                self._remove_output(output, result)

    # -- stages ------------------------------------------------------------

    def _parse_many(self, paths: list[Path]) -> list[_Parsed]:
        return self._map(self._parse_one, paths)

    def _parse_one(self, path: Path) -> _Parsed:
        output = self.parser.output_for(path)
        try:
            item = self.parser.parse(path)
        except TesseraError as exc:
            if is_fatal(exc):
                raise
            logger.warning("Skipping %s: %s", path, exc.message)
            return _Parsed(path, output, failure=ArtifactFailure.from_error(output, exc))
        return _Parsed(path, output, item=item)

    def _resolve_templates(self) -> dict[str, ResolvedTemplate]:
        """Resolve and compile every template; any error here is build-fatal."""
        plans = self.store.resolve_all()
        for name, plan in plans.items():
            for group in plan.required:
                if not any(self.store.exists(reference) for reference in group):
                    raise TemplateNotFound(group[0], self.store.path_for(name))
            self.engine.compile(plan)
        return plans

    def _check_collisions(self, outputs_by_path: dict[Path, str]) -> None:
        claimed: dict[str, list[Path]] = {}
        for path, output in outputs_by_path.items():
            claimed.setdefault(output, []).append(path)
        for output, paths in sorted(claimed.items()):
            if len(paths) > 1:
                raise OutputCollision(output, sorted(paths))

    def _render_many(
        self, items: list[ContentItem], plans: dict[str, ResolvedTemplate]
    ) -> list[_Rendered]:
        return self._map(lambda item: self._render_one(item, plans), items)

    def _render_one(self, item: ContentItem, plans: dict[str, ResolvedTemplate]) -> _Rendered:
        dependencies: set[Path] = {item.source_path}
        try:
            plan = None
            if item.layout is not None:
                dependencies.add(self.store.path_for(item.layout))
                plan = plans.get(item.layout)
                if plan is None:
                    raise IOFailure(f"layout '{item.layout}' not found", item.source_path)
                dependencies.update(self._plan_dependencies(plan))
            outcome = self.engine.render_outcome(item, plan, self.config)
            dependencies.update(self.assets.source_path(name) for name in outcome.assets)
            for name in outcome.templates:
                dependencies.add(self.store.path_for(name))
                if self.store.is_cached(name):
                    dependencies.update(self._plan_dependencies(self.store.resolve(name)))
            if outcome.listing:
                dependencies.add(self.config.content_root)
        except TesseraError as exc:
            if is_fatal(exc):
                raise
            logger.warning("Failed to render %s: %s", item.source_path, exc.message)
            return _Rendered(
                item.output,
                item.source_path,
                frozenset(dependencies),
                failure=ArtifactFailure.from_error(item.output, exc),
            )
        return _Rendered(item.output, item.source_path, frozenset(dependencies), html=outcome.html)

    def _plan_dependencies(self, plan: ResolvedTemplate) -> set[Path]:
        paths = {self.store.path_for(name) for name in plan.chain}
        paths.update(self.store.path_for(name) for name in plan.references)
        paths.update(self.assets.source_path(name) for name in plan.assets)
        return paths

    def _record_template_edges(self, names: Iterable[str]) -> None:
        for name in names:
            node = self.store.load(name)
            edges = {self.store.path_for(ref) for ref in node.references}
            edges.update(self.assets.source_path(asset) for asset in node.assets)
            if node.parent is not None:
                edges.add(self.store.path_for(node.parent))
            self.graph.replace_edges(node.path, edges)

    def _commit(self, result: BuildResult, rendered: list[_Rendered]) -> None:
        for entry in sorted(rendered, key=lambda r: r.output):
            self.graph.replace_dependencies(entry.output, entry.dependencies)
            record = self.artifacts.get(entry.output)
            if record is None or record.source_path != entry.source_path:
                record = BuildArtifact(entry.output, entry.source_path)
                self.artifacts[entry.output] = record
            record.dependencies = entry.dependencies
            if entry.failure is not None:
                result.failed.append(entry.failure)
                continue
            try:
                written = self._write(record, entry.html)
            except IOFailure as exc:
                logger.warning("Could not write %s: %s", entry.output, exc.message)
                result.failed.append(ArtifactFailure.from_error(entry.output, exc))
                continue
            result.succeeded.append(entry.output)
            (result.written if written else result.unchanged).append(entry.output)

    def _write(self, record: BuildArtifact, html: bytes) -> bool:
        """Write an output unless its content is unchanged.

        Returns:
            True if the file was written.
        """
        digest = content_hash(html)
        target = self.config.output_root / record.output
        previous = record.content_hash
        if previous is None:
            previous = file_hash(target)
        if previous == digest:
            record.content_hash = digest
            return False
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tessera-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(html)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise IOFailure(f"cannot write output: {exc}", target) from exc
        record.content_hash = digest
        record.written_at = time.time()
        logger.debug("Wrote %s", record.output)
        return True

    def _remove_output(self, output: str, result: BuildResult) -> None:
        self.artifacts.pop(output, None)
        self.graph.remove_artifact(output)
        target = self.config.output_root / output
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove stale output %s: %s", target, exc)
            return
        root = self.config.output_root
        parent = target.parent
        while parent != root and relative_to(parent, root) is not None:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
        result.removed.append(output)

    def _forget_content(self, path: Path) -> str | None:
        """Drop a content file from the content set; return its old output."""
        self.items.pop(path, None)
        self.failures.pop(path, None)
        for output, source in list(self.outputs.items()):
            if source == path:
                del self.outputs[output]
                self.graph.remove_artifact(output)
                return output
        return None

    # -- helpers -----------------------------------------------------------

    def _map(self, fn, values: list):
        if not values:
            return []
        if self.config.workers == 1 or len(values) == 1:
            return [fn(value) for value in values]
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            return list(pool.map(fn, values))

    def _set_state(self, state: BuildState) -> None:
        if state is not self.state:
            logger.debug("Build state %s -> %s", self.state.value, state.value)
        self.state = state

    def _normalize(self, changes: Iterable[ChangeLike]) -> list[Change]:
        normalized: dict[Path, Change] = {}
        for change in changes:
            if isinstance(change, Change):
                path = Path(change.path).resolve()
                kind = change.kind
            else:
                path = Path(change).resolve()
                kind = self._infer_kind(path)
            normalized[path] = Change(kind, path)
        return list(normalized.values())

    def _infer_kind(self, path: Path) -> ChangeKind:
        if not path.exists():
            return ChangeKind.DELETED
        known = path in self.items or path in self.failures
        name = self.store.name_for(path)
        if known or (name is not None and name in self.plans):
            return ChangeKind.MODIFIED
        return ChangeKind.CREATED

    def _classify(self, path: Path) -> str:
        config = self.config
        if config.config_path is not None and path == config.config_path:
            return "config"
        if relative_to(path, config.output_root) is not None:
            return "ignored"
        if relative_to(path, config.template_root) is not None:
            return "template" if self.store.name_for(path) is not None else "ignored"
        if relative_to(path, config.content_root) is not None:
            if self.loader.accepts(path) or path in self.items or path in self.failures:
                return "content"
            return "ignored"
        if self.assets.name_for(path) is not None:
            return "asset"
        if self.graph.affected_artifacts(path):
            return "asset"
        return "ignored"


def build_all(config: BuildConfig, clean: bool = False) -> BuildResult:
    """Build every page of the site described by *config*."""
    return BuildScheduler(config).build_all(clean=clean)


def build_incremental(
    config: BuildConfig,
    changed_paths: Iterable[ChangeLike],
    scheduler: BuildScheduler | None = None,
) -> BuildResult:
    """Rebuild the pages affected by *changed_paths*.

    Args:
        config: Build configuration.
        changed_paths: Paths or Change records. Bare paths are classified as
            created, modified or deleted from the filesystem.
        scheduler: Scheduler holding the state of earlier builds. Without
            one, or with one that has not built yet, a full build runs.
    """
    if scheduler is None:
        scheduler = BuildScheduler(config)
    elif scheduler.config != config:
        scheduler.reconfigure(config)
    return scheduler.build_incremental(changed_paths)
