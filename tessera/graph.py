"""Dependency graph for incremental builds.

The graph is bipartite between source paths and artifacts (output paths),
indexed in both directions, plus source-to-source edges for template
inheritance, includes and asset references. A change to a source
invalidates:

- every artifact that recorded the source directly, and
- every artifact of every source that depends on it, transitively, so
  editing a base layout reaches pages whose layout only extends it.

Dependency sets may over-approximate; they never under-approximate.
All mutations are serialized behind one lock.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Hashable, Iterable

Source = Hashable
Artifact = str


class DependencyGraph:
    """Bipartite source/artifact index with transitive source edges."""

    def __init__(self):
        self._artifacts_by_source: dict[Source, set[Artifact]] = {}
        self._sources_by_artifact: dict[Artifact, set[Source]] = {}
        # dependency -> sources that depend on it, and the inverse
        self._dependents: dict[Source, set[Source]] = {}
        self._dependencies: dict[Source, set[Source]] = {}
        self._stale: set[Artifact] = set()
        self._lock = threading.RLock()

    # -- mutations ---------------------------------------------------------

    def record_dependency(self, artifact: Artifact, source: Source) -> None:
        """Record that *artifact* depends on *source*. Idempotent."""
        with self._lock:
            self._artifacts_by_source.setdefault(source, set()).add(artifact)
            self._sources_by_artifact.setdefault(artifact, set()).add(source)

    def record_edge(self, dependent: Source, dependency: Source) -> None:
        """Record that source *dependent* depends on source *dependency*."""
        if dependent == dependency:
            return
        with self._lock:
            self._dependents.setdefault(dependency, set()).add(dependent)
            self._dependencies.setdefault(dependent, set()).add(dependency)

    def replace_dependencies(self, artifact: Artifact, sources: Iterable[Source]) -> None:
        """Swap the full dependency set of *artifact* in one step."""
        sources = set(sources)
        with self._lock:
            self._drop_artifact_edges(artifact)
            self._sources_by_artifact[artifact] = set()
            for source in sources:
                self.record_dependency(artifact, source)

    def replace_edges(self, dependent: Source, dependencies: Iterable[Source]) -> None:
        """Swap the outgoing source edges of *dependent* in one step."""
        dependencies = set(dependencies)
        with self._lock:
            self._drop_outgoing_edges(dependent)
            for dependency in dependencies:
                self.record_edge(dependent, dependency)

    def invalidate(self, source: Source) -> set[Artifact]:
        """Mark every artifact affected by *source* as stale and return them."""
        with self._lock:
            affected = self.affected_artifacts(source)
            self._stale |= affected
            return affected

    def take_stale(self) -> set[Artifact]:
        """Return and clear the set of artifacts marked stale."""
        with self._lock:
            stale, self._stale = self._stale, set()
            return stale

    def remove_source(self, source: Source) -> set[Artifact]:
        """Forget a deleted source and return the artifacts it affected."""
        with self._lock:
            affected = self.affected_artifacts(source)
            for artifact in self._artifacts_by_source.pop(source, set()):
                self._sources_by_artifact.get(artifact, set()).discard(source)
            self._drop_outgoing_edges(source)
            for dependent in self._dependents.pop(source, set()):
                self._dependencies.get(dependent, set()).discard(source)
            return affected

    def remove_artifact(self, artifact: Artifact) -> None:
        with self._lock:
            self._drop_artifact_edges(artifact)
            self._sources_by_artifact.pop(artifact, None)
            self._stale.discard(artifact)

    def clear(self) -> None:
        with self._lock:
            self._artifacts_by_source.clear()
            self._sources_by_artifact.clear()
            self._dependents.clear()
            self._dependencies.clear()
            self._stale.clear()

    # -- queries -----------------------------------------------------------

    def affected_artifacts(self, source: Source) -> set[Artifact]:
        """Return every artifact that depends on *source*, transitively."""
        with self._lock:
            affected: set[Artifact] = set()
            seen = {source}
            queue = deque([source])
            while queue:
                current = queue.popleft()
                affected |= self._artifacts_by_source.get(current, set())
                for dependent in self._dependents.get(current, ()):
                    if dependent not in seen:
                        seen.add(dependent)
                        queue.append(dependent)
            return affected

    def dependencies_of(self, artifact: Artifact) -> frozenset[Source]:
        with self._lock:
            return frozenset(self._sources_by_artifact.get(artifact, ()))

    def dependents_of(self, source: Source) -> frozenset[Artifact]:
        """Return artifacts that recorded *source* directly."""
        with self._lock:
            return frozenset(self._artifacts_by_source.get(source, ()))

    def edges_of(self, dependent: Source) -> frozenset[Source]:
        with self._lock:
            return frozenset(self._dependencies.get(dependent, ()))

    def artifacts(self) -> frozenset[Artifact]:
        with self._lock:
            return frozenset(self._sources_by_artifact)

    def sources(self) -> frozenset[Source]:
        with self._lock:
            return frozenset(
                key for key, value in self._artifacts_by_source.items() if value
            ) | frozenset(key for key, value in self._dependencies.items() if value)

    def __contains__(self, artifact: object) -> bool:
        with self._lock:
            return artifact in self._sources_by_artifact

    def is_consistent(self) -> bool:
        """Check that every edge is indexed in both directions."""
        with self._lock:
            for source, artifacts in self._artifacts_by_source.items():
                for artifact in artifacts:
                    if source not in self._sources_by_artifact.get(artifact, ()):
                        return False
            for artifact, sources in self._sources_by_artifact.items():
                for source in sources:
                    if artifact not in self._artifacts_by_source.get(source, ()):
                        return False
            for dependency, dependents in self._dependents.items():
                for dependent in dependents:
                    if dependency not in self._dependencies.get(dependent, ()):
                        return False
            for dependent, dependencies in self._dependencies.items():
                for dependency in dependencies:
                    if dependent not in self._dependents.get(dependency, ()):
                        return False
            return True

    # -- internals ---------------------------------------------------------

    def _drop_artifact_edges(self, artifact: Artifact) -> None:
        for source in self._sources_by_artifact.get(artifact, set()):
            artifacts = self._artifacts_by_source.get(source)
            if artifacts is not None:
                artifacts.discard(artifact)
                if not artifacts:
                    del self._artifacts_by_source[source]

    def _drop_outgoing_edges(self, dependent: Source) -> None:
        for dependency in self._dependencies.pop(dependent, set()):
            dependents = self._dependents.get(dependency)
            if dependents is not None:
                dependents.discard(dependent)
                if not dependents:
                    del self._dependents[dependency]
