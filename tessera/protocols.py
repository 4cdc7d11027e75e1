"""Protocol definitions for Tessera.

These protocols let the content pipeline accept alternative renderers and
metadata extractors without changing the parser or the build scheduler.
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .values import FrontMatter, Value


@runtime_checkable
class ContentRenderer(Protocol):
    """Protocol for turning a content body into an HTML fragment.

    Implementations must be deterministic: the same body always renders to
    byte-identical output, since unchanged pages are detected by hash.
    """

    @abstractmethod
    def can_render(self, path: Path) -> bool:
        """Check if this renderer can handle the given file."""
        ...

    @abstractmethod
    def render(self, body: str) -> str:
        """Render body text to an HTML fragment."""
        ...

    @property
    @abstractmethod
    def source_type(self) -> str:
        """Return the source type identifier (e.g., 'markdown', 'html')."""
        ...


@runtime_checkable
class MetadataExtractor(Protocol):
    """Protocol for deriving default front-matter values.

    Returned values only fill keys the author did not set explicitly.
    """

    @abstractmethod
    def extract(
        self, front_matter: FrontMatter, body: str, path: Path
    ) -> dict[str, Value]:
        """Return default values for missing front-matter keys."""
        ...
