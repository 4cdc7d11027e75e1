"""Asset references for Tessera.

Copying assets into the output tree belongs to the asset pipeline, not to
the build core. The core only needs to know where a referenced asset lives
so the page that references it can be rebuilt when the asset changes, and
what URL the page should link to.

Key classes:
- AssetIndex: Maps asset names to source paths and public URLs.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from .config import BuildConfig
from .utils import relative_to


class AssetIndex:
    """Resolves asset names used in templates.

    Asset names are POSIX paths relative to the asset root, e.g.
    ``css/site.css``. Outputs mirror that layout under
    ``<output_root>/<asset_dir>/``.

    Attributes:
        config: Build configuration.
    """

    def __init__(self, config: BuildConfig):
        self.config = config

    def normalize(self, name: str) -> str:
        return PurePosixPath(name.lstrip("/")).as_posix()

    def source_path(self, name: str) -> Path:
        """Return the source file an asset name refers to (which may not exist)."""
        return self.config.asset_root / self.normalize(name)

    def exists(self, name: str) -> bool:
        return self.source_path(name).is_file()

    def url(self, name: str) -> str:
        prefix = PurePosixPath(self.config.asset_dir).as_posix().strip("/")
        return self.config.url_for(f"/{prefix}/{self.normalize(name)}")

    def name_for(self, path: Path) -> str | None:
        rel = relative_to(path, self.config.asset_root)
        return rel.as_posix() if rel is not None else None
