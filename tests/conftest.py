import logging
from pathlib import Path

import pytest

from tessera.config import BuildConfig

DEFAULT_LAYOUT = "<title>{{ title }}</title>\n<main>{{ content }}</main>\n"


class SiteFactory:
    """Writes a throwaway site tree under a temporary directory."""

    def __init__(self, root: Path):
        self.root = root

    def write(self, rel: str, text: str) -> Path:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def page(self, name: str, body: str = "", **front_matter) -> Path:
        lines = [f"{key}: {value}" for key, value in front_matter.items()]
        header = "---\n" + "".join(line + "\n" for line in lines) + "---\n" if lines else ""
        return self.write(f"content/{name}", header + body)

    def template(self, name: str, source: str) -> Path:
        return self.write(f"templates/{name}", source)

    def config(self, **overrides) -> BuildConfig:
        overrides.setdefault("workers", 2)
        return BuildConfig(source_root=self.root, output_root=self.root / "output", **overrides)

    @property
    def output_root(self) -> Path:
        return self.root / "output"

    def output(self, rel: str) -> str:
        return (self.output_root / rel).read_text(encoding="utf-8")

    def outputs(self) -> dict[str, bytes]:
        if not self.output_root.exists():
            return {}
        return {
            path.relative_to(self.output_root).as_posix(): path.read_bytes()
            for path in sorted(self.output_root.rglob("*"))
            if path.is_file()
        }


@pytest.fixture
def site(tmp_path):
    factory = SiteFactory(tmp_path.resolve())
    factory.template("default.html", DEFAULT_LAYOUT)
    return factory


@pytest.fixture(autouse=True)
def reset_tessera_logger():
    yield
    logger = logging.getLogger("tessera")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
