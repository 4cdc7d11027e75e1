"""Error taxonomy for Tessera builds.

Every error carries the source path it is about and a short ``kind`` string
that build summaries report per failure. The ``fatal`` class attribute splits
the taxonomy in two:

- Page-local errors (``fatal = False``) mark one artifact as failed and let
  the rest of the build proceed.
- Build-fatal errors (``fatal = True``) mean the site cannot be resolved
  consistently; the build aborts before any output is written.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class TesseraError(Exception):
    """Base class for all build errors.

    Attributes:
        source_path: Path to the source file that caused the error, if known.
        message: Human-readable error message.
    """

    kind = "error"
    fatal = False

    def __init__(self, message: str, source_path: Path | None = None):
        self.message = message
        self.source_path = source_path
        prefix = f"{source_path}: " if source_path is not None else ""
        super().__init__(f"{prefix}{message}")


class MalformedFrontMatter(TesseraError):
    """Front matter was opened but not closed, or is not valid YAML mapping data."""

    kind = "MalformedFrontMatter"


class TypeMismatch(TesseraError):
    """A front-matter value has a different variant than the lookup expected."""

    kind = "TypeMismatch"

    def __init__(
        self,
        key: str,
        expected: str,
        actual: str,
        source_path: Path | None = None,
    ):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"front matter key '{key}' must be {expected}, got {actual}", source_path
        )


class MissingVariable(TesseraError):
    """A template referenced a variable with no default and no matching key."""

    kind = "MissingVariable"


class RenderError(TesseraError):
    """A template failed at render time for a reason other than a missing variable."""

    kind = "RenderError"


class IOFailure(TesseraError):
    """A source file could not be read or an output file could not be written.

    Failures on content files and outputs are page-local; pass ``fatal=True``
    for template files, which every page may depend on.
    """

    kind = "IOFailure"

    def __init__(
        self, message: str, source_path: Path | None = None, fatal: bool | None = None
    ):
        super().__init__(message, source_path)
        if fatal is not None:
            self.fatal = fatal


class TemplateNotFound(IOFailure):
    """A template name does not map to a readable file in the template root."""

    fatal = True

    def __init__(self, name: str, source_path: Path | None = None):
        self.name = name
        super().__init__(f"template '{name}' not found", source_path)


class TemplateCycle(TesseraError):
    """Template inheritance loops back on itself."""

    kind = "TemplateCycle"
    fatal = True

    def __init__(self, chain: Sequence[str], source_path: Path | None = None):
        self.chain = tuple(chain)
        super().__init__(
            "template inheritance cycle: " + " -> ".join(self.chain), source_path
        )


class UnresolvedBlock(TesseraError):
    """A block is referenced by a template chain but defined nowhere in it."""

    kind = "UnresolvedBlock"
    fatal = True

    def __init__(
        self,
        template: str,
        block: str,
        chain: Sequence[str],
        source_path: Path | None = None,
    ):
        self.template = template
        self.block = block
        self.chain = tuple(chain)
        super().__init__(
            f"block '{block}' used by template '{template}' is not defined in "
            f"chain {' -> '.join(self.chain)}",
            source_path,
        )


class MalformedTemplate(TesseraError):
    """A template has invalid block structure or Jinja2 syntax."""

    kind = "MalformedTemplate"
    fatal = True


class OutputCollision(TesseraError):
    """Two content files route to the same output path."""

    kind = "OutputCollision"
    fatal = True

    def __init__(self, artifact: str, sources: Sequence[Path]):
        self.artifact = artifact
        self.sources = tuple(sources)
        joined = ", ".join(str(p) for p in self.sources)
        super().__init__(f"output '{artifact}' is produced by more than one source: {joined}")


class ConfigError(TesseraError):
    """The build configuration is unusable."""

    kind = "ConfigError"
    fatal = True


def is_fatal(exc: BaseException) -> bool:
    """Return True if *exc* must abort the whole build."""
    return bool(getattr(exc, "fatal", False))
