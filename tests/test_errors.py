from pathlib import Path

import pytest

from tessera.errors import (
    ConfigError,
    IOFailure,
    MalformedFrontMatter,
    MalformedTemplate,
    MissingVariable,
    OutputCollision,
    RenderError,
    TemplateCycle,
    TemplateNotFound,
    TesseraError,
    TypeMismatch,
    UnresolvedBlock,
    is_fatal,
)


def test_message_is_prefixed_with_source_path():
    exc = MalformedFrontMatter("bad yaml", Path("content/a.md"))
    assert str(exc) == "content/a.md: bad yaml"
    assert exc.message == "bad yaml"
    assert exc.kind == "MalformedFrontMatter"


@pytest.mark.parametrize(
    "exc, fatal",
    [
        (MalformedFrontMatter("x"), False),
        (TypeMismatch("title", "text", "number"), False),
        (MissingVariable("x"), False),
        (RenderError("x"), False),
        (IOFailure("x"), False),
        (IOFailure("x", fatal=True), True),
        (TemplateNotFound("base.html"), True),
        (TemplateCycle(["a", "b", "a"]), True),
        (UnresolvedBlock("a", "b", ["a"]), True),
        (MalformedTemplate("x"), True),
        (OutputCollision("a.html", [Path("a.md"), Path("a.html")]), True),
        (ConfigError("x"), True),
    ],
)
def test_fatal_split(exc, fatal):
    assert isinstance(exc, TesseraError)
    assert is_fatal(exc) is fatal


def test_template_not_found_is_an_io_failure():
    exc = TemplateNotFound("base.html")
    assert isinstance(exc, IOFailure)
    assert exc.kind == "IOFailure"
    assert "base.html" in str(exc)


def test_unrelated_exceptions_are_not_fatal():
    assert not is_fatal(ValueError("x"))
