from datetime import date
from pathlib import Path

import pytest

from tessera.errors import MalformedFrontMatter, TypeMismatch
from tessera.extractors import (
    CompositeMetadataExtractor,
    LayoutExtractor,
    TitleExtractor,
    default_metadata_extractor,
    parse_content,
    split_frontmatter,
)
from tessera.values import Flag, FrontMatter, Items, Number, Table, Text, to_value


def test_to_value_maps_yaml_types_to_variants():
    assert to_value(True) == Flag(True)
    assert to_value(3) == Number(3)
    assert to_value(2.5) == Number(2.5)
    assert to_value("hi") == Text("hi")
    assert to_value(None) == Text("")
    assert to_value(date(2024, 1, 15)) == Text("2024-01-15")
    assert to_value([1, "a"]) == Items((Number(1), Text("a")))
    assert to_value({"k": False}) == Table((("k", Flag(False)),))


def test_unwrap_returns_plain_values():
    value = to_value({"tags": ["a", "b"], "draft": False, "n": 1})
    assert value.unwrap() == {"tags": ["a", "b"], "draft": False, "n": 1}


def test_to_value_rejects_unsupported_objects():
    with pytest.raises(MalformedFrontMatter):
        to_value(object(), Path("x.md"), "weird")


def test_expect_returns_value_or_none():
    fm = FrontMatter.from_yaml({"title": "Hello"})
    assert fm.expect("title", Text) == Text("Hello")
    assert fm.expect("missing", Text) is None


def test_expect_raises_type_mismatch():
    fm = FrontMatter.from_yaml({"title": 42})
    with pytest.raises(TypeMismatch) as excinfo:
        fm.expect("title", Text, Path("post.md"))
    assert excinfo.value.key == "title"
    assert excinfo.value.expected == "text"
    assert excinfo.value.actual == "number"
    assert not excinfo.value.fatal


def test_front_matter_keeps_key_order():
    fm = FrontMatter.from_yaml({"b": 1, "a": 2})
    assert list(fm) == ["b", "a"]


def test_front_matter_rejects_non_string_keys():
    with pytest.raises(MalformedFrontMatter):
        FrontMatter.from_yaml({1: "x"})


def test_split_frontmatter_unmarked_file():
    assert split_frontmatter("# Hi\n") == (None, "# Hi\n")


def test_split_frontmatter_accepts_dot_closing_fence():
    header, body = split_frontmatter("---\ntitle: A\n...\nBody\n")
    assert header == "title: A\n"
    assert body == "Body\n"


def test_split_frontmatter_unclosed_fence():
    with pytest.raises(MalformedFrontMatter, match="never closed"):
        split_frontmatter("---\ntitle: A\nBody\n", Path("a.md"))


def test_parse_content_reads_yaml():
    parsed = parse_content(b"---\ntitle: Hello\ntags: [a, b]\n---\nBody\n", Path("a.md"))
    assert parsed.front_matter["title"] == Text("Hello")
    assert parsed.front_matter["tags"] == Items((Text("a"), Text("b")))
    assert parsed.body == "Body\n"


def test_parse_content_strips_bom():
    parsed = parse_content("\ufeff---\ntitle: Hi\n---\nx".encode("utf-8"), Path("a.md"))
    assert parsed.front_matter["title"] == Text("Hi")


def test_parse_content_without_front_matter_is_empty():
    parsed = parse_content(b"Just text", Path("a.md"))
    assert len(parsed.front_matter) == 0
    assert parsed.body == "Just text"


@pytest.mark.parametrize(
    "data",
    [
        b"---\ntitle: [unclosed\n---\nBody",
        b"---\n- a\n- b\n---\nBody",
        b"---\ntitle: x\n",
        b"\xff\xfe not utf-8",
    ],
)
def test_parse_content_malformed(data):
    with pytest.raises(MalformedFrontMatter) as excinfo:
        parse_content(data, Path("bad.md"))
    assert excinfo.value.source_path == Path("bad.md")
    assert not excinfo.value.fatal


def test_title_extractor_prefers_first_heading():
    fm = FrontMatter()
    assert TitleExtractor().extract(fm, "intro\n# Main Title\n## Sub", Path("x.md")) == {
        "title": Text("Main Title")
    }


def test_title_extractor_falls_back_to_filename():
    result = TitleExtractor().extract(FrontMatter(), "no heading", Path("2024-01-15-hello-world.md"))
    assert result == {"title": Text("Hello World")}


def test_composite_extractor_never_overrides_explicit_values():
    parsed = parse_content(b"---\ntitle: Explicit\n---\n# Heading\n", Path("a.md"))
    result = default_metadata_extractor("default.html").apply(parsed, Path("a.md"))
    assert result.front_matter["title"] == Text("Explicit")
    assert result.front_matter["layout"] == Text("default.html")


def test_composite_extractor_later_extractors_win():
    composite = CompositeMetadataExtractor([LayoutExtractor("a.html")])
    composite.add_extractor(LayoutExtractor("b.html"))
    parsed = parse_content(b"body", Path("a.md"))
    assert composite.apply(parsed, Path("a.md")).front_matter["layout"] == Text("b.html")
