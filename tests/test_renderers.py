from pathlib import Path

import mistune

from tessera.protocols import ContentRenderer
from tessera.renderers import HTMLRenderer, MarkdownRenderer, RendererRegistry


def test_markdown_heading_ids_are_unique():
    html = MarkdownRenderer().render("# Intro\n\n## Intro\n\n## Intro\n")
    assert '<h1 id="intro">Intro</h1>' in html
    assert '<h2 id="intro-1">Intro</h2>' in html
    assert '<h2 id="intro-2">Intro</h2>' in html


def test_heading_ids_reset_between_renders():
    renderer = MarkdownRenderer()
    renderer.render("# Intro")
    assert '<h1 id="intro">' in renderer.render("# Intro")


def test_code_blocks_are_highlighted():
    html = MarkdownRenderer().render("```python\nprint('hi')\n```\n")
    assert 'class="highlight"' in html
    assert "print" in html


def test_unknown_language_falls_back_to_plain_block():
    html = MarkdownRenderer().render("```nosuchlang\na < b\n```\n")
    assert '<pre><code class="language-nosuchlang">a &lt; b' in html


def test_plugins_enabled():
    html = MarkdownRenderer().render("~~gone~~\n\n| a | b |\n|---|---|\n| 1 | 2 |\n")
    assert "<del>gone</del>" in html
    assert "<table>" in html


def test_root_relative_links_use_url_for():
    renderer = MarkdownRenderer(lambda url: "https://example.com" + url)
    html = renderer.render("[About](/about/) [Ext](https://other.org/) ![Logo](/img/logo.png)")
    assert 'href="https://example.com/about/"' in html
    assert 'href="https://other.org/"' in html
    assert 'src="https://example.com/img/logo.png"' in html


def test_markdown_is_deterministic():
    body = "# Title\n\nSome *text* with `code`.\n\n```python\nx = 1\n```\n"
    renderer = MarkdownRenderer()
    assert renderer.render(body) == renderer.render(body)


def test_markdown_failure_degrades_to_literal(monkeypatch):
    def broken(**kwargs):
        def render(body):
            raise RuntimeError("boom")

        return render

    monkeypatch.setattr(mistune, "create_markdown", broken)
    html = MarkdownRenderer().render("<b>x</b> & y")
    assert html == "<pre>&lt;b&gt;x&lt;/b&gt; &amp; y</pre>\n"


def test_html_renderer_passthrough():
    renderer = HTMLRenderer()
    assert renderer.can_render(Path("page.html"))
    assert not renderer.can_render(Path("page.md"))
    assert renderer.render("<p>x</p>") == "<p>x</p>"


def test_registry_picks_first_matching_renderer():
    registry = RendererRegistry()
    assert registry.get_renderer(Path("a.md")).source_type == "markdown"
    assert registry.get_renderer(Path("a.HTML")).source_type == "html"
    assert registry.get_renderer(Path("a.txt")) is None


def test_custom_renderer_registration():
    class TextRenderer:
        source_type = "text"

        def can_render(self, path):
            return path.suffix == ".txt"

        def render(self, body):
            return f"<pre>{body}</pre>"

    registry = RendererRegistry([])
    registry.register(TextRenderer())
    assert registry.get_renderer(Path("a.txt")).render("x") == "<pre>x</pre>"
    assert isinstance(MarkdownRenderer(), ContentRenderer)
