import pytest
from markupsafe import Markup

from tessera.assets import AssetIndex
from tessera.content import ContentParser
from tessera.errors import MalformedTemplate, MissingVariable, RenderError, TypeMismatch, is_fatal
from tessera.render import RenderEngine, format_date
from tessera.templates import TemplateStore


@pytest.fixture
def engine_for(site):
    def make(**config_overrides):
        config = site.config(**config_overrides)
        store = TemplateStore(config.template_root)
        return config, store, RenderEngine(store, config)

    return make


def render_page(site, engine_for, page_name, layout, **config_overrides):
    config, store, engine = engine_for(**config_overrides)
    item = ContentParser(config).parse(site.root / "content" / page_name)
    return engine.render(item, store.resolve(layout) if layout else None, config)


def test_render_into_resolved_template(site, engine_for):
    site.template("base.html", "<h1>{% block title %}{{ title }}{% endblock %}</h1>{% block body %}{% endblock %}")
    site.template(
        "post.html",
        '{% extends "base.html" %}{% block body %}<p>{{ author }} / {{ site.name }} / {{ page.url }}</p>{{ content }}{% endblock %}',
    )
    site.page("hello.md", "Some *text*", title="Hello", author="Ann")

    html = render_page(site, engine_for, "hello.md", "post.html", variables={"name": "Docs"})
    assert html == (
        b"<h1>Hello</h1><p>Ann / Docs / /hello.html</p><p>Some <em>text</em></p>\n"
    )


def test_front_matter_values_are_escaped(site, engine_for):
    site.page("x.md", "body", title='"<b>Bold</b>"')
    html = render_page(site, engine_for, "x.md", "default.html")
    assert b"<title>&lt;b&gt;Bold&lt;/b&gt;</title>" in html


def test_site_variables_are_overridden_by_front_matter(site, engine_for):
    site.template("t.html", "{{ lang }}|{{ site.lang }}")
    site.page("x.md", "", lang="de")
    html = render_page(site, engine_for, "x.md", "t.html", variables={"lang": "en"})
    assert html == b"de|en\n"


def test_missing_variable_is_page_local(site, engine_for):
    site.template("t.html", "{{ author }}")
    site.page("x.md", "body")
    with pytest.raises(MissingVariable) as excinfo:
        render_page(site, engine_for, "x.md", "t.html")
    assert not is_fatal(excinfo.value)
    assert excinfo.value.source_path == site.root / "content" / "x.md"


def test_default_filter_supplies_missing_values(site, engine_for):
    site.template("t.html", "{{ author | default('anon') }}")
    site.page("x.md", "body")
    assert render_page(site, engine_for, "x.md", "t.html") == b"anon\n"


def test_title_must_be_text(site, engine_for):
    site.page("x.md", "body", title=12)
    with pytest.raises(TypeMismatch):
        render_page(site, engine_for, "x.md", "default.html")


def test_render_without_layout_emits_body(site, engine_for):
    site.page("x.md", "# Hi", layout="false")
    assert render_page(site, engine_for, "x.md", None) == b'<h1 id="hi">Hi</h1>\n'


def test_includes_go_through_the_store(site, engine_for):
    site.template("partials/nav.html", "<nav>{{ page.url }}</nav>")
    site.template("t.html", '{% include "partials/nav.html" %}{{ content }}')
    site.page("index.md", "Home")
    assert render_page(site, engine_for, "index.md", "t.html") == b"<nav>/</nav><p>Home</p>\n"


def test_asset_helper_reports_assets(site, engine_for):
    site.write("assets/css/site.css", "body {}")
    site.template("t.html", '<link href="{{ asset("css/site.css") }}">')
    site.page("x.md", "")
    config, store, engine = engine_for(base_url="https://cdn.example.com")
    item = ContentParser(config).parse(site.root / "content" / "x.md")
    outcome = engine.render_outcome(item, store.resolve("t.html"), config)
    assert outcome.html == b'<link href="https://cdn.example.com/assets/css/site.css">\n'
    assert outcome.assets == ("css/site.css",)


def test_context_binds_config_and_content(site, engine_for):
    site.page("x.md", "hi", title="T")
    config, store, engine = engine_for(environment="production")
    item = ContentParser(config).parse(site.root / "content" / "x.md")
    context = engine.context_for(item, config)
    assert context["config"] == {
        "environment": "production",
        "base_url": "",
        "build_revision": "",
    }
    assert isinstance(context["content"], Markup)
    assert context["page"]["title"] == "T"


def test_reserved_names_are_not_shadowed(site, engine_for):
    site.template("t.html", "{{ content }}")
    site.page("x.md", "real body", content="fake")
    assert render_page(site, engine_for, "x.md", "t.html") == b"<p>real body</p>\n"


def test_syntax_errors_are_malformed_templates(site, engine_for):
    site.template("t.html", "{{ broken ")
    site.page("x.md", "")
    with pytest.raises(MalformedTemplate):
        render_page(site, engine_for, "x.md", "t.html")


def test_rendering_is_deterministic(site, engine_for):
    site.page("x.md", "# A\n\n```python\nx = 1\n```\n", title="A")
    first = render_page(site, engine_for, "x.md", "default.html")
    second = render_page(site, engine_for, "x.md", "default.html")
    assert first == second


def test_asset_index_paths(site):
    assets = AssetIndex(site.config())
    assert assets.source_path("/css/a.css") == site.root / "assets" / "css" / "a.css"
    assert assets.url("css/a.css") == "/assets/css/a.css"
    assert assets.name_for(site.root / "assets" / "img" / "x.png") == "img/x.png"


def test_block_whitespace_control_survives_flattening(site, engine_for):
    site.template("base.html", "[ {%- block body %}{% endblock -%} ]")
    site.template("child.html", '{% extends "base.html" %}{% block body -%}  {{ content }}  {%- endblock %}')
    site.page("x.md", "Hi")
    assert render_page(site, engine_for, "x.md", "child.html") == b"[<p>Hi</p>\n]\n"


def test_child_imports_and_sets_reach_the_layout(site, engine_for):
    site.template("macros.html", "{% macro hi(name) %}Hi {{ name }}{% endmacro %}")
    site.template("base.html", "<main>{% block body %}{% endblock %}</main>")
    site.template(
        "child.html",
        '{% extends "base.html" %}{% import "macros.html" as m %}{% set active = "x" %}'
        "{% block body %}{{ m.hi(title) }} {{ active }}{% endblock %}",
    )
    site.page("x.md", "", title="T")
    assert render_page(site, engine_for, "x.md", "child.html") == b"<main>Hi T x</main>\n"


def test_runtime_includes_are_logged(site, engine_for):
    site.template("partials/a.html", "A1")
    site.template("dyn.html", "{% include partial %}|{{ content }}")
    site.page("x.md", "body", partial="partials/a.html")
    config, store, engine = engine_for()
    item = ContentParser(config).parse(site.root / "content" / "x.md")
    outcome = engine.render_outcome(item, store.resolve("dyn.html"), config)
    assert outcome.html == b"A1|<p>body</p>\n"
    assert outcome.templates == ("partials/a.html",)
    assert not outcome.listing


def test_include_ignore_missing_renders_without_the_partial(site, engine_for):
    site.template("t.html", '{% include "nope.html" ignore missing %}{{ content }}')
    site.page("x.md", "body")
    config, store, engine = engine_for()
    item = ContentParser(config).parse(site.root / "content" / "x.md")
    outcome = engine.render_outcome(item, store.resolve("t.html"), config)
    assert outcome.html == b"<p>body</p>\n"
    assert outcome.templates == ("nope.html",)


def test_list_include_uses_first_existing_template(site, engine_for):
    site.template("b.html", "B")
    site.template("t.html", '{% include ["a.html", "b.html"] %}')
    site.page("x.md", "")
    assert render_page(site, engine_for, "x.md", "t.html") == b"B\n"


def test_missing_dynamic_include_fails_the_page(site, engine_for):
    site.template("t.html", "{% include partial %}")
    site.page("x.md", "", partial="gone.html")
    with pytest.raises(RenderError) as excinfo:
        render_page(site, engine_for, "x.md", "t.html")
    assert not is_fatal(excinfo.value)


def test_pages_listing(site, engine_for):
    site.page("blog/2024-01-02-b.md", "", title="B", date="2024-01-02")
    site.page("blog/2024-03-01-c.md", "", title="C", date="2024-03-01", tags="[news]")
    site.page("blog/drafts/d.md", "", title="D")
    site.page("about.md", "", title="About")
    site.template(
        "list.html",
        "{% for p in pages.in_folder('blog').sorted() %}{{ p.title }}:{{ p.date | default('-') }} {% endfor %}"
        "|{{ pages.in_folder('blog', recursive=False) | length }}"
        "|{% for p in pages.with_tag('news') %}{{ p.url }}{% endfor %}"
        "|{{ pages.latest(1)[0].title }}",
    )
    config, store, engine = engine_for()
    parser = ContentParser(config)
    items = [parser.parse(path) for path in sorted((site.root / "content").rglob("*.md"))]
    engine.set_pages(items)
    item = next(i for i in items if i.rel_path.name == "about.md")
    outcome = engine.render_outcome(item, store.resolve("list.html"), config)
    assert outcome.html == b"C:2024-03-01 B:2024-01-02 D:- |2|/blog/2024-03-01-c.html|C\n"
    assert outcome.listing


def test_pages_entries_carry_folder(site, engine_for):
    site.page("docs/guide/intro.md", "", title="Intro")
    site.page("index.md", "", title="Home")
    config, store, engine = engine_for()
    parser = ContentParser(config)
    engine.set_pages(parser.parse(path) for path in sorted((site.root / "content").rglob("*.md")))
    assert [(p["folder"], p["title"]) for p in engine.pages] == [("docs/guide", "Intro"), ("", "Home")]
    assert len(engine.pages.in_folder("docs")) == 1
    assert len(engine.pages.in_folder("")) == 2
    assert len(engine.pages.in_folder("", recursive=False)) == 1


def test_pages_is_reserved(site, engine_for):
    site.template("t.html", "{{ pages | length }}")
    site.page("x.md", "", pages="7")
    assert render_page(site, engine_for, "x.md", "t.html") == b"0\n"


@pytest.mark.parametrize(
    "value, fmt, expected",
    [
        ("2024-01-15", "%d %b %Y", "15 Jan 2024"),
        ("2024-01-15T08:30:00", "%H:%M", "08:30"),
        ("soon", "%Y", "soon"),
        (3, "%Y", 3),
    ],
)
def test_format_date(value, fmt, expected):
    assert format_date(value, fmt) == expected


def test_date_filter_and_url_helpers(site, engine_for):
    site.template(
        "t.html",
        "{{ page.date | date('%B %Y') }} {{ relative_url('/a/') }} {{ url_for('b') }} [{{ config.build_revision }}]",
    )
    site.page("x.md", "", date="2024-02-03")
    html = render_page(site, engine_for, "x.md", "t.html", base_url="https://example.com/docs/")
    assert html == b"February 2024 https://example.com/docs/a/ https://example.com/docs/b []\n"
