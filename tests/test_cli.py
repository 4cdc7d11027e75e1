import logging

from click.testing import CliRunner

from tessera import __version__
from tessera import cli as cli_module
from tessera.cli import cli
from tessera.logging import configure_logging, get_logger


def invoke(site, *args):
    runner = CliRunner()
    return runner.invoke(cli, ["--config", str(site.root / "tessera.yaml"), *args])


def test_build_command(site):
    site.write("tessera.yaml", "variables:\n  name: Docs\n")
    site.page("index.md", "# Home")
    result = invoke(site, "build")
    assert result.exit_code == 0, result.output
    assert "Built 1 page into" in result.output
    assert "<h1 id=\"home\">Home</h1>" in site.output("index.html")


def test_build_reports_partial_failure(site):
    site.write("tessera.yaml", "")
    site.page("good.md", "ok")
    site.write("content/bad.md", "---\ntitle: [\n---\n")
    result = invoke(site, "build")
    assert result.exit_code == 1
    assert "MalformedFrontMatter" in result.output
    assert "content/bad.md" in result.output
    assert "1 failed" in result.output


def test_build_reports_fatal_error(site):
    site.write("tessera.yaml", "")
    site.template("a.html", '{% extends "a.html" %}')
    site.page("index.md", "x")
    result = invoke(site, "build")
    assert result.exit_code == 2
    assert "Build failed:" in result.output
    assert "TemplateCycle" in result.output
    assert not (site.output_root / "index.html").exists()


def test_build_with_env_and_clean(site):
    site.write("tessera.yaml", "output_dir: 'out/{variant}'\n")
    site.page("index.md", "x")
    site.write("out/prod/old.html", "old")
    result = invoke(site, "build", "--env", "prod", "--clean")
    assert result.exit_code == 0, result.output
    assert (site.root / "out" / "prod" / "index.html").exists()
    assert not (site.root / "out" / "prod" / "old.html").exists()


def test_configuration_error(site):
    site.write("tessera.yaml", "routes: nope\n")
    result = invoke(site, "build")
    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_watch_command(site, monkeypatch):
    site.write("tessera.yaml", "")
    calls = {}

    class FakeHandle:
        running = False

        def stop(self):
            calls["stopped"] = True

        def join(self, timeout=None):
            calls["joined"] = True

    def fake_watch(config, on_batch, reload_config=None):
        calls["config"] = config
        calls["reloaded"] = reload_config()
        return FakeHandle()

    monkeypatch.setattr(cli_module, "watch_site", fake_watch)
    result = invoke(site, "watch")
    assert result.exit_code == 0, result.output
    assert "Watching" in result.output
    assert calls["stopped"] and calls["joined"]
    assert calls["config"].source_root == site.root
    assert calls["reloaded"] == calls["config"]


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_configure_logging_installs_one_handler():
    configure_logging()
    logger = configure_logging(verbose=True)
    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG
    assert get_logger("build").name == "tessera.build"
