"""
Shared pytest fixtures for sitebuild tests.

Provides a scratch site project (site.yaml plus a small source/ tree) and an
in-process CLI runner.

Test Tier Markers:
  @pytest.mark.evergreen - Tests that always run, never skip (production tests)
  @pytest.mark.dev       - Development/WIP tests, toggle-able
"""

from __future__ import annotations

import io
from contextlib import redirect_stdout
from pathlib import Path
from typing import Optional

import pytest
import yaml
from PIL import Image

from sitebuild.build.config import BuildContext, BuildMode, SiteConfig, load_config
from sitebuild.core.utils import log


# =============================================================================
# Test Data Constants
# =============================================================================

INDEX_HTML = """<!DOCTYPE html>
<html>
  <head>
    <title>{{ title }}</title>
  </head>
  <body>
    {% include "partials/header.html" %}
    <p id="mode">{{ devBuild }}</p>
    {% if devBuild %}<p id="dev-only">debug panel</p>{% endif %}
  </body>
</html>
"""

HEADER_HTML = """<header>
  <h1>{{ title }}</h1>
</header>
"""

VARS_SCSS = "$primary: #336699;\n"

MAIN_SCSS = """@import "vars";

/* navigation */
.nav {
  a {
    color: $primary;
    user-select: none;
  }
}
"""

MAIN_JS = """// entry point
function greet(name) {
  console.log("greeting", name);
  return "Hello, " + name;
}
debugger;
document.title = greet("world");
"""

CONTACT_PHP = "<?php echo 'hi'; ?>\n"

SITE_CONFIG = {
    "name": "test-site",
    "description": "A site used by the test suite",
    "version": "1.2.3",
    "html": {"context": {"title": "Test Site"}},
    "server": {"port": 3999},
    "debounce": 0.05,
}


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test tiers."""
    config.addinivalue_line(
        "markers",
        "evergreen: tests that always run, never skip (production tests)"
    )
    config.addinivalue_line(
        "markers",
        "dev: development/WIP tests, toggle-able for active development"
    )


@pytest.fixture(autouse=True)
def no_color() -> None:
    """Keep captured output free of ANSI codes."""
    log.set_color(False)


# =============================================================================
# Project Fixtures
# =============================================================================


def write_file(path: Path, content: str | bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


def write_png(path: Path, size: tuple[int, int] = (64, 64)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, (200, 40, 40)).save(path, format="PNG")
    return path


def write_site_config(root: Path, overrides: Optional[dict] = None) -> Path:
    data = dict(SITE_CONFIG)
    data.update(overrides or {})
    return write_file(root / "site.yaml", yaml.safe_dump(data, sort_keys=False))


@pytest.fixture
def site_project(tmp_path: Path) -> Path:
    """A complete project tree using the conventional source/ layout."""
    root = tmp_path / "site"
    src = root / "source"
    write_site_config(root)
    write_file(src / "index.html", INDEX_HTML)
    write_file(src / "partials" / "header.html", HEADER_HTML)
    write_file(src / "scss" / "_vars.scss", VARS_SCSS)
    write_file(src / "scss" / "main.scss", MAIN_SCSS)
    write_file(src / "js" / "main.js", MAIN_JS)
    write_file(src / "php" / "contact.php", CONTACT_PHP)
    write_png(src / "images" / "logo.png")
    write_file(src / "images" / "icons" / "arrow.svg", "<svg xmlns='http://www.w3.org/2000/svg'/>\n")
    return root


@pytest.fixture
def site_config(site_project: Path) -> SiteConfig:
    return load_config(site_project)


@pytest.fixture
def dev_ctx(site_config: SiteConfig) -> BuildContext:
    return BuildContext(config=site_config, mode=BuildMode.DEVELOPMENT)


@pytest.fixture
def prod_ctx(site_config: SiteConfig) -> BuildContext:
    return BuildContext(config=site_config, mode=BuildMode.PRODUCTION)


# =============================================================================
# CLI Runner
# =============================================================================


class CLIRunner:
    """Helper class to run CLI commands in-process with captured output."""

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir

    def run(self, args: list[str]) -> "CLIResult":
        """Run CLI with given args and return result.

        Args:
            args: Command line arguments (without 'sitebuild' prefix)

        Returns:
            CLIResult with return code and captured output
        """
        from sitebuild.cli import main

        stdout_capture = io.StringIO()

        with redirect_stdout(stdout_capture):
            try:
                returncode = main(args)
            except SystemExit as e:
                returncode = e.code if isinstance(e.code, int) else 1

        return CLIResult(
            returncode=returncode or 0,
            stdout=stdout_capture.getvalue(),
        )

    def build(self, *extra: str) -> "CLIResult":
        return self.run(["build", "--project-dir", str(self.project_dir), *extra])


class CLIResult:
    """Result of running a CLI command."""

    def __init__(self, returncode: int, stdout: str):
        self.returncode = returncode
        self.stdout = stdout

    def __repr__(self) -> str:
        return f"CLIResult(returncode={self.returncode}, stdout={self.stdout[:100]!r}...)"


@pytest.fixture
def cli_runner(site_project: Path) -> CLIRunner:
    """Create a CLI runner bound to the scratch project."""
    return CLIRunner(site_project)
