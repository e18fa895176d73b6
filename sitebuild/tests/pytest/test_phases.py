"""
Tests for the transform phases.

Each transform is run directly against the scratch project in both modes.
"""

from __future__ import annotations

import dataclasses
import os
import time
from pathlib import Path

import pytest
from PIL import Image

from sitebuild.build.config import BuildContext, BuildMode, ScriptOptions, load_config
from sitebuild.build.phases import (
    SizeDiff,
    add_vendor_prefixes,
    build_html,
    build_images,
    build_passthrough,
    build_scripts,
    build_styles,
    clean_output,
    compress_image,
    strip_debug,
)
from sitebuild.core.errors import ConfigError, TransformFailure

from conftest import write_file, write_png, write_site_config


def _with_config(ctx: BuildContext, **changes) -> BuildContext:
    return BuildContext(config=dataclasses.replace(ctx.config, **changes), mode=ctx.mode)


# =============================================================================
# cleanup
# =============================================================================


@pytest.mark.evergreen
class TestCleanOutput:
    """cleanup empties the output directory."""

    def test_creates_missing_output(self, dev_ctx: BuildContext) -> None:
        clean_output(dev_ctx)
        assert dev_ctx.config.output_path.is_dir()

    def test_removes_every_entry(self, dev_ctx: BuildContext) -> None:
        out = dev_ctx.config.output_path
        write_file(out / "stale.html", "old")
        write_file(out / "css" / "old.css", "old")
        clean_output(dev_ctx)
        assert out.is_dir()
        assert list(out.iterdir()) == []

    def test_refuses_to_clean_sources(self, dev_ctx: BuildContext) -> None:
        ctx = _with_config(dev_ctx, build_dir="source")
        with pytest.raises(ConfigError, match="Refusing"):
            clean_output(ctx)
        assert (dev_ctx.config.source_path / "index.html").exists()


# =============================================================================
# html
# =============================================================================


@pytest.mark.evergreen
class TestBuildHtml:
    """Templates render with devBuild and are minified in production."""

    def test_development_renders_true(self, dev_ctx: BuildContext) -> None:
        build_html(dev_ctx)
        out = (dev_ctx.config.output_path / "index.html").read_text()
        assert '<p id="mode">true</p>' in out
        assert "debug panel" in out
        assert "<h1>Test Site</h1>" in out
        assert "{{" not in out and "{%" not in out

    def test_production_renders_false_and_minifies(self, prod_ctx: BuildContext) -> None:
        build_html(prod_ctx)
        out = (prod_ctx.config.output_path / "index.html").read_text()
        assert "false" in out
        assert "true" not in out
        assert "debug panel" not in out
        assert "Test Site" in out
        assert "\n" not in out.strip()
        assert ">  <" not in out

    def test_partials_are_not_pages(self, dev_ctx: BuildContext) -> None:
        build_html(dev_ctx)
        assert not (dev_ctx.config.output_path / "partials").exists()
        assert not (dev_ctx.config.output_path / "header.html").exists()

    def test_syntax_error_is_transform_failure(self, dev_ctx: BuildContext) -> None:
        write_file(dev_ctx.config.source_path / "broken.html", "<p>{% if %}</p>\n")
        with pytest.raises(TransformFailure) as exc_info:
            build_html(dev_ctx)
        assert exc_info.value.path is not None
        assert exc_info.value.path.name == "broken.html"

    def test_missing_include_is_transform_failure(self, dev_ctx: BuildContext) -> None:
        write_file(dev_ctx.config.source_path / "other.html", '{% include "partials/nope.html" %}\n')
        with pytest.raises(TransformFailure, match="nope.html"):
            build_html(dev_ctx)

    def test_idempotent(self, prod_ctx: BuildContext) -> None:
        build_html(prod_ctx)
        first = (prod_ctx.config.output_path / "index.html").read_bytes()
        build_html(prod_ctx)
        assert (prod_ctx.config.output_path / "index.html").read_bytes() == first


# =============================================================================
# styles
# =============================================================================


@pytest.mark.evergreen
class TestBuildStyles:
    """Sass entries compile into one stylesheet."""

    def test_production_single_flat_file(self, prod_ctx: BuildContext) -> None:
        build_styles(prod_ctx)
        css_dir = prod_ctx.config.output_path / "css"
        assert [p.name for p in css_dir.iterdir()] == ["main.min.css"]

        css = (css_dir / "main.min.css").read_text()
        assert ".nav a{" in css
        assert "$primary" not in css
        assert "-webkit-user-select:none" in css
        assert "/*" not in css
        # No selector nested inside another block
        assert css.count("{") == css.count("}")
        assert "{." not in css and "{a" not in css

    def test_development_keeps_readable_output(self, dev_ctx: BuildContext) -> None:
        build_styles(dev_ctx)
        css = (dev_ctx.config.output_path / "css" / "main.min.css").read_text()
        assert ".nav a" in css
        assert "\n" in css.strip()

    def test_partials_are_not_entries(self, dev_ctx: BuildContext) -> None:
        write_file(dev_ctx.config.source_path / "scss" / "_broken.scss", ".x { color: $undefined; }\n")
        build_styles(dev_ctx)

    def test_vendor_prefixes_added(self, dev_ctx: BuildContext) -> None:
        build_styles(dev_ctx)
        css = (dev_ctx.config.output_path / "css" / "main.min.css").read_text()
        assert "-webkit-user-select: none" in css
        assert "user-select: none" in css

    def test_no_prefixes_without_targets(self, dev_ctx: BuildContext) -> None:
        styles = dataclasses.replace(dev_ctx.config.styles, autoprefixer=())
        build_styles(_with_config(dev_ctx, styles=styles))
        css = (dev_ctx.config.output_path / "css" / "main.min.css").read_text()
        assert "-webkit-" not in css

    def test_targets_only_switch_prefixing_on(self, dev_ctx: BuildContext) -> None:
        outputs = []
        for targets in (("last 2 versions",), ("> 50%",)):
            styles = dataclasses.replace(dev_ctx.config.styles, autoprefixer=targets)
            build_styles(_with_config(dev_ctx, styles=styles))
            outputs.append((dev_ctx.config.output_path / "css" / "main.min.css").read_text())
        assert outputs[0] == outputs[1]
        assert "-webkit-user-select" in outputs[0]

    def test_compile_error_names_file(self, dev_ctx: BuildContext) -> None:
        bad = write_file(dev_ctx.config.source_path / "scss" / "bad.scss", ".x { color: $nope; }\n")
        with pytest.raises(TransformFailure) as exc_info:
            build_styles(dev_ctx)
        assert exc_info.value.path == bad

    def test_production_smaller_than_development(self, site_project: Path) -> None:
        config = load_config(site_project)
        build_styles(BuildContext(config, BuildMode.DEVELOPMENT))
        dev_size = (config.output_path / "css" / "main.min.css").stat().st_size
        build_styles(BuildContext(config, BuildMode.PRODUCTION))
        prod_size = (config.output_path / "css" / "main.min.css").stat().st_size
        assert prod_size <= dev_size


@pytest.mark.evergreen
class TestVendorPrefixes:
    def test_prefixes_inserted_before_declaration(self) -> None:
        css = add_vendor_prefixes(".a{user-select:none}")
        assert css == ".a{-webkit-user-select:none;-moz-user-select:none;-ms-user-select:none;user-select:none}"

    def test_unlisted_properties_untouched(self) -> None:
        css = ".a { color: red; display: flex; }"
        assert add_vendor_prefixes(css) == css


# =============================================================================
# scripts
# =============================================================================


@pytest.mark.evergreen
class TestStripDebug:
    """Debug statements become no-ops; everything else is left alone."""

    def test_console_calls(self) -> None:
        assert strip_debug('console.log("a", f(1));') == "void 0;"
        assert strip_debug("console.warn(x)") == "void 0"

    def test_alert_and_debugger(self) -> None:
        assert strip_debug("alert('hi');\ndebugger;\nrun();") == "void 0;\nvoid 0;\nrun();"

    def test_parentheses_inside_strings(self) -> None:
        assert strip_debug('console.log(")(");x();') == "void 0;x();"

    def test_identifiers_containing_names_untouched(self) -> None:
        source = "myconsole.log(1); obj.alert(2); var debuggerMode = 1;"
        assert strip_debug(source) == source

    def test_parenthesis_inside_regex_literal(self) -> None:
        source = 'console.log(s.replace(/\\)/g, ""));\ninit();\n'
        assert strip_debug(source) == "void 0;\ninit();\n"

    def test_regex_with_class_and_slash(self) -> None:
        source = "var re = /[/)]+/g;\nconsole.log(re.test(x));\n"
        assert strip_debug(source) == "var re = /[/)]+/g;\nvoid 0;\n"

    def test_division_is_not_a_regex(self) -> None:
        source = "var half = (a) / 2; console.log(half / 3);"
        assert strip_debug(source) == "var half = (a) / 2; void 0;"

    def test_names_inside_strings_untouched(self) -> None:
        source = (
            'var help = "attach a debugger to inspect";\n'
            "var msg = 'never alert(users)';\n"
            "var tip = `use console.log(x) ${name}`;\n"
        )
        assert strip_debug(source) == source

    def test_calls_in_comments_untouched(self) -> None:
        source = "// console.log(\nrun(); /* debugger; alert( */\n"
        assert strip_debug(source) == source

    def test_call_inside_template_expression(self) -> None:
        assert strip_debug("var t = `a ${console.log(1)} b`;") == "var t = `a ${void 0} b`;"


@pytest.mark.evergreen
class TestBuildScripts:
    """Scripts concatenate in list order; production strips and minifies."""

    def test_development_bundle(self, dev_ctx: BuildContext) -> None:
        build_scripts(dev_ctx)
        out = dev_ctx.config.output_path / "js" / "main.js"
        assert out.read_text() == (dev_ctx.config.source_path / "js" / "main.js").read_text()
        assert not (dev_ctx.config.output_path / "js" / "main.min.js").exists()

    def test_production_strips_and_minifies(self, prod_ctx: BuildContext) -> None:
        build_scripts(prod_ctx)
        out = (prod_ctx.config.output_path / "js" / "main.min.js").read_text()
        assert "console" not in out
        assert "debugger" not in out
        assert "// entry point" not in out
        assert "greet" in out
        assert len(out) < len((prod_ctx.config.source_path / "js" / "main.js").read_text())

    def test_strip_debug_can_be_disabled(self, prod_ctx: BuildContext) -> None:
        ctx = _with_config(prod_ctx, scripts=ScriptOptions(strip_debug=False))
        build_scripts(ctx)
        assert "console.log" in (prod_ctx.config.output_path / "js" / "main.min.js").read_text()

    def test_list_order_preserved(self, site_project: Path) -> None:
        src = site_project / "source" / "js"
        write_file(src / "vendor.js", "var VENDOR = 1;\n")
        write_site_config(site_project, {
            "filesets": {"scripts": {"src": ["source/js/vendor.js", "source/js/main.js"]}},
        })
        config = load_config(site_project)
        build_scripts(BuildContext(config, BuildMode.DEVELOPMENT))
        out = (config.output_path / "js" / "main.js").read_text()
        assert out.index("VENDOR") < out.index("greet")

    def test_missing_listed_file(self, site_project: Path) -> None:
        write_site_config(site_project, {
            "filesets": {"scripts": {"src": ["source/js/missing.js", "source/js/main.js"]}},
        })
        config = load_config(site_project)
        with pytest.raises(TransformFailure, match="listed script not found"):
            build_scripts(BuildContext(config, BuildMode.DEVELOPMENT))

    def test_development_skips_up_to_date_bundle(self, dev_ctx: BuildContext) -> None:
        build_scripts(dev_ctx)
        out = dev_ctx.config.output_path / "js" / "main.js"
        future = time.time() + 60
        os.utime(out, (future, future))
        write_file(dev_ctx.config.source_path / "js" / "main.js", "var changed = 1;\n")
        src = dev_ctx.config.source_path / "js" / "main.js"
        os.utime(src, (future - 30, future - 30))

        build_scripts(dev_ctx)
        assert "greet" in out.read_text()

        os.utime(src, (future + 30, future + 30))
        build_scripts(dev_ctx)
        assert out.read_text() == "var changed = 1;\n"


# =============================================================================
# images
# =============================================================================


@pytest.mark.evergreen
class TestBuildImages:
    """Images are copied with their relative paths; rasters compressed in production."""

    def test_relative_paths_preserved(self, dev_ctx: BuildContext) -> None:
        build_images(dev_ctx)
        out = dev_ctx.config.output_path / "images"
        assert (out / "logo.png").exists()
        assert (out / "icons" / "arrow.svg").exists()

    def test_development_copies_bytes(self, dev_ctx: BuildContext) -> None:
        build_images(dev_ctx)
        src = dev_ctx.config.source_path / "images" / "logo.png"
        assert (dev_ctx.config.output_path / "images" / "logo.png").read_bytes() == src.read_bytes()

    def test_production_never_grows(self, prod_ctx: BuildContext) -> None:
        build_images(prod_ctx)
        for name in ("logo.png", "icons/arrow.svg"):
            src = prod_ctx.config.source_path / "images" / name
            dest = prod_ctx.config.output_path / "images" / name
            assert dest.stat().st_size <= src.stat().st_size

    def test_production_output_still_decodes(self, prod_ctx: BuildContext) -> None:
        build_images(prod_ctx)
        with Image.open(prod_ctx.config.output_path / "images" / "logo.png") as im:
            assert im.size == (64, 64)

    def test_unchanged_images_skipped(self, dev_ctx: BuildContext) -> None:
        build_images(dev_ctx)
        dest = dev_ctx.config.output_path / "images" / "logo.png"
        write_file(dest, b"sentinel")
        future = time.time() + 60
        os.utime(dest, (future, future))
        build_images(dev_ctx)
        assert dest.read_bytes() == b"sentinel"

    def test_compress_ignores_vector_formats(self, dev_ctx: BuildContext) -> None:
        assert compress_image(dev_ctx.config.source_path / "images" / "icons" / "arrow.svg") is None

    def test_corrupt_raster_is_transform_failure(self, tmp_path: Path) -> None:
        bad = write_file(tmp_path / "bad.png", b"not a png")
        with pytest.raises(TransformFailure, match="cannot compress"):
            compress_image(bad)

    def test_jpeg_compression(self, tmp_path: Path) -> None:
        path = tmp_path / "photo.jpg"
        Image.new("RGB", (32, 32), (10, 120, 200)).save(path, format="JPEG", quality=100)
        data = compress_image(path)
        assert data is not None and data[:2] == b"\xff\xd8"

    def test_png_written_by_helper(self, tmp_path: Path) -> None:
        assert compress_image(write_png(tmp_path / "x.png")) is not None


# =============================================================================
# passthrough & size reporting
# =============================================================================


@pytest.mark.evergreen
class TestPassthrough:
    def test_copies_unmodified(self, prod_ctx: BuildContext) -> None:
        build_passthrough(prod_ctx)
        out = prod_ctx.config.output_path / "php" / "contact.php"
        assert out.read_text() == "<?php echo 'hi'; ?>\n"


@pytest.mark.evergreen
class TestSizeDiff:
    def test_report_logs_savings(self, capsys: pytest.CaptureFixture[str]) -> None:
        sizes = SizeDiff("CSS Compression")
        sizes.add(2000, 1000)
        sizes.report()
        assert "50% saved" in capsys.readouterr().out

    def test_report_with_no_input_is_silent(self, capsys: pytest.CaptureFixture[str]) -> None:
        SizeDiff("Empty").report()
        assert capsys.readouterr().out == ""
