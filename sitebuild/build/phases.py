"""
Build phases for sitebuild.

One function per transform task. Each reads the build mode once, at the top
of its body, and takes either the development path (fast, unminified,
incremental) or the production path (minified, debug-free, size reported).
"""

from __future__ import annotations

import io
import re
import shutil
from pathlib import Path, PurePosixPath
from typing import NamedTuple, Optional

import jinja2
import minify_html
import rcssmin
import rjsmin
import sass
from PIL import Image, UnidentifiedImageError

from sitebuild.build.caching import is_stale, unchanged
from sitebuild.build.config import BuildContext, FileSet
from sitebuild.core.errors import ConfigError, TransformFailure
from sitebuild.core.utils import (
    copy_atomic,
    expand_globs,
    format_size,
    glob_base,
    log,
    write_atomic,
)

_GLOB_CHARS = set("*?[")

# Pillow format names for the raster types we re-encode
RASTER_FORMATS = {
    ".png": "PNG",
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".gif": "GIF",
}
JPEG_QUALITY = 85

# Properties that still need vendor prefixes for the usual browser targets
PREFIXED_PROPERTIES: dict[str, tuple[str, ...]] = {
    "appearance": ("-webkit-", "-moz-"),
    "user-select": ("-webkit-", "-moz-", "-ms-"),
    "backface-visibility": ("-webkit-",),
    "backdrop-filter": ("-webkit-",),
    "text-size-adjust": ("-webkit-", "-moz-", "-ms-"),
    "hyphens": ("-webkit-", "-ms-"),
    "mask-image": ("-webkit-",),
    "clip-path": ("-webkit-",),
    "box-decoration-break": ("-webkit-",),
    "tab-size": ("-moz-",),
}

_DECLARATION_RE = re.compile(
    r"(?P<lead>[{;]\s*)(?P<prop>"
    + "|".join(re.escape(p) for p in sorted(PREFIXED_PROPERTIES, key=len, reverse=True))
    + r")(?P<rest>\s*:[^;{}]*)"
)


# =============================================================================
# Size Reporting
# =============================================================================


class SizeDiff:
    """Before/after byte counts for one production transform.

    Reporting is a diagnostic: report() never raises.
    """

    def __init__(self, title: str):
        self.title = title
        self.before = 0
        self.after = 0

    def add(self, before: int, after: int) -> None:
        self.before += before
        self.after += after

    def report(self) -> None:
        try:
            if self.before == 0:
                return
            saved = 100.0 * (self.before - self.after) / self.before
            log.dim(
                f"{self.title}: {format_size(self.before)} -> "
                f"{format_size(self.after)} ({saved:.0f}% saved)"
            )
        except Exception as e:
            log.warning(f"{self.title}: size report unavailable ({e})")


# =============================================================================
# Source Collection
# =============================================================================


def collect_sources(ctx: BuildContext, fileset: FileSet) -> list[tuple[Path, PurePosixPath]]:
    """Files matched by a file set, with their path relative to the glob base."""
    root = ctx.config.project_root
    found: list[tuple[Path, PurePosixPath]] = []
    seen: set[Path] = set()
    for pattern in fileset.src:
        base = root / glob_base(pattern)
        for path in expand_globs(root, [pattern]):
            if path in seen:
                continue
            seen.add(path)
            found.append((path, PurePosixPath(path.relative_to(base).as_posix())))
    return found


def resolve_script_list(ctx: BuildContext, entries: tuple[str, ...]) -> list[Path]:
    """Expand the ordered script list; literal entries must exist."""
    root = ctx.config.project_root
    files: list[Path] = []
    for entry in entries:
        if _GLOB_CHARS & set(entry):
            matched = expand_globs(root, [entry])
        else:
            path = root / entry
            if not path.is_file():
                raise TransformFailure(path, "listed script not found")
            matched = [path]
        for path in matched:
            if path not in files:
                files.append(path)
    return files


# =============================================================================
# cleanup
# =============================================================================


def clean_output(ctx: BuildContext) -> None:
    """Empty the output directory, creating it if missing."""
    output = ctx.config.output_path.resolve()
    root = ctx.config.project_root.resolve()
    source = ctx.config.source_path.resolve()

    if output == root or output in source.parents or output == source:
        raise ConfigError(f"Refusing to clean {output}: it contains the project sources")

    if not output.exists():
        output.mkdir(parents=True)
        log.info(f"cleanup: created {output}")
        return

    removed = 0
    for child in sorted(output.iterdir()):
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
        removed += 1
    log.info(f"cleanup: removed {removed} entr{'y' if removed == 1 else 'ies'} from {output.name}/")


# =============================================================================
# html
# =============================================================================


def _finalize(value):
    """Render booleans the way page scripts expect them (true/false)."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def template_environment(ctx: BuildContext) -> jinja2.Environment:
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(
            [str(ctx.config.source_path), str(ctx.config.project_root)]
        ),
        finalize=_finalize,
        keep_trailing_newline=True,
        autoescape=False,
    )


def _template_name(ctx: BuildContext, path: Path) -> str:
    try:
        return path.relative_to(ctx.config.source_path).as_posix()
    except ValueError:
        return path.relative_to(ctx.config.project_root).as_posix()


def minify_html_text(text: str) -> str:
    return minify_html.minify(text, minify_css=True)


def build_html(ctx: BuildContext) -> None:
    """Render page templates; minify them in production."""
    production = ctx.mode.is_production
    fileset = ctx.config.fileset("html")
    dest_dir = ctx.config.dest_path("html")
    env = template_environment(ctx)
    context = {**ctx.config.html_context, "devBuild": not production}
    sizes = SizeDiff("HTML Minification")

    pages = collect_sources(ctx, fileset)
    for path, rel in pages:
        try:
            text = env.get_template(_template_name(ctx, path)).render(context)
        except jinja2.TemplateSyntaxError as e:
            where = Path(e.filename) if e.filename else path
            raise TransformFailure(where, f"line {e.lineno}: {e.message}") from e
        except jinja2.TemplateError as e:
            raise TransformFailure(path, str(e)) from e

        if production:
            minified = minify_html_text(text)
            sizes.add(len(text.encode("utf-8")), len(minified.encode("utf-8")))
            text = minified

        write_atomic(dest_dir / rel, text)

    if production:
        sizes.report()
    log.info(f"html: {len(pages)} page{'s' if len(pages) != 1 else ''}")


# =============================================================================
# images
# =============================================================================


def compress_image(path: Path) -> Optional[bytes]:
    """Re-encode a raster image; None for formats we only copy."""
    fmt = RASTER_FORMATS.get(path.suffix.lower())
    if fmt is None:
        return None
    try:
        with Image.open(path) as im:
            if getattr(im, "is_animated", False):
                return None
            params: dict = {"optimize": True}
            if fmt == "JPEG":
                params.update(quality=JPEG_QUALITY, progressive=True)
            buf = io.BytesIO()
            im.save(buf, format=fmt, **params)
    except (UnidentifiedImageError, OSError) as e:
        raise TransformFailure(path, f"cannot compress image: {e}") from e
    return buf.getvalue()


def build_images(ctx: BuildContext) -> None:
    """Copy images, skipping unchanged ones; compress rasters in production."""
    production = ctx.mode.is_production
    fileset = ctx.config.fileset("images")
    dest_dir = ctx.config.dest_path("images")
    sizes = SizeDiff("Images Compression")

    written = skipped = 0
    for path, rel in collect_sources(ctx, fileset):
        dest = dest_dir / rel
        if unchanged(path, dest):
            skipped += 1
            continue

        original = path.stat().st_size
        data = compress_image(path) if production else None
        if data is not None and len(data) < original:
            write_atomic(dest, data)
            sizes.add(original, len(data))
        else:
            # Never ship a re-encoded file that came out larger
            copy_atomic(path, dest)
            sizes.add(original, original)
        written += 1

    if production:
        sizes.report()
    log.info(f"images: {written} written, {skipped} unchanged")


# =============================================================================
# styles
# =============================================================================


def add_vendor_prefixes(css: str) -> str:
    """Insert prefixed copies in front of declarations that need them."""

    def expand(match: re.Match) -> str:
        prop = match.group("prop")
        rest = match.group("rest")
        copies = [f"{prefix}{prop}{rest};" for prefix in PREFIXED_PROPERTIES[prop]]
        return match.group("lead") + "".join(copies) + prop + rest

    return _DECLARATION_RE.sub(expand, css)


def compile_stylesheet(path: Path, output_style: str, precision: int, include_paths: list[str]) -> str:
    try:
        return sass.compile(
            filename=str(path),
            output_style=output_style,
            precision=precision,
            include_paths=include_paths,
        )
    except sass.CompileError as e:
        raise TransformFailure(path, str(e).strip()) from e


def build_styles(ctx: BuildContext) -> None:
    """Compile Sass entry points into a single stylesheet."""
    production = ctx.mode.is_production
    options = ctx.config.styles
    minify = options.minify(ctx.mode)
    output_style = "compressed" if minify else options.output_style
    fileset = ctx.config.fileset("styles")
    dest = ctx.config.dest_path("styles") / options.out
    sizes = SizeDiff("CSS Compression")

    # Partials (_name.scss) are only reachable through @import
    entries = [path for path, _ in collect_sources(ctx, fileset) if not path.name.startswith("_")]
    if not entries:
        log.info("styles: no stylesheets found")
        return

    include_paths = sorted({str(p.parent) for p in entries} | {str(ctx.config.source_path)})
    parts: list[str] = []
    for path in entries:
        css = compile_stylesheet(path, output_style, options.precision, include_paths)
        if options.autoprefixer:
            css = add_vendor_prefixes(css)
        if minify:
            css = rcssmin.cssmin(css)
        sizes.add(path.stat().st_size, len(css.encode("utf-8")))
        parts.append(css.strip())

    write_atomic(dest, ("" if minify else "\n").join(parts) + "\n")

    if production:
        sizes.report()
    log.info(f"styles: {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} -> {options.out}")


# =============================================================================
# scripts
# =============================================================================


class _Token(NamedTuple):
    kind: str  # name, number, string, regex, punct
    start: int
    end: int


_NAME_RE = re.compile(r"(?:[^\W\d]|\$)(?:\w|\$)*")
_NUMBER_RE = re.compile(
    r"0[xXbBoO][\da-fA-F_]+n?|(?:\d[\d_]*\.?[\d_]*|\.\d[\d_]*)(?:[eE][+-]?\d+)?n?"
)

# After these words a slash opens a regex literal rather than dividing
_REGEX_AFTER_WORDS = {
    "return", "typeof", "instanceof", "in", "of", "new", "delete", "void",
    "throw", "case", "do", "else", "yield", "await",
}


def _skip_quoted(source: str, i: int) -> int:
    """Index just past the '...' or "..." literal starting at i."""
    quote = source[i]
    i += 1
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote or ch == "\n":
            return i + 1
        i += 1
    return i


def _skip_template(source: str, i: int) -> tuple[int, bool]:
    """Scan template text from i; True when it stopped at a ``${``."""
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "`":
            return i + 1, False
        if source.startswith("${", i):
            return i + 2, True
        i += 1
    return i, False


def _skip_regex(source: str, i: int) -> Optional[int]:
    """Index just past the regex literal at i, or None if it is not one."""
    in_class = False
    i += 1
    while i < len(source):
        ch = source[i]
        if ch == "\n":
            return None
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            in_class = True
        elif ch == "]":
            in_class = False
        elif ch == "/" and not in_class:
            flags = _NAME_RE.match(source, i + 1)
            return flags.end() if flags else i + 1
        i += 1
    return None


def _regex_allowed(source: str, prev: Optional[_Token]) -> bool:
    if prev is None:
        return True
    if prev.kind == "punct":
        return source[prev.start] not in ")]}"
    if prev.kind == "name":
        return source[prev.start:prev.end] in _REGEX_AFTER_WORDS
    return False


def js_tokens(source: str) -> list[_Token]:
    """Split JavaScript into significant tokens.

    Comments and whitespace are dropped. String, template and regex literals
    come back as single tokens, so nothing inside them is ever matched.
    """
    tokens: list[_Token] = []
    braces: list[bool] = []  # True for a ${ opened inside a template
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if source.startswith("//", i):
            newline = source.find("\n", i)
            i = n if newline == -1 else newline
            continue
        if source.startswith("/*", i):
            close = source.find("*/", i + 2)
            i = n if close == -1 else close + 2
            continue

        start = i
        prev = tokens[-1] if tokens else None
        if ch in "'\"":
            i = _skip_quoted(source, i)
            kind = "string"
        elif ch == "`":
            i, opened = _skip_template(source, i + 1)
            if opened:
                braces.append(True)
            kind = "string"
        elif ch == "}" and braces and braces[-1]:
            braces.pop()
            i, opened = _skip_template(source, i + 1)
            if opened:
                braces.append(True)
            kind = "string"
        elif ch == "/" and _regex_allowed(source, prev) and _skip_regex(source, i) is not None:
            i = _skip_regex(source, i)
            kind = "regex"
        else:
            word = _NUMBER_RE.match(source, i) or _NAME_RE.match(source, i)
            if word is not None:
                i = word.end()
                kind = "number" if ch.isdigit() or ch == "." else "name"
                tokens.append(_Token(kind, start, i))
                continue
            if ch == "{":
                braces.append(False)
            elif ch == "}" and braces:
                braces.pop()
            i += 1
            kind = "punct"
        tokens.append(_Token(kind, start, i))
    return tokens


def _is_punct(source: str, token: _Token, char: str) -> bool:
    return token.kind == "punct" and source[token.start] == char


def _closing_paren(source: str, tokens: list[_Token], open_idx: int) -> Optional[int]:
    depth = 0
    for idx in range(open_idx, len(tokens)):
        if _is_punct(source, tokens[idx], "("):
            depth += 1
        elif _is_punct(source, tokens[idx], ")"):
            depth -= 1
            if depth == 0:
                return idx
    return None


def strip_debug(source: str) -> str:
    """Neutralise console.*, alert() and debugger statements.

    Calls become ``void 0`` so expression positions stay valid. Only real
    tokens are matched; text inside strings, templates, regex literals and
    comments is left alone.
    """
    tokens = js_tokens(source)
    edits: list[tuple[int, int, str]] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        word = source[token.start:token.end] if token.kind == "name" else None
        member = i > 0 and _is_punct(source, tokens[i - 1], ".")

        if word in ("console", "alert") and not member:
            paren = i + 1
            if word == "console":
                if (
                    paren + 1 < len(tokens)
                    and _is_punct(source, tokens[paren], ".")
                    and tokens[paren + 1].kind == "name"
                ):
                    paren += 2
                else:
                    paren = len(tokens)
            if paren < len(tokens) and _is_punct(source, tokens[paren], "("):
                close = _closing_paren(source, tokens, paren)
                if close is not None:
                    edits.append((token.start, tokens[close].end, "void 0"))
                    i = close + 1
                    continue
        elif word == "debugger" and not member:
            end = token.end
            if i + 1 < len(tokens) and _is_punct(source, tokens[i + 1], ";"):
                end = tokens[i + 1].end
                i += 1
            edits.append((token.start, end, "void 0;"))
        i += 1

    out: list[str] = []
    pos = 0
    for start, end, replacement in edits:
        out.append(source[pos:start])
        out.append(replacement)
        pos = end
    out.append(source[pos:])
    return "".join(out)


def build_scripts(ctx: BuildContext) -> None:
    """Concatenate the ordered script list; strip and minify in production."""
    production = ctx.mode.is_production
    options = ctx.config.scripts
    fileset = ctx.config.fileset("scripts")
    dest = ctx.config.dest_path("scripts") / options.out(ctx.mode)

    files = resolve_script_list(ctx, fileset.src)
    if not files:
        log.info("scripts: no script files found")
        return

    if not production and not is_stale(files, dest):
        log.info(f"scripts: {dest.name} up to date")
        return

    bundle = "\n".join(path.read_text(encoding="utf-8").rstrip("\n") for path in files) + "\n"

    if production:
        sizes = SizeDiff("JavaScript Compression")
        minified = bundle
        if options.strip_debug:
            minified = strip_debug(minified)
        try:
            minified = rjsmin.jsmin(minified)
        except Exception as e:
            raise TransformFailure(dest, f"minification failed: {e}") from e
        sizes.add(len(bundle.encode("utf-8")), len(minified.encode("utf-8")))
        bundle = minified
        sizes.report()

    write_atomic(dest, bundle)
    log.info(f"scripts: {len(files)} file{'s' if len(files) != 1 else ''} -> {dest.name}")


# =============================================================================
# passthrough
# =============================================================================


def build_passthrough(ctx: BuildContext) -> None:
    """Copy server-side files unmodified."""
    fileset = ctx.config.fileset("passthrough")
    dest_dir = ctx.config.dest_path("passthrough")

    copied = 0
    for path, rel in collect_sources(ctx, fileset):
        dest = dest_dir / rel
        if unchanged(path, dest):
            continue
        copy_atomic(path, dest)
        copied += 1
    log.info(f"passthrough: {copied} file{'s' if copied != 1 else ''} copied")
