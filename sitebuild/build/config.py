"""
Build configuration for sitebuild.

Constants, immutable dataclasses, and site.yaml loading.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from sitebuild.core.errors import ConfigError
from sitebuild.core.utils import CONFIG_FILENAME, DEFAULT_BUILD_DIR, DEFAULT_SOURCE_DIR

__all__ = [
    "BuildMode",
    "FileSet",
    "StyleOptions",
    "ScriptOptions",
    "ServerOptions",
    "DeployOptions",
    "SiteConfig",
    "BuildContext",
    "TRANSFORM_TASKS",
    "OUTPUT_STYLES",
    "DEFAULT_DEBOUNCE_SECONDS",
    "default_filesets",
    "load_config",
]

# Transform tasks, in the order they are registered and reported
TRANSFORM_TASKS = ("html", "images", "styles", "scripts", "passthrough")

OUTPUT_STYLES = ("nested", "expanded", "compact", "compressed")

DEFAULT_DEBOUNCE_SECONDS = 0.5


# =============================================================================
# Build Mode
# =============================================================================


class BuildMode(Enum):
    """Selected once from --prod; read-only for the rest of the run."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"

    @classmethod
    def from_flag(cls, prod: bool) -> "BuildMode":
        return cls.PRODUCTION if prod else cls.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self is BuildMode.PRODUCTION

    @property
    def dev_build(self) -> bool:
        return self is BuildMode.DEVELOPMENT


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class FileSet:
    """Source globs, destination directory and watch globs of one transform task."""

    name: str
    src: tuple[str, ...]
    dest: str
    watch: tuple[str, ...] = ()

    @property
    def watch_patterns(self) -> tuple[str, ...]:
        # Without explicit watch globs, a change to any source re-runs the task
        return self.watch or self.src


@dataclass(frozen=True)
class StyleOptions:
    output_style: str = "nested"
    precision: int = 3
    autoprefixer: tuple[str, ...] = ("last 2 versions", "> 2%")
    minifier: Optional[bool] = None  # None: minify in production only
    out: str = "main.min.css"

    def minify(self, mode: BuildMode) -> bool:
        if self.minifier is None:
            return mode.is_production
        return self.minifier


@dataclass(frozen=True)
class ScriptOptions:
    dev_out: str = "main.js"
    prod_out: str = "main.min.js"
    strip_debug: bool = True

    def out(self, mode: BuildMode) -> str:
        return self.prod_out if mode.is_production else self.dev_out


@dataclass(frozen=True)
class ServerOptions:
    port: int = 3000
    open: bool = False
    notify: bool = True
    index: str = "index.html"

    @property
    def ws_port(self) -> int:
        return self.port + 1


@dataclass(frozen=True)
class DeployOptions:
    host: Optional[str] = None
    port: int = 21
    remote_path: str = "/"
    timeout: float = 30.0


@dataclass(frozen=True)
class SiteConfig:
    """Configuration for a site project, built once at startup."""

    project_root: Path
    name: str
    description: str = ""
    version: str = "0.0.0"
    source_dir: str = DEFAULT_SOURCE_DIR
    build_dir: str = DEFAULT_BUILD_DIR
    filesets: Mapping[str, FileSet] = field(default_factory=dict)
    html_context: Mapping[str, Any] = field(default_factory=dict)
    styles: StyleOptions = field(default_factory=StyleOptions)
    scripts: ScriptOptions = field(default_factory=ScriptOptions)
    server: ServerOptions = field(default_factory=ServerOptions)
    deploy: DeployOptions = field(default_factory=DeployOptions)
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    @property
    def source_path(self) -> Path:
        return self.project_root / self.source_dir

    @property
    def output_path(self) -> Path:
        return self.project_root / self.build_dir

    def fileset(self, name: str) -> FileSet:
        try:
            return self.filesets[name]
        except KeyError:
            raise ConfigError(f"No file set configured for '{name}'") from None

    def dest_path(self, name: str) -> Path:
        return self.output_path / self.fileset(name).dest


@dataclass(frozen=True)
class BuildContext:
    """What every task body receives: the config and the build mode."""

    config: SiteConfig
    mode: BuildMode


# =============================================================================
# Defaults
# =============================================================================


def default_filesets(source_dir: str = DEFAULT_SOURCE_DIR) -> dict[str, FileSet]:
    """File sets for the conventional source/ layout."""
    s = source_dir.rstrip("/")
    return {
        "html": FileSet(
            name="html",
            src=(f"{s}/*.html",),
            dest="",
            watch=(f"{s}/*.html", f"{s}/partials/**/*.html"),
        ),
        "images": FileSet(
            name="images",
            src=(f"{s}/images/**/*.*",),
            dest="images",
        ),
        "styles": FileSet(
            name="styles",
            src=(f"{s}/scss/**/*.scss",),
            dest="css",
            watch=(f"{s}/scss/**/*",),
        ),
        "scripts": FileSet(
            name="scripts",
            src=(f"{s}/js/main.js",),
            dest="js",
            watch=(f"{s}/js/**/*.js",),
        ),
        "passthrough": FileSet(
            name="passthrough",
            src=(f"{s}/php/**/*",),
            dest="php",
        ),
    }


# =============================================================================
# Loading
# =============================================================================


def _as_tuple(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ConfigError(f"'{key}' must be a string or a list of strings")


def _section(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _typed(section: Mapping[str, Any], key: str, kind: type | tuple[type, ...], default: Any, where: str) -> Any:
    if key not in section:
        return default
    value = section[key]
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool) and bool not in (kind if isinstance(kind, tuple) else (kind,)):
        raise ConfigError(f"'{where}.{key}' has the wrong type")
    if not isinstance(value, kind):
        raise ConfigError(f"'{where}.{key}' has the wrong type")
    return value


def _parse_filesets(data: Mapping[str, Any], source_dir: str) -> dict[str, FileSet]:
    filesets = default_filesets(source_dir)
    overrides = _section(data, "filesets")
    for name, entry in overrides.items():
        if name not in TRANSFORM_TASKS:
            raise ConfigError(
                f"Unknown file set '{name}' (expected one of: {', '.join(TRANSFORM_TASKS)})"
            )
        if not isinstance(entry, dict):
            raise ConfigError(f"'filesets.{name}' must be a mapping")
        base = filesets[name]
        src = _as_tuple(entry["src"], f"filesets.{name}.src") if "src" in entry else base.src
        # A custom src without custom watch globs watches the new sources
        default_watch = base.watch if "src" not in entry else ()
        filesets[name] = FileSet(
            name=name,
            src=src,
            dest=str(entry.get("dest", base.dest)),
            watch=_as_tuple(entry["watch"], f"filesets.{name}.watch") if "watch" in entry else default_watch,
        )
    return filesets


def _parse_styles(data: Mapping[str, Any]) -> StyleOptions:
    section = _section(data, "styles")
    defaults = StyleOptions()
    output_style = _typed(section, "output_style", str, defaults.output_style, "styles")
    if output_style not in OUTPUT_STYLES:
        raise ConfigError(
            f"styles.output_style must be one of {', '.join(OUTPUT_STYLES)}, got '{output_style}'"
        )
    autoprefixer = (
        _as_tuple(section["autoprefixer"], "styles.autoprefixer")
        if "autoprefixer" in section
        else defaults.autoprefixer
    )
    minifier = section.get("minifier", defaults.minifier)
    if minifier is not None and not isinstance(minifier, bool):
        raise ConfigError("'styles.minifier' must be true, false or omitted")
    return StyleOptions(
        output_style=output_style,
        precision=_typed(section, "precision", int, defaults.precision, "styles"),
        autoprefixer=autoprefixer,
        minifier=minifier,
        out=_typed(section, "out", str, defaults.out, "styles"),
    )


def _parse_scripts(data: Mapping[str, Any]) -> ScriptOptions:
    section = _section(data, "scripts")
    defaults = ScriptOptions()
    return ScriptOptions(
        dev_out=_typed(section, "dev_out", str, defaults.dev_out, "scripts"),
        prod_out=_typed(section, "prod_out", str, defaults.prod_out, "scripts"),
        strip_debug=_typed(section, "strip_debug", bool, defaults.strip_debug, "scripts"),
    )


def _parse_server(data: Mapping[str, Any]) -> ServerOptions:
    section = _section(data, "server")
    defaults = ServerOptions()
    return ServerOptions(
        port=_typed(section, "port", int, defaults.port, "server"),
        open=_typed(section, "open", bool, defaults.open, "server"),
        notify=_typed(section, "notify", bool, defaults.notify, "server"),
        index=_typed(section, "index", str, defaults.index, "server"),
    )


def _parse_deploy(data: Mapping[str, Any]) -> DeployOptions:
    section = _section(data, "deploy")
    defaults = DeployOptions()
    return DeployOptions(
        host=_typed(section, "host", str, defaults.host, "deploy"),
        port=_typed(section, "port", int, defaults.port, "deploy"),
        remote_path=_typed(section, "remote_path", str, defaults.remote_path, "deploy"),
        timeout=float(_typed(section, "timeout", (int, float), defaults.timeout, "deploy")),
    )


def config_from_dict(project_root: Path, data: Mapping[str, Any]) -> SiteConfig:
    """Build a SiteConfig from an already-parsed site.yaml document."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the top level")

    source_dir = str(data.get("source_dir", DEFAULT_SOURCE_DIR))
    build_dir = str(data.get("build_dir", DEFAULT_BUILD_DIR))
    if Path(build_dir).resolve() == Path(source_dir).resolve() or build_dir in ("", "."):
        raise ConfigError("build_dir must be a dedicated directory, separate from source_dir")

    html = _section(data, "html")
    context = html.get("context") or {}
    if not isinstance(context, dict):
        raise ConfigError("'html.context' must be a mapping")

    debounce = data.get("debounce", DEFAULT_DEBOUNCE_SECONDS)
    if isinstance(debounce, bool) or not isinstance(debounce, (int, float)) or debounce < 0:
        raise ConfigError("'debounce' must be a non-negative number of seconds")

    return SiteConfig(
        project_root=project_root,
        name=str(data.get("name", project_root.name)),
        description=str(data.get("description", "")),
        version=str(data.get("version", "0.0.0")),
        source_dir=source_dir,
        build_dir=build_dir,
        filesets=_parse_filesets(data, source_dir),
        html_context=dict(context),
        styles=_parse_styles(data),
        scripts=_parse_scripts(data),
        server=_parse_server(data),
        deploy=_parse_deploy(data),
        debounce_seconds=float(debounce),
    )


def load_config(project_root: Path, config_path: Optional[Path] = None) -> SiteConfig:
    """Load site.yaml from the project root (or an explicit path).

    A project without site.yaml gets the defaults for the source/ layout.
    """
    project_root = project_root.resolve()
    path = config_path if config_path is not None else project_root / CONFIG_FILENAME

    if not path.exists():
        if config_path is not None:
            raise ConfigError(f"Config file not found: {path}")
        return config_from_dict(project_root, {})

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path.name} is not valid YAML: {e}") from e

    return config_from_dict(project_root, data or {})
