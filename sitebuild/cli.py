"""
Main CLI for the sitebuild tool.

Builds a static site from source/ into build/, serves it with live reload
during development and deploys the production build over FTP.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sitebuild import __version__
from sitebuild.core.errors import BuildFailed, SiteBuildError
from sitebuild.core.utils import log


# =============================================================================
# Argument Parsing
# =============================================================================


def _add_project_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project root holding site.yaml and the sources (default: current directory)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to the config file (default: <project-dir>/site.yaml)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with all subcommands."""

    parser = argparse.ArgumentParser(
        prog="sitebuild",
        description="Static site build pipeline with live reload",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  build       Build the site (development by default)
  deploy      Upload the build directory over FTP

Examples:
  sitebuild build                 # Development build, serve and watch
  sitebuild build --no-serve      # Development build only
  sitebuild build --prod          # Minified production build
  sitebuild deploy --user $FTP_USER --password $FTP_PASSWORD
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- build ---
    build_parser = subparsers.add_parser(
        "build",
        help="Build the site (development by default)",
        description="Run every transform task; in development, then serve and watch.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sitebuild build                         # Build, serve on :3000, reload on change
  sitebuild build --prod                  # Minify, strip debug output, report sizes
  sitebuild build --project-dir site/     # Build another project
        """,
    )
    build_parser.add_argument(
        "--prod",
        action="store_true",
        help="Production build (minified, no server)",
    )
    build_parser.add_argument(
        "--no-serve",
        action="store_true",
        help="Development build without the dev server and watchers",
    )
    build_parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print per-task timings",
    )
    _add_project_args(build_parser)

    # --- deploy ---
    deploy_parser = subparsers.add_parser(
        "deploy",
        help="Upload the build directory over FTP",
        description="Upload every file of the build directory to deploy.remote_path.",
    )
    deploy_parser.add_argument("--user", help="FTP user")
    deploy_parser.add_argument("--password", help="FTP password")
    deploy_parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print per-task timings",
    )
    _add_project_args(deploy_parser)

    return parser


# =============================================================================
# Commands
# =============================================================================


def cmd_build(args: argparse.Namespace) -> int:
    from sitebuild.build.config import BuildMode, load_config
    from sitebuild.build.orchestrator import BuildOrchestrator

    config = load_config(args.project_dir, args.config)
    with BuildOrchestrator(
        config,
        mode=BuildMode.from_flag(args.prod),
        serve=not args.no_serve,
        verbose=args.verbose,
    ) as orchestrator:
        orchestrator.run("build")
        orchestrator.wait()
    return 0


def cmd_deploy(args: argparse.Namespace) -> int:
    from sitebuild.build.config import BuildMode, load_config
    from sitebuild.build.orchestrator import BuildOrchestrator
    from sitebuild.commands.deploy import Credentials

    config = load_config(args.project_dir, args.config)
    with BuildOrchestrator(
        config,
        mode=BuildMode.PRODUCTION,
        credentials=Credentials(user=args.user, password=args.password),
        verbose=args.verbose,
    ) as orchestrator:
        orchestrator.run("deploy")
    return 0


# =============================================================================
# Command Dispatch
# =============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Handle --no-color
    if args.no_color:
        log.set_color(False)

    # No command specified
    if not args.command:
        parser.print_help()
        return 0

    # Dispatch to command handler
    try:
        if args.command == "build":
            return cmd_build(args)

        elif args.command == "deploy":
            return cmd_deploy(args)

        else:
            log.error(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    except BuildFailed as e:
        # Task errors were already logged as they happened
        log.error(str(e))
        if e.report.blocked:
            log.dim(f"Not run: {', '.join(e.report.blocked)}")
        return 1
    except SiteBuildError as e:
        log.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
