"""
Build orchestrator for sitebuild.

Registers the named tasks, wires them to the build mode and runs a target
through the scheduler. In development the `serve-and-watch` task starts the
dev server and the watchers after the initial build succeeded.
"""

from __future__ import annotations

import functools
from typing import Optional

from sitebuild.build.config import TRANSFORM_TASKS, BuildContext, BuildMode, SiteConfig
from sitebuild.build.graph import RunReport, Scheduler, Task, TaskGraph
from sitebuild.build.phases import (
    build_html,
    build_images,
    build_passthrough,
    build_scripts,
    build_styles,
    clean_output,
)
from sitebuild.commands.deploy import Credentials, deploy_site
from sitebuild.commands.dev import DevServer
from sitebuild.commands.watch import Watcher, WatchState, wait_forever
from sitebuild.core.timing import timing_summary
from sitebuild.core.utils import log

TRANSFORM_ACTIONS = {
    "html": (build_html, "Render page templates"),
    "images": (build_images, "Copy and compress images"),
    "styles": (build_styles, "Compile stylesheets"),
    "scripts": (build_scripts, "Bundle scripts"),
    "passthrough": (build_passthrough, "Copy server-side files"),
}

DEPLOY_HINT = "sitebuild deploy --user $FTP_USER --password $FTP_PASSWORD"


# =============================================================================
# Build Orchestrator
# =============================================================================


class BuildOrchestrator:
    """Owns the task graph, the scheduler and, in development, the dev loop."""

    def __init__(
        self,
        config: SiteConfig,
        mode: BuildMode = BuildMode.DEVELOPMENT,
        serve: bool = True,
        credentials: Optional[Credentials] = None,
        verbose: bool = False,
    ):
        self.config = config
        self.mode = mode
        self.ctx = BuildContext(config=config, mode=mode)
        # Production never serves or watches
        self.serve = serve and not mode.is_production
        self.credentials = credentials or Credentials(user=None, password=None)
        self.verbose = verbose

        self.graph = self.create_graph()
        self.scheduler = Scheduler(self.graph)
        self.server: Optional[DevServer] = None
        self.watcher: Optional[Watcher] = None

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    def create_graph(self) -> TaskGraph:
        graph = TaskGraph()
        graph.add(Task("cleanup", functools.partial(clean_output, self.ctx), description="Empty the output directory"))

        for name in TRANSFORM_TASKS:
            action, description = TRANSFORM_ACTIONS[name]
            graph.add(
                Task(name, functools.partial(action, self.ctx), requires=("cleanup",), description=description)
            )

        build_requires = TRANSFORM_TASKS
        if self.serve:
            graph.add(
                Task(
                    "serve-and-watch",
                    self.serve_and_watch,
                    requires=TRANSFORM_TASKS,
                    description="Start the dev server and watch sources",
                )
            )
            build_requires = TRANSFORM_TASKS + ("serve-and-watch",)

        graph.add(Task("build", self.post_build, requires=build_requires, description="Post-build summary"))
        graph.add(Task("deploy", self._deploy, description="Upload the output directory over FTP"))
        return graph

    # -------------------------------------------------------------------------
    # Task bodies
    # -------------------------------------------------------------------------

    def serve_and_watch(self) -> None:
        """Start the dev server, then move the watcher from IDLE to WATCHING."""
        if self.server is None:
            server = DevServer(self.config.output_path, self.config.server)
            server.start()
            self.server = server
        if self.watcher is None:
            self.watcher = Watcher(self.config, self.scheduler, self.server.notify)
        self.watcher.start()

    def post_build(self) -> None:
        log.header(f"{self.config.name} {self.config.version}")
        if self.config.description:
            log.info(self.config.description)
        if self.mode.is_production:
            log.info("This is a production build")
            log.info("Please run the following script for deployment:")
            log.info(DEPLOY_HINT)
        else:
            log.info("This is a development build")
            if self.watching:
                log.info("File changes will be watched and trigger a page reload")

    def _deploy(self) -> None:
        deploy_site(self.ctx, self.credentials)

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    @property
    def watching(self) -> bool:
        return self.watcher is not None and self.watcher.state is WatchState.WATCHING

    def run(self, target: str = "build") -> RunReport:
        """Run target and its prerequisites. Raises BuildFailed on failure."""
        log.header(f"sitebuild {target} ({self.mode.value})")
        report = self.scheduler.run(target)
        if self.verbose:
            log.dim(timing_summary(report.timings))
        return report

    def wait(self) -> None:
        """Block while watching; Ctrl+C propagates after an orderly shutdown."""
        if not self.watching:
            return
        log.info(f"Serving {self.server.url} (Ctrl+C to stop)")
        try:
            wait_forever()
        finally:
            log.info("Shutting down...")
            self.close()

    def close(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
        if self.server is not None:
            self.server.stop()
            self.server = None
        self.scheduler.shutdown()

    def __enter__(self) -> "BuildOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
