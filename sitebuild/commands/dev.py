"""
Dev server for sitebuild.

Combines HTTP serving of the output directory with a WebSocket live-reload
channel. The watcher calls DevServer.notify after a successful rerun and the
server pushes a reload message to every connected browser.
"""

from __future__ import annotations

import asyncio
import functools
import json
import threading
import webbrowser
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional

import websockets
from websockets.asyncio.server import ServerConnection, serve as ws_serve

from sitebuild.build.config import ServerOptions
from sitebuild.core.errors import ServerError
from sitebuild.core.utils import log


# =============================================================================
# Injected Client Script
# =============================================================================

# Placeholders are replaced at runtime via str.replace().
LIVE_RELOAD_SCRIPT = """
<script>
(function() {
  var wsPort = __SITEBUILD_WS_PORT__;
  var notify = __SITEBUILD_NOTIFY__;
  var reconnectDelay = 500;
  var maxReconnectDelay = 5000;
  var overlay = null;

  function showOverlay(text) {
    if (!notify) return;
    if (!overlay) {
      overlay = document.createElement('div');
      overlay.style.cssText = 'position:fixed;top:12px;right:12px;background:rgba(0,0,0,.75);' +
        'color:#fff;padding:8px 16px;border-radius:6px;font:13px/1.4 sans-serif;z-index:999999;' +
        'pointer-events:none';
      document.body.appendChild(overlay);
    }
    overlay.textContent = text;
  }

  function reloadCSS() {
    var links = document.querySelectorAll('link[rel="stylesheet"]');
    var stamp = '?t=' + Date.now();
    for (var i = 0; i < links.length; i++) {
      var href = links[i].getAttribute('href');
      if (href) links[i].setAttribute('href', href.split('?')[0] + stamp);
    }
  }

  function connect() {
    var ws = new WebSocket('ws://' + location.hostname + ':' + wsPort + '/ws');
    ws.onmessage = function(event) {
      var msg;
      try { msg = JSON.parse(event.data); } catch (e) { return; }
      if (msg.type === 'css-reload') {
        showOverlay('Injected: stylesheets');
        reloadCSS();
      } else if (msg.type === 'reload') {
        showOverlay('Reloading...');
        setTimeout(function() { location.reload(); }, 100);
      }
    };
    ws.onclose = function() {
      setTimeout(function() {
        reconnectDelay = Math.min(reconnectDelay * 1.5, maxReconnectDelay);
        connect();
      }, reconnectDelay);
    };
  }

  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', connect);
  } else {
    connect();
  }
})();
</script>
"""


def inject_reload_script(html: str, ws_port: int, notify: bool = True) -> str:
    """Insert the live-reload client before </body> (or </html>, or at the end)."""
    script = (
        LIVE_RELOAD_SCRIPT
        .replace("__SITEBUILD_WS_PORT__", str(ws_port))
        .replace("__SITEBUILD_NOTIFY__", "true" if notify else "false")
    )
    lowered = html.lower()
    for tag in ("</body>", "</html>"):
        idx = lowered.rfind(tag)
        if idx != -1:
            return html[:idx] + script + "\n" + html[idx:]
    return html + script


# =============================================================================
# Script-Injecting HTTP Handler
# =============================================================================


class InjectingHandler(SimpleHTTPRequestHandler):
    """HTTP handler that injects the live reload script into HTML responses."""

    def __init__(
        self,
        *args,
        directory: str,
        ws_port: int,
        notify: bool = True,
        index: str = "index.html",
        quiet: bool = True,
        **kwargs,
    ):
        self.ws_port = ws_port
        self.notify = notify
        self.index = index
        self.quiet = quiet
        super().__init__(*args, directory=directory, **kwargs)

    def log_message(self, format, *args):
        """Suppress default HTTP logging unless verbose."""
        if not self.quiet:
            super().log_message(format, *args)

    def do_GET(self):
        """Serve files, injecting the reload script into HTML."""
        f_path = Path(self.translate_path(self.path))

        if f_path.is_dir():
            index = f_path / self.index
            if index.exists():
                f_path = index

        if not (f_path.is_file() and f_path.suffix in (".html", ".htm")):
            super().do_GET()
            return

        try:
            content = f_path.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            # Replaced mid-request by a rebuild; let the client retry
            log.dim(f"Could not read {f_path.name}: {e}")
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "File is being rebuilt")
            return

        encoded = inject_reload_script(content, self.ws_port, self.notify).encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        # Prevent caching during dev
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.end_headers()
        self.wfile.write(encoded)


# =============================================================================
# WebSocket Broadcast Server
# =============================================================================


class ReloadBroadcaster:
    """Manages WebSocket connections and broadcasts reload messages."""

    def __init__(self):
        self._clients: set[ServerConnection] = set()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def handler(self, websocket: ServerConnection) -> None:
        """Handle a new WebSocket connection."""
        with self._lock:
            self._clients.add(websocket)
        count = self.client_count
        log.dim(f"Browser connected ({count} client{'s' if count != 1 else ''})")

        try:
            # Clients never send anything; iterate to keep the connection open
            async for _ in websocket:
                pass
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            with self._lock:
                self._clients.discard(websocket)
            count = self.client_count
            log.dim(f"Browser disconnected ({count} client{'s' if count != 1 else ''})")

    def broadcast(self, message: dict) -> int:
        """Broadcast a message to all connected clients.

        Thread-safe: called from the debouncer thread. Returns the number
        of clients the message was scheduled for.
        """
        if self._loop is None:
            return 0

        with self._lock:
            clients = set(self._clients)

        if not clients:
            return 0

        data = json.dumps(message)

        async def _send_all():
            await asyncio.gather(*(self._safe_send(client, data) for client in clients))

        asyncio.run_coroutine_threadsafe(_send_all(), self._loop)
        return len(clients)

    @staticmethod
    async def _safe_send(client: ServerConnection, data: str) -> None:
        try:
            await client.send(data)
        except websockets.exceptions.ConnectionClosed:
            pass  # Cleaned up by handler()

    def notify_reload(self) -> int:
        """Send a full page reload message."""
        return self.broadcast({"type": "reload"})

    def notify_css_reload(self) -> int:
        """Send a stylesheet-only reload message."""
        return self.broadcast({"type": "css-reload"})


# =============================================================================
# Notification Debouncer
# =============================================================================


class NotificationDebouncer:
    """Debounces reload notifications to avoid rapid-fire browser reloads.

    A full reload already pending is never downgraded to a css-reload.
    """

    def __init__(self, broadcaster: ReloadBroadcaster, delay: float = 0.05):
        self.broadcaster = broadcaster
        self.delay = delay
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._pending_type: Optional[str] = None

    def schedule(self, reload_type: str) -> None:
        """Schedule a reload notification."""
        with self._lock:
            if self._pending_type == "reload" and reload_type == "css-reload":
                return
            self._pending_type = reload_type

            if self._timer is not None:
                self._timer.cancel()

            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            rtype = self._pending_type
            self._pending_type = None
            self._timer = None

        if rtype == "css-reload":
            sent = self.broadcaster.notify_css_reload()
        elif rtype == "reload":
            sent = self.broadcaster.notify_reload()
        else:
            return
        if sent:
            log.dim(f"Notified {sent} browser{'s' if sent != 1 else ''}: {rtype}")

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending_type = None


def reload_type_for(task: str) -> str:
    """Stylesheets are swapped in place; everything else reloads the page."""
    return "css-reload" if task == "styles" else "reload"


# =============================================================================
# Dev Server
# =============================================================================


async def _ws_process_request(connection, request):
    """Only accept WebSocket connections on /ws path."""
    if request.path != "/ws":
        return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
    return None


class DevServer:
    """HTTP server over the output directory plus the live-reload channel."""

    def __init__(self, site_dir: Path, options: ServerOptions, host: str = "localhost"):
        self.site_dir = site_dir
        self.options = options
        self.host = host
        self.broadcaster = ReloadBroadcaster()
        self.notifier = NotificationDebouncer(self.broadcaster)
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ws_stop: Optional[asyncio.Future] = None
        self._ws_ready = threading.Event()
        self._ws_error: Optional[OSError] = None
        self._threads: list[threading.Thread] = []

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.options.port}"

    def start(self) -> None:
        # --- HTTP ---
        handler_factory = functools.partial(
            InjectingHandler,
            directory=str(self.site_dir),
            ws_port=self.options.ws_port,
            notify=self.options.notify,
            index=self.options.index,
        )
        try:
            self._httpd = ThreadingHTTPServer((self.host, self.options.port), handler_factory)
        except OSError as e:
            raise ServerError(f"Cannot serve on {self.url}: {e}") from e
        self._httpd.daemon_threads = True
        http_thread = threading.Thread(
            target=self._httpd.serve_forever, name="sitebuild-http", daemon=True
        )
        http_thread.start()
        self._threads.append(http_thread)
        log.success(f"HTTP server: {self.url}")

        # --- WebSocket on its own asyncio loop ---
        self._loop = asyncio.new_event_loop()
        self.broadcaster.set_loop(self._loop)
        ws_thread = threading.Thread(target=self._run_ws_thread, name="sitebuild-ws", daemon=True)
        ws_thread.start()
        self._threads.append(ws_thread)
        ws_url = f"ws://{self.host}:{self.options.ws_port}/ws"
        if not self._ws_ready.wait(timeout=5):
            self.stop()
            raise ServerError(f"Live reload server did not start on {ws_url}")
        if self._ws_error is not None:
            error = self._ws_error
            ws_thread.join(timeout=5)
            self.stop()
            raise ServerError(f"Cannot serve live reload on {ws_url}: {error}") from error
        log.success(f"Live reload: {ws_url}")

        if self.options.open:
            webbrowser.open(self.url)

    def _run_ws_thread(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as e:
            self._ws_error = e
            self._ws_ready.set()
        finally:
            self._loop.close()

    async def _run_ws_server(self) -> None:
        self._ws_stop = asyncio.get_running_loop().create_future()
        async with ws_serve(
            self.broadcaster.handler,
            self.host,
            self.options.ws_port,
            process_request=_ws_process_request,
        ):
            self._ws_ready.set()
            await self._ws_stop

    def notify(self, task: str) -> None:
        """Reload signal after a successful rerun of task."""
        self.notifier.schedule(reload_type_for(task))

    def stop(self) -> None:
        self.notifier.cancel()
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
        loop, stop = self._loop, self._ws_stop
        if loop is not None and stop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(lambda: stop.done() or stop.set_result(None))
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads.clear()
