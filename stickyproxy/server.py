"""Local HTTP proxy serving manifest resources from the verified cache."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import requests

from .cache import CacheGenerationManager
from .config import ProxyConfig
from .database import StateStore
from .fetcher import UpstreamUnavailable, clean_response
from .integrity import IntegrityMismatch
from .models import CachedResponse

logger = logging.getLogger(__name__)

# Paths under this prefix are answered by the proxy itself, never forwarded
CONTROL_PREFIX = "/__stickyproxy/"


class ProxyError(Exception):
    """Raised when the proxy server cannot start."""

    pass


def _request_forces_reload(cache_control: str | None, pragma: str | None) -> bool:
    """Whether the client asked to bypass caches (a hard reload)."""
    directives = {part.strip().lower() for part in (cache_control or "").split(",")}
    return "no-cache" in directives or "no-store" in directives or (pragma or "").lower() == "no-cache"


class ProxyHandler(BaseHTTPRequestHandler):
    """HTTP request handler that resolves requests against the manifest."""

    # Class-level references set by factory
    manager: CacheGenerationManager | None = None
    store: StateStore | None = None
    session: requests.Session | None = None
    config: ProxyConfig | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _send_cached(self, response: CachedResponse, head_only: bool = False) -> None:
        """Send a stored response as-is."""
        self.send_response(response.status, response.reason or None)
        for name, value in response.headers.items():
            if name.lower() == "connection":
                continue
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if not head_only:
            self.wfile.write(response.body)

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._handle(head_only=False)

    def do_HEAD(self) -> None:
        """Handle HEAD requests."""
        self._handle(head_only=True)

    def _handle(self, head_only: bool) -> None:
        try:
            if self.path == CONTROL_PREFIX + "health":
                self._send_json(200, {"status": "ok"})
            elif self.path == CONTROL_PREFIX + "state":
                self._handle_state()
            elif self.config is not None and self.config.development:
                self._passthrough(head_only)
            else:
                self._handle_resource(head_only)
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _handle_state(self) -> None:
        """Handle GET /__stickyproxy/state - version markers and generations."""
        if self.store is None or self.manager is None:
            self._send_error_json(503, "State not available")
            return

        state = self.store.version_state()
        self._send_json(
            200,
            {
                "current_version": state.current_version,
                "pending_version": state.pending_version,
                "bricked": state.bricked,
                "active_generation": self.manager.active_name,
                "generations": self.manager.storage.keys(),
                "manifest_entries": len(self.manager.manifest),
            },
        )

    def _handle_resource(self, head_only: bool) -> None:
        if self.manager is None:
            self._send_error_json(503, "Cache not available")
            return

        reload = _request_forces_reload(self.headers.get("Cache-Control"), self.headers.get("Pragma"))

        try:
            response = self.manager.handle(self.path, reload=reload)
        except IntegrityMismatch as e:
            logger.error("%s", e)
            self._send_error_json(502, str(e))
            return
        except UpstreamUnavailable as e:
            if e.response is not None:
                # Upstream status passed through unverified and uncached
                self._send_cached(e.response, head_only)
                return
            logger.warning("%s", e)
            self._send_error_json(502, str(e))
            return

        if response is None:
            self._passthrough(head_only)
            return

        self._send_cached(response, head_only)

    def _passthrough(self, head_only: bool) -> None:
        """Forward a request that is not in the manifest straight to the origin."""
        if self.session is None or self.config is None:
            self._send_error_json(404, "Not found")
            return

        url = self.config.origin.rstrip("/") + self.path
        try:
            upstream = self.session.get(
                url,
                headers={"User-Agent": self.config.network.user_agent, "Accept-Encoding": "identity"},
                timeout=self.config.network.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Passthrough to %s failed: %s", url, e)
            self._send_error_json(502, f"Failed to fetch {url}")
            return

        self._send_cached(clean_response(upstream), head_only)


def _create_handler_class(
    manager: CacheGenerationManager,
    store: StateStore | None = None,
    session: requests.Session | None = None,
    config: ProxyConfig | None = None,
) -> type:
    """Create a handler class with the cache, state and config bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.manager = manager
    BoundProxyHandler.store = store
    BoundProxyHandler.session = session
    BoundProxyHandler.config = config
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP server fronting the verified cache."""

    def __init__(
        self,
        config: ProxyConfig,
        manager: CacheGenerationManager,
        store: StateStore | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Proxy configuration (port, origin, network settings).
            manager: Cache generation manager serving manifest resources.
            store: State store, for the state endpoint.
            session: HTTP session used for passthrough requests.
        """
        self.config = config
        self.manager = manager
        self.store = store
        self.session = session
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the proxy server in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        port = self.config.server.port
        try:
            handler_class = _create_handler_class(self.manager, self.store, self.session, self.config)
            self._server = ThreadingHTTPServer(("", port), handler_class)
            self._server.daemon_threads = True

            self._thread = threading.Thread(
                target=self._server.serve_forever,
                kwargs={"poll_interval": 0.5},
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on port %d", port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {port} is already in use. "
                    f"Another process may be using this port, or stickyproxy is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {port}: {e}")

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")

        if self._server:
            self._server.shutdown()
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
