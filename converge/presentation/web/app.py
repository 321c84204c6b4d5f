"""
converge Status Server

Architectural Intent:
- Lightweight web server built entirely on Python stdlib (http.server + asyncio).
- Serves the recorded state and run history as JSON plus a minimal HTML
  status page for browser-based monitoring.
- Accepts push webhooks that trigger a pipeline run for the pushed revision.

API Surface:
    GET  /             -> HTML status page
    GET  /api/state    -> JSON state record (serial, create order, nodes)
    GET  /api/runs     -> JSON run history, newest first (?limit=N)
    GET  /api/events   -> JSON recent domain events
    POST /hooks/push   -> Run the pipeline (flat {revision, branch, repository}
                          body or a git host push body)

Security:
    When a webhook secret is configured, POST /hooks/push requires it in the
    X-Converge-Token header (constant-time comparison).

Threading Model:
    The stdlib HTTPServer is synchronous.  We run it in a background thread so
    the main asyncio event loop stays free.  The push handler runs the async
    pipeline in a fresh event loop on the handler thread; one pipeline runs
    at a time.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qs, urlparse

from converge.application.dtos.run_dtos import PipelineRunResponse, PushEventRequest
from converge.application.orchestration.pipeline_executor import PipelineResult
from converge.domain.errors import BuildStepError, ConvergeError, ValidationError
from converge.domain.ports.state_store_port import StateStorePort
from converge.infrastructure.event_bus import EventBus

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Converge-Token"

PushRunner = Callable[[PushEventRequest], Awaitable[PipelineResult]]

# ---------------------------------------------------------------------------
# HTML template for the status page
# ---------------------------------------------------------------------------

_STATUS_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>converge status</title>
  <style>
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body { font-family: system-ui, sans-serif; background: #0f1117; color: #e0e0e0; }
    header { background: #1a1d28; padding: 1rem 2rem; border-bottom: 1px solid #2a2d3a; }
    header h1 { font-size: 1.4rem; color: #7eb8f7; }
    .container { max-width: 1000px; margin: 2rem auto; padding: 0 1rem; }
    h2 { font-size: 0.9rem; text-transform: uppercase; color: #888; margin: 1.5rem 0 0.5rem; }
    table { width: 100%; border-collapse: collapse; background: #1a1d28;
            border-radius: 8px; overflow: hidden; }
    th, td { padding: 0.6rem 1rem; text-align: left; border-bottom: 1px solid #2a2d3a; }
    th { background: #22252f; color: #999; font-size: 0.8rem; text-transform: uppercase; }
    .status-badge { padding: 0.2rem 0.6rem; border-radius: 4px; font-size: 0.8rem; }
    .status-CREATED, .status-success { background: #1b3a1b; color: #4caf50; }
    .status-FAILED, .status-failed { background: #3a1b1b; color: #f44336; }
    .status-CREATING, .status-DESTROYING { background: #1b2a3a; color: #2196f3; }
    .status-PENDING, .status-DESTROYED { background: #2a2d3a; color: #888; }
    #error { color: #f44336; padding: 1rem; display: none; }
  </style>
</head>
<body>
  <header><h1>converge status <span id="serial"></span></h1></header>
  <div class="container">
    <div id="error"></div>
    <h2>State</h2>
    <table>
      <thead><tr><th>Node</th><th>Type</th><th>Status</th><th>Depends on</th></tr></thead>
      <tbody id="nodes"></tbody>
    </table>
    <h2>Runs</h2>
    <table>
      <thead><tr><th>#</th><th>Command</th><th>Outcome</th><th>Finished</th><th>Details</th></tr></thead>
      <tbody id="runs"></tbody>
    </table>
  </div>
  <script>
    async function refresh() {
      try {
        const state = await (await fetch('/api/state')).json();
        const runs = await (await fetch('/api/runs?limit=20')).json();
        document.getElementById('serial').textContent = '(serial ' + state.serial + ')';
        document.getElementById('nodes').innerHTML = state.nodes.map(n =>
          `<tr>
            <td>${n.node_id}</td>
            <td>${n.type}</td>
            <td><span class="status-badge status-${n.status}">${n.status}</span></td>
            <td>${n.dependencies.join(', ')}</td>
          </tr>`
        ).join('');
        document.getElementById('runs').innerHTML = runs.map(r =>
          `<tr>
            <td>${r.id}</td>
            <td>${r.command}</td>
            <td><span class="status-badge status-${r.outcome}">${r.outcome}</span></td>
            <td>${r.finished_at}</td>
            <td>${r.details}</td>
          </tr>`
        ).join('');
        document.getElementById('error').style.display = 'none';
      } catch (e) {
        const el = document.getElementById('error');
        el.textContent = 'Failed to fetch status: ' + e.message;
        el.style.display = 'block';
      }
    }
    refresh();
    setInterval(refresh, 5000);
  </script>
</body>
</html>
"""


def state_to_dict(state_store: StateStorePort) -> dict[str, Any]:
    record = state_store.load()
    return {
        "serial": record.serial,
        "create_order": [list(batch) for batch in record.create_order],
        "nodes": [record.nodes[k].to_dict() for k in sorted(record.nodes)],
    }


# ---------------------------------------------------------------------------
# Request handler
# ---------------------------------------------------------------------------

class ConvergeRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the status server.

    Attributes on the *server* instance (set by ConvergeWebApp):
        app:  ConvergeWebApp -- state store, event bus, push runner, secret
    """

    # Silence per-request log lines from BaseHTTPRequestHandler
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("web: %s", format % args)

    @property
    def app(self) -> "ConvergeWebApp":
        return self.server.app  # type: ignore[attr-defined]

    # ---- routing -----------------------------------------------------------

    def do_GET(self) -> None:  # noqa: N802
        """Route GET requests."""
        url = urlparse(self.path)
        if url.path == "/":
            self._serve_status_page()
        elif url.path == "/api/state":
            self._send_json(state_to_dict(self.app.state_store))
        elif url.path == "/api/runs":
            self._serve_runs(parse_qs(url.query))
        elif url.path == "/api/events":
            self._send_json([e.to_dict() for e in self.app.event_bus.recent()])
        else:
            self._send_json({"error": "not found"}, HTTPStatus.NOT_FOUND)

    def do_POST(self) -> None:  # noqa: N802
        """Route POST requests."""
        if urlparse(self.path).path == "/hooks/push":
            self._handle_push()
        else:
            self._send_json({"error": "not found"}, HTTPStatus.NOT_FOUND)

    # ---- endpoint implementations ------------------------------------------

    def _serve_status_page(self) -> None:
        body = _STATUS_HTML.encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _serve_runs(self, query: dict[str, list[str]]) -> None:
        try:
            limit = int(query.get("limit", ["50"])[0])
        except ValueError:
            self._send_json({"error": "limit must be an integer"}, HTTPStatus.BAD_REQUEST)
            return
        self._send_json(self.app.state_store.list_runs(max(1, min(limit, 500))))

    def _authorized(self) -> bool:
        secret = self.app.webhook_secret
        if not secret:
            return True
        supplied = self.headers.get(TOKEN_HEADER, "")
        return hmac.compare_digest(supplied.encode(), secret.encode())

    def _handle_push(self) -> None:
        """Run the pipeline for a pushed revision.

        Responds 200 when every step succeeded, 500 with the step statuses
        when the pipeline failed, 400 for a malformed body or invalid
        declarations and 401 for a missing or wrong token.
        """
        if not self._authorized():
            self._send_json({"error": "invalid or missing token"}, HTTPStatus.UNAUTHORIZED)
            return
        try:
            content_length = int(self.headers.get("Content-Length", 0))
            raw = self.rfile.read(content_length)
            body = json.loads(raw) if raw else {}
            if not isinstance(body, dict):
                raise ValueError("body must be a JSON object")
            request = PushEventRequest.from_payload(body)
        except (json.JSONDecodeError, ValueError) as e:
            self._send_json({"error": f"invalid push body: {e}"}, HTTPStatus.BAD_REQUEST)
            return

        logger.info("Push received for %s", request.revision)
        with self.app.pipeline_lock:
            try:
                result = asyncio.run(self.app.run_push(request))
                response = PipelineRunResponse(
                    success=True,
                    message="pipeline succeeded",
                    statuses={k: v.name for k, v in result.statuses.items()},
                )
                status = HTTPStatus.OK
            except BuildStepError as e:
                response = PipelineRunResponse(
                    success=False,
                    message=str(e),
                    statuses={k: v.name for k, v in e.result.statuses.items()},
                )
                status = HTTPStatus.INTERNAL_SERVER_ERROR
            except ValidationError as e:
                self._send_json({"error": str(e), "problems": e.problems}, HTTPStatus.BAD_REQUEST)
                return
            except ConvergeError as e:
                logger.error("Pipeline for %s failed: %s", request.revision, e)
                self._send_json({"error": str(e)}, HTTPStatus.BAD_REQUEST)
                return
        self._send_json(
            {
                "success": response.success,
                "message": response.message,
                "statuses": response.statuses,
            },
            status,
        )

    # ---- helpers -----------------------------------------------------------

    def _send_json(self, data: Any, status: HTTPStatus = HTTPStatus.OK) -> None:
        """Serialize *data* as JSON and send it as the HTTP response."""
        body = json.dumps(data, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


# ---------------------------------------------------------------------------
# Web application wrapper
# ---------------------------------------------------------------------------

class ConvergeWebApp:
    """Async-friendly status and webhook server.

    Usage::

        app = ConvergeWebApp(state_store, event_bus, run_push, webhook_secret="s3cret")
        await app.start("127.0.0.1", 8080)
        # ... later ...
        app.stop()
    """

    def __init__(
        self,
        state_store: StateStorePort,
        event_bus: EventBus,
        run_push: PushRunner,
        webhook_secret: str = "",
    ) -> None:
        self.state_store = state_store
        self.event_bus = event_bus
        self.run_push = run_push
        self.webhook_secret = webhook_secret
        self.pipeline_lock = threading.Lock()
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        """Bound port (useful when started with port 0)."""
        if self._server is None:
            raise RuntimeError("server not started")
        return self._server.server_address[1]

    async def start(self, host: str = "127.0.0.1", port: int = 8080) -> None:
        """Start the web server in a background thread."""
        self._server = ThreadingHTTPServer((host, port), ConvergeRequestHandler)
        self._server.daemon_threads = True
        # Attach application state to the server so handlers can access it.
        self._server.app = self  # type: ignore[attr-defined]

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="converge-web",
        )
        self._thread.start()
        logger.info("converge status server started on http://%s:%d", host, self.port)

    def stop(self) -> None:
        """Shut down the web server gracefully."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            logger.info("converge status server stopped")
        if self._thread is not None:
            self._thread.join(timeout=5)
