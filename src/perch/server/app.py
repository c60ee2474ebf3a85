"""DevServer — the ASGI application tying every component together.

Per request:

- ``/__perch/...``       health and live-update endpoints
- ``/_perch/assets/...`` content-addressed artifacts (ETag, immutable)
- ``<api_prefix>/...``   proxied to the supervised backend
- anything else          resolved as a view and rendered

Development mode builds on demand (``ensure_fresh``) and watches the
project; production mode trusts the manifest written by ``perch build``.

Lifespan startup order: route table, build (or manifest load), live
pump, API backend, watcher. Shutdown runs in reverse.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
import re
from collections.abc import Coroutine
from typing import Any, Literal

import anyio.to_thread
import httpx

from perch._internal.asgi import Receive, Scope, Send
from perch.build.compiler import AssetCompiler, Compiler
from perch.build.events import BuildEventBus
from perch.build.graph import BuildGraph
from perch.build.manifest import ManifestEntry, load_build_manifest
from perch.config import PerchConfig
from perch.errors import (
    BuildError,
    ConfigurationError,
    HTTPError,
    MethodNotAllowed,
    NotFound,
    RenderError,
    RouteConflict,
    ServiceUnavailable,
)
from perch.http.request import Request
from perch.http.response import RawResponse, Response
from perch.live.broker import LiveUpdateBroker
from perch.live.client import LIVE_CLIENT_JS, LIVE_CLIENT_PATH, live_client_tag
from perch.live.protocol import MessageKind, ProtocolError, decode_client_message, encode_message
from perch.live.sse import handle_sse
from perch.render.bridge import RenderBridge, Renderer, build_context
from perch.render.kida_renderer import KidaRenderer
from perch.render.overlay import render_error_page, render_overlay
from perch.routing.route import RouteKind, RouteMatch
from perch.routing.table import RouteTable, build_route_table, project_entries
from perch.server.errors import handle_http_error, handle_internal_error
from perch.server.sender import send_response
from perch.server.terminal_errors import log_error
from perch.supervisor.probe import Probe
from perch.supervisor.process import Launcher
from perch.supervisor.proxy import ApiProxy
from perch.supervisor.supervisor import ApiSupervisor
from perch.watch.changes import ChangeSet
from perch.watch.watcher import FileWatcher

logger = logging.getLogger("perch.server")

ASSET_PREFIX = "/_perch/assets/"
INTERNAL_PREFIX = "/__perch/"
HEALTH_PATH = "/__perch/health"
LIVE_EVENTS_PATH = "/__perch/live/events"
LIVE_SUBSCRIBE_PATH = "/__perch/live/subscribe"
LIVE_ACK_PATH = "/__perch/live/ack"

_IMMUTABLE = "public, max-age=31536000, immutable"
_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)

type Mode = Literal["dev", "production"]


class _ClientGone(Exception):  # noqa: N818
    """The client disconnected while its request was waiting."""


class DevServer:
    """ASGI application for development and production serving.

    Usage::

        server = DevServer(load_config("."), mode="dev")
        run_dev_server(server, server.config)

    Collaborators can be swapped for tests: ``compiler``, ``renderer``,
    ``launcher``, ``probe``, and an httpx ``transport`` for the proxy.
    """

    def __init__(
        self,
        config: PerchConfig,
        *,
        mode: Mode = "dev",
        compiler: Compiler | None = None,
        renderer: Renderer | None = None,
        launcher: Launcher | None = None,
        probe: Probe | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        watch: bool | None = None,
    ) -> None:
        self.config = config
        self.mode: Mode = mode
        self.events = BuildEventBus()
        self.graph = BuildGraph(config, compiler or AssetCompiler(), events=self.events)
        self.broker = LiveUpdateBroker(config, asset_url=self.asset_url)
        self.bridge = RenderBridge(config, renderer or KidaRenderer(config))
        self.supervisor = ApiSupervisor(config, launcher=launcher, probe=probe)
        self.proxy = ApiProxy(config, self.supervisor, transport=transport)
        self._table = RouteTable()
        self._watch = self.dev if watch is None else watch
        self._watcher: FileWatcher | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def dev(self) -> bool:
        return self.mode == "dev"

    @property
    def route_table(self) -> RouteTable:
        """The active route table. Replaced wholesale, never mutated."""
        return self._table

    def asset_url(self, entry: str) -> str | None:
        record = self.graph.manifest.get(entry)
        if record is None:
            return None
        return ASSET_PREFIX + record.artifact_path

    # -- ASGI interface --

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI 3.0 entry point."""
        if scope["type"] == "lifespan":
            await self._handle_lifespan(receive, send)
            return
        if scope["type"] != "http":
            # pounce.worker.* scopes and anything else need no handling.
            return
        await self._handle_http(scope, receive, send)

    async def _handle_lifespan(self, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            msg_type = message["type"]

            if msg_type == "lifespan.startup":
                try:
                    await self.startup()
                except Exception as exc:
                    logger.error("Startup failed: %s", exc)
                    await send({"type": "lifespan.startup.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.startup.complete"})

            elif msg_type == "lifespan.shutdown":
                await self.shutdown()
                await send({"type": "lifespan.shutdown.complete"})
                return

    # -- Lifecycle --

    async def startup(self) -> None:
        """Bring every component up.

        Raises:
            RouteConflict: the initial route table is ambiguous.
            ConfigurationError: bad layout, or no manifest in production.
            BuildError: the initial development build failed.
        """
        self._activate(build_route_table(self.config))

        if self.dev:
            errors = await self.graph.build_all()
            if errors:
                raise errors[0]
            await anyio.to_thread.run_sync(self.graph.write_manifest)
            self._spawn(self.broker.pump(self.events.subscribe()), "perch-live-pump")
        else:
            self.graph.load_manifest(load_build_manifest(self.config.out_path))

        await self.supervisor.start()

        if self._watch:
            self._watcher = FileWatcher(self.config, self.handle_change_set)
            self._spawn(self._watcher.run(), "perch-watcher")

        logger.info(
            "perch %s ready: %d view route(s), %d api route(s)",
            self.mode,
            len(self._table.entries(RouteKind.VIEW)),
            len(self._table.entries(RouteKind.API)),
        )

    async def shutdown(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
        await self.supervisor.stop()
        await self.proxy.close()
        self.broker.close()
        self.events.close()
        for task in reversed(self._tasks):
            await task
        self._tasks.clear()

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)

    def _activate(self, table: RouteTable) -> None:
        self._table = table
        self.graph.set_entries(project_entries(table, self.config))

    # -- Change handling --

    async def handle_change_set(self, changes: ChangeSet) -> None:
        """React to one debounced change-set from the watcher."""
        if changes.config_changed:
            logger.warning("perch.toml changed; restart the server to apply it")
            self.broker.broadcast_reload("config")

        if changes.structural:
            try:
                table = build_route_table(self.config)
            except RouteConflict as exc:
                log_error(exc)
                logger.warning("Keeping the previous route table")
                self.broker.broadcast_error(exc.diagnostic())
            except ConfigurationError as exc:
                logger.error("Route discovery failed: %s", exc)
                self.broker.broadcast_error({"kind": "route", "message": str(exc)})
            else:
                self._activate(table)
                logger.info("Route table rebuilt (%d routes)", len(table))

        view_paths = changes.view_paths
        if view_paths:
            affected = self.graph.invalidate(view_paths)
            for name in sorted(affected):
                if name not in self.graph.entries:
                    continue
                with contextlib.suppress(BuildError):
                    # Failures are logged and broadcast through the event bus.
                    await self.graph.ensure_fresh(name)

        if changes.api_paths:
            self.supervisor.request_restart("api change")

    # -- Request pipeline --

    async def _handle_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request.from_asgi(scope, receive)
        path = request.path
        is_api = self._is_api(path)
        try:
            if path.startswith(INTERNAL_PREFIX):
                response = await self._internal(request, send, receive)
            elif path.startswith(ASSET_PREFIX):
                response = await self._serve_asset(request)
            elif is_api:
                response = await self._serve_api(request)
            else:
                response = await self._serve_view(request, receive)
        except _ClientGone:
            logger.debug("Client went away: %s %s", request.method, path)
            return
        except HTTPError as exc:
            response = handle_http_error(exc, request, json_body=is_api)
        except Exception as exc:
            response = handle_internal_error(exc, request, debug=self.dev)
        if response is not None:
            await send_response(response, send, head=request.method == "HEAD")

    def _is_api(self, path: str) -> bool:
        prefix = self.config.api_prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    # -- Internal endpoints --

    async def _internal(
        self, request: Request, send: Send, receive: Receive
    ) -> Response | None:
        path = request.path
        if path == HEALTH_PATH:
            return Response.json(self.health())
        if not self.dev:
            raise NotFound()

        if path == LIVE_CLIENT_PATH:
            return Response(
                body=LIVE_CLIENT_JS,
                content_type="text/javascript; charset=utf-8",
                headers=(("Cache-Control", "no-cache"),),
            )
        if path == LIVE_EVENTS_PATH:
            if request.method != "GET":
                raise MethodNotAllowed(frozenset({"GET"}))
            await self._stream_live(request, send, receive)
            return None
        if path in (LIVE_SUBSCRIBE_PATH, LIVE_ACK_PATH):
            if request.method != "POST":
                raise MethodNotAllowed(frozenset({"POST"}))
            kind = MessageKind.SUBSCRIBE if path == LIVE_SUBSCRIBE_PATH else MessageKind.ACK
            try:
                message = decode_client_message(kind, await request.body())
            except ProtocolError as exc:
                raise HTTPError(400, str(exc)) from exc
            self.broker.handle(message)
            return Response(body=b"", status=204)
        raise NotFound()

    async def _stream_live(self, request: Request, send: Send, receive: Receive) -> None:
        conn = self.broker.connect(request.query.get("client") or None)

        async def events():
            async for seq, message in self.broker.stream(conn):
                yield encode_message(message, seq)

        try:
            await handle_sse(
                events(),
                send,
                receive,
                heartbeat_interval=self.config.heartbeat_interval,
            )
        finally:
            # A reconnect may already have replaced this connection.
            if self.broker.get(conn.client_id) is conn:
                self.broker.disconnect(conn.client_id)

    def health(self) -> dict[str, object]:
        manifest = self.graph.manifest
        failed = sorted(name for name in self.graph.entries if self.graph.failure(name))
        return {
            "status": "ok" if not failed else "degraded",
            "mode": self.mode,
            "routes": {
                "view": len(self._table.entries(RouteKind.VIEW)),
                "api": len(self._table.entries(RouteKind.API)),
            },
            "manifest_version": manifest.version,
            "failed_entries": failed,
            "live_clients": len(self.broker.connections),
            "api": self.supervisor.health(),
        }

    # -- Static artifacts --

    async def _serve_asset(self, request: Request) -> Response:
        if request.method not in ("GET", "HEAD"):
            raise MethodNotAllowed(frozenset({"GET", "HEAD"}))
        artifact_path = request.path[len(ASSET_PREFIX):]
        record = self.graph.manifest.find_artifact(artifact_path)
        if record is None:
            raise NotFound()

        etag = f'"{record.hash}"'
        headers = (("ETag", etag), ("Cache-Control", _IMMUTABLE))
        if etag in _etags(request.headers.get("if-none-match", "")):
            return Response(body=b"", status=304, headers=headers)

        file = self.config.out_path / record.artifact_path
        try:
            data = await anyio.to_thread.run_sync(file.read_bytes)
        except FileNotFoundError as exc:
            raise NotFound() from exc
        content_type = mimetypes.guess_type(file.name)[0] or "application/octet-stream"
        if content_type.startswith("text/") or content_type.endswith("javascript"):
            content_type += "; charset=utf-8"
        return Response(body=data, content_type=content_type, headers=headers)

    # -- API proxy --

    async def _serve_api(self, request: Request) -> RawResponse:
        if self._table.resolve(RouteKind.API, request.path) is None:
            raise NotFound(f"No API route for {request.path}")
        if not self.supervisor.enabled:
            raise ServiceUnavailable("No API backend configured (set api_command)")
        return await self.proxy.forward(request)

    # -- Views --

    async def _serve_view(self, request: Request, receive: Receive) -> Response:
        match = self._table.resolve(RouteKind.VIEW, request.path)
        if match is None:
            raise NotFound()
        if request.method not in ("GET", "HEAD"):
            raise MethodNotAllowed(frozenset({"GET", "HEAD"}))

        entry_name = match.entry.artifact_ref
        record = await self._current_entry(entry_name, request, match, receive)
        if isinstance(record, Response):
            return record

        context = build_context(
            request.path,
            match.params,
            request.query,
            request.headers,
            self.config.context_headers,
        )
        try:
            result = await self.bridge.render(match, record, context)
        except RenderError as exc:
            log_error(exc, method=request.method, path=request.path)
            if self.dev:
                body = render_overlay(
                    exc,
                    method=request.method,
                    path=request.path,
                    params=match.params,
                    root=self.config.root_path,
                )
                return Response(body=body, status=500)
            return Response(body=render_error_page(500), status=500)

        html = self._inject(result.html, result.serialized_state, entry_name, record, request)
        headers = (("Cache-Control", "no-store"),) if self.dev else ()
        return Response(body=html, headers=headers)

    async def _current_entry(
        self,
        entry_name: str,
        request: Request,
        match: RouteMatch,
        receive: Receive,
    ) -> ManifestEntry | Response:
        """The manifest record to render from, or an error page."""
        if not self.dev:
            record = self.graph.manifest.get(entry_name)
            if record is None:
                raise HTTPError(500, f"{entry_name} missing from the build manifest")
            return record

        try:
            return await self._await_build(entry_name, receive)
        except BuildError as exc:
            stale = self.graph.manifest.get(entry_name)
            if stale is not None:
                logger.warning("Serving last good build of %s", entry_name)
                return stale
            body = render_overlay(
                exc,
                method=request.method,
                path=request.path,
                params=match.params,
                root=self.config.root_path,
            )
            return Response(body=body, status=500)

    async def _await_build(self, entry_name: str, receive: Receive) -> ManifestEntry:
        """``ensure_fresh`` raced against client disconnect.

        Abandoning the wait never cancels the build: the graph shields it
        for other waiters.
        """
        build = asyncio.ensure_future(self.graph.ensure_fresh(entry_name))
        gone = asyncio.ensure_future(_wait_for_disconnect(receive))
        try:
            done, _ = await asyncio.wait({build, gone}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gone.cancel()
        if build in done:
            return build.result()
        build.cancel()
        raise _ClientGone

    def _inject(
        self,
        html: str,
        state: str,
        entry_name: str,
        record: ManifestEntry,
        request: Request,
    ) -> str:
        """Add the initial-state script and, in development, the live client."""
        safe_state = state.replace("</", "<\\/")
        snippet = f'<script id="__perch_state" type="application/json">{safe_state}</script>'
        if self.dev and not request.wants_patch:
            base = ""
            if self.config.live_port is not None:
                base = f"//{_hostname(request)}:{self.config.live_port}"
            snippet += live_client_tag(entry_name, record.hash, base=base)

        matches = list(_BODY_CLOSE_RE.finditer(html))
        if not matches:
            return html + snippet
        cut = matches[-1].start()
        return html[:cut] + snippet + html[cut:]


async def _wait_for_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


def _etags(header: str) -> set[str]:
    return {tag.strip().removeprefix("W/") for tag in header.split(",") if tag.strip()}


def _hostname(request: Request) -> str:
    host = request.headers.get("host", "localhost")
    if host.startswith("["):
        return host.split("]")[0] + "]"
    return host.split(":")[0]

