"""Tests for perch.server.app — the DevServer end to end through TestClient."""

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from conftest import EchoRenderer, FakeLauncher, ReadyProbe, wait_for, write

from perch.build.compiler import AssetCompiler, CompileOptions, CompileResult
from perch.config import PerchConfig
from perch.errors import ConfigurationError, RouteConflict
from perch.http.response import Response
from perch.live.client import LIVE_CLIENT_PATH
from perch.live.protocol import ErrorMessage
from perch.render.bridge import RenderContext, RenderOutput
from perch.server.app import (
    HEALTH_PATH,
    LIVE_ACK_PATH,
    LIVE_EVENTS_PATH,
    LIVE_SUBSCRIBE_PATH,
    DevServer,
)
from perch.supervisor.process import ProcessState
from perch.testing import TestClient
from perch.watch.changes import ChangeKind, ChangeSet, classify

HOME = "view/page.html"
ABOUT = "view/about/page.html"


def _text(response: Response) -> str:
    return response.body_bytes.decode("utf-8")


def _header(response: Response, name: str) -> str | None:
    for key, value in response.headers:
        if key.lower() == name:
            return value
    return None


def _dev(config: PerchConfig, **kwargs: object) -> DevServer:
    kwargs.setdefault("renderer", EchoRenderer())
    return DevServer(config, mode="dev", watch=False, **kwargs)  # type: ignore[arg-type]


def _changes(config: PerchConfig, *changes: tuple[str, ChangeKind]) -> ChangeSet:
    return ChangeSet(tuple(classify(config.root_path / rel, kind, config) for rel, kind in changes))


class BrokenRenderer:
    def render(self, artifact_path: Path, context: RenderContext) -> RenderOutput:
        raise LookupError("no such user")


class ExplodingCompiler:
    def compile(self, source_path: Path, options: CompileOptions) -> CompileResult:
        raise ValueError("plugin bug")


class HeldCompiler:
    """Compiles normally until ``hold()``; then every compile waits for ``release()``."""

    def __init__(self) -> None:
        self.inner: AssetCompiler | ExplodingCompiler = AssetCompiler()
        self.gate: asyncio.Event | None = None
        self.held = 0

    def hold(self) -> None:
        self.gate = asyncio.Event()

    def release(self) -> None:
        assert self.gate is not None
        self.gate.set()

    async def compile(self, source_path: Path, options: CompileOptions) -> CompileResult:
        if self.gate is not None:
            self.held += 1
            await self.gate.wait()
        return self.inner.compile(source_path, options)


async def _call(
    server: DevServer, method: str, path: str, receive: Any
) -> list[dict[str, Any]]:
    """Drive the ASGI app directly and return what it sent."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 0),
    }
    sent: list[dict[str, Any]] = []

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    await server(scope, receive, send)
    return sent


class TestViews:
    async def test_home_page(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            response = await client.get("/")

        assert response.status == 200
        body = _text(response)
        assert "<h1>Home</h1>" in body
        assert '<script id="__perch_state" type="application/json">{}</script>' in body
        assert f'data-entry="{HOME}"' in body
        assert body.endswith("</body></html>")
        assert _header(response, "cache-control") == "no-store"

    async def test_params_become_state(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get("/users/42?tab=posts")
        assert '{"id": "42"}' in _text(response)

    async def test_patch_fetch_skips_live_client(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get("/about", headers={"x-perch-patch": "1"})
        body = _text(response)
        assert "__perch_state" in body
        assert 'data-perch="live"' not in body

    async def test_live_port_changes_client_base(self, project: Path) -> None:
        config = PerchConfig(root=project, live_port=4001)
        async with TestClient(_dev(config)) as client:
            response = await client.get("/", headers={"host": "example.test:3000"})
        assert 'data-base="//example.test:4001"' in _text(response)

    async def test_not_found(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get("/missing/deeply")
        assert response.status == 404
        assert "Not Found" in _text(response)

    async def test_method_not_allowed(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.post("/about")
        assert response.status == 405
        assert _header(response, "allow") == "GET, HEAD"

    async def test_render_error_overlay(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config, renderer=BrokenRenderer())) as client:
            response = await client.get("/users/7")
        assert response.status == 500
        body = _text(response)
        assert "<h1>Render Error</h1>" in body
        assert "LookupError" in body


class TestAssets:
    async def test_artifact_served_immutable(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            url = server.asset_url(HOME)
            assert url is not None
            response = await client.get(url)
            assert response.status == 200
            assert "<h1>Home</h1>" in _text(response)
            assert response.content_type == "text/html; charset=utf-8"
            assert _header(response, "cache-control") == "public, max-age=31536000, immutable"

            etag = _header(response, "etag")
            assert etag is not None
            cached = await client.get(url, headers={"if-none-match": etag})
            assert cached.status == 304
            assert cached.body_bytes == b""

    async def test_unknown_artifact(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get("/_perch/assets/view/page.000000000000.html")
        assert response.status == 404

    async def test_head_reports_artifact_length(self, config: PerchConfig) -> None:
        server = _dev(config)

        async def receive() -> dict[str, Any]:
            return {"type": "http.request", "body": b"", "more_body": False}

        async with TestClient(server):
            url = server.asset_url(HOME)
            assert url is not None
            record = server.graph.manifest.get(HOME)
            assert record is not None
            start, body = await _call(server, "HEAD", url, receive)

        assert start["status"] == 200
        assert (b"content-length", str(record.size_bytes).encode()) in start["headers"]
        assert record.size_bytes > 0
        assert body["body"] == b""


class TestInternalEndpoints:
    async def test_health(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get(HEALTH_PATH)
        data = json.loads(response.body_bytes)
        assert response.content_type == "application/json"
        assert data["status"] == "ok"
        assert data["mode"] == "dev"
        assert data["routes"] == {"view": 3, "api": 1}
        assert data["failed_entries"] == []
        assert data["api"]["state"] == "stopped"

    async def test_live_client_script(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get(LIVE_CLIENT_PATH)
        assert response.status == 200
        assert response.content_type.startswith("text/javascript")
        assert "EventSource" in _text(response)

    async def test_subscribe_and_ack(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            subscribed = await client.post(
                LIVE_SUBSCRIBE_PATH, json={"client": "tab", "entries": [HOME]}
            )
            acked = await client.post(
                LIVE_ACK_PATH, json={"client": "tab", "entry": HOME, "hash": "old"}
            )
            conn = server.broker.get("tab")
            assert conn is not None
            assert conn.entries == frozenset({HOME})

        assert subscribed.status == 204
        assert acked.status == 204

    async def test_malformed_message(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.post(LIVE_SUBSCRIBE_PATH, body=b"{nope")
            wrong_method = await client.get(LIVE_SUBSCRIBE_PATH)
        assert response.status == 400
        assert wrong_method.status == 405


class TestLiveUpdates:
    async def test_change_patches_each_subscriber_once(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            for tab in ("a", "b"):
                await client.post(LIVE_SUBSCRIBE_PATH, json={"client": tab, "entries": [ABOUT]})
            await client.post(LIVE_SUBSCRIBE_PATH, json={"client": "c", "entries": [HOME]})

            write(config.root_path, ABOUT, "<html><body><h1>About us</h1></body></html>")
            await server.handle_change_set(_changes(config, (ABOUT, ChangeKind.MODIFIED)))
            record = server.graph.manifest.get(ABOUT)
            assert record is not None

            results = {
                tab: await client.sse(
                    f"{LIVE_EVENTS_PATH}?client={tab}", max_events=5, disconnect_after=0.2
                )
                for tab in ("a", "b", "c")
            }

        for tab in ("a", "b"):
            assert results[tab].status == 200
            assert results[tab].kinds == ["patch"]
            payload = results[tab].payloads()[0]
            assert payload["entry"] == ABOUT
            assert payload["hash"] == record.hash
            assert payload["payload"]["asset"] == server.asset_url(ABOUT)
        assert results["c"].kinds == []

    async def test_layout_change_reloads(self, config: PerchConfig) -> None:
        write(config.root_path, "view/layout.html", "<main>{% block body %}{% end %}</main>")
        write(
            config.root_path,
            ABOUT,
            '{% extends "layout.html" %}{% block body %}<h1>About</h1>{% end %}',
        )
        server = _dev(config)
        async with TestClient(server) as client:
            await client.post(LIVE_SUBSCRIBE_PATH, json={"client": "tab", "entries": [ABOUT]})
            write(config.root_path, "view/layout.html", "<div>{% block body %}{% end %}</div>")
            await server.handle_change_set(
                _changes(config, ("view/layout.html", ChangeKind.MODIFIED))
            )
            result = await client.sse(f"{LIVE_EVENTS_PATH}?client=tab", max_events=1)

        assert result.kinds == ["reload"]
        assert result.payloads() == [{"reason": "layout"}]


class TestRebuilds:
    async def test_route_conflict_keeps_previous_table(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            before = server.route_table
            conn = server.broker.connect("tab")

            write(config.root_path, "api/users/[slug].ts", "export default {}\n")
            await server.handle_change_set(
                _changes(config, ("api/users/[slug].ts", ChangeKind.CREATED))
            )

            assert server.route_table is before
            _, message = conn.queue.get_nowait()  # type: ignore[misc]
            assert isinstance(message, ErrorMessage)
            assert message.diagnostic["kind"] == "route"
            assert (await client.get("/about")).status == 200

    async def test_new_page_is_routable(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            write(config.root_path, "view/blog/page.html", "<html><body>Blog</body></html>")
            await server.handle_change_set(
                _changes(config, ("view/blog/page.html", ChangeKind.CREATED))
            )
            response = await client.get("/blog")
        assert response.status == 200
        assert "Blog" in _text(response)

    async def test_failed_rebuild_serves_last_good(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            write(config.root_path, ABOUT, "{% if broken %}\n<p>never closed</p>\n")
            await server.handle_change_set(_changes(config, (ABOUT, ChangeKind.MODIFIED)))
            response = await client.get("/about")
            health = json.loads((await client.get(HEALTH_PATH)).body_bytes)

        assert response.status == 200
        assert "<h1>About</h1>" in _text(response)
        assert health["status"] == "degraded"
        assert health["failed_entries"] == [ABOUT]

    async def test_failed_first_build_shows_overlay(self, config: PerchConfig) -> None:
        server = _dev(config)
        async with TestClient(server) as client:
            write(config.root_path, "view/blog/page.html", "{% if broken %}\n<p>open</p>\n")
            await server.handle_change_set(
                _changes(config, ("view/blog/page.html", ChangeKind.CREATED))
            )
            response = await client.get("/blog")
        assert response.status == 500
        assert "<h1>Build Error</h1>" in _text(response)

    async def test_conflict_at_startup_raises(self, config: PerchConfig) -> None:
        write(config.root_path, "api/users/[slug].ts", "export default {}\n")
        with pytest.raises(RouteConflict):
            await _dev(config).startup()

    async def test_compiler_crash_is_contained(self, config: PerchConfig) -> None:
        compiler = HeldCompiler()
        server = _dev(config, compiler=compiler)
        async with TestClient(server) as client:
            compiler.inner = ExplodingCompiler()
            write(config.root_path, ABOUT, "<html><body><h1>About v2</h1></body></html>")
            await server.handle_change_set(_changes(config, (ABOUT, ChangeKind.MODIFIED)))
            response = await client.get("/about")
            health = json.loads((await client.get(HEALTH_PATH)).body_bytes)

        assert response.status == 200
        assert "<h1>About</h1>" in _text(response)
        assert health["status"] == "degraded"
        assert health["failed_entries"] == [ABOUT]
        failure = server.graph.failure(ABOUT)
        assert failure is not None
        assert failure.message == "ValueError: plugin bug"

    async def test_disconnect_abandons_wait_but_not_build(self, config: PerchConfig) -> None:
        compiler = HeldCompiler()
        server = _dev(config, compiler=compiler)
        async with TestClient(server) as client:
            compiler.hold()
            write(config.root_path, ABOUT, "<html><body><h1>About v2</h1></body></html>")
            server.graph.invalidate([ABOUT])

            gone = asyncio.Event()
            body_read = False

            async def receive() -> dict[str, Any]:
                nonlocal body_read
                if not body_read:
                    body_read = True
                    return {"type": "http.request", "body": b"", "more_body": False}
                await gone.wait()
                return {"type": "http.disconnect"}

            leaving = asyncio.create_task(_call(server, "GET", "/about", receive))
            await wait_for(lambda: compiler.held == 1)
            gone.set()
            sent = await asyncio.wait_for(leaving, 1.0)

            staying = asyncio.create_task(client.get("/about"))
            await asyncio.sleep(0.02)
            compiler.release()
            response = await asyncio.wait_for(staying, 2.0)

        assert sent == []
        assert compiler.held == 1
        assert response.status == 200
        assert "<h1>About v2</h1>" in _text(response)


class TestApi:
    async def test_no_backend_configured(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)) as client:
            response = await client.get("/api/users/1")
            missing = await client.get("/api/orders")
        assert response.status == 503
        assert response.content_type == "application/json"
        assert _header(response, "retry-after") == "1"
        assert missing.status == 404
        assert json.loads(missing.body_bytes) == {"error": "No API route for /api/orders"}

    async def test_proxied_to_backend(
        self, project: Path, launcher: FakeLauncher, probe: ReadyProbe
    ) -> None:
        config = PerchConfig(root=project, api_command=("backend", "{port}"))

        def backend(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"path": request.url.path})

        server = _dev(
            config,
            launcher=launcher,
            probe=probe,
            transport=httpx.MockTransport(backend),
        )
        async with TestClient(server) as client:
            response = await client.get("/api/users/1")
            health = json.loads((await client.get(HEALTH_PATH)).body_bytes)

        assert response.status == 200
        assert json.loads(response.body_bytes) == {"path": "/api/users/1"}
        assert launcher.commands == [("backend", "8001")]
        assert health["api"]["state"] == "ready"

    async def test_api_change_restarts_backend_once(
        self, project: Path, launcher: FakeLauncher, probe: ReadyProbe
    ) -> None:
        config = PerchConfig(root=project, api_command=("backend", "{port}"), kill_timeout=0.1)

        def backend(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"pid": launcher.current.pid})

        server = _dev(
            config,
            launcher=launcher,
            probe=probe,
            transport=httpx.MockTransport(backend),
        )
        api_file = "api/users/[id].py"
        async with TestClient(server) as client:
            probe.ready = False
            write(project, api_file, "# user endpoint v2\n")
            await server.handle_change_set(_changes(config, (api_file, ChangeKind.MODIFIED)))
            await wait_for(lambda: len(launcher.handles) == 2)
            during = await client.get("/api/users/1")

            probe.ready = True
            await wait_for(lambda: server.supervisor.state is ProcessState.READY)
            after = await client.get("/api/users/1")

        assert during.status == 503
        assert _header(during, "retry-after") == "1"
        assert after.status == 200
        assert json.loads(after.body_bytes) == {"pid": launcher.handles[1].pid}
        assert len(launcher.handles) == 2
        assert launcher.handles[0].terminated
        assert server.supervisor.health()["restarts"] == 1


class TestProduction:
    async def test_requires_manifest(self, config: PerchConfig) -> None:
        server = DevServer(config, mode="production", renderer=EchoRenderer())
        with pytest.raises(ConfigurationError, match="perch build"):
            await server.startup()

    async def test_serves_from_manifest(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)):
            pass  # startup writes the manifest

        server = DevServer(config, mode="production", renderer=EchoRenderer())
        async with TestClient(server) as client:
            page = await client.get("/about")
            live = await client.get(LIVE_EVENTS_PATH)
            failing = await client.get("/nope")

        assert page.status == 200
        body = _text(page)
        assert "<h1>About</h1>" in body
        assert 'data-perch="live"' not in body
        assert _header(page, "cache-control") is None
        assert live.status == 404
        assert failing.status == 404

    async def test_render_error_is_generic(self, config: PerchConfig) -> None:
        async with TestClient(_dev(config)):
            pass

        server = DevServer(config, mode="production", renderer=BrokenRenderer())
        async with TestClient(server) as client:
            response = await client.get("/users/7")
        assert response.status == 500
        body = _text(response)
        assert "Internal Server Error" in body
        assert "LookupError" not in body
