"""Tests for perch.cli — argument parsing, exit codes, and startup checks."""

import json
import socket
from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import write

from perch.build.manifest import MANIFEST_FILENAME
from perch.cli import main
from perch.config import PerchConfig
from perch.server.app import DevServer


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def served(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, DevServer, PerchConfig]]:
    """Replace the pounce runners; record what would have been served."""
    calls: list[tuple[str, DevServer, PerchConfig]] = []

    def fake_dev(app: DevServer, config: PerchConfig) -> None:
        calls.append(("dev", app, config))

    def fake_production(app: DevServer, config: PerchConfig, workers: int | None = None) -> None:
        calls.append(("production", app, config))

    monkeypatch.setattr("perch.server.runner.run_dev_server", fake_dev)
    monkeypatch.setattr("perch.server.runner.run_production_server", fake_production)
    return calls


@pytest.fixture
def busy_port() -> Iterator[int]:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        yield sock.getsockname()[1]


class TestParsing:
    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 0
        assert "perch" in capsys.readouterr().out

    def test_unknown_command(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["deploy"])
        assert exc_info.value.code == 2


class TestBuild:
    def test_writes_manifest(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        main(["--root", str(project), "build"])

        manifest = project / ".perch/build" / MANIFEST_FILENAME
        data = json.loads(manifest.read_text(encoding="utf-8"))
        assert set(data["entries"]) == {
            "view/page.html",
            "view/about/page.html",
            "view/users/[id]/page.html",
        }
        assert "Built 3 entries" in capsys.readouterr().out

    def test_output_override(self, project: Path, tmp_path: Path) -> None:
        out = tmp_path / "dist"
        main(["--root", str(project), "build", "--output", str(out)])
        assert (out / MANIFEST_FILENAME).is_file()

    def test_route_conflict_exits_1(
        self, project: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        write(project, "api/users/[slug].ts", "export default {}\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["--root", str(project), "build"])
        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Route Conflict" in err
        assert "api/users/[slug].ts" in err

    def test_build_failure_exits_1(
        self, project: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        write(project, "view/about/page.html", "{% if broken %}\n<p>never closed</p>\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["--root", str(project), "build"])
        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Build Error" in err
        assert "1 of 3 entries failed to build" in err

    def test_bad_config_exits_1(self, project: Path, capsys: pytest.CaptureFixture[str]) -> None:
        write(project, "perch.toml", "[server]\nprot = 4000\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["--root", str(project), "build"])
        assert exc_info.value.code == 1
        assert "unknown option 'prot'" in capsys.readouterr().err


class TestDev:
    def test_builds_then_serves(
        self, project: Path, served: list[tuple[str, DevServer, PerchConfig]]
    ) -> None:
        port = _free_port()
        main(["--root", str(project), "dev", "--port", str(port)])

        ((kind, app, config),) = served
        assert kind == "dev"
        assert app.mode == "dev"
        assert config.port == port
        assert config.debug

    def test_port_in_use_exits_1(
        self,
        project: Path,
        busy_port: int,
        served: list[tuple[str, DevServer, PerchConfig]],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--root", str(project), "dev", "--port", str(busy_port)])
        assert exc_info.value.code == 1
        assert "is the port in use?" in capsys.readouterr().err
        assert served == []

    def test_build_failure_exits_before_serving(
        self, project: Path, served: list[tuple[str, DevServer, PerchConfig]]
    ) -> None:
        write(project, "view/page.html", "{% include 'missing.html' %}")
        with pytest.raises(SystemExit) as exc_info:
            main(["--root", str(project), "dev", "--port", str(_free_port())])
        assert exc_info.value.code == 1
        assert served == []


class TestStart:
    def test_requires_build(
        self,
        project: Path,
        served: list[tuple[str, DevServer, PerchConfig]],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--root", str(project), "start", "--port", str(_free_port())])
        assert exc_info.value.code == 1
        assert "run `perch build` first" in capsys.readouterr().err
        assert served == []

    def test_serves_production_build(
        self, project: Path, served: list[tuple[str, DevServer, PerchConfig]]
    ) -> None:
        main(["--root", str(project), "build"])
        main(["--root", str(project), "start", "--port", str(_free_port()), "--workers", "2"])

        ((kind, app, config),) = served
        assert kind == "production"
        assert app.mode == "production"
        assert config.workers == 2
        assert not config.debug
