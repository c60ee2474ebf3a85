"""Project configuration.

PerchConfig is a frozen dataclass — immutable after creation, IDE-autocompletable,
no string-key dict lookups. ``load_config()`` reads an optional ``perch.toml``
at the project root; CLI flags override file values via ``dataclasses.replace``.
"""

import dataclasses
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from perch.errors import ConfigurationError

CONFIG_FILENAME = "perch.toml"


@dataclass(frozen=True, slots=True)
class PerchConfig:
    """Project configuration. Immutable after creation.

    All fields have sensible defaults. Override what you need::

        config = PerchConfig(root="site", port=4000, debounce_ms=80)
    """

    # Project layout
    root: str | Path = "."
    view_dir: str = "view"
    api_dir: str = "api"
    api_prefix: str = "/api"

    # Build (passed through opaquely to the compiler)
    client_entries: dict[str, str] = field(default_factory=dict)  # name -> source, relative to root
    server_entry: str | None = None
    out_dir: str = ".perch/build"
    filename_pattern: str = "[name].[hash][ext]"
    target: str = "es2020"
    minify: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = 3000
    live_port: int | None = None  # Advertised to the live client when a proxy fronts the channel
    debug: bool = True
    workers: int = 0  # 0 = auto-detect from CPU count (production only)

    # File watching
    debounce_ms: int = 50

    # Live updates
    ack_timeout: float = 2.0
    heartbeat_interval: float = 15.0
    reload_stems: tuple[str, ...] = ("layout", "root", "document")  # view files that force a reload

    # Rendering
    render_timeout: float = 5.0
    context_headers: tuple[str, ...] = ("accept-language", "user-agent", "cookie")

    # API backend supervision
    api_command: tuple[str, ...] = ()  # e.g. ("python", "-m", "myapi", "--port", "{port}")
    api_port: int = 8001
    api_health_path: str | None = "/health"
    startup_timeout: float = 10.0
    drain_grace: float = 10.0
    drain_policy: str = "reject"  # "reject" or "queue"
    queue_timeout: float = 5.0
    restart_threshold: int = 3
    kill_timeout: float = 5.0

    # Logging (passed through to pounce)
    log_level: str = "info"
    log_format: str = "text"

    def __post_init__(self) -> None:
        if self.drain_policy not in ("reject", "queue"):
            msg = f"drain_policy must be 'reject' or 'queue', got {self.drain_policy!r}"
            raise ConfigurationError(msg)
        if not self.api_prefix.startswith("/"):
            msg = f"api_prefix must start with '/', got {self.api_prefix!r}"
            raise ConfigurationError(msg)
        if self.debounce_ms < 0:
            raise ConfigurationError("debounce_ms must be >= 0")
        if self.restart_threshold < 1:
            raise ConfigurationError("restart_threshold must be >= 1")

    # -- Resolved paths --

    @property
    def root_path(self) -> Path:
        return Path(self.root).resolve()

    @property
    def view_path(self) -> Path:
        return self.root_path / self.view_dir

    @property
    def api_path(self) -> Path:
        return self.root_path / self.api_dir

    @property
    def out_path(self) -> Path:
        out = Path(self.out_dir)
        return out if out.is_absolute() else self.root_path / out

    @property
    def config_path(self) -> Path:
        return self.root_path / CONFIG_FILENAME

    @property
    def api_base_url(self) -> str:
        return f"http://127.0.0.1:{self.api_port}"

    def backend_command(self) -> tuple[str, ...]:
        """The API command with ``{port}`` placeholders filled in."""
        return tuple(part.replace("{port}", str(self.api_port)) for part in self.api_command)


_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(PerchConfig))

# TOML tables accepted for readability; their keys map onto flat fields.
_SECTIONS = frozenset({"build", "server", "watch", "live", "render", "api", "logging"})


def load_config(root: str | Path = ".", **overrides: Any) -> PerchConfig:
    """Load ``perch.toml`` from *root* (if present) and apply overrides.

    ``None`` overrides are ignored so CLI flags that were not given fall
    back to the file or the defaults.

    Raises:
        ConfigurationError: the file is malformed or names unknown options.
    """
    root_path = Path(root)
    values: dict[str, Any] = {}
    config_file = root_path / CONFIG_FILENAME
    if config_file.is_file():
        try:
            raw = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"{config_file}: {exc}") from exc
        values.update(_flatten(raw, config_file))

    values.update({k: v for k, v in overrides.items() if v is not None})
    values["root"] = root_path

    for name in ("reload_stems", "context_headers", "api_command"):
        if name in values and isinstance(values[name], list):
            values[name] = tuple(values[name])

    return PerchConfig(**values)


def _flatten(raw: dict[str, Any], source: Path) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key in _SECTIONS and isinstance(value, dict) and key not in _FIELD_NAMES:
            values.update(_flatten(value, source))
            continue
        if key not in _FIELD_NAMES:
            raise ConfigurationError(f"{source}: unknown option {key!r}")
        values[key] = value
    return values
