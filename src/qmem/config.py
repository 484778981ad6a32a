"""
Settings: where containers live and how they are kept.

Settings are read from a TOML file, then overridden by environment
variables. A missing file is not an error; defaults apply.

```toml
[storage]
dir = "~/.qmem/containers"
fsync = true
hash_algorithm = "sha256"

[retention]
retain_count = 100

[protocol]
respect_prior_failure = false
agent_id = "agent-build"

[remote]
url = "https://memory.example.dev/v1"
```
"""
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .kernel.hasher import SUPPORTED_ALGORITHMS
from .retention import DEFAULT_RETAIN_COUNT

CONFIG_ENV = "QMEM_CONFIG"


def default_config_path() -> Path:
    return Path.home() / ".qmem" / "config.toml"


def default_storage_dir() -> Path:
    return Path.home() / ".qmem" / "containers"


@dataclass
class Settings:
    storage_dir: Path = field(default_factory=default_storage_dir)
    retain_count: int = DEFAULT_RETAIN_COUNT
    respect_prior_failure: bool = False
    hash_algorithm: str = "sha256"
    fsync: bool = True
    remote_url: str | None = None
    agent_id: str | None = None

    def __post_init__(self) -> None:
        self.storage_dir = Path(self.storage_dir).expanduser()
        if not isinstance(self.retain_count, int) or self.retain_count < 0:
            raise ConfigError(f"retain_count must be a non-negative integer, got {self.retain_count!r}")
        if self.hash_algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigError(
                f"hash_algorithm must be one of {', '.join(SUPPORTED_ALGORITHMS)}, "
                f"got {self.hash_algorithm!r}"
            )


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if "QMEM_STORAGE_DIR" in os.environ:
        overrides["storage_dir"] = Path(os.environ["QMEM_STORAGE_DIR"])
    if "QMEM_RETAIN_COUNT" in os.environ:
        raw = os.environ["QMEM_RETAIN_COUNT"]
        try:
            overrides["retain_count"] = int(raw)
        except ValueError as e:
            raise ConfigError(f"QMEM_RETAIN_COUNT is not an integer: {raw!r}") from e
    if "QMEM_HASH_ALGORITHM" in os.environ:
        overrides["hash_algorithm"] = os.environ["QMEM_HASH_ALGORITHM"]
    return overrides


def load_settings(path: Path | str | None = None) -> Settings:
    """Load settings from ``path``, ``$QMEM_CONFIG`` or ``~/.qmem/config.toml``."""
    if path is None:
        path = os.environ.get(CONFIG_ENV) or default_config_path()
    path = Path(path).expanduser()

    values: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid settings file {path}: {e}") from e

        storage = data.get("storage", {})
        retention = data.get("retention", {})
        protocol = data.get("protocol", {})
        remote = data.get("remote", {})

        if "dir" in storage:
            values["storage_dir"] = Path(storage["dir"])
        if "fsync" in storage:
            values["fsync"] = bool(storage["fsync"])
        if "hash_algorithm" in storage:
            values["hash_algorithm"] = storage["hash_algorithm"]
        if "retain_count" in retention:
            values["retain_count"] = retention["retain_count"]
        if "respect_prior_failure" in protocol:
            values["respect_prior_failure"] = bool(protocol["respect_prior_failure"])
        if "agent_id" in protocol:
            values["agent_id"] = protocol["agent_id"]
        if "url" in remote:
            values["remote_url"] = remote["url"]

    values.update(_env_overrides())
    return Settings(**values)


def save_settings(settings: Settings, path: Path | str | None = None) -> None:
    """Write settings as TOML (defaults to ~/.qmem/config.toml)."""
    path = Path(path).expanduser() if path is not None else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        "[storage]",
        f'dir = "{settings.storage_dir}"',
        f"fsync = {'true' if settings.fsync else 'false'}",
        f'hash_algorithm = "{settings.hash_algorithm}"',
        "",
        "[retention]",
        f"retain_count = {settings.retain_count}",
        "",
        "[protocol]",
        f"respect_prior_failure = {'true' if settings.respect_prior_failure else 'false'}",
    ]
    if settings.agent_id:
        lines.append(f'agent_id = "{settings.agent_id}"')
    if settings.remote_url:
        lines.extend(["", "[remote]", f'url = "{settings.remote_url}"'])
    lines.append("")

    path.write_text("\n".join(lines), encoding="utf-8")
