"""Configuration loading and management."""

import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from chat_stash.errors import ConfigError


@dataclass(frozen=True)
class PathsConfig:
    inbox: Path = field(default_factory=lambda: Path.home() / "chat-stash" / "inbox")
    archive: Path = field(default_factory=lambda: Path.home() / "chat-stash" / "archive")
    store: Path = field(default_factory=lambda: Path.home() / "chat-stash" / "store")
    ledger_db: Path = field(default_factory=lambda: Path.home() / "chat-stash" / "state" / "ledger.db")
    log_dir: Path = field(default_factory=lambda: Path.home() / "chat-stash" / "logs")
    workflow: Path | None = None


@dataclass(frozen=True)
class MatchingConfig:
    threshold: float = 0.6
    fuzzy_k: int = 2
    time_window_seconds: int = 86400
    hash_workers: int = 4


@dataclass(frozen=True)
class ResolverConfig:
    lock_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class TypesenseConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 8108
    protocol: str = "http"
    api_key: str = "dev-api-key"


@dataclass(frozen=True)
class Config:
    machine_id: str = "unknown"
    paths: PathsConfig = field(default_factory=PathsConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    typesense: TypesenseConfig = field(default_factory=TypesenseConfig)

    def validate(self) -> None:
        """Check value ranges that YAML parsing cannot enforce.

        Raises:
            ConfigError: If any setting is out of range
        """
        problems = []
        if not 0.0 < self.matching.threshold <= 1.0:
            problems.append(f"matching.threshold must be in (0, 1], got {self.matching.threshold}")
        if self.matching.fuzzy_k < 1:
            problems.append(f"matching.fuzzy_k must be >= 1, got {self.matching.fuzzy_k}")
        if self.matching.time_window_seconds <= 0:
            problems.append("matching.time_window_seconds must be positive")
        if self.matching.hash_workers < 1:
            problems.append("matching.hash_workers must be >= 1")
        if self.resolver.lock_timeout_seconds <= 0:
            problems.append("resolver.lock_timeout_seconds must be positive")
        if not self.machine_id:
            problems.append("machine_id must not be empty")
        if problems:
            raise ConfigError("; ".join(problems))

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe view of the settings, without secrets."""
        data = asdict(self)
        data["typesense"].pop("api_key", None)
        for key, value in data["paths"].items():
            if value is not None:
                data["paths"][key] = str(value)
        return data


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def find_config_file() -> Path | None:
    """Return the first config file found in the standard locations."""
    search_paths = [
        Path.cwd() / "config.yaml",
        Path.home() / ".config" / "chat-stash" / "config.yaml",
        Path("/etc/chat-stash/config.yaml"),
    ]
    for path in search_paths:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        return Config(machine_id=platform.node() or "unknown")

    with open(config_path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    defaults = PathsConfig()
    paths_data = data.get("paths", {})
    workflow = paths_data.get("workflow")
    paths = PathsConfig(
        inbox=expand_path(paths_data["inbox"]) if "inbox" in paths_data else defaults.inbox,
        archive=expand_path(paths_data["archive"]) if "archive" in paths_data else defaults.archive,
        store=expand_path(paths_data["store"]) if "store" in paths_data else defaults.store,
        ledger_db=expand_path(paths_data["ledger_db"]) if "ledger_db" in paths_data else defaults.ledger_db,
        log_dir=expand_path(paths_data["log_dir"]) if "log_dir" in paths_data else defaults.log_dir,
        workflow=expand_path(workflow) if workflow else None,
    )

    matching_data = data.get("matching", {})
    matching = MatchingConfig(
        threshold=float(matching_data.get("threshold", 0.6)),
        fuzzy_k=int(matching_data.get("fuzzy_k", 2)),
        time_window_seconds=int(matching_data.get("time_window_seconds", 86400)),
        hash_workers=int(matching_data.get("hash_workers", 4)),
    )

    resolver_data = data.get("resolver", {})
    resolver = ResolverConfig(
        lock_timeout_seconds=float(resolver_data.get("lock_timeout_seconds", 30.0)),
    )

    ts_data = data.get("typesense", {})
    typesense = TypesenseConfig(
        enabled=bool(ts_data.get("enabled", False)),
        host=ts_data.get("host", "localhost"),
        port=ts_data.get("port", 8108),
        protocol=ts_data.get("protocol", "http"),
        api_key=expand_env_var(ts_data.get("api_key", "dev-api-key")),
    )

    # Determine machine_id
    machine_id = expand_env_var(str(data.get("machine_id", "unknown")))
    if machine_id == "unknown" or not machine_id or machine_id.startswith("${"):
        machine_id = platform.node() or "unknown"

    return Config(
        machine_id=machine_id,
        paths=paths,
        matching=matching,
        resolver=resolver,
        typesense=typesense,
    )
