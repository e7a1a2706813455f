"""
Configuration management for memctx stores.

The configuration is stored as a TOML file in the store directory.
It selects the embedding provider and holds the tunable constants of the
context engine: cache TTL, timeouts, similarity floors, and the urgency
scoring table.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "memctx.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "memctx.db"


def get_default_store_path() -> Path:
    """Store directory: MEMCTX_STORE_PATH, else ~/.memctx."""
    env = os.environ.get("MEMCTX_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".memctx"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextConfig:
    """Tunables for report building."""
    cache_ttl_seconds: float = 300.0
    embedding_timeout_seconds: float = 30.0
    # 0 disables the report deadline
    report_timeout_seconds: float = 0.0
    task_similarity_threshold: float = 0.2
    task_related_notes: int = 5
    related_tasks: int = 5


@dataclass
class UrgencyConfig:
    """
    Urgency scoring table.

    The 1/3/7-day cutoffs and the bonuses are hand-tuned defaults; they
    are configurable rather than derived.
    """
    priority_weight: float = 2.0
    overdue_bonus: float = 5.0
    due_today_bonus: float = 4.0
    due_tomorrow_bonus: float = 3.0
    soon_days: int = 3
    soon_bonus: float = 2.0
    week_days: int = 7
    week_bonus: float = 1.0
    in_progress_bonus: float = 1.0
    max_score: float = 10.0
    urgent_threshold: float = 8.0
    high_threshold: float = 6.0
    medium_threshold: float = 4.0


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig(
        "sentence-transformers", {"model": "all-MiniLM-L6-v2"}))
    context: ContextConfig = field(default_factory=ContextConfig)
    urgency: UrgencyConfig = field(default_factory=UrgencyConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _from_section(cls, section: dict):
    """Build a dataclass from a TOML section, ignoring unknown keys."""
    known = {f.name: f for f in fields(cls)}
    kwargs = {}
    for key, value in section.items():
        if key not in known:
            continue
        default = getattr(cls(), key)
        kwargs[key] = type(default)(value)
    return cls(**kwargs)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    embedding = data.get("embedding", {"name": "sentence-transformers"})
    try:
        context = _from_section(ContextConfig, data.get("context", {}))
        urgency = _from_section(UrgencyConfig, data.get("urgency", {}))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config {config_path}: {e}") from e

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=ProviderConfig(
            name=embedding.get("name", "sentence-transformers"),
            params={k: v for k, v in embedding.items() if k != "name"},
        ),
        context=context,
        urgency=urgency,
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    embedding = {"name": config.embedding.name}
    embedding.update(config.embedding.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": embedding,
        "context": asdict(config.context),
        "urgency": asdict(config.urgency),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = store_path or get_default_store_path()
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
