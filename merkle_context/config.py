"""
Configuration management for merkle-context.

Config lives in ~/.merkle-context/config.json. Unknown fields are ignored so
older files keep loading after new settings are added.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from .tree.walker import DEFAULT_IGNORE

HOME_DIR = Path.home() / ".merkle-context"
CONFIG_PATH = HOME_DIR / "config.json"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _filter_dataclass_fields(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter dict to only include fields that exist in the dataclass."""
    valid_fields = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid_fields}


@dataclass
class StoreConfig:
    """Where the store lives and what ingestion skips."""

    root: str = str(HOME_DIR / "store")
    ignore: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    # Bytes of file content handed to the generation collaborator
    max_context_bytes: int = 32_000


@dataclass
class GenerationConfig:
    """Configuration for the generation queue."""

    workers: int = 2
    max_concurrent_per_agent: int = 3
    max_retry_attempts: int = 3
    retry_delay_ms: int = 1000
    # Minimum delay between provider calls per agent; None disables
    rate_limit_ms: int | None = 100
    max_queue_size: int = 10_000
    default_timeout_s: float = 120.0


@dataclass
class ProviderConfig:
    """Configuration for the LLM provider used by generation."""

    name: Literal["anthropic", "openai", "ollama"] = "anthropic"
    model: str = "sonnet"
    max_tokens: int = 2048
    # Low temperature keeps regenerated frames stable
    temperature: float = 0.1
    base_url: str | None = None
    timeout_s: float = 60.0


@dataclass
class ViewConfig:
    """Defaults for view policies built without explicit options."""

    max_frames: int = 10
    ordering: Literal["recency", "agent"] = "recency"


@dataclass
class ContextConfig:
    """Complete merkle-context configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    views: ViewConfig = field(default_factory=ViewConfig)
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def load(cls, path: Path | None = None) -> "ContextConfig":
        """
        Load configuration from file, then apply environment overrides.

        Priority order:
        1. MERKLE_CONTEXT_HOME / MERKLE_CONTEXT_LOG_LEVEL environment variables
        2. Config file (MERKLE_CONTEXT_CONFIG or ~/.merkle-context/config.json)
        3. Defaults
        """
        if path is None:
            env_path = os.getenv("MERKLE_CONTEXT_CONFIG")
            path = Path(env_path) if env_path else CONFIG_PATH

        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = json.load(f)

        config = cls(
            store=StoreConfig(**_filter_dataclass_fields(data.get("store", {}), StoreConfig)),
            generation=GenerationConfig(**_filter_dataclass_fields(data.get("generation", {}), GenerationConfig)),
            provider=ProviderConfig(**_filter_dataclass_fields(data.get("provider", {}), ProviderConfig)),
            views=ViewConfig(**_filter_dataclass_fields(data.get("views", {}), ViewConfig)),
            agents=dict(data.get("agents", {})),
            log_level=data.get("log_level", "INFO"),
        )

        env_home = os.getenv("MERKLE_CONTEXT_HOME")
        if env_home:
            config.store.root = str(Path(env_home) / "store")
        env_level = os.getenv("MERKLE_CONTEXT_LOG_LEVEL")
        if env_level:
            config.log_level = env_level.upper()

        return config

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @property
    def store_root(self) -> Path:
        return Path(self.store.root).expanduser()


def configure_logging(level: str | int = "INFO") -> None:
    """Install a root handler at the given level."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("merkle_context").setLevel(level)


# Default configuration instance
default_config = ContextConfig()
