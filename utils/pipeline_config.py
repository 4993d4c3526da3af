"""
Pipeline Configuration Manager

This module owns the intake pipeline settings:
- Built-in defaults (defined in this file as a commented YAML document)
- User overrides (config/pipeline.yml, generated on first run)

Unknown keys in the user file are ignored with a warning. Values are
validated when the PipelineConfig is built.
"""

import logging
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Mapping
from ruamel.yaml import YAML

log = logging.getLogger(__name__)

# Set up ruamel.yaml in round-trip mode (preserves order and comments)
yaml = YAML(typ='rt')
yaml.preserve_quotes = True
yaml.encoding = "utf-8"

DEFAULT_PIPELINE_CONFIG_CONTENT = r"""version: "1.0.0"
# INTAKE PIPELINE CONFIGURATION
# Edit these values to change how inbound messages are filtered, batched
# and dispatched to the reply generator.

# Redelivery protection - a message ID seen within this window is dropped
dedup_window_ms: 300000
dedup_max_entries: 10000

# Echo protection - text the bot sent is ignored if it comes back this fast
lockout_window_ms: 10000

# Aggregation - messages arriving within the window are answered together
merge_window_ms: 1000
max_merged_messages: 3      # Flush immediately once this many are queued

# Conversation history passed to the generator
max_history_per_chat: 20
history_ttl_ms: 36000000    # 10 hours

# Concurrent reply generations
concurrency: 4
min_concurrency: 1
max_concurrency: 20

# Background expiry pass
sweep_interval_seconds: 1800
"""

# Settings that can change while the bot is running
RUNTIME_ADJUSTABLE = frozenset({
    "merge_window_ms",
    "max_merged_messages",
    "max_history_per_chat",
    "history_ttl_ms",
    "concurrency",
    "min_concurrency",
    "max_concurrency",
})


@dataclass
class PipelineConfig:
    """Settings for the intake pipeline."""
    dedup_window_ms: int = 300000
    dedup_max_entries: int = 10000
    lockout_window_ms: int = 10000
    merge_window_ms: int = 1000
    max_merged_messages: int = 3
    max_history_per_chat: int = 20
    history_ttl_ms: int = 36000000
    concurrency: int = 4
    min_concurrency: int = 1
    max_concurrency: int = 20
    sweep_interval_seconds: float = 1800.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges and clamp the initial concurrency into its bounds.

        Raises:
            ValueError: If a value is out of range
        """
        for name in ("dedup_window_ms", "lockout_window_ms", "history_ttl_ms", "sweep_interval_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.merge_window_ms < 0:
            raise ValueError("merge_window_ms must not be negative")
        for name in ("dedup_max_entries", "max_merged_messages", "max_history_per_chat", "min_concurrency"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.max_concurrency < self.min_concurrency:
            raise ValueError("max_concurrency must not be below min_concurrency")

        clamped = max(self.min_concurrency, min(self.max_concurrency, self.concurrency))
        if clamped != self.concurrency:
            log.warning(
                "Initial concurrency %d clamped to %d (bounds [%d, %d])",
                self.concurrency, clamped, self.min_concurrency, self.max_concurrency
            )
            self.concurrency = clamped

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'PipelineConfig':
        """Create from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key == "version":
                continue
            if key not in known:
                log.warning("Ignoring unknown pipeline setting: %s", key)
                continue
            values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PipelineConfigManager:
    """
    Loads pipeline settings from config/pipeline.yml.

    Example:
        manager = PipelineConfigManager("config")
        manager.initialize()   # writes the defaults file on first run
        config = manager.load()
    """

    def __init__(self, config_dir: str = "config"):
        """
        Initialize the configuration manager.

        Args:
            config_dir: Directory holding pipeline.yml
        """
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "pipeline.yml"
        self.default_config = yaml.load(DEFAULT_PIPELINE_CONFIG_CONTENT)

    def get_defaults(self) -> Dict[str, Any]:
        """Get default configuration values (excluding version)."""
        config = dict(self.default_config)
        config.pop("version", None)
        return config

    def initialize(self) -> None:
        """Create the configuration file with the commented defaults if missing."""
        if self.config_file.exists():
            return

        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            yaml.dump(self.default_config, f)
        log.info("Created %s", self.config_file)

    def load(self) -> PipelineConfig:
        """
        Load defaults merged with the user's file.

        Raises:
            ValueError: If a configured value is invalid
        """
        merged = self.get_defaults()

        if self.config_file.exists():
            with open(self.config_file, "r", encoding="utf-8") as f:
                overrides = yaml.load(f) or {}
            merged.update(overrides)
        else:
            log.info("No %s found, using default pipeline settings", self.config_file)

        config = PipelineConfig.from_mapping(merged)
        log.debug("Loaded pipeline config: %s", config.to_dict())
        return config


def load_pipeline_config(config_dir: str = "config") -> PipelineConfig:
    """Create the defaults file if needed and load the pipeline settings."""
    manager = PipelineConfigManager(config_dir)
    manager.initialize()
    return manager.load()
