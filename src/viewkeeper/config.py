"""
Configuration for Viewkeeper.

Provides dataclass configuration for the projection engine, the stash
bounds and storage retry backoff, with support for loading from
environment variables and YAML files.

Environment Variables:
    VIEWKEEPER_DATABASE_URL: Database connection string (sqlite:///... or postgresql://...)
    VIEWKEEPER_STREAM_URL: Stream log, stash and dead-letter store (default: VIEWKEEPER_DATABASE_URL)
    VIEWKEEPER_CONSUMER_GROUP: Consumer group owning the offsets (default: viewkeeper)
    VIEWKEEPER_PARTITIONS: Comma separated partitions to own (default: all)
    VIEWKEEPER_PARTITION_COUNT: Partitions of the stream when creating it (default: 4)
    VIEWKEEPER_FIRST_SEQUENCE: Sequence number of an entity's first event (default: 1)
    VIEWKEEPER_BATCH_SIZE: Records fetched per poll (default: 100)
    VIEWKEEPER_POLL_INTERVAL_MS: Sleep between empty polls (default: 100)
    VIEWKEEPER_CONFLICT_MAX_RETRIES: Re-read/re-decide attempts on write conflicts (default: 5)
    VIEWKEEPER_PAUSE_TIMEOUT_S: How long pause() waits for in-flight records (default: 30)
    VIEWKEEPER_ENVIRONMENT: development/staging/production (default: development)
    VIEWKEEPER_ALLOW_REBUILD: Force-enable rebuilds in production (default: false)

    VIEWKEEPER_STORAGE_MIN_DELAY_MS: Min backoff for storage outages (default: 100)
    VIEWKEEPER_STORAGE_MAX_DELAY_MS: Max backoff for storage outages (default: 10000)
    VIEWKEEPER_STORAGE_BACKOFF_FACTOR: Backoff multiplication factor (default: 2)
    VIEWKEEPER_STORAGE_JITTER: Backoff jitter factor (default: 0.25)
    VIEWKEEPER_STORAGE_MAX_RETRIES: Retries before a poll gives up (default: 5)

    VIEWKEEPER_STASH_MAX_PER_KEY: Pending stashed events per entity key (default: 1000)
    VIEWKEEPER_STASH_MAX_TOTAL: Pending stashed events overall (default: 100000)
    VIEWKEEPER_STASH_MAX_AGE_S: Seconds before a stashed event is given up (default: 3600)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from resilient_circuit import ExponentialDelay

from viewkeeper.errors import ConfigurationError
from viewkeeper.store.connection import detect_backend

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
ENVIRONMENTS = ("development", "staging", "production", "test")


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff.

    Attributes:
        min_delay_ms: Minimum delay between retries in milliseconds
        max_delay_ms: Maximum delay between retries in milliseconds
        factor: Multiplication factor for exponential backoff
        jitter: Random jitter factor (0.0 to 1.0) to prevent thundering herd
        max_retries: Retries before the caller gives up for this round
    """

    min_delay_ms: int = 100
    max_delay_ms: int = 10000
    factor: int = 2
    jitter: float = 0.25
    max_retries: int = 5

    def to_delay(self) -> ExponentialDelay:
        """Build the resilient-circuit delay calculator for this config."""
        return ExponentialDelay(
            min_delay=timedelta(milliseconds=self.min_delay_ms),
            max_delay=timedelta(milliseconds=self.max_delay_ms),
            factor=self.factor,
            jitter=self.jitter,
        )


@dataclass
class StashConfig:
    """Bounds of the out-of-order stash.

    Attributes:
        max_pending_per_key: Stashed events allowed for a single entity key
        max_total: Stashed events allowed across all keys
        max_age_seconds: Age after which a stashed event is dead-lettered
            with reason "gap unresolved" (0 disables expiry)
    """

    max_pending_per_key: int = 1000
    max_total: int = 100_000
    max_age_seconds: float = 3600.0


@dataclass
class EngineConfig:
    """Projection engine settings.

    Attributes:
        database_url: Connection string of the view store
        stream_url: Connection string of the stream log, stash and
            dead-letter sink (None = database_url); memory:// or sqlite:///
        consumer_group: Name under which stream offsets are committed
        partitions: Partitions owned by this process (None = all)
        partition_count: Partition count used when creating a new stream
        first_sequence: Sequence number carried by an entity's first event
        batch_size: Records fetched per poll
        poll_interval_ms: Sleep between polls that returned nothing
        conflict_max_retries: Immediate re-read/re-decide attempts when a
            conditional write loses against a concurrent writer
        pause_timeout_seconds: How long pause() waits for in-flight records
        environment: Deployment environment; rebuilds are refused in
            "production" unless allow_rebuild is set
        allow_rebuild: Explicit override of the production rebuild gate
        storage_backoff: Backoff for StorageUnavailable retries
        stash: Stash bounds
    """

    database_url: str = "sqlite:///./viewkeeper.db"
    stream_url: str | None = None
    consumer_group: str = "viewkeeper"
    partitions: list[int] | None = None
    partition_count: int = 4
    first_sequence: int = 1
    batch_size: int = 100
    poll_interval_ms: int = 100
    conflict_max_retries: int = 5
    pause_timeout_seconds: float = 30.0
    environment: str = "development"
    allow_rebuild: bool = False
    storage_backoff: BackoffConfig = field(default_factory=BackoffConfig)
    stash: StashConfig = field(default_factory=StashConfig)

    @property
    def resolved_stream_url(self) -> str:
        return self.stream_url or self.database_url

    @property
    def rebuild_permitted(self) -> bool:
        """Rebuilds are destructive full replays; production needs an explicit opt-in."""
        return self.environment != "production" or self.allow_rebuild

    def validate(self) -> EngineConfig:
        """Check value ranges, raising ConfigurationError on the first problem."""
        if not self.consumer_group:
            raise ConfigurationError("consumer_group must not be empty")
        if self.partition_count <= 0:
            raise ConfigurationError("partition_count must be positive")
        if self.partitions is not None:
            bad = [p for p in self.partitions if p < 0 or p >= self.partition_count]
            if bad:
                raise ConfigurationError(f"partitions out of range 0..{self.partition_count - 1}: {bad}")
        if self.first_sequence < 0:
            raise ConfigurationError("first_sequence must be >= 0")
        if self.batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")
        if self.poll_interval_ms < 0:
            raise ConfigurationError("poll_interval_ms must be >= 0")
        if self.conflict_max_retries < 0:
            raise ConfigurationError("conflict_max_retries must be >= 0")
        if self.environment not in ENVIRONMENTS:
            raise ConfigurationError(f"environment must be one of {ENVIRONMENTS}, got {self.environment!r}")
        if self.stash.max_pending_per_key <= 0 or self.stash.max_total <= 0:
            raise ConfigurationError("stash bounds must be positive")
        if self.stash.max_age_seconds < 0:
            raise ConfigurationError("stash.max_age_seconds must be >= 0")
        if self.storage_backoff.max_retries < 0:
            raise ConfigurationError("storage_backoff.max_retries must be >= 0")
        if detect_backend(self.resolved_stream_url) == "postgresql":
            raise ConfigurationError("stream_url must be a memory:// or sqlite:/// connection string")
        return self

    @classmethod
    def from_env(cls, base: EngineConfig | None = None) -> EngineConfig:
        """Load configuration from environment variables.

        Variables that are not set keep the value from ``base`` (or the
        dataclass default).
        """
        config = base or cls()
        env = os.environ

        try:
            partitions = config.partitions
            if env.get("VIEWKEEPER_PARTITIONS"):
                partitions = [int(p) for p in env["VIEWKEEPER_PARTITIONS"].split(",") if p.strip()]

            backoff = BackoffConfig(
                min_delay_ms=int(env.get("VIEWKEEPER_STORAGE_MIN_DELAY_MS", config.storage_backoff.min_delay_ms)),
                max_delay_ms=int(env.get("VIEWKEEPER_STORAGE_MAX_DELAY_MS", config.storage_backoff.max_delay_ms)),
                factor=int(env.get("VIEWKEEPER_STORAGE_BACKOFF_FACTOR", config.storage_backoff.factor)),
                jitter=float(env.get("VIEWKEEPER_STORAGE_JITTER", config.storage_backoff.jitter)),
                max_retries=int(env.get("VIEWKEEPER_STORAGE_MAX_RETRIES", config.storage_backoff.max_retries)),
            )
            stash = StashConfig(
                max_pending_per_key=int(env.get("VIEWKEEPER_STASH_MAX_PER_KEY", config.stash.max_pending_per_key)),
                max_total=int(env.get("VIEWKEEPER_STASH_MAX_TOTAL", config.stash.max_total)),
                max_age_seconds=float(env.get("VIEWKEEPER_STASH_MAX_AGE_S", config.stash.max_age_seconds)),
            )
            allow_rebuild = config.allow_rebuild
            if "VIEWKEEPER_ALLOW_REBUILD" in env:
                allow_rebuild = env["VIEWKEEPER_ALLOW_REBUILD"].strip().lower() in _TRUE_VALUES

            return replace(
                config,
                database_url=env.get("VIEWKEEPER_DATABASE_URL", config.database_url),
                stream_url=env.get("VIEWKEEPER_STREAM_URL", config.stream_url),
                consumer_group=env.get("VIEWKEEPER_CONSUMER_GROUP", config.consumer_group),
                partitions=partitions,
                partition_count=int(env.get("VIEWKEEPER_PARTITION_COUNT", config.partition_count)),
                first_sequence=int(env.get("VIEWKEEPER_FIRST_SEQUENCE", config.first_sequence)),
                batch_size=int(env.get("VIEWKEEPER_BATCH_SIZE", config.batch_size)),
                poll_interval_ms=int(env.get("VIEWKEEPER_POLL_INTERVAL_MS", config.poll_interval_ms)),
                conflict_max_retries=int(env.get("VIEWKEEPER_CONFLICT_MAX_RETRIES", config.conflict_max_retries)),
                pause_timeout_seconds=float(env.get("VIEWKEEPER_PAUSE_TIMEOUT_S", config.pause_timeout_seconds)),
                environment=env.get("VIEWKEEPER_ENVIRONMENT", config.environment).strip().lower(),
                allow_rebuild=allow_rebuild,
                storage_backoff=backoff,
                stash=stash,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}", cause=e) from e

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create configuration from a mapping (as read from YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        values = dict(data)
        try:
            if isinstance(values.get("storage_backoff"), dict):
                values["storage_backoff"] = BackoffConfig(**values["storage_backoff"])
            if isinstance(values.get("stash"), dict):
                values["stash"] = StashConfig(**values["stash"])
        except TypeError as e:
            raise ConfigurationError(f"Invalid nested configuration: {e}", cause=e) from e
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> EngineConfig:
        """Load configuration from a YAML file.

        The file may hold the settings at the top level or under a
        ``viewkeeper:`` key.
        """
        path = Path(path)
        try:
            with path.open() as f:
                document = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}", cause=e) from e

        if not isinstance(document, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        section = document.get("viewkeeper", document)
        return cls.from_dict(section)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration: YAML file (if given or VIEWKEEPER_CONFIG is set), then env overrides."""
    path = path or os.environ.get("VIEWKEEPER_CONFIG")
    base = EngineConfig.from_file(path) if path else EngineConfig()
    return EngineConfig.from_env(base).validate()
