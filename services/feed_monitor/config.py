"""
Feed monitor configuration

Loads the YAML configuration into frozen dataclasses and provides the
lock-guarded holder shared between the timer thread and the update loop.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from shared.models import FeedSnapshot

from .baseline import UnskewedAverageConfig
from .errors import ConfigError
from .spike import SpikeThresholds


DEFAULT_CONFIG_PATH = Path("config/feed_monitor.yaml")
DEFAULT_DATABASE_PATH = Path("data/listener_avgs.sqlite")

NOTIFIER_TYPES = ("log", "kafka")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class SortBy(Enum):
    LISTENERS = "listeners"
    JUMP = "jump"


class SortOrder(Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


@dataclass(frozen=True)
class FeedIdent:
    """Identifies feeds by exactly one of name, id, county or state id."""

    kind: str
    value: Any

    KINDS = ("name", "id", "county", "state_id")

    def matches(self, feed: FeedSnapshot) -> bool:
        if self.kind == "name":
            return feed.name == self.value
        if self.kind == "id":
            return feed.id == self.value
        if self.kind == "county":
            return feed.county == self.value
        return feed.state_id == self.value

    @staticmethod
    def from_dict(payload: Any) -> "FeedIdent":
        if not isinstance(payload, dict) or len(payload) != 1:
            raise ConfigError(f"Feed identifier must have exactly one key, got {payload!r}")

        kind, value = next(iter(payload.items()))
        kind = str(kind).lower().replace(" ", "_")
        if kind not in FeedIdent.KINDS:
            raise ConfigError(f"Unknown feed identifier {kind!r}, expected one of {FeedIdent.KINDS}")

        if kind in ("id", "state_id"):
            value = _as_int(value, kind)
        else:
            value = str(value)
        return FeedIdent(kind=kind, value=value)


@dataclass(frozen=True)
class FeedSetting:
    """Threshold overrides for feeds matching ``ident``."""

    ident: FeedIdent
    spike: SpikeThresholds
    weekday_spikes: Dict[int, SpikeThresholds] = field(default_factory=dict)


@dataclass(frozen=True)
class MiscSettings:
    update_time_mins: float = 6.0
    minimum_listeners: int = 15
    state_feeds_id: Optional[int] = None
    max_feeds: int = 10
    show_alert_feeds: bool = True
    max_times_to_show_feed: Optional[int] = None
    prune_interval_hours: float = 12.0
    retention_days: int = 30

    def __post_init__(self) -> None:
        """Validate miscellaneous settings."""
        if self.update_time_mins < 5.0:
            raise ValueError("Update time must be at least 5 minutes")
        if self.max_feeds < 1:
            raise ValueError("Maximum feeds to display must be at least 1")
        if self.retention_days < 1:
            raise ValueError("Retention must be at least 1 day")
        if self.prune_interval_hours <= 0:
            raise ValueError("Prune interval must be positive")


@dataclass(frozen=True)
class SortingSettings:
    sort_by: SortBy = SortBy.LISTENERS
    sort_order: SortOrder = SortOrder.DESCENDING


@dataclass(frozen=True)
class KafkaSettings:
    bootstrap_servers: str = "localhost:9092"
    topic: str = "feed-spikes"
    max_retries: int = 3


@dataclass(frozen=True)
class MonitorConfig:
    spike: SpikeThresholds = field(default_factory=SpikeThresholds)
    unskewed_average: UnskewedAverageConfig = field(default_factory=UnskewedAverageConfig)
    weekday_spikes: Dict[int, SpikeThresholds] = field(default_factory=dict)
    feed_settings: Tuple[FeedSetting, ...] = ()
    misc: MiscSettings = field(default_factory=MiscSettings)
    sorting: SortingSettings = field(default_factory=SortingSettings)
    whitelist: Tuple[FeedIdent, ...] = ()
    blacklist: Tuple[FeedIdent, ...] = ()
    database_path: Path = DEFAULT_DATABASE_PATH
    log_level: str = "INFO"
    metrics_port: Optional[int] = None
    notifier: str = "log"
    kafka: KafkaSettings = field(default_factory=KafkaSettings)

    def thresholds_for(self, feed: FeedSnapshot, weekday: int) -> SpikeThresholds:
        """
        Select the spike thresholds for a feed on the given weekday.

        The first feed setting matching the feed wins; its weekday override is
        used when present. Otherwise the global weekday override or the global
        thresholds apply.

        Args:
            feed: Feed being classified
            weekday: Day of the week, Monday = 0
        """
        for setting in self.feed_settings:
            if setting.ident.matches(feed):
                return setting.weekday_spikes.get(weekday, setting.spike)

        return self.weekday_spikes.get(weekday, self.spike)

    def is_allowed(self, feed: FeedSnapshot) -> bool:
        """Apply the whitelist and blacklist to a feed."""
        if self.whitelist and not any(ident.matches(feed) for ident in self.whitelist):
            return False
        return not any(ident.matches(feed) for ident in self.blacklist)

    @staticmethod
    def from_dict(payload: Optional[Dict[str, Any]]) -> "MonitorConfig":
        payload = payload or {}
        if not isinstance(payload, dict):
            raise ConfigError("Configuration root must be a mapping")

        try:
            spike = _parse_thresholds(payload.get("spike"), SpikeThresholds())
            unskewed = _parse_dataclass(UnskewedAverageConfig, payload.get("unskewed_average"))

            feed_settings = []
            for raw in payload.get("feed_settings") or []:
                if not isinstance(raw, dict) or "ident" not in raw:
                    raise ConfigError(f"Feed setting requires an 'ident' entry, got {raw!r}")
                feed_spike = _parse_thresholds(raw.get("spike"), spike)
                feed_settings.append(
                    FeedSetting(
                        ident=FeedIdent.from_dict(raw["ident"]),
                        spike=feed_spike,
                        weekday_spikes=_parse_weekday_spikes(raw.get("weekday_spikes"), feed_spike),
                    )
                )

            sorting_raw = payload.get("sorting") or {}
            sorting = SortingSettings(
                sort_by=SortBy(str(sorting_raw.get("sort_by", "listeners")).lower()),
                sort_order=SortOrder(str(sorting_raw.get("sort_order", "descending")).lower()),
            )

            notifier_raw = payload.get("notifier") or {}
            if isinstance(notifier_raw, str):
                notifier_raw = {"type": notifier_raw}

            notifier = str(notifier_raw.get("type", "log")).lower()
            if notifier not in NOTIFIER_TYPES:
                raise ConfigError(f"Unknown notifier type {notifier!r}, expected one of {NOTIFIER_TYPES}")

            metrics_port = payload.get("metrics_port")

            return MonitorConfig(
                spike=spike,
                unskewed_average=unskewed,
                weekday_spikes=_parse_weekday_spikes(payload.get("weekday_spikes"), spike),
                feed_settings=tuple(feed_settings),
                misc=_parse_dataclass(MiscSettings, payload.get("misc")),
                sorting=sorting,
                whitelist=tuple(FeedIdent.from_dict(i) for i in payload.get("whitelist") or []),
                blacklist=tuple(FeedIdent.from_dict(i) for i in payload.get("blacklist") or []),
                database_path=Path(payload.get("database_path") or DEFAULT_DATABASE_PATH),
                log_level=str(payload.get("log_level", "INFO")).upper(),
                metrics_port=_as_int(metrics_port, "metrics_port") if metrics_port is not None else None,
                notifier=notifier,
                kafka=_parse_dataclass(KafkaSettings, notifier_raw.get("kafka")),
            )
        except ConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _parse_dataclass(cls, raw: Optional[Dict[str, Any]], base=None):
    """Build a frozen dataclass from a mapping, rejecting unknown keys."""
    base = base if base is not None else cls()
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping for {cls.__name__}, got {raw!r}")

    known = set(base.__dataclass_fields__)
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")

    return replace(base, **raw)


def _parse_thresholds(raw: Optional[Dict[str, Any]], base: SpikeThresholds) -> SpikeThresholds:
    thresholds = _parse_dataclass(SpikeThresholds, raw, base)
    # YAML integers are accepted for float fields
    return replace(
        thresholds,
        jump_required=float(thresholds.jump_required),
        low_listener_increase=float(thresholds.low_listener_increase),
        high_listener_dec=float(thresholds.high_listener_dec),
        high_listener_dec_every=float(thresholds.high_listener_dec_every),
    )


def _parse_weekday_spikes(
    raw: Optional[Dict[str, Any]], base: SpikeThresholds
) -> Dict[int, SpikeThresholds]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Weekday spikes must be a mapping, got {raw!r}")

    result = {}
    for day, values in raw.items():
        name = str(day).lower()
        if name not in WEEKDAYS:
            raise ConfigError(f"Unknown weekday {day!r}")
        result[WEEKDAYS.index(name)] = _parse_thresholds(values, base)
    return result


def _apply_env_overrides(config: MonitorConfig) -> MonitorConfig:
    overrides: Dict[str, Any] = {}

    if os.getenv("FEED_MONITOR_DB"):
        overrides["database_path"] = Path(os.environ["FEED_MONITOR_DB"])
    if os.getenv("LOG_LEVEL"):
        overrides["log_level"] = os.environ["LOG_LEVEL"].upper()
    if os.getenv("PROMETHEUS_PORT"):
        overrides["metrics_port"] = _as_int(os.environ["PROMETHEUS_PORT"], "PROMETHEUS_PORT")
    if os.getenv("KAFKA_BOOTSTRAP_SERVERS"):
        overrides["kafka"] = replace(
            config.kafka, bootstrap_servers=os.environ["KAFKA_BOOTSTRAP_SERVERS"]
        )

    return replace(config, **overrides) if overrides else config


def load_config(path: Path) -> MonitorConfig:
    """
    Load the configuration file at ``path``.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    return _apply_env_overrides(MonitorConfig.from_dict(payload))


def resolve_config_path(path: Optional[str] = None) -> Tuple[Path, bool]:
    """
    Pick the configuration file to load.

    Returns:
        The path and whether it was requested explicitly, by argument or
        ``FEED_MONITOR_CONFIG``
    """
    explicit = path or os.getenv("FEED_MONITOR_CONFIG")
    if explicit:
        return Path(explicit), True
    return DEFAULT_CONFIG_PATH, False


def load_or_default(path: Path, required: bool) -> MonitorConfig:
    """
    Load ``path``, falling back to built-in defaults when an optional file
    does not exist.

    Raises:
        ConfigError: If a required file is missing or any file is invalid
    """
    if not required and not Path(path).exists():
        return _apply_env_overrides(MonitorConfig())
    return load_config(path)


class SharedConfig:
    """
    Holds the active configuration for all threads.

    The lock is only held while reading or replacing the reference, never
    across I/O, so readers always see a complete configuration.
    """

    def __init__(self, config: MonitorConfig) -> None:
        self._lock = threading.Lock()
        self._config = config

    def get(self) -> MonitorConfig:
        with self._lock:
            return self._config

    def replace(self, config: MonitorConfig) -> None:
        with self._lock:
            self._config = config

    @property
    def update_interval_seconds(self) -> float:
        return self.get().misc.update_time_mins * 60.0
