"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest

from shared.models import FeedSnapshot
from services.feed_monitor.config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DATABASE_PATH,
    FeedIdent,
    MiscSettings,
    MonitorConfig,
    SharedConfig,
    SortBy,
    SortOrder,
    load_config,
    load_or_default,
    resolve_config_path,
)
from services.feed_monitor.errors import ConfigError
from services.feed_monitor.spike import SpikeThresholds


SAMPLE_YAML = """
spike:
  jump_required: 0.5
unskewed_average:
  spikes_required: 2
weekday_spikes:
  Saturday:
    jump_required: 0.7
feed_settings:
  - ident:
      county: Cook
    spike:
      low_listener_increase: 0.01
    weekday_spikes:
      sunday:
        jump_required: 0.9
misc:
  update_time_mins: 10
  minimum_listeners: 20
  state_feeds_id: 17
  max_feeds: 3
sorting:
  sort_by: jump
  sort_order: ascending
whitelist:
  - state_id: 17
blacklist:
  - id: 999
database_path: /var/lib/feeds.sqlite
log_level: debug
metrics_port: 9100
notifier:
  type: kafka
  kafka:
    bootstrap_servers: kafka:29092
    topic: spikes
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("FEED_MONITOR_CONFIG", "FEED_MONITOR_DB", "LOG_LEVEL",
                 "PROMETHEUS_PORT", "KAFKA_BOOTSTRAP_SERVERS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path) -> Path:
    path = tmp_path / "feed_monitor.yaml"
    path.write_text(SAMPLE_YAML, encoding="utf-8")
    return path


def make_feed(**overrides) -> FeedSnapshot:
    values = dict(id=1, name="County Fire", listeners=100, state_id=17, county="Cook")
    values.update(overrides)
    return FeedSnapshot(**values)


class TestMonitorConfigParsing:
    """Test MonitorConfig.from_dict."""

    def test_defaults(self):
        config = MonitorConfig.from_dict(None)

        assert config.spike == SpikeThresholds()
        assert config.misc == MiscSettings()
        assert config.sorting.sort_by is SortBy.LISTENERS
        assert config.sorting.sort_order is SortOrder.DESCENDING
        assert config.database_path == DEFAULT_DATABASE_PATH
        assert config.notifier == "log"
        assert config.metrics_port is None

    def test_full_file(self, config_file):
        config = load_config(config_file)

        assert config.spike.jump_required == 0.5
        assert config.unskewed_average.spikes_required == 2
        assert config.misc.update_time_mins == 10
        assert config.misc.state_feeds_id == 17
        assert config.sorting.sort_by is SortBy.JUMP
        assert config.sorting.sort_order is SortOrder.ASCENDING
        assert config.whitelist == (FeedIdent("state_id", 17),)
        assert config.blacklist == (FeedIdent("id", 999),)
        assert config.database_path == Path("/var/lib/feeds.sqlite")
        assert config.log_level == "DEBUG"
        assert config.metrics_port == 9100
        assert config.notifier == "kafka"
        assert config.kafka.bootstrap_servers == "kafka:29092"
        assert config.kafka.topic == "spikes"

    def test_weekday_override_inherits_global(self, config_file):
        config = load_config(config_file)
        saturday = config.weekday_spikes[5]

        assert saturday.jump_required == 0.7
        assert saturday.high_listener_dec == 0.02

    def test_feed_setting_inherits_global(self, config_file):
        config = load_config(config_file)
        setting = config.feed_settings[0]

        assert setting.ident == FeedIdent("county", "Cook")
        assert setting.spike.jump_required == 0.5
        assert setting.spike.low_listener_increase == 0.01
        assert setting.weekday_spikes[6].jump_required == 0.9
        assert setting.weekday_spikes[6].low_listener_increase == 0.01

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="Unknown SpikeThresholds keys"):
            MonitorConfig.from_dict({"spike": {"jump_requried": 0.5}})

    def test_invalid_value_rejected(self):
        with pytest.raises(ConfigError, match="Update time"):
            MonitorConfig.from_dict({"misc": {"update_time_mins": 1}})

    def test_invalid_unskewed_jump(self):
        with pytest.raises(ConfigError, match="at least 1.1"):
            MonitorConfig.from_dict({"unskewed_average": {"jump_required": 1.0}})

    def test_unknown_weekday(self):
        with pytest.raises(ConfigError, match="Unknown weekday"):
            MonitorConfig.from_dict({"weekday_spikes": {"funday": {"jump_required": 0.5}}})

    def test_invalid_sort(self):
        with pytest.raises(ConfigError):
            MonitorConfig.from_dict({"sorting": {"sort_by": "name"}})

    def test_unknown_notifier(self):
        with pytest.raises(ConfigError, match="notifier type"):
            MonitorConfig.from_dict({"notifier": "email"})

    def test_feed_setting_requires_ident(self):
        with pytest.raises(ConfigError, match="ident"):
            MonitorConfig.from_dict({"feed_settings": [{"spike": {"jump_required": 0.3}}]})


class TestFeedIdent:
    """Test feed identifiers."""

    def test_parse_kinds(self):
        assert FeedIdent.from_dict({"name": "Metro"}) == FeedIdent("name", "Metro")
        assert FeedIdent.from_dict({"id": "12"}) == FeedIdent("id", 12)
        assert FeedIdent.from_dict({"State ID": 17}) == FeedIdent("state_id", 17)

    def test_requires_single_key(self):
        with pytest.raises(ConfigError, match="exactly one key"):
            FeedIdent.from_dict({"name": "Metro", "id": 1})

    def test_unknown_kind(self):
        with pytest.raises(ConfigError, match="Unknown feed identifier"):
            FeedIdent.from_dict({"city": "Chicago"})

    def test_non_integer_id(self):
        with pytest.raises(ConfigError, match="must be an integer"):
            FeedIdent.from_dict({"id": "abc"})

    def test_matches(self):
        feed = make_feed()

        assert FeedIdent("name", "County Fire").matches(feed)
        assert FeedIdent("id", 1).matches(feed)
        assert FeedIdent("county", "Cook").matches(feed)
        assert FeedIdent("state_id", 17).matches(feed)
        assert not FeedIdent("state_id", 18).matches(feed)


class TestThresholdSelection:
    """Test MonitorConfig.thresholds_for."""

    def test_priority(self, config_file):
        config = load_config(config_file)
        cook = make_feed()
        other = make_feed(id=2, county="DuPage")

        # Monday: feed setting for Cook, globals for everyone else
        assert config.thresholds_for(cook, 0) == config.feed_settings[0].spike
        assert config.thresholds_for(other, 0) == config.spike

        # Saturday: the global weekday override does not apply to Cook
        assert config.thresholds_for(cook, 5) == config.feed_settings[0].spike
        assert config.thresholds_for(other, 5).jump_required == 0.7

        # Sunday: Cook's own weekday override
        assert config.thresholds_for(cook, 6).jump_required == 0.9
        assert config.thresholds_for(other, 6) == config.spike


class TestAllowDenyLists:
    """Test MonitorConfig.is_allowed."""

    def test_no_lists_allows_all(self):
        assert MonitorConfig().is_allowed(make_feed())

    def test_whitelist(self):
        config = MonitorConfig(whitelist=(FeedIdent("state_id", 17),))

        assert config.is_allowed(make_feed())
        assert not config.is_allowed(make_feed(state_id=5))

    def test_blacklist_wins(self):
        config = MonitorConfig(
            whitelist=(FeedIdent("state_id", 17),),
            blacklist=(FeedIdent("id", 1),),
        )

        assert not config.is_allowed(make_feed())
        assert config.is_allowed(make_feed(id=2))


class TestLoading:
    """Test file loading and environment overrides."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to read"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("spike: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError, match="Failed to parse"):
            load_config(path)

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_environment_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("FEED_MONITOR_DB", "/tmp/other.sqlite")
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("PROMETHEUS_PORT", "9200")
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "broker:9092")

        config = load_config(config_file)

        assert config.database_path == Path("/tmp/other.sqlite")
        assert config.log_level == "WARNING"
        assert config.metrics_port == 9200
        assert config.kafka.bootstrap_servers == "broker:9092"
        assert config.kafka.topic == "spikes"

    def test_resolve_config_path(self, monkeypatch):
        assert resolve_config_path() == (DEFAULT_CONFIG_PATH, False)
        assert resolve_config_path("a.yaml") == (Path("a.yaml"), True)

        monkeypatch.setenv("FEED_MONITOR_CONFIG", "/etc/feeds.yaml")
        assert resolve_config_path() == (Path("/etc/feeds.yaml"), True)

    def test_optional_missing_file_uses_defaults(self, tmp_path):
        config = load_or_default(tmp_path / "missing.yaml", required=False)

        assert config == MonitorConfig()

    def test_required_missing_file_fails(self, tmp_path):
        with pytest.raises(ConfigError):
            load_or_default(tmp_path / "missing.yaml", required=True)


class TestSharedConfig:
    """Test the shared configuration holder."""

    def test_get_and_replace(self):
        first = MonitorConfig()
        second = MonitorConfig(misc=MiscSettings(update_time_mins=10))
        shared = SharedConfig(first)

        assert shared.get() is first
        assert shared.update_interval_seconds == 360.0

        shared.replace(second)

        assert shared.get() is second
        assert shared.update_interval_seconds == 600.0
