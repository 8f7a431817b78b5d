#!/usr/bin/env python3
"""
Feed Spike Monitor Service

Polls the feed source on a fixed interval, keeps per-feed listener
statistics and surfaces feeds whose listener counts spike. All work happens
on a single event loop fed by a timer thread and signal handlers.
"""

import argparse
import queue
import signal
import sys
import threading
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import structlog
from prometheus_client import start_http_server

from .config import SharedConfig, load_config, load_or_default, resolve_config_path
from .errors import ConfigError, HistoryStoreError
from .history_store import HistoricalStore
from .logging_setup import configure_logging, set_level
from .notifier import Notifier, create_notifier
from .orchestrator import UpdateOrchestrator
from .scraper import BroadcastifyScraper


logger = structlog.get_logger(__name__)


class MonitorEvent(Enum):
    RUN_UPDATE = "run_update"
    RELOAD_CONFIG = "reload_config"
    EXIT = "exit"


class UpdateTimer(threading.Thread):
    """
    Daemon thread that requests an update every ``update_time_mins``.

    The interval is read from the shared configuration before every wait so
    a reload changes the cadence from the next tick on.
    """

    def __init__(self, events: "queue.Queue[MonitorEvent]", shared_config: SharedConfig) -> None:
        super().__init__(name="update-timer", daemon=True)
        self.events = events
        self.shared_config = shared_config
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.shared_config.update_interval_seconds):
            self.events.put(MonitorEvent.RUN_UPDATE)

    def stop(self) -> None:
        self._stopped.set()


class FeedMonitorService:
    """
    Single consumer of monitor events.

    Events are handled strictly one at a time, so an update cycle always
    runs to completion before a reload or exit is processed.
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        shared_config: SharedConfig,
        config_path: Path,
        events: Optional["queue.Queue[MonitorEvent]"] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.shared_config = shared_config
        self.config_path = config_path
        self.events = events if events is not None else queue.Queue()
        self.timer = UpdateTimer(self.events, shared_config)

    def handle_signal(self, signum: int, frame) -> None:
        """Translate a signal into an event; never does any work itself."""
        if signum == getattr(signal, "SIGHUP", None):
            self.events.put(MonitorEvent.RELOAD_CONFIG)
        else:
            self.events.put(MonitorEvent.EXIT)

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, self.handle_signal)

    def run_update(self) -> None:
        self.orchestrator.run_cycle()
        self.orchestrator.maybe_prune()

    def reload_config(self) -> bool:
        """
        Replace the shared configuration from the config file.

        Returns:
            False if the file was invalid and the previous configuration kept
        """
        log = logger.bind(path=str(self.config_path))
        try:
            new_config = load_config(self.config_path)
        except ConfigError as e:
            log.error("Config reload failed, keeping previous configuration", error=str(e))
            return False

        old_config = self.shared_config.get()
        if (
            new_config.database_path != old_config.database_path
            or new_config.notifier != old_config.notifier
            or new_config.kafka != old_config.kafka
            or new_config.metrics_port != old_config.metrics_port
        ):
            log.warning("Storage, notifier and metrics settings take effect after a restart")

        self.shared_config.replace(new_config)
        set_level(new_config.log_level)
        log.info("Configuration reloaded")
        return True

    def run(self) -> None:
        """Run the event loop until an EXIT event is received."""
        logger.info("Starting feed monitor loop")
        self.timer.start()

        try:
            self.run_update()
            while True:
                event = self.events.get()
                if event is MonitorEvent.RUN_UPDATE:
                    self.run_update()
                elif event is MonitorEvent.RELOAD_CONFIG:
                    self.reload_config()
                elif event is MonitorEvent.EXIT:
                    logger.info("Exit requested")
                    break
        finally:
            self.timer.stop()
            self.orchestrator.store.optimize()
            logger.info("Shutdown complete")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feed-monitor",
        description="Surface feeds whose listener counts spike above their baseline.",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to the YAML configuration file (default: $FEED_MONITOR_CONFIG "
             "or config/feed_monitor.yaml)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    config_path, required = resolve_config_path(args.config)

    configure_logging()
    try:
        config = load_or_default(config_path, required)
    except ConfigError as e:
        logger.error("Invalid configuration", path=str(config_path), error=str(e))
        return 1

    set_level(config.log_level)
    logger.info(
        "Configuration loaded",
        path=str(config_path),
        database=str(config.database_path),
        notifier=config.notifier,
        update_time_mins=config.misc.update_time_mins,
        metrics_port=config.metrics_port,
    )

    if config.metrics_port is not None:
        start_http_server(config.metrics_port)

    try:
        store = HistoricalStore.from_path(config.database_path)
    except HistoryStoreError as e:
        logger.error("Failed to open listener average store", error=str(e))
        return 1

    shared_config = SharedConfig(config)
    notifier: Notifier = create_notifier(config.notifier, config.kafka)
    orchestrator = UpdateOrchestrator(BroadcastifyScraper(), store, notifier, shared_config)

    service = FeedMonitorService(orchestrator, shared_config, config_path)
    service.install_signal_handlers()

    try:
        service.run()
    finally:
        close = getattr(notifier, "close", None)
        if close is not None:
            close()
        store.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
