"""
hidtrace Daemon.

Main entry point for live monitoring. It wires these parts together:
- USB snapshot poller (pyusb, optional pyudev wake-up)
- Kernel log reader (dmesg or a syslog file)
- Correlation engine
- Incident sinks (log, JSON lines, incident store)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import yaml

from hidtrace import __version__
from hidtrace.audit.database import IncidentStore
from hidtrace.config import ConfigurationError, HidTraceConfig, load_config, require_valid
from hidtrace.core.engine import KERNEL_LOG_SOURCE, USB_SOURCE, CorrelationEngine
from hidtrace.core.sinks import IncidentDispatcher, JsonLinesSink, LoggingSink, StoreSink
from hidtrace.interceptor.events import LogLine
from hidtrace.interceptor.kernel_log import DmesgReader, FileTailReader
from hidtrace.interceptor.linux import SnapshotPoller, USBEnumerator, USBMonitor
from hidtrace.policy.defaults import resolve_policy
from hidtrace.policy.models import Policy

logger = logging.getLogger("hidtrace")


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level_name: str, log_file: str | None = None) -> None:
    """Configure root logging for the process."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        logging.getLogger().addHandler(handler)


class HidTraceDaemon:
    """
    Live monitoring daemon.

    Runs the correlation engine against the host's USB bus and kernel log
    until a termination signal arrives.
    """

    def __init__(self, config: HidTraceConfig) -> None:
        """
        Initialize daemon with configuration.

        Args:
            config: Validated configuration object
        """
        self.config = config
        setup_logging(config.daemon.log_level, config.daemon.log_file)

        # Initialize components (lazy loading)
        self._policy: Policy | None = None
        self._store: IncidentStore | None = None
        self._engine: CorrelationEngine | None = None
        self._poller: SnapshotPoller | None = None
        self._reader: DmesgReader | FileTailReader | None = None

        # State
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._start_time: datetime | None = None

    @property
    def policy(self) -> Policy:
        """Get or load the scoring and matching policy."""
        if self._policy is None:
            self._policy = resolve_policy(self.config.policy.rules_file)
        return self._policy

    @property
    def store(self) -> IncidentStore | None:
        """Get or open the incident store (None when disabled)."""
        if self._store is None and self.config.database.enabled:
            self._store = IncidentStore(
                self.config.database.path,
                wal_mode=self.config.database.wal_mode,
            )
        return self._store

    @property
    def engine(self) -> CorrelationEngine:
        """Get or build the correlation engine."""
        if self._engine is None:
            self._engine = CorrelationEngine(
                self.config,
                self.policy,
                dispatcher=self._build_dispatcher(),
                live=True,
            )
        return self._engine

    def _build_dispatcher(self) -> IncidentDispatcher:
        dispatcher = IncidentDispatcher()
        output = self.config.output
        if output.log_incidents:
            dispatcher.register(LoggingSink())
        if output.jsonl_file:
            dispatcher.register(JsonLinesSink(output.jsonl_file))
        if self.store is not None:
            dispatcher.register(StoreSink(self.store))
        return dispatcher

    def _build_poller(self) -> SnapshotPoller:
        usb_config = self.config.usb
        monitor = USBMonitor() if usb_config.udev_wakeup else None
        return SnapshotPoller(
            enumerator=USBEnumerator(read_strings=usb_config.read_strings),
            monitor=monitor,
            poll_interval=usb_config.poll_interval,
        )

    def _build_reader(self) -> DmesgReader | FileTailReader | None:
        kernel_log = self.config.kernel_log
        if kernel_log.source == "dmesg":
            return DmesgReader(
                kernel_log.dmesg_command,
                heartbeat_interval=kernel_log.heartbeat_interval,
            )
        if kernel_log.source == "file":
            return FileTailReader(
                kernel_log.file_path,
                start_at_end=kernel_log.start_at_end,
                heartbeat_interval=kernel_log.heartbeat_interval,
            )
        return None

    async def _no_log_lines(self) -> AsyncIterator[LogLine | None]:
        return
        yield

    async def start(self) -> None:
        """Load policy and build components. Configuration errors are fatal here."""
        logger.info("Starting hidtrace daemon v%s", __version__)
        self.running = True
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        _ = self.policy
        if self.store is not None:
            logger.info("Recording incidents to %s", self.config.database.path)
        _ = self.engine
        self._poller = self._build_poller()
        self._reader = self._build_reader()
        if self._reader is None:
            logger.warning("Kernel log source disabled; correlating USB telemetry only")

        logger.info(
            "Correlation window %.1fs, alert threshold %.2f",
            self.config.correlation.window_seconds,
            self.config.correlation.alert_threshold,
        )

    async def stop(self) -> None:
        """Release resources."""
        if self._poller is not None:
            self._poller.stop()
        if self._reader is not None:
            self._reader.stop()
        if self._engine is not None:
            await self._engine.dispatcher.close()
        elif self._store is not None:
            self._store.close()
        self.running = False
        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Main daemon loop."""
        await self.start()
        if self._poller is None:
            raise RuntimeError("Daemon started without a USB poller")
        engine = self.engine

        lines = self._reader.lines() if self._reader is not None else self._no_log_lines()
        feeders = [
            asyncio.create_task(engine.feed(USB_SOURCE, self._poller.snapshots())),
            asyncio.create_task(engine.feed(KERNEL_LOG_SOURCE, lines)),
        ]
        engine_task = asyncio.create_task(engine.run())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        try:
            await asyncio.wait(
                [engine_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not engine_task.done():
                engine.stop()
            for task in feeders:
                task.cancel()
            await asyncio.gather(*feeders, return_exceptions=True)
            await engine_task
        except asyncio.CancelledError:
            logger.info("Daemon loop cancelled")
        except Exception as e:
            logger.error("Daemon error: %s", e, exc_info=True)
        finally:
            shutdown_task.cancel()
            await self.stop()

    def handle_signal(self, signum: int) -> None:
        """Handle termination signals."""
        sig_name = signal.Signals(signum).name
        logger.info("Received signal %s, initiating shutdown", sig_name)
        self.running = False
        self._shutdown_event.set()

    def get_statistics(self) -> dict[str, Any]:
        """Get daemon statistics."""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            "uptime_seconds": uptime,
            "running": self.running,
            "engine": self._engine.get_statistics() if self._engine else None,
            "stored_incidents": self._store.count() if self._store else 0,
        }


async def run_daemon(config: HidTraceConfig) -> int:
    """Run the daemon with the given configuration."""
    daemon = HidTraceDaemon(config)

    # Set up signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: daemon.handle_signal(s))

    try:
        await daemon.run()
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        for error in e.errors:
            logger.error("  - %s", error)
        return 1
    except Exception as e:
        logger.exception("Daemon crashed: %s", e)
        return 1

    logger.info("Final statistics: %s", daemon.get_statistics())
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the daemon."""
    parser = argparse.ArgumentParser(
        prog="hidtrace-daemon",
        description="USB implant detection daemon",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (ConfigurationError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        config.daemon.log_level = "debug"

    # Validate configuration
    try:
        require_valid(config)
    except ConfigurationError as e:
        print("Configuration errors:", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    # Run daemon
    return asyncio.run(run_daemon(config))


if __name__ == "__main__":
    sys.exit(main())
