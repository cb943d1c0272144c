#!/usr/bin/env python3
"""
live_watcher.py — Live stream watcher that records channels while they are live,
then remuxes the recordings to mp4.
"""

import argparse
import asyncio
import contextlib
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp

from api import USER_NOT_FOUND, Live, LiveDetector, LiveStatus, NotLive
from converter import ConversionRepairJob
from recorder import RecordingSupervisor
from settings import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    ConfigError,
    GlobalSettings,
    WatcherSpec,
    load_config,
)
from verifications import verify_paths

# ───── configuration ───── #
MAIN_LOG_NAME = "live_watcher.log"
LOG_MAX_BYTES = 5_000_000
LOG_BACKUPS = 3
HTTP_TIMEOUT = aiohttp.ClientTimeout(total=30)
UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# ───── logging setup ───── #
logger = logging.getLogger("live_watcher")


def setup_logging():
    """Attach the console handler to the application logger."""
    logger.setLevel(logging.INFO)
    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(ch)


def _add_rotating_file(target: logging.Logger, log_fp: Path):
    log_fp = log_fp.resolve()
    for h in target.handlers:
        if isinstance(h, logging.handlers.RotatingFileHandler) and Path(h.baseFilename) == log_fp:
            return
    log_fp.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        str(log_fp),
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    target.addHandler(file_handler)


def setup_file_logging(settings: GlobalSettings, watchers: List[WatcherSpec]):
    """Log to the main log file, plus one file per channel that asks for it."""
    log_dir = Path(settings.log_path)
    _add_rotating_file(logger, log_dir / MAIN_LOG_NAME)
    for spec in watchers:
        if spec.log_to_file:
            _add_rotating_file(channel_logger(spec.channel), log_dir / f"{spec.channel}.log")


def channel_logger(channel: str) -> logging.Logger:
    return logger.getChild(channel)


# ───── Watcher ───── #
class Watcher:
    """Watches a single channel and records it while it is live.

    Every tick checks the live status once. If the channel is live the tick
    records it until the stream ends and converts the recording before it
    returns, so ticks of the same channel never overlap. The next tick is
    scheduled a full poll interval after the previous one finished.
    """

    def __init__(
        self,
        spec: WatcherSpec,
        settings: GlobalSettings,
        session: Optional[aiohttp.ClientSession],
        stop_evt: asyncio.Event,
    ):
        self.spec = spec
        self.name = spec.channel
        self.settings = settings
        self.stop_evt = stop_evt
        self.logger = channel_logger(spec.channel)
        self.output_dir = spec.output_dir

        self.converter = ConversionRepairJob(
            self.output_dir, settings, spec.keep_intermediate_files, self.logger
        )
        self.detector = LiveDetector(session, spec.channel, self.logger)
        self.supervisor = RecordingSupervisor(
            spec, settings, self.output_dir, stop_evt, self.converter, self.logger
        )

        self.loop: Optional[asyncio.Task] = None
        self.last_status: Optional[LiveStatus] = None

    def start(self):
        """Start the channel monitoring task."""
        self.loop = asyncio.create_task(self._poll_loop(), name=f"w-{self.name}")

    async def stop(self):
        """Cancel the monitoring task, letting an active capture quit gracefully."""
        if self.loop:
            self.loop.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.loop
            self.loop = None
            logger.debug(f"Cancelled task loop for {self.name}")

    def is_recording(self) -> bool:
        return self.supervisor.is_recording()

    async def _idle(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until stop is requested.

        Returns:
            True if stop was requested
        """
        try:
            await asyncio.wait_for(self.stop_evt.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _poll_loop(self):
        # Clean up anything left over by an earlier run
        try:
            await self.converter.run()
        except Exception:
            self.logger.exception(f"{self.name} startup conversion failure")

        while not self.stop_evt.is_set():
            try:
                await self.tick()
            except Exception:
                self.logger.exception(f"{self.name} unhandled exception during poll")
            if await self._idle(self.spec.poll_interval_seconds):
                break
        self.logger.debug(f"Watcher for {self.name} stopped")

    async def tick(self) -> LiveStatus:
        """Check the live status once and record if the channel is live."""
        status = await self.detector.check()
        self.last_status = status
        every = f"{self.spec.poll_interval_qty} {self.spec.poll_interval_unit.lower()}"

        if isinstance(status, Live):
            if self.stop_evt.is_set():
                return status
            self.logger.info(f"User {self.name} is live (room {status.room_id}).")
            await self.supervisor.record()
        elif isinstance(status, NotLive):
            self.logger.info(f"User {self.name} is NOT live, checking again in {every}.")
        elif status.reason == USER_NOT_FOUND:
            self.logger.error(
                f"User {self.name} was reported as not found. "
                "If this is the first time watching this user then this message may be correct. "
                "If seen randomly, this could be a sign of a time out and this message can be ignored."
            )
        else:
            self.logger.warning(
                f"Could not determine live status of {self.name} ({status.reason}), checking again in {every}."
            )
        return status


# ───── WatcherScheduler ───── #
class WatcherScheduler:
    """Owns the watchers of every configured channel.

    Each watcher runs as its own task on the event loop. A single stop event is
    shared by all of them; setting it wakes idle watchers and asks recording
    ones to finish their capture gracefully.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.watchers: Dict[str, Watcher] = {}
        self.stop_evt = asyncio.Event()
        self.session: Optional[aiohttp.ClientSession] = None

    def schedule(self, watchers: List[WatcherSpec], settings: GlobalSettings) -> List[Watcher]:
        """Create and start a watcher task for every spec."""
        started = []
        for spec in watchers:
            key = spec.channel.lower()
            if key in self.watchers:
                logger.warning(f"Watcher for {spec.channel} is already running, skipping")
                continue
            logger.info(f"Spawning watcher job for channel {spec.channel}")
            watcher = Watcher(spec, settings, self.session, self.stop_evt)
            self.watchers[key] = watcher
            watcher.start()
            started.append(watcher)
        return started

    async def run(self):
        """Run all watchers until stop is requested, then shut them down."""
        async with aiohttp.ClientSession(timeout=HTTP_TIMEOUT, headers={"User-Agent": UA}) as session:
            self.session = session
            self.schedule(self.config.watchers, self.config.settings)
            try:
                await self.stop_evt.wait()
            finally:
                await self.shutdown()
        self.session = None

    def request_stop(self):
        if not self.stop_evt.is_set():
            logger.info("Stop requested")
        self.stop_evt.set()

    async def shutdown(self):
        """Stop every watcher, waiting for active recordings to finalize."""
        logger.info("Shutting down watchers…")
        self.stop_evt.set()

        recording = [w.name for w in self.watchers.values() if w.is_recording()]
        if recording:
            logger.info(f"Waiting for {len(recording)} recording(s) to finish: {', '.join(recording)}")
        else:
            logger.info("No channels are currently recording")

        active = [w for w in self.watchers.values() if w.loop]
        results = await asyncio.gather(*(w.loop for w in active), return_exceptions=True)
        for watcher, result in zip(active, results):
            if isinstance(result, Exception):
                logger.error(f"Watcher for {watcher.name} ended with an error: {result!r}")
            watcher.loop = None


def main(argv: Optional[List[str]] = None):
    """Application entry point.

    Loads the configuration, verifies the external tools and directories,
    and runs the scheduler until SIGINT or SIGTERM is received.
    """
    parser = argparse.ArgumentParser(
        prog="live-watcher",
        description="Watch live channels and record them while they are live.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Config file path (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    setup_logging()
    logger.info("Starting live watcher...")
    try:
        config = load_config(Path(args.config))
    except ConfigError as e:
        logger.error(f"Failed to start: {e}")
        sys.exit(1)

    setup_file_logging(config.settings, config.watchers)
    if not verify_paths(config):
        logger.error("Exiting due to file system permission/access errors or missing tools.")
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    scheduler = WatcherScheduler(config)
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, scheduler.request_stop)
    try:
        loop.run_until_complete(scheduler.run())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        loop.run_until_complete(scheduler.shutdown())
    finally:
        loop.close()
        logger.info("Exited cleanly")


if __name__ == "__main__":
    main()
