"""
settings.py — Configuration model and JSON loader for live_watcher
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from utils import interval_seconds

logger = logging.getLogger("live_watcher")

DEFAULT_CONFIG_PATH = Path("config") / "config.json"
DEFAULT_CAPTURE_TOOL = "ffmpeg"
DEFAULT_RESOLVER_TOOL = "yt-dlp"
DEFAULT_LOG_PATH = "logs"


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""


@dataclass(frozen=True)
class GlobalSettings:
    """Settings shared by every watcher."""

    capture_tool: str = DEFAULT_CAPTURE_TOOL
    resolver_tool: str = DEFAULT_RESOLVER_TOOL
    transcode_while_capturing: bool = False
    log_path: str = DEFAULT_LOG_PATH


@dataclass(frozen=True)
class WatcherSpec:
    """Configuration of a single watched channel."""

    channel: str
    poll_interval_qty: int = 30
    poll_interval_unit: str = "SECONDS"
    output_path: Optional[str] = None
    output_filename_prefix: Optional[str] = None
    keep_intermediate_files: bool = False
    log_capture_output: bool = False
    log_to_file: bool = True

    @property
    def poll_interval_seconds(self) -> float:
        return interval_seconds(self.poll_interval_qty, self.poll_interval_unit)

    @property
    def output_dir(self) -> Path:
        if self.output_path:
            return Path(self.output_path)
        return Path("out") / self.channel

    @property
    def filename_prefix(self) -> str:
        return self.output_filename_prefix or self.channel


@dataclass(frozen=True)
class AppConfig:
    settings: GlobalSettings
    watchers: List[WatcherSpec]


def _flag(raw: dict, key: str, default: bool) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    return value


def _tool(raw: dict, key: str, default: str) -> str:
    value = raw.get(key)
    if not value:
        return default
    return str(value)


def parse_watcher(raw: dict) -> WatcherSpec:
    """Build a WatcherSpec from one entry of the ``watchers`` list."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Watcher entry must be an object, got {raw!r}")

    channel = str(raw.get("channel") or "").strip()
    if not channel:
        raise ConfigError("Watcher entry is missing 'channel'")

    qty = raw.get("pollIntervalQty", 30)
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ConfigError(
            f"Watcher {channel}: 'pollIntervalQty' must be a positive integer, got {qty!r}"
        )
    unit = str(raw.get("pollIntervalUnit") or "SECONDS")
    try:
        interval_seconds(qty, unit)
    except ValueError as e:
        raise ConfigError(f"Watcher {channel}: {e}") from e

    return WatcherSpec(
        channel=channel,
        poll_interval_qty=qty,
        poll_interval_unit=unit,
        output_path=raw.get("outputPath") or None,
        output_filename_prefix=raw.get("outputFilenamePrefix") or None,
        keep_intermediate_files=_flag(raw, "keepMKVFiles", False),
        log_capture_output=_flag(raw, "logFfmpegOutput", False),
        log_to_file=_flag(raw, "logToFile", True),
    )


def parse_config(raw: dict) -> AppConfig:
    """Validate a decoded configuration document.

    Tool paths fall back to ``ffmpeg`` and ``yt-dlp`` when empty, and the
    per-watcher flags fall back to their documented defaults.

    Raises:
        ConfigError: if the document is structurally invalid
    """
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a JSON object")

    settings = GlobalSettings(
        capture_tool=_tool(raw, "ffmpegPath", DEFAULT_CAPTURE_TOOL),
        resolver_tool=_tool(raw, "ytdlpPath", DEFAULT_RESOLVER_TOOL),
        transcode_while_capturing=_flag(raw, "encodeWhileDownloading", False),
        log_path=_tool(raw, "logPath", DEFAULT_LOG_PATH),
    )

    entries = raw.get("watchers")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("Configuration must list at least one watcher")

    watchers = [parse_watcher(entry) for entry in entries]
    seen = set()
    for w in watchers:
        key = w.channel.lower()
        if key in seen:
            raise ConfigError(f"Channel {w.channel} is configured more than once")
        seen.add(key)

    return AppConfig(settings=settings, watchers=watchers)


def load_config(path: Path) -> AppConfig:
    """Load and validate the JSON configuration file at ``path``."""
    path = Path(path)
    logger.info(f"Loading configuration from {path} resolved to {path.resolve()}")
    if not path.exists():
        raise ConfigError(f"Config file does not exist: {path.resolve()}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    return parse_config(raw)
