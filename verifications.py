"""
verifications.py — Startup verification functions for live_watcher
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from settings import AppConfig, GlobalSettings

# Setup logger
logger = logging.getLogger("live_watcher")


def _verify_tool(executable: str, version_flag: str, name: str) -> bool:
    """Check that an external executable can be started."""
    is_win = sys.platform.startswith("win")
    try:
        result = subprocess.run(
            [executable, version_flag],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            creationflags=subprocess.CREATE_NO_WINDOW if is_win else 0,
        )

        if result.returncode == 0:
            first_line = (result.stdout.splitlines() or [""])[0]
            logger.info(f"{name} found: {first_line}".rstrip(": "))
            return True

        logger.error(f"{name} check failed ({executable} exited with {result.returncode})")
        return False
    except FileNotFoundError:
        logger.error(f"{name} not found at '{executable}'. Install it or set its path in the config.")
        return False
    except OSError as e:
        logger.error(f"{name} error: {e}")
        return False


def verify_tools(settings: GlobalSettings) -> bool:
    """Verify that the capture and resolver tools are installed.

    Returns:
        bool: True if both tools could be run, False otherwise
    """
    capture_ok = _verify_tool(settings.capture_tool, "-version", "FFmpeg")
    resolver_ok = _verify_tool(settings.resolver_tool, "--version", "yt-dlp")
    return capture_ok and resolver_ok


def _directory_problem(path: Path) -> Optional[str]:
    """Create the directory if needed and check it accepts new files."""
    if not path.is_dir():
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return f"cannot be created ({e})"
        logger.info(f"Created {path}")

    scratch = path / f".live_watcher_{os.getpid()}.tmp"
    try:
        scratch.touch()
        scratch.unlink()
    except OSError as e:
        return f"is not writable ({e})"
    return None


def verify_directories(directories: Iterable[Tuple[Path, str]]) -> bool:
    """Verify that the log and recording directories are usable.

    Every directory is checked, so a single run reports all of the
    unusable ones.

    Returns:
        bool: True if every directory exists and is writable, False otherwise
    """
    unusable = []
    for path, description in directories:
        problem = _directory_problem(Path(path))
        if problem:
            logger.error(f"{description} {path} {problem}")
            unusable.append(description)

    if unusable:
        logger.error(f"Unusable directories: {', '.join(unusable)}")
        return False
    return True


def required_directories(config: AppConfig) -> List[Tuple[Path, str]]:
    directories = [(Path(config.settings.log_path), "Log directory")]
    for spec in config.watchers:
        directories.append((spec.output_dir, f"Output directory for {spec.channel}"))
    return directories


def verify_paths(config: AppConfig) -> bool:
    """Verify all required paths and external tools.

    Main verification function that checks:
    1. The log directory and every watcher's output directory are writable
    2. FFmpeg and yt-dlp are installed and available

    Returns:
        bool: True if all verifications passed, False otherwise
    """
    logger.info("Verifying file paths and external tools...")

    if not verify_directories(required_directories(config)):
        return False

    if not verify_tools(config.settings):
        return False

    logger.info("Verification successful")
    return True
