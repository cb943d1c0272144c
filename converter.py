"""
converter.py — Post-recording remux and repair of a watcher's output directory
"""

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from settings import GlobalSettings
from utils import tail

logger = logging.getLogger("live_watcher")

INTERMEDIATE_EXT = ".mkv"
FINAL_EXT = ".mp4"
CONVERTED_MARKER = "-converted"
# Time given to the OS to release the remuxer's handle on the source file
RELEASE_GRACE_SECONDS = 0.5


class ConversionRepairJob:
    """Converts finished .mkv recordings in a directory to .mp4.

    Any .mkv without the "-converted" marker is treated as unconverted. If an
    .mp4 sibling already exists next to it, that .mp4 is left over from an
    interrupted conversion and is deleted before remuxing again. Running the
    job over an already clean directory does nothing.
    """

    def __init__(
        self,
        output_dir: Path,
        settings: GlobalSettings,
        keep_intermediate: bool = False,
        log: Optional[logging.Logger] = None,
        grace_seconds: float = RELEASE_GRACE_SECONDS,
    ):
        self.output_dir = Path(output_dir)
        self.settings = settings
        self.keep_intermediate = keep_intermediate
        self.logger = log or logger
        self.grace_seconds = grace_seconds
        self._lock = asyncio.Lock()

    @staticmethod
    def final_path(raw: Path) -> Path:
        return raw.with_suffix(FINAL_EXT)

    @staticmethod
    def converted_path(raw: Path) -> Path:
        return raw.with_name(f"{raw.stem}{CONVERTED_MARKER}{INTERMEDIATE_EXT}")

    def pending(self) -> List[Path]:
        """List intermediate recordings that have not been converted yet."""
        if not self.output_dir.is_dir():
            return []
        return sorted(
            p
            for p in self.output_dir.iterdir()
            if p.is_file()
            and p.name.endswith(INTERMEDIATE_EXT)
            and not p.name.endswith(CONVERTED_MARKER + INTERMEDIATE_EXT)
        )

    async def run(self) -> List[Path]:
        """Convert every pending recording in the output directory.

        Returns:
            The final files that were produced during this run
        """
        async with self._lock:
            produced = []
            for raw in self.pending():
                try:
                    final = await self._convert(raw)
                except Exception:
                    self.logger.exception(f"Unexpected error while converting {raw.name}")
                    continue
                if final:
                    produced.append(final)
            return produced

    async def _convert(self, raw: Path) -> Optional[Path]:
        final = self.final_path(raw)
        if final.exists():
            self.logger.warning(
                f"Deleting {final.name}, left over from an interrupted conversion of {raw.name}"
            )
            final.unlink()

        cmd = [
            self.settings.capture_tool,
            "-i", str(raw),
            "-c", "copy",
            str(final),
        ]
        self.logger.info(f"CONVERTING {raw.name} to {final.name}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            self.logger.error(f"Failed to start {self.settings.capture_tool} for {raw.name}: {e}")
            return None
        try:
            _, stderr_output = await proc.communicate()
        except asyncio.CancelledError:
            # Let the remux finish writing rather than orphaning it
            self.logger.info(f"Waiting for conversion of {raw.name} to finish before stopping")
            await asyncio.shield(proc.wait())
            raise

        # Wait for the process to fully let go of the source file
        await asyncio.sleep(self.grace_seconds)

        if proc.returncode != 0 or not final.exists():
            error_message = (stderr_output or b"").decode(errors="ignore")
            self.logger.error(
                f"FAILED converting {raw.name} (exit code {proc.returncode}), keeping it for the next run. "
                f"Error: {tail(error_message)}"
            )
            final.unlink(missing_ok=True)
            return None

        if self.keep_intermediate:
            kept = self.converted_path(raw)
            raw.rename(kept)
            self.logger.info(f"SUCCESS converting {raw.name}, kept original as {kept.name}")
        else:
            raw.unlink()
            self.logger.info(f"SUCCESS converting {raw.name}, deleted original")
        return final
