"""
recorder.py — Capture supervision for a live channel
"""

import asyncio
import contextlib
import datetime as dt
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt

from converter import INTERMEDIATE_EXT, ConversionRepairJob
from settings import GlobalSettings, WatcherSpec
from utils import file_timestamp, is_progress_line, live_page_url

logger = logging.getLogger("live_watcher")

RESOLVE_ATTEMPTS = 5
# ffmpeg reports progress with \r and no newline, so lines can get long
STREAM_LIMIT = 1024 * 1024
QUIT_COMMAND = b"q\n"


@dataclass
class RecordingSession:
    output: Path
    process: asyncio.subprocess.Process
    started: dt.datetime = field(default_factory=dt.datetime.now)


def _url_missing(line: Optional[str]) -> bool:
    return not line


class RecordingSupervisor:
    """Resolves the media URL of a live channel and captures it to disk.

    ``record()`` blocks until the capture tool exits. When ``stop_evt`` is set
    or the awaiting task is cancelled while capturing, the capture tool is
    asked to quit through its stdin and is then waited for, so that it can
    finalize the container instead of being killed.
    """

    def __init__(
        self,
        spec: WatcherSpec,
        settings: GlobalSettings,
        output_dir: Path,
        stop_evt: asyncio.Event,
        converter: Optional[ConversionRepairJob] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.spec = spec
        self.settings = settings
        self.output_dir = Path(output_dir)
        self.stop_evt = stop_evt
        self.converter = converter
        self.logger = log or logger
        self.capture_logger = self.logger.getChild("ffmpeg")
        self.session: Optional[RecordingSession] = None

    def is_recording(self) -> bool:
        return bool(self.session and self.session.process.returncode is None)

    # ───── URL resolution ───── #
    async def _run_resolver(self) -> Optional[str]:
        """Run the resolver once and return the first line of its output."""
        cmd = [self.settings.resolver_tool, "-g", live_page_url(self.spec.channel)]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )
        out, _ = await proc.communicate()
        lines = (out or b"").decode(errors="ignore").splitlines()
        if not lines:
            return None
        return lines[0].strip() or None

    async def resolve_url(self) -> Optional[str]:
        """Resolve the direct media URL of the channel's live stream.

        The resolver sometimes returns nothing for a stream that is live, so
        it is tried up to RESOLVE_ATTEMPTS times.

        Returns:
            The media URL, or None if every attempt returned no output
        """
        url = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(RESOLVE_ATTEMPTS),
                retry=retry_if_result(_url_missing),
            ):
                with attempt:
                    url = await self._run_resolver()
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(url)
        except RetryError:
            return None
        return url

    # ───── capture ───── #
    def new_output_path(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        name = f"{self.spec.filename_prefix}_{file_timestamp()}{INTERMEDIATE_EXT}"
        return self.output_dir / name

    def capture_command(self, url: str, out_path: Path) -> List[str]:
        if self.settings.transcode_while_capturing:
            codec_args = ["-c:v", "libx264", "-c:a", "aac"]
        else:
            codec_args = ["-c", "copy"]
        return [
            self.settings.capture_tool,
            "-i", url,
            *codec_args,
            "-strftime", "1",
            str(out_path.absolute()),
        ]

    async def _pipe_output(self, stream: asyncio.StreamReader, error: bool):
        """Log capture tool output, skipping progress lines."""
        log = self.capture_logger.error if error else self.capture_logger.info
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line exceeded STREAM_LIMIT; the oversized chunk was discarded
                continue
            if not raw:
                return
            # A progress update ends in \r and the next message follows on the same line
            for line in raw.decode(errors="ignore").rstrip("\r\n").split("\r"):
                if not line.strip() or is_progress_line(line):
                    continue
                log(line)

    async def _request_quit(self, proc: asyncio.subprocess.Process):
        if proc.returncode is not None or proc.stdin is None:
            return
        self.logger.info(f"Gracefully shutting down recording for {self.spec.channel}.")
        try:
            proc.stdin.write(QUIT_COMMAND)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            self.logger.error(f"Error while gracefully shutting down {self.settings.capture_tool}: {e}")

    async def _supervise(self, proc: asyncio.subprocess.Process) -> int:
        """Wait for the capture to exit, asking it to quit once stop is requested."""
        wait_task = asyncio.ensure_future(proc.wait())
        stop_task = asyncio.ensure_future(self.stop_evt.wait())
        try:
            done, _ = await asyncio.wait(
                {wait_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if wait_task not in done:
                await self._request_quit(proc)
            return await wait_task
        except asyncio.CancelledError:
            await asyncio.shield(self._request_quit(proc))
            await asyncio.shield(wait_task)
            raise
        finally:
            stop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_task

    async def record(self) -> Optional[Path]:
        """Record the live stream until the capture tool exits.

        Returns:
            The path of the capture output, or None if no capture was started
        """
        try:
            url = await self.resolve_url()
        except OSError as e:
            self.logger.error(f"Failed to run {self.settings.resolver_tool}: {e}")
            return None
        if not url:
            self.logger.error(
                f"Could not resolve a recording URL for {self.spec.channel} "
                f"after {RESOLVE_ATTEMPTS} attempts, skipping this recording."
            )
            return None

        out_path = self.new_output_path()
        cmd = self.capture_command(url, out_path)
        pipe = subprocess.PIPE if self.spec.log_capture_output else subprocess.DEVNULL
        self.logger.info(f"Starting process: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=subprocess.PIPE,
                stdout=pipe,
                stderr=pipe,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self.logger.error(f"Failed to start {self.settings.capture_tool}: {e}")
            return None

        self.session = RecordingSession(output=out_path, process=proc)
        started = self.session.started
        readers = []
        if self.spec.log_capture_output:
            readers = [
                asyncio.create_task(self._pipe_output(proc.stdout, error=False)),
                asyncio.create_task(self._pipe_output(proc.stderr, error=True)),
            ]
        try:
            returncode = await self._supervise(proc)
            if readers:
                await asyncio.gather(*readers, return_exceptions=True)
        finally:
            for reader in readers:
                reader.cancel()
            self.session = None

        elapsed = dt.datetime.now() - started
        self.logger.info(
            f"Recording of {self.spec.channel} ended with exit code {returncode} "
            f"after {str(elapsed).split('.')[0]} → {out_path.name}"
        )
        if self.converter:
            await self.converter.run()
        return out_path

