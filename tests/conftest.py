"""Shared fakes for the upstream HTTP API and the external tools."""

import asyncio
import json
from pathlib import Path
from unittest import mock

import aiohttp
import pytest

from api import CHECK_ALIVE_URL, SIGN_URL
from settings import GlobalSettings, WatcherSpec

SIGNED_URL = "https://signed.example/api/user/detail?sig=abc"
MEDIA_URL = "https://media.example/stream-abc.flv"


class FakeResponse:
    """Minimal stand-in for an aiohttp response used as an async context manager."""

    def __init__(self, body=None, status=200, exc=None):
        self.body = body
        self.status = status
        self.exc = exc

    async def __aenter__(self):
        if self.exc is not None:
            raise self.exc
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(
                mock.Mock(real_url="https://upstream.example"),
                (),
                status=self.status,
                message="Server Error",
            )

    async def text(self):
        if isinstance(self.body, str):
            return self.body
        return json.dumps(self.body)


class FakeSession:
    """Routes GET requests to canned responses for the three protocol steps."""

    def __init__(self, sign=None, user=None, alive=None):
        self.routes = {
            "sign": sign if sign is not None else FakeResponse({"signed_url": SIGNED_URL}),
            "user": user if user is not None else FakeResponse({"data": {"user": {"roomId": "123"}}}),
            "alive": alive if alive is not None else FakeResponse({"data": [{"alive": True}]}),
        }
        self.calls = []

    def get(self, url, params=None):
        self.calls.append((url, params))
        if url == SIGN_URL:
            route = self.routes["sign"]
        elif url == CHECK_ALIVE_URL:
            route = self.routes["alive"]
        else:
            route = self.routes["user"]
        if isinstance(route, FakeResponse):
            return route
        return FakeResponse(route)


class FakeStdin:
    def __init__(self, proc):
        self.proc = proc
        self.written = b""

    def write(self, data):
        self.written += data
        if data.strip() == b"q":
            self.proc.finish(255)

    async def drain(self):
        pass


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, returncode=0, out=b"", err=b"", running=False, stdout=None, stderr=None):
        self.returncode = None
        self.pid = 4242
        self.stdin = FakeStdin(self)
        self.stdout = stdout
        self.stderr = stderr
        self._out = out
        self._err = err
        self._exited = asyncio.Event()
        if not running:
            self.finish(returncode)

    def finish(self, code):
        self.returncode = code
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    async def communicate(self):
        await self.wait()
        return self._out, self._err


class FakeTools:
    """Plays the resolver, capture and remux tools for create_subprocess_exec.

    resolver_outputs: stdout of successive resolver runs, empty once exhausted
    capture_running: leave capture processes running until told to quit
    remux_rc: exit code of the remux, which writes the output only on success
    """

    def __init__(self, resolver_outputs=None, capture_running=False, remux_rc=0):
        self.resolver_outputs = list(resolver_outputs or [])
        self.capture_running = capture_running
        self.remux_rc = remux_rc
        self.resolver_calls = []
        self.capture_calls = []
        self.remux_calls = []
        self.capture_procs = []
        self.final_existed_before = []

    async def __call__(self, *argv, **kwargs):
        argv = list(argv)
        if argv[1] == "-g":
            self.resolver_calls.append(argv)
            out = self.resolver_outputs.pop(0) if self.resolver_outputs else b""
            return FakeProcess(out=out)
        if "-strftime" in argv:
            self.capture_calls.append(argv)
            Path(argv[-1]).write_bytes(b"raw capture")
            proc = FakeProcess(running=self.capture_running)
            self.capture_procs.append(proc)
            return proc
        self.remux_calls.append(argv)
        final = Path(argv[-1])
        self.final_existed_before.append(final.exists())
        if self.remux_rc == 0:
            final.write_bytes(b"remuxed")
        else:
            final.write_bytes(b"partial")
        return FakeProcess(returncode=self.remux_rc, err=b"Invalid data found when processing input")


@pytest.fixture
def settings():
    return GlobalSettings()


@pytest.fixture
def spec(tmp_path):
    return WatcherSpec(
        channel="abc",
        poll_interval_qty=30,
        poll_interval_unit="MILLIS",
        output_path=str(tmp_path / "abc"),
    )


@pytest.fixture
def fake_tools(monkeypatch):
    def install(**kwargs):
        tools = FakeTools(**kwargs)
        monkeypatch.setattr(asyncio, "create_subprocess_exec", tools)
        return tools

    return install
