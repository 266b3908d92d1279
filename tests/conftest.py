"""
Shared fixtures for miao tests.

Environment is set before miao is imported so Config points at a throwaway
data directory and the app does not autostart the engine.
"""

import os
import stat
import tempfile
from pathlib import Path

_DATA_DIR = tempfile.mkdtemp(prefix="miao-test-")
os.environ["MIAO_DATA_DIR"] = _DATA_DIR
os.environ["MIAO_SETTINGS"] = os.path.join(_DATA_DIR, "miao.yaml")
os.environ["MIAO_AUTOSTART"] = "false"
os.environ["HEALTH_INTERVAL"] = "0"
os.environ["REFRESH_INTERVAL"] = "0"

import httpx  # noqa: E402
import pytest  # noqa: E402

from miao.models import database, initialize_db  # noqa: E402
from miao.process import EngineHandle, ProcessRunner  # noqa: E402


class FakeProcess:
    def __init__(self, alive: bool = True, returncode: int = None):
        self.alive = alive
        self.returncode = returncode


class FakeRunner(ProcessRunner):
    """In-memory ProcessRunner: processes live until killed or told to exit."""

    def __init__(self, exit_early: bool = False):
        self.exit_early = exit_early
        self.spawned: list[EngineHandle] = []
        self.killed: list[int] = []

    def spawn(self, args, cwd, env):
        process = FakeProcess(alive=not self.exit_early, returncode=1 if self.exit_early else None)
        handle = EngineHandle(pid=1000 + len(self.spawned), process=process)
        self.spawned.append(handle)
        return handle

    def kill(self, handle):
        if handle.process.alive:
            handle.process.alive = False
            handle.process.returncode = -9
        self.killed.append(handle.pid)

    def is_alive(self, handle):
        return handle.process.alive

    def returncode(self, handle):
        return handle.process.returncode

    def live(self) -> list[EngineHandle]:
        return [h for h in self.spawned if h.process.alive]


class RecordingLog:
    """Stands in for a HealthLog; keeps records in a list."""

    def __init__(self):
        self.records: list[dict] = []

    def record(self, **fields):
        self.records.append(fields)
        return fields

    def last(self, n: int = 10):
        return list(reversed(self.records))[:n]

    def actions(self) -> list[str]:
        return [r["action"] for r in self.records]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_runner():
    return FakeRunner


@pytest.fixture
def recording_log():
    return RecordingLog()


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite database for the peewee models."""
    initialize_db(tmp_path / "miao.db")
    yield database
    database.close()


CLASH_DOC = """
proxies:
  - {name: "JP Tokyo 01", type: hysteria2, server: jp1.example.com, port: 443, password: pw1, sni: jp1.example.com}
  - {name: "TW Taipei", type: anytls, server: tw.example.com, port: 8443, password: pw2, sni: tw.example.com, skip-cert-verify: false}
  - {name: "SG vmess", type: vmess, server: sg.example.com, port: 443, uuid: abc}
  - {name: "SG ss", type: ss, server: sg2.example.com, port: 8388, cipher: aes-256-gcm, password: pw3}
  - {name: "US West", type: hysteria2, server: us.example.com, port: 443, password: pw4}
"""


@pytest.fixture
def clash_doc():
    return CLASH_DOC


def mock_transport(routes: dict):
    """httpx transport answering from {url: (status, text)}; unknown URLs fail to connect."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url not in routes:
            raise httpx.ConnectError("connection refused", request=request)
        status, text = routes[url]
        return httpx.Response(status, text=text)

    return httpx.MockTransport(handler)


@pytest.fixture
def transport_factory():
    return mock_transport


@pytest.fixture
def make_engine(tmp_path):
    """Write an executable sing-box stand-in script into a directory."""

    def factory(body: str, home: Path = None) -> Path:
        home = home or tmp_path
        home.mkdir(parents=True, exist_ok=True)
        script = home / "sing-box"
        script.write_text("#!/bin/sh\n" + body + "\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return factory
