"""Shared fixtures: in-memory blob store, fake gateway processes, fake CLI."""

import asyncio
import io
import json
from datetime import datetime, timezone

import httpx
import pytest

from blob_store import BlobStore, ObjectNotFound, StoredObject
from moltbot_cli import MoltbotCli
from wrapper_config import WrapperConfig

GATEWAY_URL = "http://gateway.test:8080"
SETUP_PASSWORD = "hunter2"


class FakeBlobStore(BlobStore):
    """Dict-backed store with the BlobStore interface. Records every call."""

    def __init__(self, prefix: str = "moltbot/"):
        super().__init__(client=None, bucket="test-bucket", prefix=prefix)
        self.objects: dict[str, tuple[bytes, datetime]] = {}
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    def add(self, key: str, body: bytes, last_modified: datetime | None = None):
        self.objects[key] = (body, last_modified or datetime.now(timezone.utc))

    def _check(self, op: str, key: str):
        self.calls.append((op, key))
        if self.error is not None:
            raise self.error

    def list_keys(self, prefix=None):
        prefix = self.prefix if prefix is None else prefix
        self._check("list", prefix)
        for key in sorted(self.objects):
            if key.startswith(prefix):
                yield key

    def get_object(self, key):
        self._check("get", key)
        if key not in self.objects:
            raise ObjectNotFound(key)
        body, last_modified = self.objects[key]
        return StoredObject(key, io.BytesIO(body), len(body), last_modified, "application/octet-stream")

    def put(self, key, body, content_type=None):
        self._check("put", key)
        self.add(key, body)

    def head(self, key):
        self._check("head", key)
        return key in self.objects

    def delete(self, key):
        self._check("delete", key)
        self.objects.pop(key, None)


class FakeProcess:
    _next_pid = 4000

    def __init__(self, exit_on_terminate: bool = True):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None
        self.signals: list[str] = []
        self.exit_on_terminate = exit_on_terminate
        self._exited = asyncio.Event()

    def exit(self, code: int):
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self):
        self.signals.append("SIGTERM")
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self):
        self.signals.append("SIGKILL")
        self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    def __init__(self, exit_on_terminate: bool = True):
        self.processes: list[FakeProcess] = []
        self.commands: list[tuple[list[str], dict]] = []
        self.fail = False
        self.exit_on_terminate = exit_on_terminate

    async def launch(self, argv, env):
        if self.fail:
            raise FileNotFoundError(argv[0])
        process = FakeProcess(self.exit_on_terminate)
        self.processes.append(process)
        self.commands.append((argv, env))
        return process

    @property
    def live(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]


class FakeCli(MoltbotCli):
    """Stands in for the moltbot binary. `onboard` writes the config file."""

    def __init__(self, config: WrapperConfig, onboard_code: int = 0):
        super().__init__(config)
        self.onboard_code = onboard_code
        self.calls: list[list[str]] = []

    async def run(self, args, env=None):
        self.calls.append(list(args))
        if args[:1] == ["onboard"]:
            if self.onboard_code != 0:
                return self.onboard_code, "onboarding failed\n"
            token = args[args.index("--gateway-token") + 1]
            write_config(self.config, token)
            return 0, "onboarded\n"
        if args == ["--version"]:
            return 0, "moltbot 2026.1.0\n"
        if args == ["channels", "add", "--help"]:
            return 0, "Usage: channels add <telegram|discord|slack>\n"
        if args[:2] == ["pairing", "approve"]:
            return 0, f"approved {args[2]} {args[3]}\n"
        return 0, ""


class BodyStream(httpx.AsyncByteStream):
    """Unread response body, delivered in chunks like a live connection."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


def streamed_response(status_code: int, body: bytes, headers=None) -> httpx.Response:
    """Upstream response whose body has not been read yet (proxied as a stream)."""
    return httpx.Response(status_code, headers=headers, stream=BodyStream(body))


def write_config(config: WrapperConfig, token: str = "config-token-0123456789abcdef"):
    config.config_path.parent.mkdir(parents=True, exist_ok=True)
    config.config_path.write_text(json.dumps({"gateway": {"auth": {"mode": "token", "token": token}}}))
    return token


@pytest.fixture
def config(tmp_path):
    return WrapperConfig(
        local_root=tmp_path / "state",
        gateway_url=GATEWAY_URL,
        setup_password=SETUP_PASSWORD,
        sync_interval=3600,
        restart_delay=0.05,
        restart_grace=0.05,
        ready_initial_delay=0,
        ready_timeout=1,
        ready_poll_interval=0.01,
        audit_log=tmp_path / "audit" / "audit.jsonl",
    )


@pytest.fixture
def store():
    return FakeBlobStore()


@pytest.fixture
def launcher():
    return FakeLauncher()
