import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import web
from redis.exceptions import ConnectionError as RedisConnectionError

from gpu_deployer.config import DeployerSettings
from gpu_deployer.control_plane.notifier import NotifyResult
from gpu_deployer.control_plane.state_manager import StateManager
from gpu_deployer.database import Database

PROVIDER = "akash1targetprovider"
OWNER = "akash1owneraddress"


@dataclass
class Call:
    command: str
    args: List[str]
    env: Dict[str, str]
    input: Optional[str]
    # Contents of descriptor files named in args, read when the call was made
    files: Dict[str, str] = field(default_factory=dict)


class ScriptedExecutor:
    """
    Stands in for CommandExecutor. Responses are keyed by akash subcommand
    ("keys show", "tx deployment create", ...). A list is consumed one item
    per call with the last item repeating; exceptions are raised.
    """

    SUBCOMMANDS = (
        "keys show",
        "keys add",
        "tx deployment create",
        "tx deployment close",
        "query market lease list",
        "provider send-manifest",
        "provider lease-status",
    )

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = dict(responses or {})
        self.calls: List[Call] = []

    def _key(self, args: List[str]) -> str:
        joined = " ".join(args)
        for sub in self.SUBCOMMANDS:
            if joined.startswith(sub):
                return sub
        return joined

    async def execute(self, command, args, env=None, input=None) -> str:
        args = list(args)
        files = {a: Path(a).read_text() for a in args if a.endswith(".yaml") and Path(a).is_file()}
        self.calls.append(Call(command, args, dict(env or {}), input, files))
        script = self.responses.get(self._key(args), "")
        if isinstance(script, list):
            value = script.pop(0) if len(script) > 1 else script[0]
        else:
            value = script
        if isinstance(value, BaseException):
            raise value
        return value

    def calls_for(self, sub: str) -> List[Call]:
        return [c for c in self.calls if self._key(c.args) == sub]

    @property
    def subcommands(self) -> List[str]:
        return [self._key(c.args) for c in self.calls]


class StaticGate:
    def __init__(self, available: bool = True):
        self.available = available
        self.checks = 0

    async def is_available(self) -> bool:
        self.checks += 1
        await asyncio.sleep(0)
        return self.available


class RecordingNotifier:
    def __init__(self, result: Optional[NotifyResult] = None):
        self.result = result or NotifyResult(delivered=True)
        self.calls: List[dict] = []

    async def notify(self, email, uri, product, minutes, dry_run) -> NotifyResult:
        self.calls.append(
            {"email": email, "uri": uri, "product": product, "minutes": minutes, "dry_run": dry_run}
        )
        return self.result


class FakeRedis:
    """In-memory async stand-in for the Redis list and string commands used here."""

    def __init__(self, broken: bool = False):
        self.broken = broken
        self.lists: Dict[str, List[str]] = {}
        self.values: Dict[str, str] = {}
        self.expiry: Dict[str, int] = {}

    def _check(self) -> None:
        if self.broken:
            raise RedisConnectionError("connection refused")

    async def rpush(self, key, *values):
        self._check()
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lpop(self, key):
        self._check()
        items = self.lists.get(key) or []
        return items.pop(0) if items else None

    async def lrange(self, key, start, end):
        self._check()
        items = self.lists.get(key) or []
        return items[start:] if end == -1 else items[start:end + 1]

    async def llen(self, key):
        self._check()
        return len(self.lists.get(key) or [])

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            removed += int(self.lists.pop(key, None) is not None)
            removed += int(self.values.pop(key, None) is not None)
        return removed

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True


@dataclass
class SleepRecorder:
    """Records requested delays; optionally blocks until cancelled."""
    block: bool = False
    delays: List[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.block:
            await asyncio.Event().wait()


def lease_list_json(*providers: str, shape: str = "id") -> str:
    return json.dumps({
        "leases": [
            {"lease": {shape: {"owner": OWNER, "dseq": "1", "gseq": 1, "oseq": 1, "provider": p}}}
            for p in providers
        ]
    })


def lease_status_json(*uris: str) -> str:
    return json.dumps({"services": {"web": {"name": "web", "uris": list(uris)}}})


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> DeployerSettings:
        values = dict(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'deployer.db'}",
            work_dir=str(tmp_path / "work"),
            provider_addr=PROVIDER,
            akash_mnemonic=None,
            poll_interval_seconds=0,
            lease_poll_attempts=3,
            uri_poll_attempts=3,
            busy_check_url="",
            disable_busy_check=False,
            busy_probe_fail_open=False,
            dry_run=False,
            queue_enabled=False,
            queue_tick_seconds=3600,
            redis_url=None,
            admin_token=None,
            notify_url=None,
            notify_token=None,
            sdl_dir=None,
        )
        values.update(overrides)
        return DeployerSettings(_env_file=None, **values)

    return _make


@asynccontextmanager
async def open_state(settings: DeployerSettings):
    db = Database(settings)
    await db.init_models()
    try:
        yield StateManager(db)
    finally:
        await db.dispose()


@asynccontextmanager
async def serve(handler, path: str = "/"):
    """Run an aiohttp app on an ephemeral port and yield its URL."""
    app = web.Application()
    app.router.add_route("*", path, handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = list(site._server.sockets)[0].getsockname()[1]  # type: ignore[attr-defined]
    try:
        yield f"http://127.0.0.1:{port}{path}"
    finally:
        await runner.cleanup()
