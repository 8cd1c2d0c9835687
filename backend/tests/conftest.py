# tests/conftest.py - Shared test fixtures
import io
import shlex
import sys
import tarfile
import threading
import time
import zipfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from packager.broadcast import ProgressBroadcaster
from packager.cancellation import CancellationToken
from packager.config import load_settings
from packager.errors import BuildTimeoutError, BuildToolError
from packager.main import build_services, create_app
from packager.models import Artifact
from packager.platforms.base import PlatformPackager
from packager.storage import SessionStore
from packager.versioning import VersionGate
from packager.worker import JobQueue

INDEX_HTML = "<!doctype html><html><head><title>Demo</title></head><body>demo</body></html>"

FAKE_APPIMAGETOOL = """
import sys
from pathlib import Path
appdir, target = Path(sys.argv[1]), Path(sys.argv[2])
assert (appdir / "AppRun").is_file()
assert (appdir / appdir.name.replace(".AppDir", ".desktop")).is_file()
target.write_bytes(b"\\x7fELF fake appimage")
print("appimagetool: wrote", target)
"""

FAILING_TOOL = """
import sys
print("something went wrong")
sys.exit(3)
"""

# records its pid, then hangs until killed
HANGING_TOOL = """
import os, sys, time
from pathlib import Path
Path(os.environ["FAKE_TOOL_PIDFILE"]).write_text(str(os.getpid()))
while True:
    time.sleep(0.1)
"""

# like HANGING_TOOL, but leaves a grandchild in its own session first
FORKING_TOOL = """
import os, subprocess, sys, time
from pathlib import Path
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"], start_new_session=True)
pidfile = Path(os.environ["FAKE_TOOL_PIDFILE"])
tmp = pidfile.with_suffix(".tmp")
tmp.write_text(f"{os.getpid()} {child.pid}")
os.replace(tmp, pidfile)
while True:
    time.sleep(0.1)
"""


def build_files() -> dict[str, bytes]:
    return {
        "dist/index.html": INDEX_HTML.encode(),
        "dist/app.js": b"console.log('hello');",
        "dist/demo-app": b"#!/bin/sh\necho demo\n",
        "dist/assets/icon.png": b"\x89PNG\r\n\x1a\nfake",
    }


def make_zip(files: dict[str, bytes] | None = None) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in (files or build_files()).items():
            zf.writestr(name, data)
    return buf.getvalue()


def make_tar(files: dict[str, bytes] | None = None) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in (files or build_files()).items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def tool_cmd(script: Path) -> str:
    return " ".join(shlex.quote(p) for p in (sys.executable, str(script)))


def wait_for(predicate, timeout: float = 15.0, interval: float = 0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met in time")


def wait_terminal(jobs: JobQueue, job_id: str, timeout: float = 15.0):
    return wait_for(lambda: jobs.get(job_id) if jobs.get(job_id).status.terminal else None, timeout)


def options(**extra) -> dict:
    return {"app_name": "Demo App", "app_version": "1.2.3", "icon": "assets/icon.png", **extra}


class ScriptedPackager(PlatformPackager):
    """In-process packager whose behaviour is chosen per test."""

    def __init__(self, settings, platform: str, behaviour: str = "ok", delay: float = 0.0):
        super().__init__(settings)
        self.platform = platform
        self.behaviour = behaviour
        self.delay = delay
        self.calls = 0
        self.expired = threading.Event()
        self.seen_trees: list[dict[str, bytes]] = []

    def package(self, tree, options, progress, token: CancellationToken, output_dir, log_path):
        self.calls += 1
        self.seen_trees.append({
            str(p.relative_to(tree.root)): p.read_bytes() for p in sorted(tree.root.rglob("*")) if p.is_file()
        })
        progress(50, f"{self.platform}: halfway")
        if self.behaviour == "fail":
            raise BuildToolError("fake-tool", 2, "boom")
        if self.behaviour == "crash":
            raise RuntimeError("unexpected")
        if self.behaviour == "block":
            while not token.wait(0.02):
                token.check()
            token.check()
        if self.behaviour == "expire":
            # outlives its deadline, then only stops once cancelled
            wait_for(lambda: token.expired)
            self.expired.set()
            wait_for(lambda: token.cancelled)
            raise BuildTimeoutError(f"{self.platform} timed out")
        if self.behaviour == "ignore":
            # never looks at the token
            time.sleep(self.delay or 30)
        elif self.delay:
            token.wait(self.delay)
            token.check()
        target = output_dir / f"{options.slug}-{options.app_version}.{self.platform}"
        target.write_text("artifact", encoding="utf-8")
        return [Artifact.from_path(self.platform, target)]


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        OUTPUT_DIR_BASE=tmp_path / "data",
        MAX_CONCURRENT_JOBS=2,
        UNIT_TIMEOUT_SECONDS=20,
        CANCEL_GRACE_SECONDS=0.5,
        POLL_INTERVAL_SECONDS=0.05,
        GC_INTERVAL_SECONDS=3600,
        BREAKER_THRESHOLD=0,
    )


@pytest.fixture
def tools(tmp_path):
    base = tmp_path / "tools"
    base.mkdir()
    scripts = {}
    for name, body in (("appimagetool", FAKE_APPIMAGETOOL), ("failing", FAILING_TOOL), ("hanging", HANGING_TOOL), ("forking", FORKING_TOOL)):
        path = base / f"{name}.py"
        path.write_text(body, encoding="utf-8")
        scripts[name] = tool_cmd(path)
    return scripts


@pytest.fixture
def store(settings):
    settings.ensure_dirs()
    return SessionStore(settings)


@pytest.fixture
def session(store):
    return store.create(io.BytesIO(make_zip()), "build.zip")


def make_queue(settings, store, **behaviours) -> JobQueue:
    packagers = {p: ScriptedPackager(settings, p, b) for p, b in behaviours.items()}
    return JobQueue(settings, store, ProgressBroadcaster(), VersionGate(settings.PLATFORM_VERSIONS), packagers)


@pytest.fixture
def services(settings):
    packagers = {p: ScriptedPackager(settings, p) for p in ("linux", "pwa", "windows")}
    packagers["android"] = ScriptedPackager(settings, "android", "fail")
    services = build_services(settings, packagers)
    services.jobs.start_workers()
    yield services
    services.jobs.shutdown()
    services.broadcaster.close_all()


@pytest_asyncio.fixture
async def client(settings, services):
    """HTTP test client bound to pre-built services."""
    app = create_app(settings)
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
