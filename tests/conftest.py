"""Shared fixtures: a throwaway job database and a fake ``just``."""
import sys
import textwrap
from datetime import datetime, timezone

import pytest

from config import Settings
from notifier import StatusNotifier
from service import JobService
from storage import Storage
from worker import Runner

FAKE_JUST = textwrap.dedent("""
    import os
    import pathlib
    import signal
    import sys

    args = sys.argv[1:]
    if args == ["--list"]:
        print("Available recipes:")
        print("    clean")
        print("    compile target  # build a target")
        sys.exit(0)

    if args == ["broken", "--list"]:
        print("error: No justfile found", file=sys.stderr)
        sys.exit(1)

    recipe, rest = args[0], args[1:]
    if recipe == "compile":
        out = pathlib.Path("out")
        out.mkdir(exist_ok=True)
        (out / "app.bin").write_text("binary")
        print("compiling", *rest, flush=True)
    elif recipe == "noop":
        pass
    elif recipe == "sleep":
        import time
        time.sleep(float(rest[0]))
    elif recipe == "shout":
        print("to stdout", flush=True)
        print("to stderr", file=sys.stderr, flush=True)
    elif recipe == "fail":
        print("boom", file=sys.stderr, flush=True)
        sys.exit(int(rest[0]) if rest else 1)
    elif recipe == "crash":
        os.kill(os.getpid(), signal.SIGKILL)
    else:
        print(f"error: Justfile does not contain recipe `{recipe}`.", file=sys.stderr)
        sys.exit(127)
""")


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def fake_just(tmp_path):
    script = tmp_path / "fake_just.py"
    script.write_text(FAKE_JUST)
    return script


@pytest.fixture
def settings(tmp_path, fake_just):
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return Settings(
        db_path=str(tmp_path / "jobs.db"),
        work_dir=work_dir,
        runner_command=f'"{sys.executable}" "{fake_just}"',
        poll_interval=0.05,
        subscriber_capacity=16,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(settings, clock):
    s = Storage(settings.db_path, clock=clock)
    yield s
    s.close()


@pytest.fixture
def notifier(settings):
    return StatusNotifier(settings.subscriber_capacity)


@pytest.fixture
def runner(storage, notifier, settings):
    r = Runner(storage, notifier, settings)
    yield r
    r.stop(timeout=5)


@pytest.fixture
def service(storage, settings, runner, notifier, clock):
    return JobService(storage, settings, runner=runner, notifier=notifier, clock=clock)
