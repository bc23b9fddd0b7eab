"""Shared fixtures: a sandboxed filesystem, a scripted command runner and a fixed clock."""

import io
import os
from datetime import datetime, timedelta

import pytest

from proxrestore.config.settings import Config
from proxrestore.ui.cli import CLIWorkflowUI
from proxrestore.utils.deps import Deps, SandboxFS
from proxrestore.utils.errors import CommandError, CommandNotFound, InputAborted


class FakeCommandRunner:
    """Records every invocation; outputs and failures are scripted per command prefix."""

    def __init__(self, available=()):
        self.calls = []
        self.available_names = set(available)
        self.outputs = {}
        self.errors = {}

    def script(self, *prefix, output=""):
        self.available_names.add(prefix[0])
        self.outputs[tuple(prefix)] = output

    def fail(self, *prefix, output="", returncode=1, timed_out=False):
        self.available_names.add(prefix[0])
        self.errors[tuple(prefix)] = (output, returncode, timed_out)

    def _lookup(self, table, cmd):
        for length in range(len(cmd), 0, -1):
            key = tuple(cmd[:length])
            if key in table:
                return table[key]
        return None

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.available_names else None

    def available(self, name):
        return name in self.available_names

    def run(self, name, *args, timeout=None, env=None, input_data=None):
        cmd = [name] + list(args)
        self.calls.append(cmd)
        if name not in self.available_names:
            raise CommandNotFound(name)
        error = self._lookup(self.errors, cmd)
        if error is not None:
            output, returncode, timed_out = error
            raise CommandError(name, list(args), None if timed_out else returncode, output, timed_out)
        output = self._lookup(self.outputs, cmd)
        return output or ""

    def commands(self, name=None):
        return [c for c in self.calls if name is None or c[0] == name]


class FakeClock:
    """Clock that only moves when told to (sleep advances it)."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 5, 4, 10, 30, 0)
        self.mono = 1000.0

    def now(self):
        return self.current

    def monotonic(self):
        return self.mono

    def sleep(self, seconds):
        self.advance(seconds)

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)
        self.mono += seconds


class FakeSecrets:
    """Hands out queued secrets as mutable buffers; running out means the operator hit EOF."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.returned = []

    def read_secret(self, prompt):
        if not self.answers:
            raise InputAborted()
        buf = bytearray(self.answers.pop(0).encode("utf-8"))
        self.returned.append(buf)
        return buf


def scripted_ui(*lines):
    """CLI UI reading the given answers; stdout is kept for assertions."""
    text = "".join(line + "\n" for line in lines)
    return CLIWorkflowUI(stdin=io.StringIO(text), stdout=io.StringIO(), stderr=io.StringIO())


def write(fs, path, content, mode=0o644):
    fs.makedirs(os.path.dirname(path))
    fs.write_file(path, content, mode)


@pytest.fixture
def sandbox(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    return SandboxFS(str(root))


@pytest.fixture
def config():
    return Config(environ={
        "BACKUP_PATH": "/backups",
        "BASE_DIR": "/opt/proxsave",
        "TEMP_ROOT": "/tmp/proxsave",
        "TEMP_REGISTRY_PATH": "/run/proxsave/temp-dirs.json",
        "NETWORK_ROLLBACK_TIMEOUT": "30",
    })


@pytest.fixture
def runner():
    return FakeCommandRunner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_deps(sandbox, config, runner, clock):
    """Build Deps over the sandbox; tests pass the UI answers they need."""
    def factory(*answers, secrets=(), environ=None, euid=1000):
        return Deps(
            config=config,
            fs=sandbox,
            clock=clock,
            runner=runner,
            secrets=FakeSecrets(secrets),
            ui=scripted_ui(*answers),
            geteuid=lambda: euid,
            environ=environ or {},
        )
    return factory


@pytest.fixture
def deps(make_deps):
    return make_deps()
