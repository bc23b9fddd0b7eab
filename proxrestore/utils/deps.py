"""Capabilities the orchestrator runs against: filesystem, clock, commands, terminal.

Every operation takes a ``Deps`` value instead of touching ``os``,
``subprocess`` or ``time`` directly, so tests can swap in a sandboxed
filesystem, a scripted command runner or a fixed clock.
"""

import glob
import logging
import os
import shutil
import socket
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, IO, Iterator, List, Mapping, Optional, Tuple

from ..config.settings import Config
from .errors import CommandError, CommandNotFound, InputAborted


logger = logging.getLogger(__name__)


class OSFS:
    """Filesystem capability backed by the real system."""

    is_real = True

    def path(self, logical: str) -> str:
        """Map a logical path to the on-disk path."""
        return logical

    def logical(self, physical: str) -> str:
        """Inverse of path()."""
        return physical

    def stat(self, p: str) -> os.stat_result:
        return os.stat(self.path(p))

    def exists(self, p: str) -> bool:
        return os.path.lexists(self.path(p))

    def isdir(self, p: str) -> bool:
        return os.path.isdir(self.path(p))

    def isfile(self, p: str) -> bool:
        return os.path.isfile(self.path(p))

    def islink(self, p: str) -> bool:
        return os.path.islink(self.path(p))

    def read_file(self, p: str) -> bytes:
        with open(self.path(p), 'rb') as f:
            return f.read()

    def read_text(self, p: str) -> str:
        return self.read_file(p).decode('utf-8', errors='replace')

    def open(self, p: str, mode: str = 'rb') -> IO:
        return open(self.path(p), mode)

    def create(self, p: str, perm: int = 0o644, exclusive: bool = False) -> IO:
        """Create or truncate a file for binary writing with an explicit mode."""
        flags = os.O_WRONLY | os.O_CREAT
        flags |= os.O_EXCL if exclusive else os.O_TRUNC
        fd = os.open(self.path(p), flags, perm)
        try:
            os.fchmod(fd, perm)
        except OSError:
            os.close(fd)
            raise
        return os.fdopen(fd, 'wb')

    def write_file(self, p: str, data: bytes, perm: int = 0o644):
        """Write a file and force its mode regardless of umask."""
        if isinstance(data, str):
            data = data.encode('utf-8')
        with self.create(p, perm) as f:
            f.write(data)

    def makedirs(self, p: str, mode: int = 0o755):
        os.makedirs(self.path(p), mode=mode, exist_ok=True)

    def mkdtemp(self, parent: str, prefix: str) -> str:
        self.makedirs(parent)
        return self.logical(tempfile.mkdtemp(prefix=prefix, dir=self.path(parent)))

    def mkstemp(self, parent: str, prefix: str, suffix: str = "") -> str:
        self.makedirs(parent)
        fd, physical = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=self.path(parent))
        os.close(fd)
        return self.logical(physical)

    def rename(self, src: str, dst: str):
        os.rename(self.path(src), self.path(dst))

    def remove(self, p: str):
        os.remove(self.path(p))

    def rmdir(self, p: str):
        os.rmdir(self.path(p))

    def rmtree(self, p: str):
        shutil.rmtree(self.path(p))

    def listdir(self, p: str) -> List[str]:
        return sorted(os.listdir(self.path(p)))

    def symlink(self, target: str, p: str):
        os.symlink(target, self.path(p))

    def readlink(self, p: str) -> str:
        return os.readlink(self.path(p))

    def link(self, src: str, dst: str):
        os.link(self.path(src), self.path(dst))

    def chmod(self, p: str, mode: int):
        os.chmod(self.path(p), mode)

    def chown(self, p: str, uid: int, gid: int):
        os.chown(self.path(p), uid, gid)

    def copyfile(self, src: str, dst: str):
        shutil.copyfile(self.path(src), self.path(dst))

    def walk(self, top: str) -> Iterator[Tuple[str, List[str], List[str]]]:
        for root, dirs, files in os.walk(self.path(top)):
            dirs.sort()
            yield self.logical(root), dirs, sorted(files)

    def glob(self, pattern: str) -> List[str]:
        return sorted(self.logical(m) for m in glob.glob(self.path(pattern)))


class SandboxFS(OSFS):
    """Filesystem capability that maps absolute logical paths under a fake root."""

    is_real = False

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def path(self, logical: str) -> str:
        if not os.path.isabs(logical):
            return logical
        return os.path.join(self.root, logical.lstrip('/'))

    def logical(self, physical: str) -> str:
        physical = os.path.abspath(physical)
        if physical == self.root:
            return '/'
        if physical.startswith(self.root + os.sep):
            return '/' + physical[len(self.root) + 1:]
        return physical


class SystemClock:
    """Clock capability."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        time.sleep(seconds)


class StreamedCommand:
    """A running command whose stdout is consumed as a stream."""

    def __init__(self, name: str, args: List[str], proc: subprocess.Popen):
        self.name = name
        self.args = args
        self.proc = proc
        self.stdout = proc.stdout

    def kill(self):
        """Stop the child early; used once the caller has what it needs."""
        if self.proc.poll() is None:
            self.proc.kill()

    def wait(self, timeout: Optional[float] = None):
        """Wait for exit and raise CommandError on failure."""
        try:
            _, stderr = self.proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            self.proc.communicate()
            raise CommandError(self.name, self.args, None, timed_out=True)
        if self.proc.returncode != 0:
            output = (stderr or b'').decode('utf-8', errors='replace')
            raise CommandError(self.name, self.args, self.proc.returncode, output)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.kill()
        if self.stdout:
            self.stdout.close()
        self.proc.wait()


class CommandRunner:
    """Runs external binaries and returns their combined output."""

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def available(self, name: str) -> bool:
        return self.which(name) is not None

    def run(self, name: str, *args: str, timeout: Optional[float] = None,
            env: Optional[Mapping[str, str]] = None, input_data: Optional[bytes] = None) -> str:
        cmd = [name] + list(args)
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                input=input_data,
                timeout=timeout,
                env=dict(env) if env is not None else None,
            )
        except FileNotFoundError:
            raise CommandNotFound(name)
        except subprocess.TimeoutExpired as e:
            output = (e.output or b'').decode('utf-8', errors='replace')
            raise CommandError(name, list(args), None, output, timed_out=True)

        output = result.stdout.decode('utf-8', errors='replace')
        if result.returncode != 0:
            raise CommandError(name, list(args), result.returncode, output)
        return output

    def stream(self, name: str, *args: str) -> StreamedCommand:
        cmd = [name] + list(args)
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise CommandNotFound(name)
        return StreamedCommand(name, list(args), proc)

    def spawn_interactive(self, name: str, *args: str) -> int:
        """Run a command attached to the terminal (for progress output)."""
        try:
            return subprocess.call([name] + list(args))
        except FileNotFoundError:
            raise CommandNotFound(name)


class TerminalSecretReader:
    """Reads secrets from the terminal with echo disabled into a mutable buffer."""

    def __init__(self, stdin=None, stderr=None):
        self.stdin = stdin or sys.stdin
        self.stderr = stderr or sys.stderr

    def read_secret(self, prompt: str) -> bytearray:
        self.stderr.write(prompt)
        self.stderr.flush()
        fd = self.stdin.fileno()
        buf = bytearray()
        if os.isatty(fd):
            import termios
            old = termios.tcgetattr(fd)
            new = termios.tcgetattr(fd)
            new[3] &= ~termios.ECHO
            try:
                termios.tcsetattr(fd, termios.TCSADRAIN, new)
                got_newline = self._read_into(fd, buf)
            finally:
                termios.tcsetattr(fd, termios.TCSADRAIN, old)
                self.stderr.write("\n")
        else:
            got_newline = self._read_into(fd, buf)
        if not got_newline and not buf:
            raise InputAborted()
        return buf

    @staticmethod
    def _read_into(fd: int, buf: bytearray) -> bool:
        while True:
            chunk = os.read(fd, 1)
            if not chunk:
                return False
            if chunk in (b'\n', b'\r'):
                return True
            buf.extend(chunk)


SYSTEM_PVE = "pve"
SYSTEM_PBS = "pbs"
SYSTEM_UNKNOWN = "unknown"


class SystemDetector:
    """Detects which Proxmox product runs on this host."""

    PVE_MARKERS = ("/etc/pve", "/usr/bin/qm", "/usr/bin/pveversion")
    PBS_MARKERS = ("/etc/proxmox-backup", "/usr/sbin/proxmox-backup-proxy", "/usr/sbin/proxmox-backup-manager")

    def __init__(self, fs: OSFS):
        self.fs = fs

    def detect(self) -> str:
        if any(self.fs.exists(p) for p in self.PVE_MARKERS):
            return SYSTEM_PVE
        if any(self.fs.exists(p) for p in self.PBS_MARKERS):
            return SYSTEM_PBS
        return SYSTEM_UNKNOWN

    def hostname(self) -> str:
        return socket.gethostname()

    def short_hostname(self) -> str:
        name = self.hostname().strip().split('.')[0]
        return name or "localhost"


@dataclass
class Deps:
    """Bundle of capabilities threaded through a restore or decrypt run."""
    config: Config
    fs: OSFS = field(default_factory=OSFS)
    clock: SystemClock = field(default_factory=SystemClock)
    runner: CommandRunner = field(default_factory=CommandRunner)
    secrets: TerminalSecretReader = field(default_factory=TerminalSecretReader)
    system: Optional[SystemDetector] = None
    ui: Any = None
    remote: Any = None
    geteuid: Callable[[], int] = os.geteuid
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def __post_init__(self):
        if self.system is None:
            self.system = SystemDetector(self.fs)

    @property
    def is_root(self) -> bool:
        return self.geteuid() == 0
