"""Remote-object client backed by the rclone binary."""

import logging
from typing import List, Optional

from ..config.settings import Config
from ..utils.deps import CommandRunner, StreamedCommand
from ..utils.errors import CommandError
from .s3_backend import S3Backend


logger = logging.getLogger(__name__)


class RcloneClient:
    """Lists, streams and downloads ``remote:path`` objects with rclone."""

    def __init__(self, runner: CommandRunner, timeout: int = 30):
        self.runner = runner
        self.timeout = timeout

    def list(self, ref: str) -> List[str]:
        """Names directly under a remote directory (``rclone lsf``)."""
        full = ref.strip()
        if ":" not in full:
            full += ":"
        logger.debug(f"Executing: rclone lsf {full}")
        try:
            output = self.runner.run("rclone", "lsf", full, timeout=self.timeout)
        except CommandError as e:
            if e.timed_out:
                raise CommandError("rclone", ["lsf", full], None,
                                   f"timed out after {self.timeout}s; increase RCLONE_TIMEOUT_CONNECTION if needed",
                                   timed_out=True)
            raise
        names = []
        seen = set()
        for line in output.splitlines():
            name = line.strip()
            if not name or name in seen:
                continue
            seen.add(name)
            names.append(name)
        return names

    def open_stream(self, ref: str) -> StreamedCommand:
        """Stream an object's bytes (``rclone cat``)."""
        logger.debug(f"Executing: rclone cat {ref}")
        return self.runner.stream("rclone", "cat", ref)

    def read(self, ref: str) -> bytes:
        output = self.runner.run("rclone", "cat", ref, timeout=self.timeout)
        return output.encode("utf-8")

    def download(self, ref: str, local_path: str, progress: bool = True):
        """Copy one object to a local file (``rclone copyto``)."""
        args = ["copyto", ref, local_path]
        if progress:
            args.append("--progress")
            code = self.runner.spawn_interactive("rclone", *args)
            if code != 0:
                raise CommandError("rclone", args, code)
            return
        self.runner.run("rclone", *args)


def remote_client_for(config: Config, runner: Optional[CommandRunner] = None):
    """Build the remote client selected by CLOUD_BACKEND."""
    if config.cloud_backend == "s3":
        return S3Backend(config)
    return RcloneClient(runner or CommandRunner(), timeout=config.rclone_timeout)
