"""Exception types raised by the restore orchestrator."""

from datetime import datetime
from typing import List, Optional, Sequence


REDACTED_FLAGS = ("--password", "--access-key", "--secret-key")


class RestoreError(Exception):
    """Base class for orchestrator errors."""


class InputAborted(RestoreError):
    """Operator closed the input stream or typed the abort sentinel."""

    def __init__(self, message: str = "input aborted"):
        super().__init__(message)


class DecryptAborted(RestoreError):
    """Operator aborted the decrypt workflow."""

    def __init__(self, message: str = "decrypt workflow aborted by user"):
        super().__init__(message)


class RestoreAborted(RestoreError):
    """Operator aborted the restore workflow."""

    def __init__(self, message: str = "restore workflow aborted by user"):
        super().__init__(message)


class BundleError(RestoreError):
    """A backup bundle or one of its entries is unusable."""


class NoBackupSourcesError(RestoreError):
    """No configured source yielded a usable backup."""

    def __init__(self, message: str = "no usable backup sources available"):
        super().__init__(message)


class CommandNotFound(RestoreError):
    """An external binary is not available on PATH."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name}: command not found")


class CommandError(RestoreError):
    """An external command exited with a non-zero status."""

    def __init__(self, name: str, args: Sequence[str], returncode: Optional[int],
                 output: str = "", timed_out: bool = False):
        self.name = name
        self.args_list = redact_args(args)
        self.returncode = returncode
        self.output = output
        self.timed_out = timed_out
        if timed_out:
            reason = "timed out"
        else:
            reason = f"exit status {returncode}"
        detail = f": {output.strip()}" if output and output.strip() else ""
        super().__init__(f"{name} {' '.join(self.args_list)} failed ({reason}){detail}")


class NetworkApplyNotCommitted(RestoreError):
    """Network changes were applied but the operator did not commit them."""

    def __init__(self, rollback_log: str = "", rollback_marker: str = "",
                 restored_ip: str = "unknown", original_ip: str = "unknown",
                 rollback_armed: bool = False,
                 rollback_deadline: Optional[datetime] = None):
        super().__init__("network configuration not committed")
        self.rollback_log = rollback_log
        self.rollback_marker = rollback_marker
        self.restored_ip = restored_ip
        self.original_ip = original_ip
        self.rollback_armed = rollback_armed
        self.rollback_deadline = rollback_deadline


def redact_args(args: Sequence[str], flags: Sequence[str] = REDACTED_FLAGS) -> List[str]:
    """Return a copy of args with secret flag values replaced."""
    out = []
    redact_next = False
    for arg in args:
        if redact_next:
            out.append("<redacted>")
            redact_next = False
            continue
        matched = False
        for flag in flags:
            if arg == flag:
                redact_next = True
                matched = True
                out.append(arg)
                break
            if arg.startswith(flag + "="):
                out.append(f"{flag}=<redacted>")
                matched = True
                break
        if not matched:
            out.append(arg)
    return out


def is_abort(err: BaseException) -> bool:
    """True for errors that mean the operator asked to stop."""
    return isinstance(err, (InputAborted, DecryptAborted, RestoreAborted, KeyboardInterrupt))
