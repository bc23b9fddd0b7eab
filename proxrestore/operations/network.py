"""Live network apply guarded by a deadman-switch rollback.

Restored network files can cut the operator off the machine. Before any of
them is written, a rollback script plus a marker file are placed in a work
directory and a timer is scheduled to run the script. The operator then has a
window to type the commit phrase; only a commit removes the marker and stops
the timer. Otherwise the script restores the pre-restore files and reloads
networking on its own.
"""

import ipaddress
import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models.plan import RestorePlan
from ..utils.errors import (CommandError, CommandNotFound, InputAborted, NetworkApplyNotCommitted,
                            RestoreError)
from ..utils.fs_atomic import ensure_dir_exists_with_inherited_meta, write_file_atomic
from ..utils.logger import debug_step
from .nic_mapping import repair_nic_names


logger = logging.getLogger(__name__)

APPLY_PROMPT_TIMEOUT = 90
COMMAND_TIMEOUT = 5
RELOAD_TIMEOUT = 120
UNIT_PREFIX = "proxrestore-network-rollback"

# (path relative to the stage root, is directory)
STAGED_NETWORK_ITEMS = [
    ("etc/network", True),
    ("etc/hosts", False),
    ("etc/hostname", False),
    ("etc/resolv.conf", False),
    ("etc/cloud/cloud.cfg.d/99-disable-network-config.cfg", False),
    ("etc/dnsmasq.d/lxc-vmbr1.conf", False),
]

RELOAD_COMMANDS = [
    ("ifreload", ["-a"]),
    ("systemctl", ["restart", "networking"]),
    ("ifup", ["-a"]),
]

_SHELL_SPECIAL = " \t\n\"'\\$&;|<>()`*?[]{}~#"


def shell_quote(value: str) -> str:
    """Quote for /bin/sh: single quotes, embedded quotes written as ``'\\''``."""
    if value == "":
        return "''"
    if not any(ch in _SHELL_SPECIAL for ch in value):
        return value
    return "'" + value.replace("'", "'\\''") + "'"


@dataclass
class RollbackHandle:
    """An armed deadman switch."""
    work_dir: str
    marker_path: str
    script_path: str
    log_path: str
    armed_at: datetime
    armed_monotonic: float
    timeout: int
    unit_name: str = ""

    @property
    def deadline(self) -> datetime:
        return self.armed_at + timedelta(seconds=self.timeout)

    def remaining(self, now_monotonic: float) -> float:
        return max(0.0, self.timeout - (now_monotonic - self.armed_monotonic))


def build_rollback_script(marker_path: str, backup_path: str, log_path: str,
                          restart_networking: bool = True) -> str:
    lines = [
        "#!/bin/sh",
        "set -eu",
        f"LOG={shell_quote(log_path)}",
        f"MARKER={shell_quote(marker_path)}",
        f"BACKUP={shell_quote(backup_path)}",
        'echo "[INFO] network rollback started $(date -Is)" >> "$LOG"',
        'if [ ! -f "$MARKER" ]; then',
        '  echo "[INFO] marker not found: rollback cancelled (already committed)" >> "$LOG"',
        "  exit 0",
        "fi",
        'TAR_OK=0',
        'if tar -xzf "$BACKUP" -C / >> "$LOG" 2>&1; then',
        "  TAR_OK=1",
        '  echo "[OK] pre-restore network files extracted" >> "$LOG"',
        "else",
        '  echo "[ERROR] extract failed (exit=$?); prune skipped" >> "$LOG"',
        "fi",
        'if [ "$TAR_OK" -eq 1 ] && [ -d /etc/network ]; then',
        "  (",
        "    set +e",
        '    MANIFEST=$(tar -tzf "$BACKUP" | sed "s#^\\./##")',
        "    find /etc/network -mindepth 1 \\( -type f -o -type l \\) -print | while IFS= read -r path; do",
        '      rel=${path#/}',
        '      if ! printf "%s\\n" "$MANIFEST" | grep -Fxq "$rel"; then',
        '        echo "[INFO] removing $path (not in pre-restore state)"',
        '        rm -f -- "$path"',
        "      fi",
        "    done",
        '  ) >> "$LOG" 2>&1 || true',
        "fi",
    ]
    if restart_networking:
        lines += [
            "RELOAD_OK=0",
            "if command -v ifreload >/dev/null 2>&1; then",
            '  ifreload -a >> "$LOG" 2>&1 && RELOAD_OK=1',
            "fi",
            'if [ "$RELOAD_OK" -eq 0 ] && command -v systemctl >/dev/null 2>&1; then',
            '  systemctl restart networking >> "$LOG" 2>&1 && RELOAD_OK=1',
            "fi",
            'if [ "$RELOAD_OK" -eq 0 ] && command -v ifup >/dev/null 2>&1; then',
            '  ifup -a >> "$LOG" 2>&1 && RELOAD_OK=1',
            "fi",
            'if [ "$RELOAD_OK" -eq 0 ]; then',
            '  echo "[WARN] all network reload methods failed" >> "$LOG"',
            "fi",
            'ip -br addr >> "$LOG" 2>&1 || true',
        ]
    else:
        lines.append('echo "[INFO] networking restart skipped (manual)" >> "$LOG"')
    lines += [
        'rm -f "$MARKER"',
        'echo "[INFO] network rollback finished $(date -Is)" >> "$LOG"',
    ]
    return "\n".join(lines) + "\n"


def create_rollback_workdir(deps) -> str:
    base = deps.config.temp_root
    deps.fs.makedirs(base)
    work_dir = posixpath.join(base, f"network_rollback_{deps.clock.now().strftime('%Y%m%d_%H%M%S')}")
    deps.fs.makedirs(work_dir, 0o700)
    return work_dir


def arm_network_rollback(deps, backup_path: str, timeout: float, work_dir: str) -> RollbackHandle:
    """Write marker and script, then schedule the script with systemd-run or nohup."""
    if not backup_path.strip():
        raise RestoreError("empty rollback backup path")
    fs, runner = deps.fs, deps.runner
    seconds = max(1, int(timeout))
    stamp = deps.clock.now().strftime("%Y%m%d_%H%M%S")
    handle = RollbackHandle(
        work_dir=work_dir,
        marker_path=posixpath.join(work_dir, f"network_rollback_pending_{stamp}"),
        script_path=posixpath.join(work_dir, f"network_rollback_{stamp}.sh"),
        log_path=posixpath.join(work_dir, f"network_rollback_{stamp}.log"),
        armed_at=deps.clock.now(),
        armed_monotonic=deps.clock.monotonic(),
        timeout=seconds,
    )
    fs.write_file(handle.marker_path, b"pending\n", 0o640)
    fs.write_file(handle.script_path, build_rollback_script(handle.marker_path, backup_path, handle.log_path), 0o640)

    if runner.available("systemd-run"):
        unit = f"{UNIT_PREFIX}-{stamp}"
        try:
            output = runner.run("systemd-run", f"--unit={unit}", f"--on-active={seconds}s",
                                "/bin/sh", handle.script_path, timeout=COMMAND_TIMEOUT)
            handle.unit_name = unit
            debug_step(logger, "arm network rollback", "timer armed via systemd-run: %s %s", unit, output.strip())
        except CommandError as e:
            logger.warning(f"systemd-run failed, falling back to background timer: {e}")

    if not handle.unit_name:
        inner = f"sleep {seconds}; /bin/sh {shell_quote(handle.script_path)}"
        command = f"nohup sh -c {shell_quote(inner)} >/dev/null 2>&1 &"
        try:
            runner.run("sh", "-c", command, timeout=COMMAND_TIMEOUT)
        except (CommandError, CommandNotFound) as e:
            raise RestoreError(f"failed to arm rollback timer: {e}")
        debug_step(logger, "arm network rollback", "timer armed via nohup")

    logger.info(f"Rollback timer armed ({seconds}s). Work dir: {work_dir} (log: {handle.log_path})")
    return handle


def disarm_network_rollback(deps, handle: RollbackHandle):
    """Remove the marker and stop the timer unit."""
    try:
        deps.fs.remove(handle.marker_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove rollback marker {handle.marker_path}: {e}")

    if handle.unit_name and deps.runner.available("systemctl"):
        timer = f"{handle.unit_name}.timer"
        try:
            deps.runner.run("systemctl", "stop", timer, timeout=COMMAND_TIMEOUT)
        except CommandError as e:
            logger.warning(f"Failed to stop rollback timer {timer}: {e}")
        try:
            deps.runner.run("systemctl", "reset-failed", f"{handle.unit_name}.service", timer,
                            timeout=COMMAND_TIMEOUT)
        except CommandError as e:
            debug_step(logger, "disarm network rollback", "reset-failed: %s", e)
    logger.info("Network rollback disarmed")


def rollback_already_running(deps, handle: RollbackHandle) -> bool:
    if not handle.unit_name or not deps.runner.available("systemctl"):
        return False
    try:
        state = deps.runner.run("systemctl", "is-active", f"{handle.unit_name}.service",
                                timeout=COMMAND_TIMEOUT).strip()
    except CommandError:
        return False
    return state in ("active", "activating")


def rollback_network_files_now(deps, backup_path: str, work_dir: str) -> str:
    """Restore the pre-restore network files immediately, without restarting networking."""
    stamp = deps.clock.now().strftime("%Y%m%d_%H%M%S")
    marker = posixpath.join(work_dir, f"network_rollback_now_pending_{stamp}")
    script = posixpath.join(work_dir, f"network_rollback_now_{stamp}.sh")
    log_path = posixpath.join(work_dir, f"network_rollback_now_{stamp}.log")
    deps.fs.write_file(marker, b"pending\n", 0o640)
    deps.fs.write_file(script, build_rollback_script(marker, backup_path, log_path, restart_networking=False), 0o640)
    try:
        output = deps.runner.run("sh", script, timeout=RELOAD_TIMEOUT)
        if output.strip():
            logger.debug(f"Rollback script output: {output.strip()}")
    except (CommandError, CommandNotFound) as e:
        raise RestoreError(f"rollback script failed: {e}")
    finally:
        try:
            deps.fs.remove(marker)
        except FileNotFoundError:
            pass
    return log_path


def parse_route_device(output: str) -> str:
    fields = output.split()
    for i, token in enumerate(fields[:-1]):
        if token == "dev":
            return fields[i + 1]
    return ""


def ssh_client_ip(environ) -> str:
    for key in ("SSH_CONNECTION", "SSH_CLIENT"):
        fields = environ.get(key, "").split()
        if fields:
            return fields[0]
    return ""


def _ip(deps, *args: str) -> str:
    try:
        return deps.runner.run("ip", *args, timeout=COMMAND_TIMEOUT)
    except (CommandError, CommandNotFound) as e:
        debug_step(logger, "ip", "ip %s failed: %s", " ".join(args), e)
        return ""


def detect_management_interface(deps) -> Tuple[str, str]:
    """Interface carrying the operator's SSH session, else the default-route one."""
    client = ssh_client_ip(deps.environ)
    if client:
        iface = parse_route_device(_ip(deps, "route", "get", client))
        if iface:
            return iface, "ssh"
        logger.debug(f"Unable to map SSH client {client} to an interface")
    lines = _ip(deps, "route", "show", "default").splitlines()
    if lines:
        iface = parse_route_device(lines[0])
        if iface:
            return iface, "default-route"
    return "", ""


def write_network_snapshot(deps, work_dir: str, name: str = "before") -> str:
    """Record ``ip -br addr`` and ``ip route show`` into ``<work_dir>/<name>.txt``."""
    parts = []
    for args in (("-br", "addr"), ("route", "show")):
        parts.append(f"$ ip {' '.join(args)}")
        try:
            parts.append(deps.runner.run("ip", *args, timeout=COMMAND_TIMEOUT).rstrip("\n"))
        except (CommandError, CommandNotFound) as e:
            parts.append(f"ERROR: {e}")
        parts.append("")
    path = posixpath.join(work_dir, f"{name}.txt")
    deps.fs.write_file(path, "\n".join(parts), 0o600)
    return path


def pick_address(tokens: List[str]) -> str:
    """First IPv4 address in ``tokens`` (CIDR allowed), else the first IPv6 one."""
    first_v6 = ""
    for token in tokens:
        try:
            addr = ipaddress.ip_address(token.split("/")[0])
        except ValueError:
            continue
        if addr.version == 4:
            return str(addr)
        if not first_v6:
            first_v6 = str(addr)
    return first_v6


def extract_ip_from_snapshot(fs, path: str, iface: str) -> str:
    if not path or not iface:
        return "unknown"
    try:
        text = fs.read_text(path)
    except OSError:
        return "unknown"
    in_addr = False
    for line in text.splitlines():
        line = line.strip()
        if line == "$ ip -br addr":
            in_addr = True
            continue
        if line.startswith("$ "):
            if in_addr:
                break
            continue
        if not in_addr or not line or line.startswith("ERROR:"):
            continue
        fields = line.split()
        if len(fields) >= 3 and fields[0] == iface:
            return pick_address(fields[2:]) or "unknown"
    return "unknown"


def current_interface_ip(deps, iface: str) -> str:
    if not iface:
        return "unknown"
    for line in _ip(deps, "-br", "addr", "show", "dev", iface).splitlines():
        fields = line.split()
        if len(fields) >= 3:
            return pick_address(fields[2:]) or "unknown"
    return "unknown"


def build_not_committed_error(deps, iface: str, handle: RollbackHandle) -> NetworkApplyNotCommitted:
    return NetworkApplyNotCommitted(
        rollback_log=handle.log_path,
        rollback_marker=handle.marker_path,
        restored_ip=current_interface_ip(deps, iface),
        original_ip=extract_ip_from_snapshot(deps.fs, posixpath.join(handle.work_dir, "before.txt"), iface),
        rollback_armed=deps.fs.exists(handle.marker_path),
        rollback_deadline=handle.deadline,
    )


def select_reload_command(runner) -> Optional[Tuple[str, List[str]]]:
    for name, args in RELOAD_COMMANDS:
        if runner.available(name):
            return name, args
    return None


def reload_networking(deps):
    command = select_reload_command(deps.runner)
    if command is None:
        raise RestoreError("no supported network reload command found (ifreload/systemctl/ifup)")
    name, args = command
    logger.info(f"Reloading networking: {name} {' '.join(args)}")
    try:
        output = deps.runner.run(name, *args, timeout=RELOAD_TIMEOUT)
    except (CommandError, CommandNotFound) as e:
        raise RestoreError(f"network reload failed: {e}")
    if output.strip():
        logger.debug(f"{name} output: {output.strip()}")


def _copy_overlay(deps, src: str, dst: str) -> List[str]:
    fs = deps.fs
    if fs.isdir(src):
        ensure_dir_exists_with_inherited_meta(fs, dst, as_root=deps.is_root)
        applied = []
        for name in fs.listdir(src):
            applied.extend(_copy_overlay(deps, posixpath.join(src, name), posixpath.join(dst, name)))
        return applied
    if not fs.isfile(src):
        return []
    mode = fs.stat(src).st_mode & 0o7777
    write_file_atomic(fs, dst, fs.read_file(src), mode, as_root=deps.is_root)
    return [dst]


def apply_network_files_from_stage(deps, stage_root: str, dest_root: str = "/") -> List[str]:
    """Overlay the staged network files onto the destination. Returns written paths."""
    applied = []
    for rel, _ in STAGED_NETWORK_ITEMS:
        src = posixpath.join(stage_root, rel)
        if deps.fs.exists(src):
            applied.extend(_copy_overlay(deps, src, posixpath.join(dest_root, rel)))
    return applied


@dataclass
class NetworkApplyResult:
    status: str
    reason: str = ""
    management_interface: str = ""
    work_dir: str = ""
    applied_files: List[str] = field(default_factory=list)
    nic_repair: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"Status": self.status, "ManagementInterface": self.management_interface,
                "WorkDir": self.work_dir, "AppliedFiles": self.applied_files}
        if self.reason:
            data["Reason"] = self.reason
        if self.nic_repair:
            data["NICRepair"] = self.nic_repair
        return data


def apply_network_with_rollback(deps, plan: RestorePlan, stage_root: str, archive_path: str,
                                rollback_backup: str, dest_root: str = "/",
                                timeout: Optional[float] = None) -> NetworkApplyResult:
    """Apply staged network config under the deadman switch.

    Raises NetworkApplyNotCommitted when the operator does not commit in time.
    """
    if not plan.has_category("network"):
        return NetworkApplyResult("skipped", "network category not selected")
    if not rollback_backup:
        logger.warning("Skipping live network apply: rollback backup not available")
        return NetworkApplyResult("skipped", "rollback backup not available")

    timeout = timeout if timeout is not None else deps.config.network_rollback_timeout
    message = (f"Source: {stage_root} (will be copied to /etc and applied)\n\n"
               "This reloads networking immediately and may change the active IP or drop SSH sessions.\n"
               f"After applying, type COMMIT within {int(timeout)}s or the change is rolled back automatically.")
    if not deps.ui.confirm_action("Apply network configuration", message, timeout=APPLY_PROMPT_TIMEOUT,
                                  default_yes=False, question="Apply network configuration now?"):
        logger.info("Skipping live network apply: declined by operator")
        return NetworkApplyResult("skipped", "declined by operator")

    work_dir = create_rollback_workdir(deps)
    iface, source = detect_management_interface(deps)
    if iface:
        logger.info(f"Detected management interface: {iface} ({source})")
    write_network_snapshot(deps, work_dir, "before")

    handle = arm_network_rollback(deps, rollback_backup, timeout, work_dir)
    result = NetworkApplyResult("applied", management_interface=iface, work_dir=work_dir)
    try:
        result.applied_files = apply_network_files_from_stage(deps, stage_root, dest_root)
    except OSError as e:
        logger.error(f"Writing staged network files failed: {e}; rolling back now")
        log_path = rollback_network_files_now(deps, rollback_backup, work_dir)
        disarm_network_rollback(deps, handle)
        raise RestoreError(f"network files could not be written ({e}); rolled back (log: {log_path})")

    repair = repair_nic_names(deps, archive_path, work_dir, dest_root)
    result.nic_repair = repair.to_dict()

    try:
        reload_networking(deps)
    except RestoreError as e:
        logger.warning(f"Network apply failed: {e}; rollback stays armed")
        raise build_not_committed_error(deps, iface, handle)
    write_network_snapshot(deps, work_dir, "after")

    remaining = handle.remaining(deps.clock.monotonic())
    if remaining <= 0:
        logger.warning("Rollback window already expired; leaving rollback armed")
        raise build_not_committed_error(deps, iface, handle)

    try:
        committed = deps.ui.prompt_network_commit(remaining)
    except InputAborted:
        committed = False
    if committed and not rollback_already_running(deps, handle):
        disarm_network_rollback(deps, handle)
        logger.info("Network configuration committed successfully.")
        return result
    if committed:
        logger.warning("Commit received too late: rollback already running")
    raise build_not_committed_error(deps, iface, handle)
