"""systemd service handling around a restore: stop/start with retries and state polling."""

import logging
from typing import List

from ..utils.errors import CommandError, CommandNotFound, RestoreError


logger = logging.getLogger(__name__)

SERVICE_STOP_TIMEOUT = 45
SERVICE_START_TIMEOUT = 30
SERVICE_VERIFY_TIMEOUT = 30
SERVICE_STATUS_CHECK_TIMEOUT = 5
SERVICE_POLL_INTERVAL = 0.5
SERVICE_RETRY_DELAY = 0.5

PVE_CLUSTER_SERVICES = ["pve-cluster", "pvedaemon", "pveproxy", "pvestatd"]
PBS_STOP_ORDER = ["proxmox-backup-proxy", "proxmox-backup"]
PBS_START_ORDER = ["proxmox-backup", "proxmox-backup-proxy"]


class ServiceError(RestoreError):
    """A service could not be brought to the requested state."""


class ServiceManager:
    """Drives systemctl through the command runner so every call can be scripted in tests."""

    STOP_ATTEMPTS = [
        ("stop (no-block)", ["stop", "--no-block"]),
        ("stop (blocking)", ["stop"]),
        ("aggressive stop", ["kill", "--signal=SIGTERM", "--kill-who=all"]),
        ("force kill", ["kill", "--signal=SIGKILL", "--kill-who=all"]),
    ]

    START_ATTEMPTS = [
        ("start", ["start"]),
        ("retry start", ["start"]),
        ("aggressive restart", ["restart"]),
    ]

    def __init__(self, runner, clock, verify_timeout: float = SERVICE_VERIFY_TIMEOUT,
                 poll_interval: float = SERVICE_POLL_INTERVAL, retry_delay: float = SERVICE_RETRY_DELAY):
        self.runner = runner
        self.clock = clock
        self.verify_timeout = verify_timeout
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay

    def _systemctl(self, timeout: float, *args: str) -> str:
        try:
            output = self.runner.run("systemctl", *args, timeout=timeout)
        except CommandError as e:
            if e.timed_out:
                raise ServiceError(f"systemctl {' '.join(args)} timed out after {timeout}s")
            detail = e.output.strip() or str(e)
            raise ServiceError(f"systemctl {' '.join(args)} failed: {detail}")
        except CommandNotFound as e:
            raise ServiceError(str(e))
        if output.strip():
            logger.debug(f"systemctl {' '.join(args)}: {output.strip()}")
        return output

    def is_active(self, service: str, timeout: float = SERVICE_STATUS_CHECK_TIMEOUT) -> bool:
        """Interpret ``systemctl is-active``; transitional states count as active."""
        try:
            self.runner.run("systemctl", "is-active", service, timeout=timeout)
            return True
        except CommandError as e:
            if e.timed_out:
                raise ServiceError(f"systemctl is-active {service} timed out after {timeout}s")
            message = (e.output.strip() or str(e)).lower()
        if "deactivating" in message or "activating" in message:
            return True
        if "inactive" in message or "failed" in message or "dead" in message:
            return False
        raise ServiceError(f"systemctl is-active {service} failed: {message}")

    def wait_for_state(self, service: str, active: bool, timeout: float) -> None:
        """Poll until the service reaches the wanted state or ``timeout`` elapses."""
        if timeout <= 0:
            return
        deadline = self.clock.monotonic() + timeout
        while True:
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                state = "active" if not active else "inactive"
                raise ServiceError(f"{service} still {state} after {timeout}s")
            if self.is_active(service, min(remaining, SERVICE_STATUS_CHECK_TIMEOUT)) == active:
                logger.debug(f"{service} is now {'active' if active else 'inactive'}")
                return
            self.clock.sleep(min(remaining, self.poll_interval))

    def reset_failed(self, service: str):
        try:
            self.runner.run("systemctl", "reset-failed", service, timeout=SERVICE_STATUS_CHECK_TIMEOUT)
        except (CommandError, CommandNotFound) as e:
            logger.debug(f"systemctl reset-failed {service} ignored: {e}")

    def stop_with_retries(self, service: str):
        """Escalate from a polite stop to SIGKILL until the unit reports inactive."""
        last_error = None
        for i, (description, args) in enumerate(self.STOP_ATTEMPTS):
            if i > 0:
                self.clock.sleep(self.retry_delay)
            logger.debug(f"Attempting {description} for {service} ({i + 1}/{len(self.STOP_ATTEMPTS)})")
            try:
                self._systemctl(SERVICE_STOP_TIMEOUT, *args, service)
                self.wait_for_state(service, False, self.verify_timeout)
            except ServiceError as e:
                last_error = e
                continue
            self.reset_failed(service)
            return
        raise last_error or ServiceError(f"unable to stop {service}")

    def start_with_retries(self, service: str):
        last_error = None
        for i, (description, args) in enumerate(self.START_ATTEMPTS):
            if i > 0:
                self.clock.sleep(self.retry_delay)
            logger.debug(f"Attempting {description} for {service} ({i + 1}/{len(self.START_ATTEMPTS)})")
            try:
                self._systemctl(SERVICE_START_TIMEOUT, *args, service)
            except ServiceError as e:
                last_error = e
                continue
            return
        raise last_error or ServiceError(f"unable to start {service}")

    def stop_pve_cluster(self):
        for service in PVE_CLUSTER_SERVICES:
            try:
                self.stop_with_retries(service)
            except ServiceError as e:
                raise ServiceError(f"failed to stop PVE services ({service}): {e}")

    def start_pve_cluster(self):
        for service in PVE_CLUSTER_SERVICES:
            try:
                self.start_with_retries(service)
            except ServiceError as e:
                raise ServiceError(f"failed to start PVE services ({service}): {e}")

    def _require_systemctl(self):
        if not self.runner.available("systemctl"):
            raise ServiceError("systemctl not available")

    def stop_pbs(self):
        """Stop the PBS proxy then the daemon; every failure is collected."""
        self._require_systemctl()
        failures: List[str] = []
        for service in PBS_STOP_ORDER:
            try:
                self.stop_with_retries(service)
            except ServiceError as e:
                failures.append(f"{service}: {e}")
        if failures:
            raise ServiceError("; ".join(failures))

    def start_pbs(self):
        self._require_systemctl()
        failures: List[str] = []
        for service in PBS_START_ORDER:
            try:
                self.start_with_retries(service)
            except ServiceError as e:
                failures.append(f"{service}: {e}")
        if failures:
            raise ServiceError("; ".join(failures))

    def ensure_pbs_api(self):
        """Make proxmox-backup-manager usable: binary present, daemon started and active."""
        try:
            self.runner.run("proxmox-backup-manager", "version", timeout=SERVICE_STATUS_CHECK_TIMEOUT)
        except (CommandError, CommandNotFound) as e:
            raise ServiceError(f"proxmox-backup-manager not available: {e}")
        self.start_pbs()
        self.wait_for_state("proxmox-backup", True, self.verify_timeout)

    def stop_pbs_proxy_async(self):
        try:
            self._systemctl(SERVICE_STOP_TIMEOUT, "stop", "--no-block", "proxmox-backup-proxy")
        except ServiceError as e:
            logger.warning(f"Unable to stop proxmox-backup-proxy after API apply: {e}")

    def unmount_etc_pve(self):
        try:
            output = self.runner.run("umount", "/etc/pve", timeout=SERVICE_STOP_TIMEOUT)
        except CommandError as e:
            message = e.output.strip()
            if "not mounted" in message:
                logger.info("Skipping umount /etc/pve (already unmounted)")
                return
            raise ServiceError(f"umount /etc/pve failed: {message or e}")
        if output.strip():
            logger.debug(f"umount /etc/pve output: {output.strip()}")
