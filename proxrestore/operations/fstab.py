"""Smart merge of /etc/fstab from a backup into the current system.

The current root and swap entries always win. Mounts that only exist in the
backup are offered to the operator when they look safe on this hardware:
network shares, or devices referenced by an identifier that resolves here.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..utils.errors import CommandError, CommandNotFound
from ..utils.fs_atomic import write_file_atomic


logger = logging.getLogger(__name__)

FSTAB_PROMPT_TIMEOUT = 90
MERGE_MARKER = "# --- proxrestore restore merge ---"
CRITICAL_MOUNTPOINTS = ("/", "/boot", "/boot/efi", "/usr")
NETWORK_FS_TYPES = ("nfs", "nfs4", "cifs", "smbfs")

_STABLE_DEVICE_DIRS = ("/dev/disk/by-uuid/", "/dev/disk/by-label/", "/dev/disk/by-partuuid/", "/dev/mapper/")
_TAGGED_DEVICES = (
    ("UUID=", "/dev/disk/by-uuid"),
    ("LABEL=", "/dev/disk/by-label"),
    ("PARTUUID=", "/dev/disk/by-partuuid"),
)


@dataclass
class FstabEntry:
    device: str
    mountpoint: str
    fstype: str
    options: str
    dump: str = ""
    passno: str = ""
    raw: str = ""

    @property
    def is_swap(self) -> bool:
        return self.fstype.strip().lower() == "swap"

    @property
    def is_network(self) -> bool:
        if self.fstype.strip().lower() in NETWORK_FS_TYPES:
            return True
        device = self.device.strip()
        return device.startswith("//") or ":/" in device

    def normalized(self) -> "FstabEntry":
        """Copy with boot-safe options: nofail everywhere, _netdev for network shares."""
        options = self.options.strip() or "defaults"
        if self.is_network:
            options = ensure_option(options, "_netdev")
        options = ensure_option(options, "nofail")
        return FstabEntry(self.device, self.mountpoint, self.fstype, options,
                          self.dump.strip() or "0", self.passno.strip() or "0", self.raw)

    def render(self) -> str:
        return f"{self.device:<36} {self.mountpoint:<20} {self.fstype:<8} {self.options:<16} {self.dump} {self.passno}"


@dataclass
class FstabAnalysis:
    root_current: str = ""
    root_backup: str = ""
    swap_current: str = ""
    swap_backup: str = ""
    root_comparable: bool = False
    root_match: bool = True
    swap_comparable: bool = False
    swap_match: bool = True
    proposed: List[FstabEntry] = field(default_factory=list)
    skipped: List[FstabEntry] = field(default_factory=list)

    @property
    def default_yes(self) -> bool:
        """Accept by default only when this looks like the same machine."""
        return self.root_comparable and self.root_match and (not self.swap_comparable or self.swap_match)


def ensure_option(options: str, option: str) -> str:
    opts = options.strip()
    if not opts:
        return option
    if option in (p.strip() for p in opts.split(",")):
        return opts
    return f"{opts},{option}"


def parse_fstab(text: str) -> Tuple[List[FstabEntry], List[str]]:
    """Entries plus the raw lines, which are kept verbatim when the file is rewritten."""
    entries = []
    raw_lines = text.splitlines()
    for line in raw_lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "#" in stripped:
            stripped = stripped.split("#", 1)[0].strip()
        fields = stripped.split()
        if len(fields) < 4:
            continue
        entries.append(FstabEntry(
            device=fields[0],
            mountpoint=fields[1],
            fstype=fields[2],
            options=fields[3],
            dump=fields[4] if len(fields) > 4 else "",
            passno=fields[5] if len(fields) > 5 else "",
            raw=line,
        ))
    return entries, raw_lines


def is_verified_device(fs, device: str) -> bool:
    """True when ``device`` names a stable identifier that exists on this system."""
    dev = device.strip()
    if not dev:
        return False
    if dev.startswith(_STABLE_DEVICE_DIRS):
        return fs.exists(dev)
    for prefix, directory in _TAGGED_DEVICES:
        if dev.startswith(prefix):
            value = dev[len(prefix):].strip('"')
            return bool(value) and fs.exists(posixpath.join(directory, value))
    return False


def analyze_fstab_merge(fs, current: List[FstabEntry], backup: List[FstabEntry]) -> FstabAnalysis:
    result = FstabAnalysis()
    current_mounts = {}
    for entry in current:
        current_mounts[entry.mountpoint] = entry
        if entry.mountpoint == "/":
            result.root_current = entry.device
        if entry.is_swap and not result.swap_current:
            result.swap_current = entry.device

    for entry in backup:
        if entry.mountpoint == "/" and not result.root_backup:
            result.root_backup = entry.device
        if entry.is_swap and not result.swap_backup:
            result.swap_backup = entry.device

        if entry.mountpoint in CRITICAL_MOUNTPOINTS or entry.is_swap:
            continue
        if entry.mountpoint in current_mounts:
            logger.debug(f"fstab merge: {entry.mountpoint} already present; keeping current entry")
            continue
        if entry.is_network or is_verified_device(fs, entry.device):
            result.proposed.append(entry)
        else:
            logger.debug(f"fstab merge: not proposing {entry.device} -> {entry.mountpoint}")
            result.skipped.append(entry)

    if result.root_current and result.root_backup:
        result.root_comparable = True
        result.root_match = result.root_current == result.root_backup
    if result.swap_current and result.swap_backup:
        result.swap_comparable = True
        result.swap_match = result.swap_current == result.swap_backup
    return result


def describe_analysis(analysis: FstabAnalysis) -> str:
    lines = []
    if not analysis.root_comparable:
        lines.append("Root filesystem: undetermined (missing entry in current or backup fstab)")
    elif analysis.root_match:
        lines.append("Root filesystem: compatible (current entry kept)")
    else:
        lines.append("Root device mismatch: the backup comes from a different machine (current entry kept)")
    if not analysis.swap_comparable:
        lines.append("Swap: undetermined (missing entry in current or backup fstab)")
    elif analysis.swap_match:
        lines.append("Swap: compatible")
    else:
        lines.append("Swap mismatch: keeping current swap configuration")
    if analysis.proposed:
        lines.append(f"{len(analysis.proposed)} mount(s) from the backup are missing on this system:")
        lines.extend(f"  {e.device} -> {e.mountpoint} ({e.fstype})" for e in analysis.proposed)
    if analysis.skipped:
        lines.append(f"{len(analysis.skipped)} mount(s) not proposed (device not found on this system):")
        lines.extend(f"  {e.device} -> {e.mountpoint} ({e.fstype})" for e in analysis.skipped)
    return "\n".join(lines)


def render_merged_fstab(raw_lines: List[str], entries: List[FstabEntry]) -> str:
    lines = list(raw_lines)
    lines.append("")
    lines.append(MERGE_MARKER)
    lines.extend(e.normalized().render() for e in entries)
    return "\n".join(lines) + "\n"


def apply_fstab_merge(deps, target: str, raw_lines: List[str], entries: List[FstabEntry]) -> str:
    """Back up ``target``, append ``entries`` and reload systemd mount units. Returns the backup path."""
    fs = deps.fs
    backup_path = f"{target}.bak-{deps.clock.now().strftime('%Y%m%d-%H%M%S')}"
    try:
        mode = fs.stat(target).st_mode & 0o7777
    except FileNotFoundError:
        mode = 0o644
    fs.write_file(backup_path, fs.read_file(target), mode)
    logger.info(f"Original fstab backed up to {backup_path}")

    content = render_merged_fstab(raw_lines, entries)
    write_file_atomic(fs, target, content, mode, as_root=deps.is_root)
    logger.info(f"Merged {len(entries)} fstab entry(ies) into {target}")

    try:
        deps.runner.run("systemctl", "daemon-reload", timeout=30)
    except (CommandError, CommandNotFound) as e:
        logger.debug(f"systemctl daemon-reload skipped: {e}")
    return backup_path


def smart_merge_fstab(deps, current_path: str, backup_path: str, dry_run: bool = False) -> Optional[str]:
    """Offer the safe mounts from the backup fstab. Returns the fstab backup path when merged."""
    fs = deps.fs
    try:
        current, raw_lines = parse_fstab(fs.read_text(current_path))
    except FileNotFoundError:
        logger.warning(f"Current fstab {current_path} not found; skipping fstab merge")
        return None
    try:
        backup, _ = parse_fstab(fs.read_text(backup_path))
    except FileNotFoundError:
        logger.info("Backup does not contain /etc/fstab; nothing to merge")
        return None

    analysis = analyze_fstab_merge(fs, current, backup)
    summary = describe_analysis(analysis)
    for line in summary.splitlines():
        logger.info(line)

    if not analysis.proposed:
        logger.info("No additional mounts found in the backup; fstab left unchanged")
        return None

    accepted = deps.ui.confirm_action(
        "Smart fstab merge",
        summary,
        timeout=FSTAB_PROMPT_TIMEOUT,
        default_yes=analysis.default_yes,
        question="Add the missing mounts to /etc/fstab?",
    )
    if not accepted:
        logger.info("fstab merge skipped; current fstab left unchanged")
        return None

    if dry_run:
        logger.info(f"DRY RUN: would merge {len(analysis.proposed)} fstab entry(ies) into {current_path}")
        return None
    return apply_fstab_merge(deps, current_path, raw_lines, analysis.proposed)
