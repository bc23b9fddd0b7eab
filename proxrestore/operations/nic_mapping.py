"""Map NIC names from the backup onto this host's NICs and rewrite ifupdown config.

A restored ``/etc/network/interfaces`` refers to interfaces by the names they
had on the backed-up machine. On new hardware those names usually differ, so
each backed-up NIC is matched to a current one by hardware identifier and the
config files are rewritten token by token.
"""

import json
import logging
import posixpath
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..storage.archive import read_archive_entry
from ..utils.errors import BundleError, CommandError, CommandNotFound
from ..utils.logger import debug_step


logger = logging.getLogger(__name__)

SYS_CLASS_NET = "/sys/class/net"
INTERFACES_FILE = "/etc/network/interfaces"
INTERFACES_DIR = "/etc/network/interfaces.d"
UDEV_RULES_DIR = "/etc/udev/rules.d"
SYSTEMD_NETWORK_DIR = "/etc/systemd/network"

INVENTORY_ENTRIES = [
    "./var/lib/proxsave-info/commands/system/network_inventory.json",
    "./commands/network_inventory.json",
    "./var/lib/proxsave-info/network_inventory.json",
]
MAX_INVENTORY_BYTES = 10 << 20
PROBE_TIMEOUT = 3

METHOD_PERMANENT_MAC = "permanent_mac"
METHOD_MAC = "mac"
METHOD_UDEV_ID_PATH = "udev_id_path"
METHOD_PCI_SLOT = "pci_slot"

_NAME_CHARS = "A-Za-z0-9_-"


def normalize_mac(value: str) -> str:
    v = (value or "").strip().lower()
    if v.startswith("mac:"):
        v = v[4:]
    return v.strip()


@dataclass
class NetworkInterface:
    name: str
    mac: str = ""
    permanent_mac: str = ""
    pci_path: str = ""
    driver: str = ""
    is_virtual: bool = False
    udev_props: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkInterface":
        return cls(
            name=str(data.get("name", "")).strip(),
            mac=normalize_mac(data.get("mac", "")),
            permanent_mac=normalize_mac(data.get("permanent_mac", "")),
            pci_path=str(data.get("pci_path", "")).strip(),
            driver=str(data.get("driver", "")).strip(),
            is_virtual=bool(data.get("is_virtual", False)),
            udev_props={str(k): str(v) for k, v in (data.get("udev_properties") or {}).items()},
        )

    @property
    def is_candidate(self) -> bool:
        """Physical NIC with at least one identifier worth matching on."""
        if not self.name or self.name == "lo" or self.is_virtual:
            return False
        return bool(self.permanent_mac or self.mac or self.udev_props.get("ID_PATH")
                    or self.udev_props.get("ID_PCI_SLOT_NAME"))


# Tie-break order: the first method yielding a key decides the match.
MATCH_METHODS: List[Tuple[str, Callable[[NetworkInterface], str]]] = [
    (METHOD_PERMANENT_MAC, lambda i: normalize_mac(i.permanent_mac)),
    (METHOD_MAC, lambda i: normalize_mac(i.mac or i.permanent_mac)),
    (METHOD_UDEV_ID_PATH, lambda i: i.udev_props.get("ID_PATH", "").strip()),
    (METHOD_PCI_SLOT, lambda i: i.udev_props.get("ID_PCI_SLOT_NAME", "").strip()),
]


@dataclass
class NICMapping:
    old_name: str
    new_name: str
    method: str
    identifier: str
    reason: str = ""

    def describe(self) -> str:
        line = f"- {self.old_name} -> {self.new_name} ({self.method}={self.identifier})"
        return f"{line}: {self.reason}" if self.reason else line

    def to_dict(self) -> Dict[str, str]:
        data = {"OldName": self.old_name, "NewName": self.new_name,
                "Method": self.method, "Identifier": self.identifier}
        if self.reason:
            data["Reason"] = self.reason
        return data


@dataclass
class NICRepairPlan:
    safe: List[NICMapping] = field(default_factory=list)
    conflicts: List[NICMapping] = field(default_factory=list)
    skipped_reason: str = ""
    inventory_source: str = ""

    @property
    def has_work(self) -> bool:
        return bool(self.safe or self.conflicts)

    def rename_map(self) -> Dict[str, str]:
        return {m.old_name: m.new_name for m in self.safe}

    def details(self) -> str:
        lines = []
        if self.safe:
            lines.append("NIC mapping (backup -> current):")
            lines.extend(m.describe() for m in sorted(self.safe, key=lambda m: m.old_name))
        if self.conflicts:
            lines.append("Excluded conflicting mappings:")
            lines.extend(m.describe() for m in sorted(self.conflicts, key=lambda m: m.old_name))
        return "\n".join(lines) or "NIC mapping: none"


@dataclass
class NICRepairResult:
    applied: List[NICMapping] = field(default_factory=list)
    changed_files: List[str] = field(default_factory=list)
    backup_dir: str = ""
    skipped_reason: str = ""

    def summary(self) -> str:
        if self.skipped_reason:
            return f"NIC name repair skipped: {self.skipped_reason}"
        if not self.changed_files:
            return "NIC name repair: no changes needed"
        return f"NIC name repair applied: {len(self.changed_files)} file(s) updated"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Summary": self.summary(),
            "Applied": [m.to_dict() for m in self.applied],
            "ChangedFiles": self.changed_files,
            "BackupDir": self.backup_dir,
        }


def parse_inventory(data: bytes) -> List[NetworkInterface]:
    try:
        raw = json.loads(data)
    except ValueError as e:
        raise BundleError(f"parse network inventory json: {e}")
    if not isinstance(raw, dict):
        raise BundleError("network inventory is not a JSON object")
    return [NetworkInterface.from_dict(i) for i in raw.get("interfaces") or [] if isinstance(i, dict)]


def load_backup_inventory(fs, archive_path: str) -> Tuple[List[NetworkInterface], str]:
    data, source = read_archive_entry(fs, archive_path, INVENTORY_ENTRIES, MAX_INVENTORY_BYTES)
    return parse_inventory(data), source


def parse_permanent_mac(output: str) -> str:
    prefix = "permanent address:"
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith(prefix):
            return normalize_mac(stripped[len(prefix):])
    return ""


def parse_udev_properties(output: str) -> Dict[str, str]:
    props = {}
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key.strip() and value.strip():
            props[key.strip()] = value.strip()
    return props


def collect_current_inventory(deps) -> List[NetworkInterface]:
    """Read /sys/class/net; permanent MACs and udev properties are added when the tools exist."""
    fs, runner = deps.fs, deps.runner
    has_ethtool = runner.available("ethtool")
    has_udevadm = runner.available("udevadm")
    interfaces = []
    for name in fs.listdir(SYS_CLASS_NET):
        name = name.strip()
        if not name:
            continue
        net_path = posixpath.join(SYS_CLASS_NET, name)
        iface = NetworkInterface(name=name)
        try:
            iface.mac = normalize_mac(fs.read_text(posixpath.join(net_path, "address"))[:64])
        except OSError:
            pass
        if fs.islink(net_path) and "/virtual/" in fs.readlink(net_path):
            iface.is_virtual = True
        if has_ethtool:
            try:
                iface.permanent_mac = parse_permanent_mac(runner.run("ethtool", "-P", name, timeout=PROBE_TIMEOUT))
            except (CommandError, CommandNotFound) as e:
                debug_step(logger, "nic inventory", "ethtool -P %s: %s", name, e)
        if has_udevadm:
            try:
                iface.udev_props = parse_udev_properties(
                    runner.run("udevadm", "info", "-q", "property", "-p", net_path, timeout=PROBE_TIMEOUT))
            except (CommandError, CommandNotFound) as e:
                debug_step(logger, "nic inventory", "udevadm info %s: %s", name, e)
        interfaces.append(iface)
    return sorted(interfaces, key=lambda i: i.name)


def compute_nic_mapping(backup: List[NetworkInterface],
                        current: List[NetworkInterface]) -> Tuple[List[NICMapping], List[NICMapping]]:
    """Return (conflict-free mappings, excluded conflicts)."""
    indexes: Dict[str, Dict[str, List[str]]] = {}
    for method, extract in MATCH_METHODS:
        index = defaultdict(list)
        for iface in current:
            if not iface.is_candidate:
                continue
            key = extract(iface)
            if key and iface.name not in index[key]:
                index[key].append(iface.name)
        indexes[method] = index

    current_names = {i.name for i in current}
    candidates: List[NICMapping] = []
    conflicts: List[NICMapping] = []
    for iface in backup:
        if not iface.is_candidate:
            continue
        for method, extract in MATCH_METHODS:
            key = extract(iface)
            if not key or key not in indexes[method]:
                continue
            names = sorted(indexes[method][key])
            if len(names) > 1:
                conflicts.append(NICMapping(iface.name, names[0], method, key,
                                            reason=f"identifier shared by {', '.join(names)}"))
            elif names[0] != iface.name:
                mapping = NICMapping(iface.name, names[0], method, key)
                if iface.name in current_names:
                    mapping.reason = f"current {iface.name} exists"
                    conflicts.append(mapping)
                else:
                    candidates.append(mapping)
            break

    targets = defaultdict(list)
    for mapping in candidates:
        targets[mapping.new_name].append(mapping.old_name)
    safe = []
    for mapping in candidates:
        sources = targets[mapping.new_name]
        if len(sources) > 1:
            mapping.reason = f"{mapping.new_name} claimed by {', '.join(sorted(sources))}"
            conflicts.append(mapping)
        else:
            safe.append(mapping)
    return safe, conflicts


def plan_nic_repair(deps, archive_path: str) -> NICRepairPlan:
    plan = NICRepairPlan()
    if not archive_path:
        plan.skipped_reason = "backup archive not available"
        return plan
    try:
        backup, plan.inventory_source = load_backup_inventory(deps.fs, archive_path)
    except FileNotFoundError:
        plan.skipped_reason = "backup does not include a network inventory"
        return plan
    try:
        current = collect_current_inventory(deps)
    except OSError as e:
        plan.skipped_reason = f"unable to read current network inventory: {e}"
        return plan
    plan.safe, plan.conflicts = compute_nic_mapping(backup, current)
    if not plan.has_work:
        plan.skipped_reason = "no NIC rename mapping found (names already match or identifiers unavailable)"
    return plan


def apply_rename_map(text: str, rename_map: Dict[str, str]) -> str:
    """Replace whole interface names in one pass; ``eno1`` never matches inside ``eno10``."""
    names = [old for old, new in rename_map.items() if old and new and old != new]
    if not names:
        return text
    # Single pass, so a renamed token is never renamed again.
    alternation = "|".join(re.escape(n) for n in sorted(names, key=len, reverse=True))
    pattern = re.compile(rf"(?<![{_NAME_CHARS}])(?:{alternation})(?![{_NAME_CHARS}])")
    return pattern.sub(lambda m: rename_map[m.group(0)], text)


def interfaces_files(fs, dest_root: str = "/") -> List[str]:
    paths = [posixpath.join(dest_root, INTERFACES_FILE.lstrip("/"))]
    extra_dir = posixpath.join(dest_root, INTERFACES_DIR.lstrip("/"))
    if fs.isdir(extra_dir):
        paths.extend(posixpath.join(extra_dir, n) for n in fs.listdir(extra_dir)
                     if fs.isfile(posixpath.join(extra_dir, n)))
    return sorted(paths)


def rewrite_interfaces(deps, rename_map: Dict[str, str], backup_root: str,
                       dest_root: str = "/") -> Tuple[List[str], str]:
    """Rewrite ifupdown files, archiving originals first. Returns (changed files, backup dir)."""
    fs = deps.fs
    changed = []
    for path in interfaces_files(fs, dest_root):
        if not fs.isfile(path):
            continue
        original = fs.read_text(path)
        updated = apply_rename_map(original, rename_map)
        if updated != original:
            changed.append((path, original, updated, fs.stat(path).st_mode & 0o7777))
    if not changed:
        return [], ""

    backup_dir = posixpath.join(backup_root, f"nic_repair_{deps.clock.now().strftime('%Y%m%d_%H%M%S')}")
    fs.makedirs(backup_dir, 0o700)
    for path, original, _, _ in changed:
        saved = posixpath.join(backup_dir, posixpath.relpath(path, dest_root))
        fs.makedirs(posixpath.dirname(saved), 0o700)
        fs.write_file(saved, original, 0o600)

    for path, _, updated, mode in changed:
        fs.write_file(path, updated, mode)
    paths = [c[0] for c in changed]
    logger.info(f"NIC name repair updated {len(paths)} file(s). Backup: {backup_dir}")
    return paths, backup_dir


@dataclass
class NamingOverride:
    kind: str
    source: str
    line: int
    name: str
    mac: str = ""

    def describe(self) -> str:
        ref = f"{self.source}:{self.line}" if self.line else self.source
        mac = f" mac={self.mac}" if self.mac else ""
        return f"- {self.kind} {ref} name={self.name}{mac}"


def parse_udev_override_line(line: str) -> Tuple[str, str]:
    if 'subsystem=="net"' not in line.lower():
        return "", ""
    name = mac = ""
    for part in line.split(","):
        p = part.strip()
        if p.startswith("NAME:="):
            name = p[len("NAME:="):].strip().strip("\"'")
        elif p.startswith("NAME="):
            name = p[len("NAME="):].strip().strip("\"'")
        elif p.startswith("ATTR{address}=="):
            mac = normalize_mac(p[len("ATTR{address}=="):].strip().strip("\"'"))
    return name, mac


def parse_udev_overrides(source: str, content: str) -> List[NamingOverride]:
    rules = []
    for lineno, line in enumerate(content.splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        name, mac = parse_udev_override_line(stripped)
        if name:
            rules.append(NamingOverride("udev", source, lineno, name, mac))
    return rules


def parse_link_overrides(source: str, content: str) -> List[NamingOverride]:
    """systemd ``.link`` files: one override per MAC under [Match] when [Link] sets Name=."""
    section = ""
    link_name = ""
    macs = []
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue
        if stripped.startswith("[") and stripped.endswith("]"):
            section = stripped[1:-1].strip().lower()
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        if section == "match" and key == "macaddress":
            macs.extend(normalize_mac(m) for m in value.split() if normalize_mac(m))
        elif section == "link" and key == "name":
            link_name = value.strip().strip("\"'")
    if not link_name:
        return []
    return [NamingOverride("systemd-link", source, 0, link_name, mac) for mac in sorted(set(macs))]


def detect_naming_overrides(fs) -> List[NamingOverride]:
    rules = []
    for directory, suffix, parser in ((UDEV_RULES_DIR, "", parse_udev_overrides),
                                      (SYSTEMD_NETWORK_DIR, ".link", parse_link_overrides)):
        if not fs.isdir(directory):
            continue
        for name in fs.listdir(directory):
            path = posixpath.join(directory, name)
            if not fs.isfile(path) or (suffix and not name.lower().endswith(suffix)):
                continue
            try:
                rules.extend(parser(path, fs.read_text(path)))
            except OSError as e:
                debug_step(logger, "nic naming overrides", "skip %s: %s", path, e)
    return sorted(rules, key=lambda r: (r.kind, r.source, r.line, r.name))


def repair_nic_names(deps, archive_path: str, backup_root: str, dest_root: str = "/",
                     plan: Optional[NICRepairPlan] = None) -> NICRepairResult:
    """Plan, confirm with the operator and apply the NIC rename mapping."""
    result = NICRepairResult()
    if plan is None:
        plan = plan_nic_repair(deps, archive_path)
    if not plan.has_work:
        result.skipped_reason = plan.skipped_reason or "no NIC renames needed"
        logger.info(result.summary())
        return result

    overrides = detect_naming_overrides(deps.fs)
    if overrides:
        details = "\n".join(r.describe() for r in overrides[:10])
        proceed = deps.ui.confirm_action(
            "NIC naming overrides detected",
            f"Persistent NIC naming rules exist on this system:\n{details}\n\n{plan.details()}",
            default_yes=False,
            question="Rewrite interface names anyway?",
        )
        if not proceed:
            result.skipped_reason = "persistent NIC naming overrides present; skipped by user"
            logger.info(result.summary())
            return result

    if plan.conflicts:
        proceed = bool(plan.safe) and deps.ui.confirm_action(
            "Conflicting NIC mappings",
            plan.details(),
            default_yes=False,
            question="Apply only the conflict-free renames?",
        )
        if not proceed:
            result.skipped_reason = "conflicting NIC mappings detected; skipped by user"
            logger.info(result.summary())
            return result

    result.changed_files, result.backup_dir = rewrite_interfaces(deps, plan.rename_map(), backup_root, dest_root)
    result.applied = list(plan.safe)
    if not result.changed_files:
        result.skipped_reason = "no matching interface names found in /etc/network/interfaces*"
    logger.info(result.summary())
    return result
