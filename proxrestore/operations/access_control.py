"""Access-control restore: merge staged users, realms, tokens and TFA with the live install.

The fresh install's ``root@pam`` account, its realm, tokens, password hash
and TFA entries always survive a restore, and an Administrator ACL for
root on ``/`` is always present, so the operator cannot be locked out.
"""

import json
import logging
from typing import Callable, Dict, List, Optional

from ..models.sections import Section, parse_sections, render_sections
from ..models.summary import CategoryResult, applied, skipped
from ..utils.fs_atomic import write_file_atomic
from .stage_files import CONFIG_MODE, PRIVATE_MODE, dest_path, read_stage_file


logger = logging.getLogger(__name__)

ROOT_USER = "root@pam"
ROOT_REALM = "pam"

PVE_USER_CFG = "etc/pve/user.cfg"
PVE_DOMAINS_CFG = "etc/pve/domains.cfg"
PVE_SHADOW_CFG = "etc/pve/priv/shadow.cfg"
PVE_TOKEN_CFG = "etc/pve/priv/token.cfg"
PVE_TFA_CFG = "etc/pve/priv/tfa.cfg"

PBS_DIR = "etc/proxmox-backup"
PBS_USER_CFG = f"{PBS_DIR}/user.cfg"
PBS_DOMAINS_CFG = f"{PBS_DIR}/domains.cfg"
PBS_ACL_CFG = f"{PBS_DIR}/acl.cfg"
PBS_TOKEN_CFG = f"{PBS_DIR}/token.cfg"
PBS_SHADOW = f"{PBS_DIR}/shadow.json"
PBS_TOKEN_SHADOW = f"{PBS_DIR}/token.shadow"
PBS_TFA = f"{PBS_DIR}/tfa.json"

PVE_ROOT_ACL = "acl:1:/:root@pam:Administrator:"
PBS_ROOT_ACL = "acl:1:/:root@pam:Admin"

# user.cfg entries reference each other in this order
PVE_USER_CFG_ORDER = ("user", "token", "group", "pool", "role", "acl")


def is_root_owned(ident: str) -> bool:
    """True for root@pam itself and its API tokens (``root@pam!name``)."""
    ident = ident.strip()
    return ident == ROOT_USER or ident.startswith(ROOT_USER + "!")


def _read_live(fs, path: str) -> str:
    try:
        return fs.read_text(path)
    except FileNotFoundError:
        return ""


def _write(deps, path: str, content: str, mode: int):
    if content and not content.endswith("\n"):
        content += "\n"
    write_file_atomic(deps.fs, path, content, mode, as_root=deps.is_root)


# Section-config merges (PVE/PBS domains.cfg, PBS user.cfg)

def merge_sections(current: str, staged: str, protected: Callable[[Section], bool],
                   fallback: Optional[List[Section]] = None) -> List[Section]:
    """Union of both files keyed by ``type:id``.

    Protected sections come only from the live file (or ``fallback`` when it
    has none); staged sections win for everything else.
    """
    live = parse_sections(current)
    out: List[Section] = []
    seen = set()
    kept = [s for s in live if protected(s)] or list(fallback or [])
    for section in kept:
        out.append(section)
        seen.add(section.key)
    for section in parse_sections(staged):
        if protected(section) or section.key in seen:
            continue
        out.append(section)
        seen.add(section.key)
    for section in live:
        if section.key not in seen:
            out.append(section)
            seen.add(section.key)
    return out


def _is_pam_realm(section: Section) -> bool:
    return section.type == ROOT_REALM and section.id == ROOT_REALM


def merge_domains_cfg(current: str, staged: str) -> str:
    fallback = [Section(type="pam", id="pam", props=[("comment", "Linux PAM standard authentication")])]
    return render_sections(merge_sections(current, staged, _is_pam_realm, fallback))


def _is_pbs_root_entry(section: Section) -> bool:
    return section.type in ("user", "token") and is_root_owned(section.id)


def merge_pbs_user_cfg(current: str, staged: str) -> str:
    fallback = [Section(type="user", id=ROOT_USER,
                        props=[("comment", "Superuser"), ("enable", "true")])]
    live_root = [s for s in parse_sections(current) if s.type == "user" and s.id == ROOT_USER]
    sections = merge_sections(current, staged, _is_pbs_root_entry, None if live_root else fallback)
    if not any(s.type == "user" and s.id == ROOT_USER for s in sections):
        sections = fallback + sections
    return render_sections(sections)


# Colon-separated line files (user.cfg, acl.cfg, shadow.cfg, tfa.cfg)

def _line_type(line: str) -> str:
    return line.split(":", 1)[0].strip()


def _line_key(line: str) -> str:
    fields = line.strip().split(":")
    if fields[0] == "acl" or len(fields) < 2:
        return line.strip()
    return f"{fields[0]}:{fields[1]}"


def _line_ident(line: str) -> str:
    fields = line.strip().split(":")
    return fields[1] if len(fields) > 1 else ""


def _content_lines(text: str) -> List[str]:
    return [line.rstrip() for line in text.splitlines()
            if line.strip() and not line.lstrip().startswith("#")]


def merge_colon_lines(current: str, staged: str, protected: Callable[[str], bool]) -> List[str]:
    """Line-level union keyed by ``type:id``; protected lines come only from the live file."""
    out: List[str] = []
    seen = set()
    live = _content_lines(current)
    for line in live:
        if protected(line):
            out.append(line)
            seen.add(_line_key(line))
    for line in _content_lines(staged):
        if protected(line) or _line_key(line) in seen:
            continue
        out.append(line)
        seen.add(_line_key(line))
    for line in live:
        if _line_key(line) not in seen:
            out.append(line)
            seen.add(_line_key(line))
    return out


def _root_acl_present(lines: List[str], role: str) -> bool:
    for line in lines:
        fields = line.split(":")
        if len(fields) >= 5 and fields[0] == "acl" and fields[2] == "/":
            if ROOT_USER in fields[3].split(",") and role in fields[4].split(","):
                return True
    return False


def _is_pve_root_line(line: str) -> bool:
    return _line_type(line) in ("user", "token") and is_root_owned(_line_ident(line))


def merge_pve_user_cfg(current: str, staged: str) -> str:
    lines = merge_colon_lines(current, staged, _is_pve_root_line)
    if not any(_line_type(l) == "user" and _line_ident(l) == ROOT_USER for l in lines):
        lines.insert(0, f"user:{ROOT_USER}:1:0:::::::")
    if not _root_acl_present(lines, "Administrator"):
        lines.append(PVE_ROOT_ACL)
    order = {t: i for i, t in enumerate(PVE_USER_CFG_ORDER)}
    lines.sort(key=lambda l: order.get(_line_type(l), len(order)))
    return "\n".join(lines) + "\n"


def merge_pbs_acl_cfg(current: str, staged: str) -> str:
    lines = merge_colon_lines(current, staged, lambda line: False)
    if not _root_acl_present(lines, "Admin"):
        lines.insert(0, PBS_ROOT_ACL)
    return "\n".join(lines) + "\n"


def _is_root_keyed_line(line: str) -> bool:
    return is_root_owned(line.split(":", 1)[0])


def merge_pve_shadow_cfg(current: str, staged: str) -> str:
    """``user:hash:`` lines; root's hash is never taken from the backup."""
    out: List[str] = []
    seen = set()
    live = _content_lines(current)
    for line in live:
        if _is_root_keyed_line(line):
            out.append(line)
            seen.add(line.split(":", 1)[0])
    for line in _content_lines(staged) + live:
        user = line.split(":", 1)[0]
        if _is_root_keyed_line(line) or user in seen:
            continue
        out.append(line)
        seen.add(user)
    return "\n".join(out) + "\n" if out else ""


def merge_pve_token_cfg(current: str, staged: str) -> str:
    """``user@realm!token secret`` lines; root tokens stay those of the fresh install."""
    out: List[str] = []
    seen = set()
    live = _content_lines(current)
    for line in live:
        token = line.split()[0]
        if is_root_owned(token):
            out.append(line)
            seen.add(token)
    for line in _content_lines(staged) + live:
        token = line.split()[0]
        if is_root_owned(token) or token in seen:
            continue
        out.append(line)
        seen.add(token)
    return "\n".join(out) + "\n" if out else ""


# JSON files (PBS shadow.json/token.shadow/tfa.json, PVE tfa.cfg)

def _load_json(text: str, what: str) -> Dict:
    if not text.strip():
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{what}: expected a JSON object")
    return data


def merge_keyed_json(current: str, staged: str, what: str) -> str:
    """Merge flat ``{id: secret}`` maps; root-owned ids keep their live values."""
    live = _load_json(current, what)
    merged = {k: v for k, v in live.items() if not is_root_owned(k)}
    merged.update({k: v for k, v in _load_json(staged, what).items() if not is_root_owned(k)})
    merged.update({k: v for k, v in live.items() if is_root_owned(k)})
    return json.dumps(merged, indent=2, sort_keys=True) + "\n"


def merge_tfa_json(current: str, staged: str, what: str) -> str:
    """Merge the ``users`` map of a TFA store; root's entries never come from the backup."""
    live = _load_json(current, what)
    backup = _load_json(staged, what)
    merged = dict(live)
    for key, value in backup.items():
        if key != "users":
            merged.setdefault(key, value)
    users = {k: v for k, v in (live.get("users") or {}).items()}
    for user, entry in (backup.get("users") or {}).items():
        if is_root_owned(user):
            continue
        users[user] = entry
    merged["users"] = users
    return json.dumps(merged, indent=2, sort_keys=True) + "\n"


def merge_pve_tfa_cfg(current: str, staged: str) -> str:
    """PVE keeps TFA as JSON on current releases and as ``user:type:data`` lines before."""
    live_json = current.lstrip().startswith("{")
    staged_json = staged.lstrip().startswith("{")
    if live_json or staged_json:
        return merge_tfa_json(current if live_json else "", staged if staged_json else "", "tfa.cfg")
    lines = merge_colon_lines(current, staged, _is_root_keyed_line)
    return "\n".join(lines) + "\n" if lines else ""


MergeFunc = Callable[[str, str], str]


def _merge_file(deps, stage_root: str, rel: str, dest_root: str, merge: MergeFunc, mode: int) -> bool:
    staged = read_stage_file(deps.fs, stage_root, rel)
    if staged is None:
        return False
    target = dest_path(dest_root, rel)
    merged = merge(_read_live(deps.fs, target), staged)
    _write(deps, target, merged, mode)
    logger.debug(f"Merged {rel} -> {target}")
    return True


def apply_pve_access_control(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    steps = [
        (PVE_DOMAINS_CFG, merge_domains_cfg, CONFIG_MODE),
        (PVE_USER_CFG, merge_pve_user_cfg, CONFIG_MODE),
        (PVE_SHADOW_CFG, merge_pve_shadow_cfg, PRIVATE_MODE),
        (PVE_TOKEN_CFG, merge_pve_token_cfg, PRIVATE_MODE),
        (PVE_TFA_CFG, merge_pve_tfa_cfg, PRIVATE_MODE),
    ]
    merged = [rel for rel, merge, mode in steps
              if _merge_file(deps, stage_root, rel, dest_root, merge, mode)]
    if not merged:
        return skipped("pve_access_control", "no staged access control files")
    logger.info(f"PVE access control restored ({len(merged)} file(s)); root@pam preserved from this host")
    return applied("pve_access_control")


def apply_pbs_access_control(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    steps = [
        (PBS_DOMAINS_CFG, merge_domains_cfg, CONFIG_MODE),
        (PBS_USER_CFG, merge_pbs_user_cfg, CONFIG_MODE),
        (PBS_ACL_CFG, merge_pbs_acl_cfg, CONFIG_MODE),
        (PBS_SHADOW, lambda c, s: merge_keyed_json(c, s, "shadow.json"), PRIVATE_MODE),
        (PBS_TOKEN_SHADOW, lambda c, s: merge_keyed_json(c, s, "token.shadow"), PRIVATE_MODE),
        (PBS_TFA, lambda c, s: merge_tfa_json(c, s, "tfa.json"), PRIVATE_MODE),
    ]
    merged = [rel for rel, merge, mode in steps
              if _merge_file(deps, stage_root, rel, dest_root, merge, mode)]
    # token.cfg has no merge semantics of its own: take it from the backup when present
    staged_token_cfg = read_stage_file(deps.fs, stage_root, PBS_TOKEN_CFG)
    if staged_token_cfg is not None and staged_token_cfg.strip():
        _write(deps, dest_path(dest_root, PBS_TOKEN_CFG), staged_token_cfg.strip(), CONFIG_MODE)
        merged.append(PBS_TOKEN_CFG)
    if not merged:
        return skipped("pbs_access_control", "no staged access control files")
    logger.info(f"PBS access control restored ({len(merged)} file(s)); root@pam preserved from this host")
    return applied("pbs_access_control")

