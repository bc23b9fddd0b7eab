"""Proxmox section-config files (``type: id`` headers with indented properties)."""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass
class Section:
    """One ``type: id`` block."""
    type: str
    id: str
    props: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.type}:{self.id}"

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        for key, value in self.props:
            if key == name:
                return value
        return default


def parse_sections(text: str) -> List[Section]:
    """Parse section-config text. Comment lines and stray properties are dropped."""
    sections: List[Section] = []
    current: Optional[Section] = None
    for raw in text.splitlines():
        if not raw.strip():
            current = None
            continue
        if raw.lstrip().startswith("#"):
            continue
        if raw[0] in (" ", "\t"):
            if current is None:
                continue
            key, _, value = raw.strip().partition(" ")
            current.props.append((key.strip(), value.strip()))
            continue
        head, sep, ident = raw.partition(":")
        if not sep:
            current = None
            continue
        current = Section(type=head.strip(), id=ident.strip())
        sections.append(current)
    return sections


def render_sections(sections: List[Section]) -> str:
    blocks = []
    for section in sections:
        lines = [f"{section.type}: {section.id}"]
        for key, value in section.props:
            lines.append(f"\t{key} {value}".rstrip())
        blocks.append("\n".join(lines) + "\n")
    return "\n".join(blocks)

