"""
Playbook selection for a host group.

Playbooks live flat in the playbook root as <name>.yml or <name>.yaml.
A group-specific playbook wins over default; default is the fallback.
Only file existence is checked, never content.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from core.errors import NotFoundError

DEFAULT_PLAYBOOK = "default"
PLAYBOOK_SUFFIXES = (".yml", ".yaml")


@dataclass
class PlaybookChoice:
    """Resolved playbook and any warnings produced while resolving it."""
    path: Path
    group: str
    is_default: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def warning(self) -> str:
        return "; ".join(self.warnings)


def find_playbook_file(root: Path, base: str) -> Tuple[Optional[Path], Optional[str]]:
    """
    Look up <base>.yml and <base>.yaml under root.

    Returns:
        (path, warning). path is None when neither exists. When both exist
        the .yml file is used and warning names both.
    """
    found = [
        root / f"{base}{suffix}"
        for suffix in PLAYBOOK_SUFFIXES
        if (root / f"{base}{suffix}").is_file()
    ]
    if not found:
        return None, None
    if len(found) > 1:
        return found[0], (
            f"ambiguous playbook: both {found[0]} and {found[1]} exist; using {found[0]}"
        )
    return found[0], None


def select_playbook(root: Path, group: str) -> PlaybookChoice:
    """
    Pick the playbook for group.

    Order:
        only default exists   -> default, with a warning
        only group exists     -> group
        both exist            -> group, with a warning
        neither exists        -> NotFoundError

    Raises:
        NotFoundError: no playbook resolvable
    """
    root = Path(root)
    default_path, default_warning = find_playbook_file(root, DEFAULT_PLAYBOOK)
    group_path, group_warning = find_playbook_file(root, group)

    if group_path is None and default_path is None:
        raise NotFoundError(
            f"neither default nor hostgroup playbook exists under {root} (tried .yml/.yaml)"
        )

    if group_path is None:
        choice = PlaybookChoice(path=default_path, group=group, is_default=True)
        choice.warnings.append(
            f"hostgroup playbook missing: {group}.{{yml|yaml}}; fallback to default"
        )
        if default_warning:
            choice.warnings.append(default_warning)
        return choice

    choice = PlaybookChoice(path=group_path, group=group)
    if default_path is not None:
        choice.warnings.append("both default and hostgroup exist; prefer hostgroup")
    if group_warning:
        choice.warnings.append(group_warning)
    return choice
