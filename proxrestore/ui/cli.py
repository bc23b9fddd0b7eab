"""Line-oriented terminal UI for the decrypt and restore workflows."""

import io
import logging
import posixpath
import select
import sys
from typing import List, Optional, Tuple

from ..models.candidate import Candidate, SourceOption
from ..models.category import (Category, MODE_BASE, MODE_CUSTOM, MODE_FULL, MODE_STORAGE,
                               TYPE_COMMON, TYPE_PBS, TYPE_PVE)
from ..models.plan import RestorePlan
from ..utils.errors import DecryptAborted, InputAborted, RestoreAborted


logger = logging.getLogger(__name__)

RULE = "=" * 63

DECISION_OVERWRITE = "overwrite"
DECISION_NEW_PATH = "new_path"
DECISION_CANCEL = "cancel"

CLUSTER_ABORT = "abort"
CLUSTER_SAFE = "safe"
CLUSTER_RECOVERY = "recovery"

COMMIT_PHRASE = "COMMIT"


def parse_menu_index(text: str, count: int) -> int:
    """Parse a 1-based menu choice into a 0-based index."""
    try:
        value = int(text.strip())
    except ValueError:
        raise ValueError(f"please enter a value between 1 and {count}")
    if value < 1 or value > count:
        raise ValueError(f"please enter a value between 1 and {count}")
    return value - 1


class CLIWorkflowUI:
    """Prompts the operator on a terminal (or any pair of text streams)."""

    def __init__(self, stdin=None, stdout=None, stderr=None):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

    def _print(self, text: str = "", end: str = "\n", err: bool = False):
        stream = self.stderr if err else self.stdout
        stream.write(text + end)
        stream.flush()

    def _selectable(self) -> bool:
        try:
            self.stdin.fileno()
        except (AttributeError, io.UnsupportedOperation, ValueError):
            return False
        return True

    def read_line(self, prompt: str = "", timeout: Optional[float] = None) -> Optional[str]:
        """Read one line. Returns None when ``timeout`` expires; EOF raises InputAborted."""
        if prompt:
            self._print(prompt, end="")
        if timeout is not None and self._selectable():
            ready, _, _ = select.select([self.stdin], [], [], max(timeout, 0))
            if not ready:
                return None
        line = self.stdin.readline()
        if line == "":
            raise InputAborted()
        return line.rstrip("\r\n")

    def show_message(self, title: str, message: str = ""):
        if title.strip():
            self._print(f"\n{title.strip()}")
        if message.strip():
            self._print(message.strip())

    def _menu(self, title: str, labels: List[str], abort_exc) -> int:
        self._print()
        self._print(title)
        for i, label in enumerate(labels, 1):
            self._print(f"  [{i}] {label}")
        self._print("  [0] Exit")
        while True:
            choice = self.read_line("Choice: ").strip()
            if choice == "0":
                raise abort_exc()
            if not choice:
                continue
            try:
                return parse_menu_index(choice, len(labels))
            except ValueError as e:
                self._print(f"Invalid choice: {e}")

    def select_source(self, options: List[SourceOption]) -> SourceOption:
        index = self._menu("Select the backup source:", [o.display() for o in options], DecryptAborted)
        return options[index]

    def select_candidate(self, candidates: List[Candidate]) -> Candidate:
        index = self._menu("Available backups:", [c.label() for c in candidates], DecryptAborted)
        return candidates[index]

    def prompt_destination_dir(self, default_dir: str) -> str:
        line = self.read_line(f"\nEnter destination directory for decrypted bundle "
                              f"[press Enter to use {default_dir}]: ")
        return posixpath.normpath(line.strip() or default_dir)

    def resolve_existing_path(self, path: str, description: str, failure: str = "") -> Tuple[str, str]:
        """Ask what to do with an existing path: overwrite, pick another, or exit."""
        if failure.strip():
            self._print(failure.strip(), err=True)
        desc = description.strip() or "file"
        self._print(f"{desc[0].upper() + desc[1:]} {posixpath.normpath(path)} already exists.")
        self._print("  [1] Overwrite")
        self._print("  [2] Enter a different path")
        self._print("  [0] Exit")
        while True:
            choice = self.read_line("Choice: ").strip()
            if choice == "1":
                return DECISION_OVERWRITE, ""
            if choice == "2":
                new_path = self.read_line("Enter new path: ").strip()
                if not new_path:
                    continue
                return DECISION_NEW_PATH, posixpath.normpath(new_path)
            if choice == "0":
                return DECISION_CANCEL, ""
            self._print("Please enter 1, 2 or 0.")

    def select_restore_mode(self, system_type: str) -> str:
        self._print()
        self._print("Select restore mode:")
        self._print("  [1] FULL restore - Restore everything from backup")
        if system_type == TYPE_PVE:
            self._print("  [2] STORAGE only - PVE cluster + storage + jobs + mounts")
        elif system_type == TYPE_PBS:
            self._print("  [2] DATASTORE only - PBS datastore definitions + sync/verify/prune jobs + mounts")
        else:
            self._print("  [2] STORAGE/DATASTORE only - Storage or datastore configuration")
        self._print("  [3] SYSTEM BASE only - Network + SSL + SSH + services + filesystem")
        self._print("  [4] CUSTOM selection - Choose specific categories")
        self._print("  [0] Cancel")
        modes = {"1": MODE_FULL, "2": MODE_STORAGE, "3": MODE_BASE, "4": MODE_CUSTOM}
        while True:
            choice = self.read_line("Choice: ").strip()
            if choice == "0":
                raise RestoreAborted()
            if choice in modes:
                return modes[choice]
            self._print("Invalid choice. Please try again.")

    def select_categories(self, available: List[Category], system_type: str) -> List[Category]:
        relevant = [c for c in available
                    if c.type == TYPE_COMMON or c.type == system_type]
        relevant.sort(key=lambda c: (c.type == TYPE_COMMON, c.name))
        selected = set()
        while True:
            self._print()
            self._print(RULE)
            self._print("CUSTOM CATEGORY SELECTION")
            self._print(RULE)
            self._print()
            for i, cat in enumerate(relevant):
                mark = "[X]" if i in selected else "[ ]"
                self._print(f"  [{i + 1}] {mark} {cat.name}")
                self._print(f"      {cat.description}")
            self._print()
            self._print("Commands:")
            self._print("  1-N    - Toggle category selection")
            self._print("  a      - Select all")
            self._print("  n      - Deselect all")
            self._print("  c      - Continue with selected categories")
            self._print("  0      - Cancel")
            choice = self.read_line("\nChoice: ").strip().lower()
            if choice == "a":
                selected = set(range(len(relevant)))
            elif choice == "n":
                selected = set()
            elif choice == "c":
                if not selected:
                    self._print("\nWarning: No categories selected. Please select at least one category.")
                    continue
                return [cat for i, cat in enumerate(relevant) if i in selected]
            elif choice == "0":
                raise RestoreAborted()
            else:
                try:
                    index = parse_menu_index(choice, len(relevant))
                except ValueError:
                    self._print("Invalid choice. Please try again.")
                    continue
                selected.symmetric_difference_update({index})

    def show_restore_plan(self, plan: RestorePlan):
        self._print()
        self._print(RULE)
        self._print("RESTORE PLAN")
        self._print(RULE)
        self._print()
        names = {
            MODE_FULL: "FULL restore (all categories)",
            MODE_STORAGE: ("STORAGE only (cluster + storage + jobs + mounts)" if plan.system_type == TYPE_PVE
                           else "DATASTORE only (datastores + jobs + mounts)"),
            MODE_BASE: "SYSTEM BASE only (network + SSL + SSH + services + filesystem)",
        }
        categories = plan.normal_categories + plan.export_categories
        mode_name = names.get(plan.mode, f"CUSTOM selection ({len(categories)} categories)")
        self._print(f"Restore mode: {mode_name}")
        self._print(f"System type:  {plan.system_type.upper()}")
        if plan.cluster_backup:
            self._print(f"Cluster mode: {'SAFE (export only)' if plan.cluster_safe_mode else 'RECOVERY'}")
        self._print()
        self._print("Categories to restore:")
        for i, cat in enumerate(plan.normal_categories, 1):
            self._print(f"  {i}. {cat.name}")
            self._print(f"     {cat.description}")
        if plan.export_categories:
            self._print()
            self._print("Categories exported for manual review (not applied):")
            for cat in plan.export_categories:
                self._print(f"  - {cat.name}")
        self._print()
        self._print("Files/directories that will be restored:")
        paths = sorted({p for cat in plan.normal_categories for p in cat.paths})
        for path in paths:
            self._print(f"  - /{path[2:] if path.startswith('./') else path.lstrip('/')}")
        self._print()
        self._print("WARNING:")
        self._print("  - Existing files at these locations will be OVERWRITTEN")
        self._print("  - A safety backup will be created before restoration")
        self._print("  - Services may need to be restarted after restoration")
        self._print()

    def confirm_restore(self) -> bool:
        while True:
            self._print(RULE)
            response = self.read_line("Type 'RESTORE' to proceed or 'cancel' to abort: ").strip()
            if response == "RESTORE":
                break
            if response.lower() == "cancel" or response == "0":
                return False
            self._print("Invalid input. Please type 'RESTORE' or 'cancel'.")

        self._print()
        self._print("This operation will overwrite existing configuration files on this system.\n")
        prompt = "Proceed with overwrite? (yes/no): "
        while True:
            answer = self.read_line(prompt).strip().lower()
            if answer in ("yes", "y"):
                return True
            if answer in ("no", "n", ""):
                return False
            prompt = "Please type 'yes' or 'no': "

    def confirm_compatibility(self, warning: str) -> bool:
        self._print()
        self._print(f"WARNING: {warning}\n")
        answer = self.read_line("Do you want to continue anyway? This may cause system instability. (yes/no): ")
        return answer.strip().lower() == "yes"

    def select_cluster_restore_mode(self) -> str:
        self._print()
        self._print("Cluster backup detected. Choose how to restore the cluster database:")
        self._print("  [1] SAFE: Do NOT write /var/lib/pve-cluster/config.db. Export cluster files only.")
        self._print("  [2] RECOVERY: Restore full cluster database (/var/lib/pve-cluster). "
                    "Use only when cluster is offline/isolated.")
        self._print("  [0] Exit")
        while True:
            choice = self.read_line("Choice: ").strip()
            if choice == "1":
                return CLUSTER_SAFE
            if choice == "2":
                return CLUSTER_RECOVERY
            if choice == "0":
                return CLUSTER_ABORT
            self._print("Please enter 1, 2, or 0.")

    def confirm_continue_without_safety_backup(self, cause: BaseException) -> bool:
        self._print()
        self._print(f"Safety backup failed: {cause}")
        return self.read_line("Continue without safety backup? (yes/no): ").strip().lower() == "yes"

    def confirm_continue_with_pbs_services_running(self) -> bool:
        self._print()
        self._print("WARNING: PBS services are still running. Continuing restore may lead to inconsistent state.")
        answer = self.read_line("Continue restore with PBS services still running? (y/N): ")
        return answer.strip().lower() in ("y", "yes")

    def confirm_action(self, title: str, message: str, timeout: float = 0,
                       default_yes: bool = False, question: str = "Proceed?") -> bool:
        """Yes/no question; an expired countdown answers No, Enter answers the default."""
        if title.strip():
            self._print(f"\n{title.strip()}")
        if message.strip():
            self._print(message.strip())
            self._print()
        hint = "[Y/n]" if default_yes else "[y/N]"
        if timeout <= 0:
            while True:
                answer = self.read_line(f"{question} {hint} ").strip().lower()
                if answer == "":
                    return default_yes
                if answer in ("y", "yes"):
                    return True
                if answer in ("n", "no"):
                    return False
                self._print("Please type yes or no.")

        default_label = "Yes" if default_yes else "No"
        self._print(f"Auto-skip in {int(timeout)}s (default: {default_label})... {question} {hint} ",
                    end="", err=True)
        line = self.read_line(timeout=timeout)
        self._print(err=True)
        if line is None:
            logger.info(f"No response within {int(timeout)}s; proceeding with No.")
            return False
        answer = line.strip().lower()
        if answer == "":
            return default_yes
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        logger.info(f"Unrecognized input {line.strip()!r}; proceeding with No.")
        return False

    def prompt_network_commit(self, remaining: float) -> bool:
        """True only when the commit phrase is typed before the window closes."""
        if remaining <= 0:
            return False
        self._print(f"Type {COMMIT_PHRASE} within {int(remaining)} seconds to keep the new network configuration.")
        line = self.read_line(f"Rollback in {int(remaining)}s... Type {COMMIT_PHRASE} to keep: ", timeout=remaining)
        if line is None:
            self._print()
            return False
        return line.strip().lower() == COMMIT_PHRASE.lower()


def ensure_writable_path(fs, ui, path: str, description: str) -> str:
    """Return a path that does not exist yet, asking the operator how to handle collisions."""
    current = posixpath.normpath(path)
    failure = ""
    while True:
        if not fs.exists(current):
            return current
        decision, new_path = ui.resolve_existing_path(current, description, failure)
        failure = ""
        if decision == DECISION_OVERWRITE:
            try:
                if fs.isdir(current) and not fs.islink(current):
                    fs.rmdir(current)
                else:
                    fs.remove(current)
            except OSError as e:
                failure = f"Failed to remove existing file: {e}"
                continue
            return current
        if decision == DECISION_NEW_PATH:
            current = new_path
            continue
        raise DecryptAborted()
