"""
Worktree Registry
=================

JSON-array file stores for known worktrees (``.aidp/worktrees.json``) and
pull-request worktrees (``.aidp/pr_worktrees.json``).

The file is rewritten wholesale on every update. Reads that fail (missing
file, malformed JSON, wrong shape, I/O error) degrade to an empty registry
with a warning. Writes are read-modify-write without a file lock, so two
processes updating the same project may race.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import json

from aidp.logger import AidpLogger, get_logger


class JsonRegistry:
    """A list of entry dicts persisted as a pretty-printed JSON array."""

    def __init__(self, path: Union[str, Path], name: str = "registry", logger: Optional[AidpLogger] = None):
        self.path = Path(path)
        self.name = name
        self._logger = logger

    @property
    def logger(self) -> AidpLogger:
        return self._logger or get_logger()

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []

        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            self.logger.warn("worktree_registry", "registry_read_error", registry=self.name,
                             path=str(self.path), error=str(e))
            return []

        if not content.strip():
            return []

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self.logger.warn("worktree_registry", "invalid_registry_json", registry=self.name,
                             path=str(self.path), error=str(e))
            return []

        if not isinstance(data, list) or not all(isinstance(entry, dict) for entry in data):
            self.logger.warn("worktree_registry", "invalid_registry_structure", registry=self.name,
                             path=str(self.path))
            return []

        return data

    def write(self, entries: List[Dict[str, Any]]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(entries, indent=2) + "\n", encoding="utf-8")
            return True
        except OSError as e:
            self.logger.error("worktree_registry", "registry_save_failed", registry=self.name,
                              path=str(self.path), error=str(e))
            return False

    def find(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
        return next((entry for entry in self.read() if predicate(entry)), None)

    def upsert(self, entry: Dict[str, Any], key: str) -> None:
        """Replace any entry with the same ``key`` value, then append ``entry``."""
        entries = [existing for existing in self.read() if existing.get(key) != entry.get(key)]
        entries.append(entry)
        self.write(entries)

    def remove(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        """Drop matching entries and return them."""
        entries = self.read()
        removed = [entry for entry in entries if predicate(entry)]
        if removed:
            self.write([entry for entry in entries if not predicate(entry)])
        return removed
