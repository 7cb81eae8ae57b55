"""File-system port and ignore rules shared by collection and watching."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import pathspec

logger = logging.getLogger(__name__)

# Directories never indexed, whatever .gitignore says.
BUILTIN_IGNORES = (
    "node_modules/", "vendor/", "dist/", ".git/", "build/", "coverage/",
    "__pycache__/", ".venv/", "venv/",
)


class IgnoreRules:
    """Built-in ignores plus the root's ``.gitignore``, matched relative to the root."""

    def __init__(self, root: str, patterns: Iterable[str] = ()) -> None:
        self.root = os.path.abspath(root)
        lines = list(BUILTIN_IGNORES) + [p for p in patterns if p.strip() and not p.lstrip().startswith("#")]
        self._spec = pathspec.GitIgnoreSpec.from_lines(lines)

    @classmethod
    def for_root(cls, root: str, fs: Optional["FileSystem"] = None) -> "IgnoreRules":
        fs = fs or LocalFileSystem()
        gitignore = os.path.join(root, ".gitignore")
        patterns: List[str] = []
        if fs.exists(gitignore):
            try:
                patterns = fs.read_file(gitignore).splitlines()
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not read %s: %s", gitignore, exc)
        return cls(root, patterns)

    def is_ignored(self, path: str) -> bool:
        rel = os.path.relpath(os.path.abspath(path), self.root)
        if rel.startswith(".."):
            return True
        return self._spec.match_file(Path(rel).as_posix())


class FileSystem(ABC):
    """Abstract access to source files."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Return the text of *path*."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Whether *path* exists."""

    @abstractmethod
    def glob(self, patterns: Sequence[str], cwd: str, ignore: Optional[IgnoreRules] = None) -> List[str]:
        """Absolute paths under *cwd* matching any of *patterns*, minus ignored ones."""


class LocalFileSystem(FileSystem):
    """The real disk."""

    def read_file(self, path: str) -> str:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def glob(self, patterns: Sequence[str], cwd: str, ignore: Optional[IgnoreRules] = None) -> List[str]:
        root = Path(cwd)
        found = set()
        for pattern in patterns:
            for match in root.glob(pattern):
                if not match.is_file():
                    continue
                path = os.path.abspath(str(match))
                if ignore is not None and ignore.is_ignored(path):
                    continue
                found.add(path)
        return sorted(found)
