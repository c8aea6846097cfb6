"""
Repository access: listing and reading the files of a repository.
"""

import fnmatch
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional


class RepositoryAccessError(Exception):
    """The repository cannot be accessed. Fatal to a job attempt and never retried."""

    def __init__(self, repository: str, message: str):
        self.repository = repository
        super().__init__(f"{repository}: {message}")


class AccessDenied(RepositoryAccessError):
    """Private repository, or missing/invalid credential."""


class NotFound(RepositoryAccessError):
    """Repository (or a file in it) does not exist."""


class RepositorySource(ABC):
    """Capability to fetch a repository's file list and file contents."""

    @abstractmethod
    def list_files(self, repository: str) -> List[str]:
        """Return repository-relative POSIX paths."""

    @abstractmethod
    def read_file(self, repository: str, path: str) -> bytes:
        """Return the raw bytes of one file."""


class LocalRepositorySource(RepositorySource):
    """Repository source backed by a checked-out directory on disk."""

    def __init__(self, exclude_patterns: Optional[List[str]] = None, max_file_size: int = 1_000_000,
                 follow_symlinks: bool = False):
        """
        Initialize local repository source.

        Args:
            exclude_patterns: Glob patterns of paths to skip
            max_file_size: Files larger than this many bytes are not listed
            follow_symlinks: Whether symlinked files are listed
        """
        self.exclude_patterns = exclude_patterns or []
        self.max_file_size = max_file_size
        self.follow_symlinks = follow_symlinks

    def _root(self, repository: str) -> Path:
        root = Path(repository)
        if not root.is_dir():
            raise NotFound(repository, 'repository directory does not exist')
        if not os.access(root, os.R_OK | os.X_OK):
            raise AccessDenied(repository, 'repository directory is not readable')
        return root

    def list_files(self, repository: str) -> List[str]:
        """Collect all files under the repository root matching criteria."""
        root = self._root(repository)
        files = []
        try:
            for file_path in root.rglob('*'):
                if file_path.is_symlink() and not self.follow_symlinks:
                    continue
                if not file_path.is_file():
                    continue
                rel_path = file_path.relative_to(root).as_posix()
                if self._is_excluded(rel_path):
                    continue
                if file_path.stat().st_size > self.max_file_size:
                    continue
                files.append(rel_path)
        except PermissionError as e:
            raise AccessDenied(repository, str(e)) from e
        return sorted(files)

    def read_file(self, repository: str, path: str) -> bytes:
        root = self._root(repository)
        file_path = (root / path).resolve()
        if root.resolve() not in file_path.parents:
            raise NotFound(repository, f"{path} is outside the repository")
        try:
            return file_path.read_bytes()
        except FileNotFoundError as e:
            raise NotFound(repository, f"{path} does not exist") from e
        except PermissionError as e:
            raise AccessDenied(repository, f"{path} is not readable") from e

    def _is_excluded(self, rel_path: str) -> bool:
        """Simple glob pattern matching against the path and each of its directories."""
        parts = rel_path.split('/')
        for pattern in self.exclude_patterns:
            if fnmatch.fnmatch(rel_path, pattern):
                return True
            simple = pattern.replace('**/', '').rstrip('/*')
            if simple and any(fnmatch.fnmatch(part, simple) for part in parts[:-1]):
                return True
        return False
