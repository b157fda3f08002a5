"""
Git Provider
============
Read-only view of the repository the build runs from: commit hash and
work-tree cleanliness. Used by the versioning helpers.
"""
import logging
import os
import subprocess
from typing import Protocol

from buildbox.core.errors import GitError

logger = logging.getLogger(__name__)


class GitProvider(Protocol):
    def hash(self) -> str:
        ...

    def hash_short(self) -> str:
        ...

    def is_work_tree_clean(self) -> tuple[bool, str]:
        ...


class SubprocessGitProvider:
    """GitProvider backed by the ``git`` executable."""

    SHORT_HASH_LENGTH = 7

    def __init__(self, root: str = ".") -> None:
        self.root = os.path.abspath(root)

    @classmethod
    def discover(cls, path: str = ".") -> "SubprocessGitProvider":
        """Provider rooted at the top level of the work tree containing ``path``."""
        top = cls(path)._git("rev-parse", "--show-toplevel")
        return cls(top)

    def _git(self, *args: str) -> str:
        command = " ".join(("git",) + args)
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.root,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            logger.debug("Git command failed | cmd=%s | stderr=%s", command, e.stderr)
            raise GitError(command, e.stderr or "", self.root) from e
        except OSError as e:
            raise GitError(command, str(e), self.root) from e
        return result.stdout.strip()

    def hash(self) -> str:
        return self._git("rev-parse", "HEAD")

    def hash_short(self) -> str:
        return self.hash()[: self.SHORT_HASH_LENGTH]

    def is_work_tree_clean(self) -> tuple[bool, str]:
        """Return ``(clean, porcelain status)``."""
        status = self._git("status", "--porcelain")
        return not status, status
