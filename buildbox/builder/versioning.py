"""
Versioning
Image version strings derived from the release version and the git commit.
"""
import logging

from buildbox.core.errors import DirtyWorkTreeError
from buildbox.providers.git_provider import GitProvider

logger = logging.getLogger(__name__)


def full_version(version: str, git: GitProvider) -> str:
    """``<version>-<short hash>``, e.g. ``1.4.0-3f2a9c1``."""
    return f"{version}-{git.hash_short()}"


def check_work_tree(git: GitProvider) -> None:
    """Refuse to version a build from uncommitted changes."""
    clean, status = git.is_work_tree_clean()
    if not clean:
        logger.warning("Work tree is dirty | root=%s", getattr(git, "root", ""))
        raise DirtyWorkTreeError(status, getattr(git, "root", ""))
