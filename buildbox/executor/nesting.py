"""
Nesting Probe
Detects whether this process itself runs inside a container. Bind mounts
name host paths, so a nested run has to copy volumes in and out instead.
"""
import logging
import os

from buildbox.core.config import CGROUP_PATH, DOCKERENV_PATH

logger = logging.getLogger(__name__)

_CGROUP_MARKERS = ("docker", "kubepods", "containerd")


def is_running_in_container(cgroup_path: str = CGROUP_PATH, dockerenv_path: str = DOCKERENV_PATH) -> bool:
    if os.path.exists(dockerenv_path):
        return True
    try:
        with open(cgroup_path, encoding="utf-8", errors="replace") as f:
            content = f.read()
    except OSError as e:
        logger.debug("Cgroup metadata unreadable, assuming host | path=%s | error=%s", cgroup_path, e)
        return False
    return any(marker in content for marker in _CGROUP_MARKERS)
