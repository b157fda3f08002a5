"""
Docker Client
=============
Single long-lived Docker connection shared by the builder, the resolvers and
the container runner. The SDK client is safe for concurrent use, which the
fan-out push and destroy operations rely on.

Components accept an explicit ``client`` argument; ``get_client`` is only the
fallback when none is injected.
"""
import logging
import threading
from typing import Optional

import docker
from docker.errors import DockerException

from buildbox.core.errors import ContainerRuntimeError

logger = logging.getLogger(__name__)

_client: Optional[docker.DockerClient] = None
_client_lock = threading.Lock()


def get_client() -> docker.DockerClient:
    """Return the shared Docker client, connecting on first use."""
    global _client
    with _client_lock:
        if _client is None:
            try:
                _client = docker.from_env()
            except DockerException as e:
                raise ContainerRuntimeError(f"Failed to connect to Docker daemon: {e}") from e
            logger.debug("Docker client connected | base_url=%s", _client.api.base_url)
        return _client

