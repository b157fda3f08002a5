"""
Constants
Centralised storage for fixed runtime values: container label, default
container command, username rules and Go file-mode bits.
"""
import re

# Label carried by every container a Run creates; value is the run id
CONTAINERS_LABEL_NAME = "BuildboxContainerID"

# Keeps the container alive between exec calls
DEFAULT_CONTAINER_COMMAND = "sleep 100000"

DEFAULT_DOCKER_SOCK_PATH = "/var/run/docker.sock"

VALID_USERNAME_REGEX = re.compile(r"^[a-z_]([a-z0-9_-]{0,31}|[a-z0-9_-]{0,30}\$)$")

ROOT_USER = "root"

# Bits of the Go os.FileMode reported in X-Docker-Container-Path-Stat
GO_MODE_DIR = 1 << 31
GO_MODE_SYMLINK = 1 << 27

# Default registry host when a reference names none
DEFAULT_REGISTRY = "index.docker.io"
LEGACY_DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"
