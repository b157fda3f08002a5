"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    BUILDBOX_DOCKER_SOCK_PATH — Runtime socket bind-mounted for nested runs
                                (default: /var/run/docker.sock)
    BUILDBOX_STOP_TIMEOUT     — Seconds to wait for a graceful stop before
                                force-killing during teardown (default: 10)
    BUILDBOX_CGROUP_PATH      — Process metadata inspected by the nesting probe
                                (default: /proc/1/cgroup)
    BUILDBOX_DOCKERENV_PATH   — Marker file created by the runtime inside
                                containers (default: /.dockerenv)
    BUILDBOX_DOCKER_CONFIG    — Explicit docker config.json used for registry
                                credential lookup (default: docker's own search)
    BUILDBOX_LOG_LEVEL        — Logging level for setup_logging (default: INFO)
    BUILDBOX_LOG_DIR          — Directory for the persistent log file; empty
                                disables the file handler (default: logs)

Teardown Philosophy:
    Destroy always tries stop -> kill -> remove. The stop timeout bounds how
    long a well-behaved container gets to exit before it is killed.
"""
import os
from dotenv import load_dotenv

from buildbox.core.constants import DEFAULT_DOCKER_SOCK_PATH

load_dotenv()

DOCKER_SOCK_PATH = os.getenv("BUILDBOX_DOCKER_SOCK_PATH", DEFAULT_DOCKER_SOCK_PATH)
STOP_TIMEOUT_SECONDS = int(os.getenv("BUILDBOX_STOP_TIMEOUT", 10))

# Nesting probe inputs
CGROUP_PATH = os.getenv("BUILDBOX_CGROUP_PATH", "/proc/1/cgroup")
DOCKERENV_PATH = os.getenv("BUILDBOX_DOCKERENV_PATH", "/.dockerenv")

# Registry credentials
DOCKER_CONFIG_PATH = os.getenv("BUILDBOX_DOCKER_CONFIG") or None

# Logging
LOG_LEVEL = os.getenv("BUILDBOX_LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("BUILDBOX_LOG_DIR", "logs")
