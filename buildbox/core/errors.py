"""
Errors
======
Exception taxonomy shared by the builder, the registry resolvers and the
container runner.

Every error carries a human readable message plus a ``details`` dict with the
context needed to diagnose it without re-running (reference, path, container
id, command text). ``str(err)`` renders both.

Propagation:
    - ParseError / InvalidDockerfileError / NoTagsError are raised before any
      side effect happens.
    - StreamError never crosses a thread boundary as an exception; decoders
      wrap it into an ``Error`` event.
    - CommandError aborts the remaining command list.
    - ContainerRuntimeError wraps any failing call against the Docker API.
"""
from typing import Any, Optional


class BuildboxError(Exception):
    """Base class for every error raised by buildbox."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{k}={v}" for k, v in self.details.items() if v not in (None, ""))
        return f"{self.message} ({context})" if context else self.message


# ---------------------------------------------------------------------------
# Reference / registry errors
# ---------------------------------------------------------------------------
class ParseError(BuildboxError, ValueError):
    def __init__(self, reference: str, reason: str = "invalid reference format") -> None:
        super().__init__(f"parsing reference {reference!r}: {reason}", {"reference": reference})
        self.reference = reference


class FetchError(BuildboxError):
    """Registry interaction failed. Never retried internally."""

    def __init__(self, message: str, reference: str = "", **details: Any) -> None:
        super().__init__(message, {"reference": reference, **details})
        self.reference = reference


class ImageNotFoundError(FetchError):
    pass


class RegistryAuthError(FetchError):
    pass


class RegistryUnavailableError(FetchError):
    pass


class CredentialError(BuildboxError):
    def __init__(self, message: str, registry: str = "", reference: str = "") -> None:
        super().__init__(message, {"registry": registry, "reference": reference})
        self.registry = registry
        self.reference = reference


class MissingCredentialsError(CredentialError):
    pass


class UnsupportedCredentialError(CredentialError):
    pass


# ---------------------------------------------------------------------------
# Pre-flight validation
# ---------------------------------------------------------------------------
class InvalidDockerfileError(BuildboxError):
    def __init__(self, path: str, reason: str = "no FROM instruction found") -> None:
        super().__init__(f"invalid Dockerfile: {reason}", {"path": path})
        self.path = path


class NoTagsError(BuildboxError):
    def __init__(self, path: str = "") -> None:
        super().__init__("no tags provided, hence could not push image", {"path": path})


# ---------------------------------------------------------------------------
# Streaming / execution
# ---------------------------------------------------------------------------
class StreamError(BuildboxError):
    def __init__(self, message: str, stream: str = "", line: str = "") -> None:
        super().__init__(message, {"stream": stream, "line": line[:200]})
        self.stream = stream


class CommandError(BuildboxError):
    def __init__(self, command: str, exit_code: int, container_id: str = "") -> None:
        super().__init__(
            f"command exited with code {exit_code}",
            {"command": command, "container_id": container_id},
        )
        self.command = command
        self.exit_code = exit_code
        self.container_id = container_id


class ContainerRuntimeError(BuildboxError):
    def __init__(self, message: str, container_id: str = "", **details: Any) -> None:
        super().__init__(message, {"container_id": container_id, **details})
        self.container_id = container_id


class DirtyWorkTreeError(BuildboxError):
    def __init__(self, status: str, root: str = "") -> None:
        super().__init__(f"git tree is not clean:\n{status}", {"root": root})
        self.status = status


class GitError(BuildboxError):
    def __init__(self, command: str, stderr: str = "", root: str = "") -> None:
        super().__init__(f"git command failed: {stderr.strip() or command}", {"command": command, "root": root})
        self.command = command
        self.stderr = stderr
