"""
Run Context
===========
Per-invocation execution parameters for a container run.

Fields
------
prefix : str
    Prepended to every output line when not in tty mode.
user : str
    Identity commands run as inside the container. Empty means image default.
privileged : bool
    Start the container privileged.
docker_in_docker : bool
    Bind-mount the runtime socket and grant the user access to it.
stdout, stderr : text sinks
    Receive command output. ``None`` falls back to the process streams.
stdin : readable
    Attached to user commands. Service commands never see it.
workdir : str
    Working directory for executed commands.
silent, debug, tty : bool
    Output flags. Debug echo is only active when ``debug and not silent``.
"""
from dataclasses import dataclass, replace
from typing import IO, Any, Optional, TextIO


@dataclass
class RunContext:
    prefix: str = ""
    user: str = ""
    privileged: bool = False
    docker_in_docker: bool = False

    stdout: Optional[TextIO] = None
    stderr: Optional[TextIO] = None
    stdin: Optional[IO[Any]] = None
    workdir: str = ""

    silent: bool = False
    debug: bool = False
    tty: bool = False

    @property
    def is_debug(self) -> bool:
        return not self.silent and self.debug

    def clone(self, **overrides: Any) -> "RunContext":
        """
        Copy of this context for a sub-operation.

        Output sinks and flags carry forward; stdin does not, so service
        commands (mkdir, adduser, chown) never consume the caller's input.
        ``overrides`` typically replaces ``user`` and ``workdir``.
        """
        return replace(self, stdin=None, **overrides)
