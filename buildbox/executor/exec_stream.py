"""
Exec Streaming
==============
Runs one shell command inside a container through the exec API and pumps
its output into the run's sinks.

I/O handling:
    - stdout / stderr are written to the RunContext sinks (process streams
      when unset), each wrapped in a PrefixWriter unless in tty mode.
    - Without stdin the demultiplexed output stream is read directly.
    - With stdin the exec is attached over a raw socket; a pump thread copies
      stdin into it and half-closes the socket at EOF.
    - The command blocks until the remote process exits; its exit code is
      returned. SDK errors propagate to the caller.
"""
import codecs
import logging
import socket
import sys
import threading
from typing import IO, Any, Iterable, Optional

from docker.utils.socket import STDERR, frames_iter

from buildbox.core.constants import VALID_USERNAME_REGEX
from buildbox.models.run_context import RunContext
from buildbox.utils.prefix_writer import PrefixWriter

logger = logging.getLogger(__name__)

_STDIN_CHUNK_SIZE = 4096
# Bound on waiting for the stdin pump once output has ended
_STDIN_JOIN_TIMEOUT = 5.0


class _StreamSink:
    """Incrementally decodes one output stream into a text sink."""

    def __init__(self, sink) -> None:
        self.sink = sink
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def write(self, data: Optional[bytes]) -> None:
        if data:
            text = self._decoder.decode(data)
            if text:
                self.sink.write(text)

    def close(self) -> None:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.sink.write(tail)
        if hasattr(self.sink, "flush"):
            self.sink.flush()


def _sinks(run_ctx: RunContext) -> tuple[Any, Any]:
    stdout = run_ctx.stdout if run_ctx.stdout is not None else sys.stdout
    stderr = run_ctx.stderr if run_ctx.stderr is not None else sys.stderr
    if not run_ctx.tty:
        stdout = PrefixWriter(stdout, run_ctx.prefix)
        stderr = PrefixWriter(stderr, run_ctx.prefix)
    return stdout, stderr


def exec_user(run_ctx: RunContext) -> str:
    """The user an exec runs as; names failing the username rules fall back to the image default."""
    if run_ctx.user and VALID_USERNAME_REGEX.match(run_ctx.user):
        return run_ctx.user
    return ""


def _pump_stdin(stdin: IO[Any], raw_sock) -> None:
    source = getattr(stdin, "buffer", stdin)
    read = getattr(source, "read1", source.read)
    try:
        while True:
            data = read(_STDIN_CHUNK_SIZE)
            if not data:
                break
            if isinstance(data, str):
                data = data.encode("utf-8")
            raw_sock.sendall(data)
    except OSError as e:
        # The remote process may exit before consuming all input
        logger.debug("Stdin pump stopped | error=%s", e)
    finally:
        try:
            raw_sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug("Stdin half-close failed | error=%s", e)


def _demuxed_frames(output: Iterable[tuple[Optional[bytes], Optional[bytes]]]):
    for out, err in output:
        if out:
            yield 1, out
        if err:
            yield STDERR, err


def run_exec(api, container_id: str, command: str, run_ctx: RunContext, service: bool = False) -> int:
    """
    Execute ``command`` via ``/bin/sh -c`` and return its exit code.

    Parameters
    ----------
    api : docker.APIClient
        Low-level client (``client.api``).
    container_id : str
        Running container.
    command : str
        Shell command text; surrounding whitespace is stripped.
    run_ctx : RunContext
        Identity, working directory, sinks and output flags.
    service : bool
        Internal provisioning command: never echoed in debug mode and never
        attached to stdin.
    """
    command = command.strip()
    stdout, stderr = _sinks(run_ctx)

    if not service and run_ctx.is_debug:
        stdout.write(f"CMD `{command}`\n")

    stdin = None if service else run_ctx.stdin
    exec_id = api.exec_create(
        container_id,
        ["/bin/sh", "-c", command],
        stdout=True,
        stderr=True,
        stdin=stdin is not None,
        tty=run_ctx.tty,
        privileged=True,
        user=exec_user(run_ctx),
        workdir=run_ctx.workdir or None,
    )["Id"]
    logger.debug("Exec created | container=%s | exec_id=%s | service=%s", container_id, exec_id, service)

    out_sink, err_sink = _StreamSink(stdout), _StreamSink(stderr)
    pump = None
    try:
        if stdin is None:
            frames = _demuxed_frames(api.exec_start(exec_id, tty=run_ctx.tty, stream=True, demux=True))
        else:
            sock = api.exec_start(exec_id, tty=run_ctx.tty, socket=True)
            raw_sock = getattr(sock, "_sock", sock)
            pump = threading.Thread(target=_pump_stdin, args=(stdin, raw_sock), name="buildbox-stdin", daemon=True)
            pump.start()
            frames = frames_iter(sock, run_ctx.tty)

        for stream_id, data in frames:
            (err_sink if stream_id == STDERR else out_sink).write(data)
    finally:
        out_sink.close()
        err_sink.close()
        if pump is not None:
            pump.join(timeout=_STDIN_JOIN_TIMEOUT)

    exit_code = api.exec_inspect(exec_id).get("ExitCode")
    logger.debug("Exec finished | exec_id=%s | exit_code=%s", exec_id, exit_code)
    return int(exit_code) if exit_code is not None else -1
