"""
Container Runner
================
Runs a list of shell commands inside a throwaway container and tears it
down afterwards.

Lifecycle:
    destroy (stale containers of this run id)
      -> pull image if missing
      -> create (labeled with the run id, long sleep command)
      -> start
      -> provision user
      -> copy volumes in            (nested only)
      -> exec each command          (first failure aborts the rest)
      -> copy rw volumes back out   (nested only)
      -> destroy                    (always)

Nesting:
    On a host, volumes become bind mounts. When this process itself runs in a
    container, host paths mean nothing to the daemon, so volume contents are
    copied in through the archive API and read-write volumes are copied back.

Teardown:
    The post-run destroy runs on every exit path. Its errors never mask the
    run's own failure; they are kept in ``teardown_errors`` and logged. After
    a successful run the first teardown error is raised.
"""
import logging
import os
import posixpath
import shlex
import sys
import tarfile
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional, Union

from docker.errors import DockerException, NotFound
from docker.utils import parse_repository_tag
from requests.exceptions import RequestException

from buildbox.core.client import get_client
from buildbox.core.config import DOCKER_SOCK_PATH, STOP_TIMEOUT_SECONDS
from buildbox.core.constants import (
    CONTAINERS_LABEL_NAME,
    DEFAULT_CONTAINER_COMMAND,
    GO_MODE_SYMLINK,
    ROOT_USER,
    VALID_USERNAME_REGEX,
)
from buildbox.core.errors import (
    BuildboxError,
    CommandError,
    ContainerRuntimeError,
    MissingCredentialsError,
)
from buildbox.executor.archive import extract_archive, get_rebase_name, pack_path, resolve_link_target, write_archive
from buildbox.executor.exec_stream import exec_user, run_exec
from buildbox.executor.nesting import is_running_in_container
from buildbox.models.command_result import CommandResult
from buildbox.models.events import Progress
from buildbox.models.run_context import RunContext
from buildbox.models.volume import Volume
from buildbox.registry.auth import resolve_auth
from buildbox.registry.credentials import CredentialStore
from buildbox.stream.decoder import EventSession
from buildbox.utils.prefix_writer import PrefixWriter

logger = logging.getLogger(__name__)

_SDK_ERRORS = (DockerException, RequestException)
_MAX_TEARDOWN_WORKERS = 8
_DIFF_KIND_DELETED = 2


def direct_children(paths: Iterable[str], parent: str) -> list[str]:
    """Paths that are immediate children of ``parent`` (the parent itself and deeper paths excluded)."""
    prefix = posixpath.normpath(parent).rstrip("/") + "/"
    children = []
    for path in paths:
        if not path.startswith(prefix):
            continue
        rel = path[len(prefix):]
        if rel and "/" not in rel and path not in children:
            children.append(path)
    return children


def _split_base(path: str) -> str:
    if path == "." or path.endswith("/."):
        return "."
    return posixpath.basename(posixpath.normpath(path))


class Run:
    """
    One ephemeral container execution identified by ``run_id``.

    Parameters
    ----------
    run_id : str
        Label value and container name; containers carrying it are treated
        as owned by this run.
    reference : str
        Image to run.
    *volumes : Volume
        Host to container path mappings.
    env : dict | list | None
        Container environment.
    client : docker.DockerClient | None
        Shared client; ``get_client()`` when omitted.
    credential_store : CredentialStore | None
        Used when the image has to be pulled.
    nested_probe : callable | None
        Returns True when this process runs inside a container. Evaluated
        once per ``run()``.
    """

    def __init__(
        self,
        run_id: str,
        reference: str,
        *volumes: Volume,
        env: Optional[Union[dict[str, str], list[str]]] = None,
        client=None,
        credential_store: Optional[CredentialStore] = None,
        nested_probe: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.run_id = run_id
        self.reference = reference
        self.volumes = list(volumes)
        self.env = env
        self.credential_store = credential_store
        self.nested = False
        self.teardown_errors: list[BuildboxError] = []
        self._nested_probe = nested_probe or is_running_in_container
        self._client = client
        self._container_id = ""

    @property
    def client(self):
        if self._client is None:
            self._client = get_client()
        return self._client

    @property
    def container_id(self) -> str:
        return self._container_id

    def _set_container_id(self, container_id: str) -> None:
        if self._container_id:
            raise ContainerRuntimeError("container already created for this run", self._container_id, run_id=self.run_id)
        self._container_id = container_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def run(self, run_ctx: Optional[RunContext], *commands: str) -> list[CommandResult]:
        """
        Execute ``commands`` in a fresh container.

        Returns one CommandResult per command. Raises CommandError on the
        first non-zero exit (remaining commands are skipped) and
        ContainerRuntimeError on any failing daemon call. The container is
        destroyed on every path.
        """
        run_ctx = run_ctx or RunContext()
        self.teardown_errors = []

        self.destroy()

        succeeded = False
        try:
            self.nested = bool(self._nested_probe())
            self._ensure_image_pulled(run_ctx)
            self._create_container(run_ctx)
            self._start_container()
            self._ensure_user_exists(run_ctx)

            if self.nested:
                self._copy_volumes_to_container(run_ctx)

            results = [self._exec(run_ctx, command) for command in commands]

            if self.nested:
                self._copy_volumes_from_container(run_ctx)
            succeeded = True
            return results
        finally:
            self._teardown(succeeded)

    def _teardown(self, succeeded: bool) -> None:
        try:
            self.destroy()
        except BuildboxError as e:
            self.teardown_errors.append(e)
        finally:
            self._container_id = ""

        if not self.teardown_errors:
            return
        if succeeded:
            raise self.teardown_errors[0]
        for error in self.teardown_errors:
            logger.warning("Teardown failed after run error | run_id=%s | error=%s", self.run_id, error)

    def destroy(self) -> int:
        """
        Remove every container labeled with this run id, concurrently.

        Each removal is stop (grace period), kill, remove with volumes; all
        removals complete before the first error is raised. Returns the number
        of containers found.
        """
        label = f"{CONTAINERS_LABEL_NAME}={self.run_id}"
        try:
            containers = self.client.api.containers(all=True, filters={"label": label})
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"listing containers of run {self.run_id}: {e}", run_id=self.run_id) from e

        container_ids = [c["Id"] for c in containers or []]
        if not container_ids:
            return 0

        logger.info("Destroying containers | run_id=%s | count=%d", self.run_id, len(container_ids))
        with ThreadPoolExecutor(max_workers=min(len(container_ids), _MAX_TEARDOWN_WORKERS)) as pool:
            futures = [pool.submit(self._remove_container, cid) for cid in container_ids]
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise errors[0]
        return len(container_ids)

    def _remove_container(self, container_id: str) -> None:
        api = self.client.api
        # Stop and kill are best effort; the container may already be gone or stopped
        try:
            api.stop(container_id, timeout=STOP_TIMEOUT_SECONDS)
        except _SDK_ERRORS as e:
            logger.debug("Stop failed | container=%s | error=%s", container_id, e)
        try:
            api.kill(container_id, signal="KILL")
        except _SDK_ERRORS as e:
            logger.debug("Kill failed | container=%s | error=%s", container_id, e)
        try:
            api.remove_container(container_id, v=True, force=True)
        except NotFound:
            logger.debug("Container already removed | container=%s", container_id)
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"removing container: {e}", container_id, run_id=self.run_id) from e
        logger.debug("Container removed | container=%s", container_id)

    # ------------------------------------------------------------------
    # Image / container setup
    # ------------------------------------------------------------------
    def _ensure_image_pulled(self, run_ctx: RunContext) -> None:
        api = self.client.api
        try:
            images = api.images(filters={"reference": self.reference})
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"listing images: {e}", reference=self.reference) from e
        if images:
            logger.debug("Image present locally | reference=%s", self.reference)
            return

        auth_config = None
        try:
            auth_config = resolve_auth(self.reference, self.credential_store).auth_config
        except MissingCredentialsError as e:
            logger.info("No registry credentials, pulling anonymously | reference=%s | registry=%s", self.reference, e.registry)

        repository, tag = parse_repository_tag(self.reference)
        logger.info("Pulling image | reference=%s", self.reference)
        try:
            chunks = api.pull(repository, tag=tag, stream=True, decode=False, auth_config=auth_config)
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"pulling image: {e}", reference=self.reference) from e

        writer = None
        if not run_ctx.silent:
            writer = PrefixWriter(run_ctx.stdout if run_ctx.stdout is not None else sys.stdout, run_ctx.prefix)

        def show_progress(event) -> None:
            if writer is not None and isinstance(event, Progress) and event.message:
                writer.write(event.message)

        session = EventSession(expected_end_of_stream=1)
        session.feed(chunks, stream=self.reference)
        try:
            errors = session.subscribe(show_progress)
        finally:
            if writer is not None:
                writer.flush()
        if errors:
            raise ContainerRuntimeError(f"pulling image: {errors[0].message}", reference=self.reference)

    def _create_container(self, run_ctx: RunContext) -> None:
        api = self.client.api
        binds = []
        if run_ctx.docker_in_docker:
            binds.append(f"{DOCKER_SOCK_PATH}:{DOCKER_SOCK_PATH}")
        if not self.nested:
            binds.extend(v.as_bind() for v in self.volumes)

        logger.info("Starting container | image=%s | run_id=%s | nested=%s", self.reference, self.run_id, self.nested)
        try:
            host_config = api.create_host_config(
                binds=binds or None,
                privileged=run_ctx.privileged,
                network_mode="default",
            )
            created = api.create_container(
                image=self.reference,
                command=shlex.split(DEFAULT_CONTAINER_COMMAND),
                entrypoint=[],
                environment=self.env or None,
                labels={CONTAINERS_LABEL_NAME: self.run_id},
                host_config=host_config,
                name=self.run_id,
            )
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"creating container: {e}", reference=self.reference, run_id=self.run_id) from e
        self._set_container_id(created["Id"])

    def _start_container(self) -> None:
        try:
            self.client.api.start(self.container_id)
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"starting container: {e}", self.container_id) from e
        logger.debug("Container started | container=%s", self.container_id)

    def _ensure_user_exists(self, run_ctx: RunContext) -> None:
        user = run_ctx.user
        if not user or not VALID_USERNAME_REGEX.match(user):
            return
        root_ctx = run_ctx.clone(user=ROOT_USER, workdir="/")

        if user != ROOT_USER:
            home = f"/home/{user}"
            # Alpine (busybox adduser), Debian (adduser) and plain useradd
            self._exec(
                root_ctx,
                f"id -u {user} >/dev/null 2>&1 || "
                f"adduser -D {user} >/dev/null 2>&1 || "
                f'adduser --disabled-password --gecos "" {user} >/dev/null 2>&1 || '
                f"useradd -m {user} >/dev/null 2>&1",
                service=True,
            )
            self._exec(root_ctx, f"mkdir -p {home} && chown -R {user}:{user} {home}", service=True)

        if run_ctx.docker_in_docker:
            self._exec(root_ctx, f"chmod +rx {shlex.quote(DOCKER_SOCK_PATH)}", service=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _exec(self, run_ctx: RunContext, command: str, service: bool = False) -> CommandResult:
        command = command.strip()
        try:
            exit_code = run_exec(self.client.api, self.container_id, command, run_ctx, service=service)
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"executing command: {e}", self.container_id, command=command) from e
        if exit_code != 0:
            logger.info("Command failed | container=%s | exit_code=%d", self.container_id, exit_code)
            raise CommandError(command, exit_code, self.container_id)
        return CommandResult(command=command, exit_code=exit_code)

    # ------------------------------------------------------------------
    # Copying
    # ------------------------------------------------------------------
    def _echo(self, run_ctx: RunContext, text: str) -> None:
        if run_ctx.is_debug:
            sink = run_ctx.stdout if run_ctx.stdout is not None else sys.stdout
            sink.write(text)

    def copy_to_container(self, run_ctx: RunContext, host_path: str, container_path: str) -> None:
        """Copy a host file or directory to ``container_path`` inside the running container."""
        self._echo(run_ctx, f"COPY {host_path} {self.container_id}:{container_path}\n")
        if not os.path.exists(host_path):
            raise ContainerRuntimeError(f"path {host_path} does not exist on the host", self.container_id, path=host_path)

        is_dir = os.path.isdir(host_path)
        src_name = os.path.basename(host_path.rstrip(os.sep))
        dst_name = posixpath.basename(container_path.rstrip("/"))
        dst_dir = container_path if is_dir else (posixpath.dirname(container_path.rstrip("/")) or "/")
        root_ctx = run_ctx.clone(user=ROOT_USER, workdir="/")

        if dst_dir != DOCKER_SOCK_PATH:
            mkdir_cmd = f"mkdir -p {shlex.quote(dst_dir)}"
            user = exec_user(run_ctx)
            if user and user != ROOT_USER:
                mkdir_cmd += f" && chown {user}:{user} {shlex.quote(dst_dir)}"
            self._exec(root_ctx, mkdir_cmd, service=True)

        logger.debug("Copying into container | container=%s | src=%s | dst=%s", self.container_id, host_path, dst_dir)
        try:
            with pack_path(host_path) as archive_file:
                accepted = self.client.api.put_archive(self.container_id, dst_dir, archive_file)
        except OSError as e:
            raise ContainerRuntimeError(f"archiving {host_path}: {e}", self.container_id, path=host_path) from e
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"copying into container: {e}", self.container_id, path=host_path) from e
        if not accepted:
            raise ContainerRuntimeError("daemon rejected archive", self.container_id, path=host_path)

        if not is_dir and dst_name != src_name:
            src = shlex.quote(posixpath.join(dst_dir, src_name))
            dst = shlex.quote(posixpath.join(dst_dir, dst_name))
            self._exec(root_ctx, f"mv {src} {dst}", service=True)

    def copy_from_container(self, run_ctx: RunContext, container_path: str, host_path: str) -> None:
        """
        Copy ``container_path`` out of the running container into the
        ``host_path`` directory. Symbolic links are followed and the copied
        entries keep the requested name. ``host_path == "-"`` writes the raw
        tar archive to the stdout sink instead.
        """
        self._echo(run_ctx, f"COPY {self.container_id}:{container_path} {host_path}\n")
        api = self.client.api
        rebase_name = ""
        try:
            chunks, stat = api.get_archive(self.container_id, container_path)
            if int((stat or {}).get("mode") or 0) & GO_MODE_SYMLINK:
                for _ in chunks:
                    pass
                target = resolve_link_target(container_path, stat.get("linkTarget", ""))
                container_path, rebase_name = get_rebase_name(container_path, target)
                logger.debug("Following symlink | target=%s | rebase=%s", container_path, rebase_name)
                chunks, stat = api.get_archive(self.container_id, container_path)

            if host_path == "-":
                write_archive(chunks, run_ctx.stdout if run_ctx.stdout is not None else sys.stdout)
                return
            extract_archive(chunks, host_path, _split_base(container_path), rebase_name)
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"copying from container: {e}", self.container_id, path=container_path) from e
        except (OSError, tarfile.TarError) as e:
            raise ContainerRuntimeError(f"extracting {container_path}: {e}", self.container_id, path=host_path) from e

    def _copy_volumes_to_container(self, run_ctx: RunContext) -> None:
        logger.info("Nested run, copying volumes into container | container=%s", self.container_id)
        for volume in self.volumes:
            self.copy_to_container(run_ctx, volume.host_path, volume.container_path)

    def _copy_volumes_from_container(self, run_ctx: RunContext) -> None:
        logger.info("Nested run, copying volumes from container | container=%s", self.container_id)
        try:
            changes = self.client.api.diff(self.container_id) or []
        except _SDK_ERRORS as e:
            raise ContainerRuntimeError(f"diffing container: {e}", self.container_id) from e

        # Deleted entries have nothing to copy
        changed_paths = [c["Path"] for c in changes if c.get("Kind") != _DIFF_KIND_DELETED]
        for volume in self.volumes:
            if not volume.mode.is_rw:
                continue
            for path in direct_children(changed_paths, volume.container_path):
                self.copy_from_container(run_ctx, path, volume.host_path)
