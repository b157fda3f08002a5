"""
Image Builder / Pusher
======================
Builds an image from a Dockerfile and pushes its tags. Both operations hand
back an ``EventSession`` over the daemon's progress stream instead of
blocking until the daemon is done.

Build:
    - The Dockerfile must contain a FROM instruction (checked before any
      daemon call).
    - The directory holding the Dockerfile is the build context.
    - Layer cache is always disabled and the base image always re-pulled.
    - The first tag is applied by the build; remaining tags are applied to the
      image id as soon as the daemon reports it.

Push:
    - At least one tag is required.
    - Auth is resolved per tag (tags may target different registries), all of
      it before the first push starts.
    - One sub-stream per tag; the session expects one end marker per tag.
      A push the daemon refuses to start ends its sub-stream with an Error
      event; the other tags keep pushing.
"""
import logging
import os
import re
from typing import Optional

from docker.errors import DockerException
from docker.utils import parse_repository_tag
from requests.exceptions import RequestException

from buildbox.core.client import get_client
from buildbox.core.errors import ContainerRuntimeError, InvalidDockerfileError, NoTagsError
from buildbox.models.events import ContainerEvent, Metadata
from buildbox.models.image_reference import TagDigest
from buildbox.registry.auth import resolve_auth
from buildbox.registry.credentials import CredentialStore
from buildbox.stream.decoder import EventSession

logger = logging.getLogger(__name__)

_FROM_RE = re.compile(r"^\s*FROM\s+\S+", re.MULTILINE | re.IGNORECASE)


class Dockerfile:
    """
    A Dockerfile plus the tags its image is published under.

    Parameters
    ----------
    file_path : str
        Path to the Dockerfile; its directory is the build context.
    *tags : str
        Full image tags (``registry/repo:tag``).
    args : dict | None
        Build arguments.
    client : docker.DockerClient | None
        Shared client; resolved lazily via ``get_client`` when omitted.
    credential_store : CredentialStore | None
        Credential lookup used for pushes.
    """

    def __init__(
        self,
        file_path: str,
        *tags: str,
        args: Optional[dict[str, str]] = None,
        client=None,
        credential_store: Optional[CredentialStore] = None,
    ) -> None:
        self.file_path = file_path
        self.tags = list(tags)
        self.args = dict(args or {})
        self.credential_store = credential_store
        self.image_id = ""
        self.tag_digests: dict[str, TagDigest] = {}
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_client()
        return self._client

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def is_valid(self) -> bool:
        """True when the file contains at least one FROM instruction."""
        try:
            with open(self.file_path, encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError as e:
            raise InvalidDockerfileError(self.file_path, f"failed to read Dockerfile: {e}") from e
        return bool(_FROM_RE.search(content))

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def build(self) -> EventSession:
        """Start the build and return its event session."""
        if not self.is_valid():
            raise InvalidDockerfileError(self.file_path)

        context_dir = os.path.dirname(os.path.abspath(self.file_path))
        logger.info(
            "Building image | dockerfile=%s | context=%s | tags=%s", self.file_path, context_dir, self.tags
        )
        try:
            chunks = self.client.api.build(
                path=context_dir,
                dockerfile=os.path.basename(self.file_path),
                tag=self.tags[0] if self.tags else None,
                nocache=True,
                pull=True,
                rm=True,
                buildargs=self.args or None,
                decode=False,
            )
        except (DockerException, RequestException) as e:
            raise ContainerRuntimeError(f"starting build of {self.file_path}: {e}", path=self.file_path) from e

        session = EventSession(expected_end_of_stream=1, on_event=self._on_build_event)
        session.feed(chunks, stream=self.file_path)
        return session

    def _on_build_event(self, event: ContainerEvent) -> None:
        if not isinstance(event, Metadata) or not event.image_id:
            return
        self.image_id = event.image_id
        logger.info("Image built | image_id=%s", self.image_id)
        for full_tag in self.tags[1:]:
            repository, tag = parse_repository_tag(full_tag)
            self.client.api.tag(self.image_id, repository, tag=tag, force=True)
            logger.debug("Tagged image | image_id=%s | tag=%s", self.image_id, full_tag)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------
    def push(self) -> EventSession:
        """Push every tag; one sub-stream per tag in a single session."""
        if not self.tags:
            raise NoTagsError(self.file_path)

        auths = {full_tag: resolve_auth(full_tag, self.credential_store) for full_tag in self.tags}

        session = EventSession(expected_end_of_stream=len(self.tags), on_event=self._on_push_event)
        for full_tag in self.tags:
            repository, tag = parse_repository_tag(full_tag)
            logger.info("Pushing image | tag=%s | registry=%s", full_tag, auths[full_tag].registry)
            try:
                chunks = self.client.api.push(
                    repository,
                    tag=tag,
                    stream=True,
                    decode=False,
                    auth_config=auths[full_tag].auth_config,
                )
            except (DockerException, RequestException) as e:
                logger.warning("Push failed to start | tag=%s | error=%s", full_tag, e)
                err = ContainerRuntimeError(f"starting push of {full_tag}: {e}", tag=full_tag)
                err.__cause__ = e
                session.fail(err, stream=full_tag)
                continue
            session.feed(chunks, stream=full_tag)
        return session

    def _on_push_event(self, event: ContainerEvent) -> None:
        if isinstance(event, Metadata) and event.is_tag_digest:
            self.tag_digests[event.stream] = TagDigest(tag=event.tag, digest=event.digest, size=event.size)
            logger.info("Image pushed | tag=%s | digest=%s", event.stream, event.digest)
