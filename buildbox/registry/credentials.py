"""
Registry Credential Store
=========================
Looks up already-configured registry credentials. Nothing here logs in or
prompts: the Docker CLI configuration (``auths``, ``credsStore`` and
``credHelpers`` in config.json) is the only source.

``resolve(registry)`` returns an HTTP Authorization value in one of the two
supported shapes:
    "Basic <base64(user:pass)>"
    "Bearer <registry token>"
"""
import base64
import logging
from typing import Optional, Protocol

import docker.auth
from docker.errors import DockerException

from buildbox.core.config import DOCKER_CONFIG_PATH
from buildbox.core.errors import CredentialError, MissingCredentialsError, UnsupportedCredentialError

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def resolve(self, registry: str) -> str:
        ...


class DockerConfigCredentialStore:
    """Credential store backed by docker's config.json and its credential helpers."""

    def __init__(self, config_path: Optional[str] = DOCKER_CONFIG_PATH) -> None:
        self.config_path = config_path

    def resolve(self, registry: str) -> str:
        try:
            config = docker.auth.load_config(config_path=self.config_path)
            entry = config.resolve_authconfig(registry)
        except DockerException as e:
            raise CredentialError(f"credential helper failed for registry {registry!r}: {e}", registry) from e

        if not entry:
            raise MissingCredentialsError(f"no credentials configured for registry {registry!r}", registry)

        # Plain auths use lowercase keys, credential helpers use capitalized ones
        fields = {k.lower(): v for k, v in entry.items() if v}
        if "username" in fields and "password" in fields:
            user_pass = f"{fields['username']}:{fields['password']}".encode("utf-8")
            logger.debug("Resolved basic credentials | registry=%s | user=%s", registry, fields["username"])
            return "Basic " + base64.b64encode(user_pass).decode("ascii")
        if "registrytoken" in fields:
            logger.debug("Resolved token credentials | registry=%s", registry)
            return "Bearer " + fields["registrytoken"]
        if "identitytoken" in fields:
            # OAuth refresh tokens are exchanged by the daemon, not sent as bearer tokens
            raise UnsupportedCredentialError(
                f"identity token credentials for registry {registry!r} are not supported", registry
            )
        raise UnsupportedCredentialError(
            f"credentials for registry {registry!r} have no username/password or token", registry
        )
