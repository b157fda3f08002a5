"""
Registry Auth Resolver
======================
Turns the stored credential for an image reference's registry into the
auth config the Docker daemon expects (``X-Registry-Auth``).

Supported credential shapes:
    Basic <base64(user:pass)>  -> {"username", "password", "serveraddress"}
    Bearer <token>             -> {"registrytoken": token}
Anything else is rejected. Nothing is cached: different references may live
on different registries.
"""
import base64
import binascii
import logging
from typing import Optional

import docker.auth

from buildbox.core.errors import CredentialError, UnsupportedCredentialError
from buildbox.models.registry_auth import RegistryAuth
from buildbox.registry.credentials import CredentialStore, DockerConfigCredentialStore
from buildbox.registry.reference import registry_from_reference

logger = logging.getLogger(__name__)


def _decode_basic(token: str, registry: str, reference: str) -> tuple[str, str]:
    # Accept both the standard and the url-safe alphabet
    normalized = token.strip().translate(str.maketrans("-_", "+/"))
    normalized += "=" * (-len(normalized) % 4)
    try:
        user_pass = base64.b64decode(normalized, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CredentialError(
            f"failed to decode Basic auth header values for registry {registry!r}: {e}", registry, reference
        ) from e
    username, sep, password = user_pass.partition(":")
    if not sep or not username:
        raise CredentialError(f"Basic credentials for registry {registry!r} are not user:password", registry, reference)
    return username, password


def encode_auth_header(auth_config: dict[str, str]) -> str:
    """Encode an auth config the way the daemon reads ``X-Registry-Auth``."""
    header = docker.auth.encode_header(auth_config)
    return header.decode("ascii") if isinstance(header, bytes) else header


def resolve_auth(reference: str, credential_store: Optional[CredentialStore] = None) -> RegistryAuth:
    """
    Resolve transport-ready registry auth for ``reference``.

    Raises
    ------
    ParseError
        ``reference`` is malformed.
    CredentialError
        No usable credential could be resolved (``MissingCredentialsError``
        when none is configured, ``UnsupportedCredentialError`` for unknown
        schemes). Never silently downgraded to anonymous access.
    """
    registry = registry_from_reference(reference)
    store = credential_store or DockerConfigCredentialStore()

    try:
        authorization = store.resolve(registry)
    except CredentialError as e:
        if not e.reference:
            e.reference = reference
            e.details["reference"] = reference
        raise

    scheme, _, token = (authorization or "").partition(" ")
    if scheme == "Basic":
        username, password = _decode_basic(token, registry, reference)
        auth_config = {"username": username, "password": password, "serveraddress": registry}
    elif scheme == "Bearer" and token:
        auth_config = {"registrytoken": token}
    else:
        raise UnsupportedCredentialError(
            f"unsupported auth scheme {scheme or '<empty>'!r} for registry {registry!r}", registry, reference
        )

    logger.debug("Resolved registry auth | reference=%s | registry=%s | scheme=%s", reference, registry, scheme)
    return RegistryAuth(registry=registry, auth_header=encode_auth_header(auth_config), auth_config=auth_config)
