"""
Image Reference Resolver
========================
Parses ``name[:tag]`` / ``name[@digest]`` image references and resolves them
to their canonical ``name@digest`` form.

Parsing is purely syntactic and never touches the network. Names are
normalized the way registries see them:

    ubuntu                    -> index.docker.io/library/ubuntu
    docker.io/foo/bar         -> index.docker.io/foo/bar
    registry.local:5000/a/b   -> registry.local:5000/a/b

Resolution asks the Docker daemon's distribution endpoint for the manifest
digest. Failures are reported as distinct ``FetchError`` subclasses and are
never retried here.
"""
import logging
import re
from typing import Optional

from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import RequestException

from buildbox.core.client import get_client
from buildbox.core.constants import DEFAULT_REGISTRY, DEFAULT_TAG, LEGACY_DEFAULT_REGISTRY
from buildbox.core.errors import (
    FetchError,
    ImageNotFoundError,
    MissingCredentialsError,
    ParseError,
    RegistryAuthError,
    RegistryUnavailableError,
)
from buildbox.models.image_reference import ImageReference

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Grammar (docker distribution reference)
# ---------------------------------------------------------------------------
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN_RE = re.compile(rf"^{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?$")
_PATH_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")

_NAME_MAX_LENGTH = 255


def _split_domain(name: str) -> tuple[str, str]:
    """Split a repository name into (registry, path) applying Docker Hub defaults."""
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        domain, path = first, rest
    else:
        domain, path = DEFAULT_REGISTRY, name
    if domain == LEGACY_DEFAULT_REGISTRY:
        domain = DEFAULT_REGISTRY
    if domain == DEFAULT_REGISTRY and "/" not in path:
        path = f"library/{path}"
    return domain, path


def parse_reference(reference: str) -> ImageReference:
    """
    Parse an image reference without network access.

    Raises
    ------
    ParseError
        When the string is not a valid ``name[:tag]`` or ``name@digest``.
    """
    if not reference or reference != reference.strip():
        raise ParseError(reference, "empty or padded reference")

    remainder, _, digest = reference.partition("@")
    if digest and not _DIGEST_RE.match(digest):
        raise ParseError(reference, f"invalid digest {digest!r}")

    name, tag = remainder, ""
    head, colon, candidate = remainder.rpartition(":")
    if colon and "/" not in candidate:
        name, tag = head, candidate
        if not _TAG_RE.match(tag):
            raise ParseError(reference, f"invalid tag {tag!r}")

    if not name or len(name) > _NAME_MAX_LENGTH:
        raise ParseError(reference, "invalid repository name length")

    domain, path = _split_domain(name)
    if not _DOMAIN_RE.match(domain):
        raise ParseError(reference, f"invalid registry {domain!r}")
    if not all(_PATH_COMPONENT_RE.match(part) for part in path.split("/")):
        raise ParseError(reference, "repository name must be lowercase alphanumerics separated by '.', '_', '__' or '-'")

    full_name = f"{domain}/{path}"
    if digest:
        return ImageReference(name=full_name, reference=f"{full_name}@{digest}", digest=digest, tag=tag)
    tag = tag or DEFAULT_TAG
    return ImageReference(name=full_name, reference=f"{full_name}:{tag}", tag=tag)


def image_name_from_reference(reference: str) -> str:
    """Return the normalized repository name of ``reference``."""
    return parse_reference(reference).name


def registry_from_reference(reference: str) -> str:
    """Return the registry host serving ``reference``."""
    return parse_reference(reference).name.split("/", 1)[0]


# ---------------------------------------------------------------------------
# Remote resolution
# ---------------------------------------------------------------------------
def _fetch_error(reference: str, e: APIError) -> FetchError:
    explanation = str(getattr(e, "explanation", "") or e)
    status = getattr(e, "status_code", None)
    lowered = explanation.lower()
    if isinstance(e, NotFound) or "manifest unknown" in lowered or "not found" in lowered:
        return ImageNotFoundError(f"image {reference!r} not found: {explanation}", reference, status=status)
    if status in (401, 403):
        return RegistryAuthError(f"access to {reference!r} denied: {explanation}", reference, status=status)
    return FetchError(f"reading image {reference!r}: {explanation}", reference, status=status)


def resolve_reference(reference: str, client=None, credential_store=None) -> ImageReference:
    """
    Resolve ``reference`` to its canonical ``name@digest`` form.

    Parameters
    ----------
    reference : str
        ``name[:tag]`` or ``name@digest``.
    client : docker.DockerClient | None
        Shared Docker client; ``get_client()`` when omitted.
    credential_store : CredentialStore | None
        Where registry credentials are looked up. Missing credentials fall
        back to an anonymous lookup.

    Raises
    ------
    ParseError
        Malformed reference (raised before any network access).
    ImageNotFoundError, RegistryAuthError, RegistryUnavailableError, FetchError
        Registry interaction failed.
    """
    from buildbox.registry.auth import resolve_auth

    parsed = parse_reference(reference)

    auth_config: Optional[dict] = None
    try:
        auth_config = resolve_auth(reference, credential_store).auth_config
    except MissingCredentialsError as e:
        logger.info("No registry credentials, resolving anonymously | reference=%s | registry=%s", reference, e.registry)

    client = client or get_client()
    try:
        data = client.api.inspect_distribution(reference, auth_config=auth_config)
    except APIError as e:
        raise _fetch_error(reference, e) from e
    except (DockerException, RequestException) as e:
        raise RegistryUnavailableError(f"registry unreachable for {reference!r}: {e}", reference) from e

    digest = ((data or {}).get("Descriptor") or {}).get("digest", "")
    if not digest:
        raise FetchError(f"registry returned no digest for {reference!r}", reference)

    resolved = ImageReference(name=parsed.name, reference=f"{parsed.name}@{digest}", digest=digest, tag=parsed.tag)
    logger.debug("Resolved image | reference=%s | canonical=%s", reference, resolved.reference)
    return resolved
