"""
Unit Tests — Registry
=====================
Reference parsing/resolution, credential lookup and auth resolution.
Docker is fully mocked.
"""
import base64
import json
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

from buildbox.core.errors import (
    CredentialError,
    FetchError,
    ImageNotFoundError,
    MissingCredentialsError,
    ParseError,
    RegistryAuthError,
    RegistryUnavailableError,
    UnsupportedCredentialError,
)
from buildbox.registry.auth import resolve_auth
from buildbox.registry.credentials import DockerConfigCredentialStore
from buildbox.registry.reference import (
    image_name_from_reference,
    parse_reference,
    registry_from_reference,
    resolve_reference,
)

DIGEST = "sha256:" + "a" * 64


def _store(authorization=None, error=None):
    store = MagicMock()
    if error is not None:
        store.resolve.side_effect = error
    else:
        store.resolve.return_value = authorization
    return store


def _basic(user_pass: str) -> str:
    return "Basic " + base64.b64encode(user_pass.encode()).decode()


# ---------------------------------------------------------------------------
# 1. Parsing
# ---------------------------------------------------------------------------
class TestParseReference:

    def test_bare_name_gets_hub_defaults(self):
        ref = parse_reference("ubuntu")
        assert ref.name == "index.docker.io/library/ubuntu"
        assert ref.reference == "index.docker.io/library/ubuntu:latest"
        assert ref.tag == "latest"
        assert not ref.is_resolved

    def test_legacy_hub_domain_normalized(self):
        ref = parse_reference("docker.io/foo/bar:1.0")
        assert ref.reference == "index.docker.io/foo/bar:1.0"

    def test_private_registry_with_port(self):
        ref = parse_reference("registry.local:5000/team/app:v2")
        assert ref.name == "registry.local:5000/team/app"
        assert ref.tag == "v2"

    def test_digest_reference_is_resolved(self):
        ref = parse_reference(f"quay.io/org/app@{DIGEST}")
        assert ref.digest == DIGEST
        assert ref.reference == f"quay.io/org/app@{DIGEST}"
        assert ref.is_resolved

    @pytest.mark.parametrize("bad", ["", " ubuntu", "Ubuntu", "foo:bad tag", "app@sha256:xyz", "foo:bar/baz"])
    def test_malformed_references_rejected(self, bad):
        with pytest.raises(ParseError):
            parse_reference(bad)

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_reference("UPPER")

    def test_registry_from_reference(self):
        assert registry_from_reference("ghcr.io/o/r:1") == "ghcr.io"
        assert registry_from_reference("ubuntu") == "index.docker.io"
        assert registry_from_reference("localhost/app") == "localhost"

    def test_image_name_from_reference(self):
        assert image_name_from_reference("docker.io/library/x:1") == "index.docker.io/library/x"


# ---------------------------------------------------------------------------
# 2. Resolution
# ---------------------------------------------------------------------------
class TestResolveReference:

    def _client(self, data=None, error=None):
        client = MagicMock()
        if error is not None:
            client.api.inspect_distribution.side_effect = error
        else:
            client.api.inspect_distribution.return_value = data
        return client

    def test_resolves_to_name_at_digest(self):
        client = self._client({"Descriptor": {"digest": DIGEST}})
        ref = resolve_reference("ubuntu:22.04", client=client, credential_store=_store(_basic("u:p")))
        assert ref.reference == f"index.docker.io/library/ubuntu@{DIGEST}"
        assert ref.is_resolved
        assert ref.tag == "22.04"
        _, kwargs = client.api.inspect_distribution.call_args
        assert kwargs["auth_config"]["username"] == "u"

    def test_missing_credentials_resolves_anonymously(self):
        client = self._client({"Descriptor": {"digest": DIGEST}})
        store = _store(error=MissingCredentialsError("none", "index.docker.io"))
        resolve_reference("ubuntu", client=client, credential_store=store)
        _, kwargs = client.api.inspect_distribution.call_args
        assert kwargs["auth_config"] is None

    def test_parse_error_before_network(self):
        client = self._client({})
        with pytest.raises(ParseError):
            resolve_reference("NOT VALID", client=client, credential_store=_store(_basic("u:p")))
        client.api.inspect_distribution.assert_not_called()

    def test_not_found(self):
        client = self._client(error=NotFound("missing", explanation="manifest unknown"))
        with pytest.raises(ImageNotFoundError):
            resolve_reference("ubuntu:nope", client=client, credential_store=_store(_basic("u:p")))

    def test_unauthorized(self):
        response = MagicMock(status_code=401)
        client = self._client(error=APIError("denied", response=response, explanation="unauthorized"))
        with pytest.raises(RegistryAuthError):
            resolve_reference("ubuntu", client=client, credential_store=_store(_basic("u:p")))

    def test_unreachable(self):
        client = self._client(error=RequestsConnectionError("refused"))
        with pytest.raises(RegistryUnavailableError):
            resolve_reference("ubuntu", client=client, credential_store=_store(_basic("u:p")))

    def test_missing_digest(self):
        client = self._client({"Descriptor": {}})
        with pytest.raises(FetchError, match="no digest"):
            resolve_reference("ubuntu", client=client, credential_store=_store(_basic("u:p")))


# ---------------------------------------------------------------------------
# 3. Credential store
# ---------------------------------------------------------------------------
class TestDockerConfigCredentialStore:

    def _resolve(self, entry=None, error=None):
        config = MagicMock()
        if error is not None:
            config.resolve_authconfig.side_effect = error
        else:
            config.resolve_authconfig.return_value = entry
        with patch("docker.auth.load_config", return_value=config) as load:
            result = DockerConfigCredentialStore(config_path="/tmp/config.json").resolve("ghcr.io")
        load.assert_called_once_with(config_path="/tmp/config.json")
        return result

    def test_plain_auths_entry(self):
        assert self._resolve({"username": "u", "password": "p", "serveraddress": "ghcr.io"}) == _basic("u:p")

    def test_credential_helper_entry(self):
        assert self._resolve({"Username": "u", "Password": "p", "ServerAddress": "ghcr.io"}) == _basic("u:p")

    def test_registry_token(self):
        assert self._resolve({"RegistryToken": "tok"}) == "Bearer tok"

    def test_identity_token_rejected(self):
        with pytest.raises(UnsupportedCredentialError, match="identity token"):
            self._resolve({"IdentityToken": "refresh-tok"})

    def test_missing(self):
        with pytest.raises(MissingCredentialsError):
            self._resolve(None)

    def test_unsupported_shape(self):
        with pytest.raises(UnsupportedCredentialError):
            self._resolve({"email": "x@example.com"})

    def test_helper_failure(self):
        with pytest.raises(CredentialError, match="credential helper failed"):
            self._resolve(error=DockerException("helper not found"))


# ---------------------------------------------------------------------------
# 4. Auth resolution
# ---------------------------------------------------------------------------
class TestResolveAuth:

    def test_basic_credentials(self):
        store = _store(_basic("alice:s3cret"))
        auth = resolve_auth("ghcr.io/org/app:1", store)
        store.resolve.assert_called_once_with("ghcr.io")
        assert auth.registry == "ghcr.io"
        assert auth.auth_config == {"username": "alice", "password": "s3cret", "serveraddress": "ghcr.io"}
        decoded = json.loads(base64.urlsafe_b64decode(auth.auth_header))
        assert decoded == auth.auth_config

    def test_password_containing_colon(self):
        auth = resolve_auth("ghcr.io/org/app", _store(_basic("alice:pa:ss")))
        assert auth.auth_config["password"] == "pa:ss"

    def test_bearer_token_passed_through(self):
        auth = resolve_auth("ghcr.io/org/app", _store("Bearer opaque-token"))
        assert auth.auth_config == {"registrytoken": "opaque-token"}

    def test_unsupported_scheme(self):
        with pytest.raises(UnsupportedCredentialError):
            resolve_auth("ghcr.io/org/app", _store("Digest abc"))

    def test_garbled_basic(self):
        with pytest.raises(CredentialError):
            resolve_auth("ghcr.io/org/app", _store("Basic !!!not-base64!!!"))

    def test_missing_credentials_not_downgraded(self):
        store = _store(error=MissingCredentialsError("none", "ghcr.io"))
        with pytest.raises(MissingCredentialsError) as exc:
            resolve_auth("ghcr.io/org/app", store)
        assert exc.value.reference == "ghcr.io/org/app"

    def test_parse_error_before_lookup(self):
        store = _store(_basic("u:p"))
        with pytest.raises(ParseError):
            resolve_auth("Bad Ref", store)
        store.resolve.assert_not_called()
