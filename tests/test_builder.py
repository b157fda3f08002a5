"""
Unit Tests — Image Builder / Pusher
===================================
Dockerfile validation, build and push sessions, tag digests and the
versioning helpers. All with mocked Docker and git.
"""
import base64
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError

from buildbox.builder.dockerfile import Dockerfile
from buildbox.builder.versioning import check_work_tree, full_version
from buildbox.core.errors import (
    DirtyWorkTreeError,
    GitError,
    InvalidDockerfileError,
    MissingCredentialsError,
    NoTagsError,
)
from buildbox.providers.git_provider import SubprocessGitProvider


def _lines(*records):
    return iter([(json.dumps(r) + "\n").encode() for r in records])


def _store():
    store = MagicMock()
    store.resolve.return_value = "Basic " + base64.b64encode(b"ci:token").decode()
    return store


@pytest.fixture
def dockerfile_path(tmp_path):
    path = tmp_path / "Dockerfile"
    path.write_text("# syntax comment\nFROM alpine:3.19\nRUN echo hi\n")
    return str(path)


# ---------------------------------------------------------------------------
# 1. Validation
# ---------------------------------------------------------------------------
class TestDockerfileValidation:

    def test_valid_with_from(self, dockerfile_path):
        assert Dockerfile(dockerfile_path, client=MagicMock()).is_valid() is True

    def test_lowercase_from_accepted(self, tmp_path):
        path = tmp_path / "Dockerfile"
        path.write_text("from alpine\n")
        assert Dockerfile(str(path), client=MagicMock()).is_valid() is True

    def test_missing_from(self, tmp_path):
        path = tmp_path / "Dockerfile"
        path.write_text("RUN echo hi\n")
        assert Dockerfile(str(path), client=MagicMock()).is_valid() is False

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(InvalidDockerfileError):
            Dockerfile(str(tmp_path / "missing"), client=MagicMock()).is_valid()

    def test_build_refuses_invalid_before_daemon_call(self, tmp_path):
        path = tmp_path / "Dockerfile"
        path.write_text("RUN echo hi\n")
        client = MagicMock()
        with pytest.raises(InvalidDockerfileError):
            Dockerfile(str(path), "app:1", client=client).build()
        client.api.build.assert_not_called()


# ---------------------------------------------------------------------------
# 2. Build
# ---------------------------------------------------------------------------
class TestBuild:

    def test_build_sets_image_id(self, dockerfile_path, tmp_path):
        client = MagicMock()
        client.api.build.return_value = _lines({"stream": "Step 1/2 : FROM alpine\n"}, {"aux": {"ID": "sha256:img"}})
        dockerfile = Dockerfile(dockerfile_path, "ghcr.io/o/app:1.0", args={"VERSION": "1.0"}, client=client)

        session = dockerfile.build()
        errors = session.wait()

        assert errors == []
        assert session.expected_end_of_stream == 1
        assert dockerfile.image_id == "sha256:img"
        _, kwargs = client.api.build.call_args
        assert kwargs["path"] == str(tmp_path)
        assert kwargs["dockerfile"] == "Dockerfile"
        assert kwargs["tag"] == "ghcr.io/o/app:1.0"
        assert kwargs["nocache"] is True
        assert kwargs["pull"] is True
        assert kwargs["buildargs"] == {"VERSION": "1.0"}

    def test_extra_tags_applied_to_image(self, dockerfile_path):
        client = MagicMock()
        client.api.build.return_value = _lines({"aux": {"ID": "sha256:img"}})
        dockerfile = Dockerfile(dockerfile_path, "ghcr.io/o/app:1.0", "ghcr.io/o/app:latest", client=client)

        dockerfile.build().wait()

        client.api.tag.assert_called_once_with("sha256:img", "ghcr.io/o/app", tag="latest", force=True)

    def test_build_error_reported_to_listener(self, dockerfile_path):
        client = MagicMock()
        client.api.build.return_value = _lines({"stream": "Step 1/2"}, {"errorDetail": {"message": "RUN failed"}})
        dockerfile = Dockerfile(dockerfile_path, client=client)

        errors = dockerfile.build().wait()

        assert [e.message for e in errors] == ["RUN failed"]
        assert dockerfile.image_id == ""


# ---------------------------------------------------------------------------
# 3. Push
# ---------------------------------------------------------------------------
class TestPush:

    def test_no_tags(self, dockerfile_path):
        client = MagicMock()
        with pytest.raises(NoTagsError):
            Dockerfile(dockerfile_path, client=client).push()
        client.api.push.assert_not_called()

    def test_one_sub_stream_per_tag(self, dockerfile_path):
        client = MagicMock()

        def push(repository, tag=None, **kwargs):
            return _lines({"status": "Pushing"}, {"aux": {"Tag": tag, "Digest": f"sha256:{tag}", "Size": 42}})

        client.api.push.side_effect = push
        store = _store()
        tags = ["ghcr.io/o/app:1.0", "registry.local:5000/app:1.0"]
        dockerfile = Dockerfile(dockerfile_path, *tags, client=client, credential_store=store)

        session = dockerfile.push()
        errors = session.wait()

        assert errors == []
        assert session.expected_end_of_stream == 2
        assert set(dockerfile.tag_digests) == set(tags)
        assert dockerfile.tag_digests["ghcr.io/o/app:1.0"].digest == "sha256:1.0"
        assert dockerfile.tag_digests["ghcr.io/o/app:1.0"].size == 42
        assert [c.args[0] for c in store.resolve.call_args_list] == ["ghcr.io", "registry.local:5000"]
        _, kwargs = client.api.push.call_args_list[0]
        assert kwargs["auth_config"]["username"] == "ci"

    def test_missing_credentials_fail_before_any_push(self, dockerfile_path):
        client = MagicMock()
        store = MagicMock()
        store.resolve.side_effect = MissingCredentialsError("none", "ghcr.io")
        with pytest.raises(MissingCredentialsError):
            Dockerfile(dockerfile_path, "ghcr.io/o/app:1", client=client, credential_store=store).push()
        client.api.push.assert_not_called()

    def test_push_that_fails_to_start_keeps_other_tags(self, dockerfile_path):
        client = MagicMock()
        client.api.push.side_effect = [
            _lines({"aux": {"Tag": "1", "Digest": "sha256:one"}}),
            APIError("boom"),
        ]
        dockerfile = Dockerfile(dockerfile_path, "ghcr.io/o/app:1", "ghcr.io/o/app:2", client=client, credential_store=_store())

        session = dockerfile.push()
        errors = session.wait()

        assert session.drained
        assert len(errors) == 1
        assert errors[0].stream == "ghcr.io/o/app:2"
        assert "boom" in errors[0].message
        assert list(dockerfile.tag_digests) == ["ghcr.io/o/app:1"]

    def test_failed_push_does_not_stop_other_tags(self, dockerfile_path):
        client = MagicMock()
        client.api.push.side_effect = [
            _lines({"error": "denied: requested access to the resource is denied"}),
            _lines({"aux": {"Tag": "2", "Digest": "sha256:two"}}),
        ]
        dockerfile = Dockerfile(dockerfile_path, "ghcr.io/o/app:1", "ghcr.io/o/app:2", client=client, credential_store=_store())

        errors = dockerfile.push().wait()

        assert len(errors) == 1
        assert list(dockerfile.tag_digests) == ["ghcr.io/o/app:2"]


# ---------------------------------------------------------------------------
# 4. Versioning / git provider
# ---------------------------------------------------------------------------
class TestVersioning:

    def test_full_version(self):
        git = MagicMock()
        git.hash_short.return_value = "3f2a9c1"
        assert full_version("1.4.0", git) == "1.4.0-3f2a9c1"

    def test_clean_tree_passes(self):
        git = MagicMock()
        git.is_work_tree_clean.return_value = (True, "")
        check_work_tree(git)

    def test_dirty_tree_raises_with_status(self):
        git = MagicMock()
        git.is_work_tree_clean.return_value = (False, " M app.py")
        with pytest.raises(DirtyWorkTreeError) as exc:
            check_work_tree(git)
        assert exc.value.status == " M app.py"


class TestSubprocessGitProvider:

    @patch("subprocess.run")
    def test_hash_short(self, mock_run):
        mock_run.return_value = MagicMock(stdout="3f2a9c1d8e7b6a5\n")
        provider = SubprocessGitProvider("/repo")
        assert provider.hash_short() == "3f2a9c1"
        assert mock_run.call_args.args[0] == ["git", "rev-parse", "HEAD"]

    @patch("subprocess.run")
    def test_work_tree_status(self, mock_run):
        mock_run.return_value = MagicMock(stdout="?? new.txt\n")
        clean, status = SubprocessGitProvider("/repo").is_work_tree_clean()
        assert clean is False
        assert status == "?? new.txt"

    @patch("subprocess.run")
    def test_git_failure(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(128, "git", stderr="not a git repository")
        with pytest.raises(GitError, match="not a git repository"):
            SubprocessGitProvider("/tmp").hash()

    @patch("subprocess.run")
    def test_discover_uses_top_level(self, mock_run):
        mock_run.return_value = MagicMock(stdout="/repo\n")
        assert SubprocessGitProvider.discover("/repo/sub").root == "/repo"
