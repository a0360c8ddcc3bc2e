"""
Unit Tests - Stage Executor
===========================
Test container lifecycle, image build and two-tag publish with a mocked
Docker client. No real Docker daemon is required to run these tests.
"""
import pytest
from unittest.mock import MagicMock, patch

from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError, ReadTimeout

from valencloud.core.config import RegistryCredentials
from valencloud.executor.stage_executor import (
    DockerStageExecutor,
    TEST_COMMAND,
    create_log_excerpt,
    qualified_repository,
    _consume_push_stream,
)
from valencloud.models.push_event import PushEvent
from valencloud.pipeline.errors import (
    BuildFailure,
    PublishFailure,
    TestFailure,
    BUILD_ERROR,
    MISSING_CREDENTIALS,
    PARTIAL_PUBLISH,
    PUSH_FAILED,
    REGISTRY_AUTH_FAILED,
    TAG_EXISTS,
    TESTS_FAILED,
    TEST_INFRA_ERROR,
    TEST_TIMEOUT,
)

EVENT = PushEvent(branch="main", commit_sha="abc123")
CREDS = RegistryCredentials(username="bot", token="s3cret")
DIGEST = "sha256:" + "a" * 64


def _push_ok(digest=DIGEST):
    return iter([
        {"status": "Pushing"},
        {"status": "abc123: digest: ..."},
        {"aux": {"Tag": "x", "Digest": digest, "Size": 1}},
    ])


@pytest.fixture
def client():
    c = MagicMock()
    container = MagicMock(short_id="c0ffee")
    container.wait.return_value = {"StatusCode": 0}
    container.logs.return_value = b"5 passed in 0.12s\n"
    c.containers.run.return_value = container
    c.images.get_registry_data.side_effect = NotFound("manifest unknown")
    c.images.push.side_effect = lambda *a, **kw: _push_ok()
    return c


@pytest.fixture
def executor(client, tmp_path):
    return DockerStageExecutor(
        workspace_path=str(tmp_path),
        repository="valencloud/hello-service",
        registry="",
        client=client,
    )


@pytest.fixture
def image():
    return MagicMock(id="sha256:img", short_id="sha256:img")


# ---------------------------------------------------------------------------
# 1. Helpers
# ---------------------------------------------------------------------------
class TestHelpers:

    def test_short_log_unchanged(self):
        assert create_log_excerpt("a\nb\nc") == "a\nb\nc"

    def test_long_log_truncated(self):
        log = "\n".join(f"line {i}" for i in range(200))
        excerpt = create_log_excerpt(log, head=5, tail=5)
        assert "line 0" in excerpt
        assert "line 199" in excerpt
        assert "(190 lines omitted)" in excerpt
        assert "line 100" not in excerpt

    def test_qualified_repository(self):
        assert qualified_repository("team/app", "") == "team/app"
        assert qualified_repository("team/app", "ghcr.io") == "ghcr.io/team/app"
        assert qualified_repository("ghcr.io/team/app", "ghcr.io/") == "ghcr.io/team/app"

    def test_push_stream_error_raises(self):
        with pytest.raises(Exception, match="denied"):
            _consume_push_stream(iter([{"status": "Pushing"}, {"error": "denied: requested access"}]))

    def test_push_stream_digest(self):
        assert _consume_push_stream(_push_ok()) == DIGEST


# ---------------------------------------------------------------------------
# 2. Test stage
# ---------------------------------------------------------------------------
class TestRunTests:

    def test_passing_suite(self, executor, client):
        result = executor.run_tests(EVENT)
        assert result.exit_code == 0
        assert "5 passed" in result.full_log
        assert result.environment_metadata["container_id"] == "c0ffee"
        client.containers.run.return_value.remove.assert_called_once_with(force=True)

    def test_fresh_isolated_environment(self, executor, client, tmp_path):
        executor.run_tests(EVENT)
        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["environment"] == {"CI": "true"}
        assert kwargs["volumes"] == {str(tmp_path): {"bind": "/workspace", "mode": "ro"}}
        assert kwargs["command"] == ["sh", "-c", TEST_COMMAND]
        assert "pip install --no-cache-dir" in TEST_COMMAND
        assert "pytest" in TEST_COMMAND

    def test_credentials_not_in_test_container(self, executor, client, monkeypatch):
        monkeypatch.setenv("REGISTRY_TOKEN", "s3cret")
        executor.run_tests(EVENT)
        assert "s3cret" not in repr(client.containers.run.call_args)

    def test_failing_suite(self, executor, client):
        client.containers.run.return_value.wait.return_value = {"StatusCode": 1}
        client.containers.run.return_value.logs.return_value = b"1 failed, 4 passed\n"
        with pytest.raises(TestFailure) as exc:
            executor.run_tests(EVENT)
        assert exc.value.reason == TESTS_FAILED
        assert "1 failed" in exc.value.log
        client.containers.run.return_value.remove.assert_called_once_with(force=True)

    def test_hung_suite_is_killed(self, executor, client):
        client.containers.run.return_value.wait.side_effect = ReadTimeout()
        with pytest.raises(TestFailure) as exc:
            executor.run_tests(EVENT)
        assert exc.value.reason == TEST_TIMEOUT
        client.containers.run.return_value.remove.assert_called_once_with(force=True)

    def test_missing_image(self, executor, client):
        client.containers.run.side_effect = ImageNotFound("no such image")
        with pytest.raises(TestFailure) as exc:
            executor.run_tests(EVENT)
        assert exc.value.reason == TEST_INFRA_ERROR

    def test_docker_api_error(self, executor, client):
        client.containers.run.side_effect = APIError("daemon down")
        with pytest.raises(TestFailure) as exc:
            executor.run_tests(EVENT)
        assert exc.value.reason == TEST_INFRA_ERROR

    def test_engine_unreachable(self, tmp_path):
        executor = DockerStageExecutor(workspace_path=str(tmp_path))
        with patch("valencloud.executor.stage_executor.docker.from_env",
                   side_effect=DockerException("Error while fetching server API version")):
            with pytest.raises(TestFailure) as exc:
                executor.run_tests(EVENT)
        assert exc.value.reason == TEST_INFRA_ERROR
        assert "server API version" in exc.value.message

    def test_connection_refused_on_start(self, executor, client):
        client.containers.run.side_effect = RequestsConnectionError("connection refused")
        with pytest.raises(TestFailure) as exc:
            executor.run_tests(EVENT)
        assert exc.value.reason == TEST_INFRA_ERROR


# ---------------------------------------------------------------------------
# 3. Build stage
# ---------------------------------------------------------------------------
class TestBuildImage:

    def test_build_tags_commit(self, executor, client, tmp_path):
        image = MagicMock(short_id="sha256:1234")
        client.images.build.return_value = (image, iter([{"stream": "Step 1/5"}]))
        assert executor.build_image(EVENT) is image
        kwargs = client.images.build.call_args.kwargs
        assert kwargs["path"] == str(tmp_path)
        assert kwargs["tag"] == "valencloud/hello-service:abc123"

    def test_build_error(self, executor, client):
        client.images.build.side_effect = BuildError(
            "COPY failed", [{"stream": "Step 3/5 : COPY x ."}, {"error": "COPY failed"}],
        )
        with pytest.raises(BuildFailure) as exc:
            executor.build_image(EVENT)
        assert exc.value.reason == BUILD_ERROR
        assert "COPY failed" in exc.value.log

    def test_build_api_error(self, executor, client):
        client.images.build.side_effect = APIError("daemon down")
        with pytest.raises(BuildFailure):
            executor.build_image(EVENT)

    def test_build_connection_lost(self, executor, client):
        client.images.build.side_effect = RequestsConnectionError("connection aborted")
        with pytest.raises(BuildFailure) as exc:
            executor.build_image(EVENT)
        assert exc.value.reason == BUILD_ERROR


# ---------------------------------------------------------------------------
# 4. Publish stage
# ---------------------------------------------------------------------------
class TestPublish:

    def test_pushes_sha_then_latest(self, executor, client, image):
        artifact = executor.publish(image, EVENT, CREDS)

        assert artifact.pushed_tags == ["abc123", "latest"]
        assert artifact.consistent
        assert [c.kwargs["tag"] for c in client.images.push.call_args_list] == ["abc123", "latest"]
        assert [c.kwargs["tag"] for c in image.tag.call_args_list] == ["abc123", "latest"]
        client.login.assert_called_once_with(username="bot", password="s3cret", registry=None)

    def test_missing_credentials(self, executor, client, image):
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, None)
        assert exc.value.reason == MISSING_CREDENTIALS
        client.images.push.assert_not_called()

    def test_login_failure(self, executor, client, image):
        client.login.side_effect = APIError("unauthorized")
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == REGISTRY_AUTH_FAILED
        client.images.push.assert_not_called()

    def test_existing_sha_tag_is_never_overwritten(self, executor, client, image):
        client.images.get_registry_data.side_effect = None
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == TAG_EXISTS
        client.images.push.assert_not_called()

    def test_first_push_fails(self, executor, client, image):
        client.images.push.side_effect = lambda *a, **kw: iter([{"error": "denied"}])
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == PUSH_FAILED
        assert exc.value.artifact.pushed_tags == []
        assert client.images.push.call_count == 1

    def test_latest_push_fails_after_sha(self, executor, client, image):
        streams = iter([_push_ok(), iter([{"error": "network unreachable"}])])
        client.images.push.side_effect = lambda *a, **kw: next(streams)
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == PARTIAL_PUBLISH
        assert exc.value.artifact.pushed_tags == ["abc123"]
        assert not exc.value.artifact.complete

    def test_digest_mismatch(self, executor, client, image):
        streams = iter([_push_ok(DIGEST), _push_ok("sha256:" + "b" * 64)])
        client.images.push.side_effect = lambda *a, **kw: next(streams)
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == PARTIAL_PUBLISH

    def test_login_connection_error(self, executor, client, image):
        client.login.side_effect = RequestsConnectionError("connection refused")
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == REGISTRY_AUTH_FAILED
        client.images.push.assert_not_called()

    def test_unanswered_tag_lookup_blocks_push(self, executor, client, image):
        client.images.get_registry_data.side_effect = APIError("500 Server Error: insufficient scope")
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == PUSH_FAILED
        assert "cannot verify" in exc.value.message
        assert exc.value.artifact.pushed_tags == []
        client.images.push.assert_not_called()
        image.tag.assert_not_called()

    def test_latest_connection_drops_midway(self, executor, client, image):
        def dropped():
            yield {"status": "Pushing"}
            raise RequestsConnectionError("connection aborted")

        streams = iter([_push_ok(), dropped()])
        client.images.push.side_effect = lambda *a, **kw: next(streams)
        with pytest.raises(PublishFailure) as exc:
            executor.publish(image, EVENT, CREDS)
        assert exc.value.reason == PARTIAL_PUBLISH
        assert exc.value.artifact.pushed_tags == ["abc123"]
        assert exc.value.artifact.digests == {"abc123": DIGEST}

    def test_artifact_records_image_id(self, executor, image):
        assert executor.publish(image, EVENT, CREDS).image_id == "sha256:img"
