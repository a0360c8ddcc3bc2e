"""
Stage Executor
==============
Runs the three pipeline stages against the local Docker engine.

    test     - ephemeral container, fresh dependency install, pytest
    build    - docker build of the source tree, tagged <repository>:<commit>
    publish  - registry login, push <commit> tag then latest

BOUNDARY RULES:
    - Executor ONLY executes a stage and reports what happened.
    - Executor NEVER decides what runs next - that is the Gate's job.
    - Executor raises a StageFailure subclass on failure; on success it
      returns the stage's output (ExecutionResult, image, artifact).
    - Registry credentials are an argument of publish() only. The test
      container gets CI=true and nothing else.

DOCKER STRATEGY (test stage):
    - One container per run, destroyed afterwards.
    - Workspace mounted read-only and copied inside the container, so local
      caches, virtualenvs and build outputs on the host are never reused.
    - Dependencies installed from scratch on every run.
    - Container killed when the timeout expires; a hung suite is a failure.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError, ReadTimeout, RequestException

from valencloud.core.config import (
    IMAGE_REPOSITORY,
    REGISTRY,
    RegistryCredentials,
    TEST_IMAGE,
    TEST_TIMEOUT_SECONDS,
)
from valencloud.models.published_artifact import PublishedArtifact
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

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution Result
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single stage execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure, -1 = infra error).
    full_log : str
        Full combined stdout + stderr.
    log_excerpt : str
        Abbreviated log (first + last N lines) for stage summaries.
    execution_time_seconds : float
        Wall clock duration of the execution.
    environment_metadata : dict
        Runtime info: image used, container ID, timeout applied.
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    environment_metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 20
_EXCERPT_TAIL_LINES = 40


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.
    Short logs are returned as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


def qualified_repository(repository: str = IMAGE_REPOSITORY, registry: str = REGISTRY) -> str:
    """Prefix the repository with the registry host unless it already carries one."""
    registry = registry.strip().rstrip("/")
    if not registry or repository.startswith(f"{registry}/"):
        return repository
    return f"{registry}/{repository}"


# ---------------------------------------------------------------------------
# Test stage container settings
# ---------------------------------------------------------------------------
_MEMORY_LIMIT = "1g"
_CPU_COUNT = 1
_WORKSPACE_MOUNT = "/workspace"

# Copy the read-only mount, install from scratch, run the suite
TEST_COMMAND = (
    f"cp -r {_WORKSPACE_MOUNT} /tmp/src && cd /tmp/src"
    " && pip install --no-cache-dir --quiet '.[test]'"
    " && python -m pytest -q -p no:cacheprovider"
)


class DockerStageExecutor:
    """
    Executes pipeline stages through the Docker SDK.

    The Docker client is created lazily so that constructing an executor
    never touches the engine.
    """

    def __init__(
        self,
        workspace_path: str,
        repository: str = IMAGE_REPOSITORY,
        registry: str = REGISTRY,
        test_image: str = TEST_IMAGE,
        test_timeout_seconds: int = TEST_TIMEOUT_SECONDS,
        client: Optional[docker.DockerClient] = None,
    ) -> None:
        self.workspace_path = workspace_path
        self.repository = qualified_repository(repository, registry)
        self.registry = registry
        self.test_image = test_image
        self.test_timeout_seconds = test_timeout_seconds
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    # ------------------------------------------------------------------
    # Test
    # ------------------------------------------------------------------
    def run_tests(self, event: PushEvent) -> ExecutionResult:
        """
        Run the test suite in an ephemeral container.

        Raises
        ------
        TestFailure
            Non-zero exit (TESTS_FAILED), timeout (TEST_TIMEOUT), or the
            container could not be started or the engine was unreachable
            (TEST_INFRA_ERROR).
        """
        result = ExecutionResult()
        start_time = time.monotonic()
        container = None

        logger.info(
            "Starting test container | image=%s | timeout=%ds | commit=%s",
            self.test_image, self.test_timeout_seconds, event.commit_sha,
        )
        try:
            container = self.client.containers.run(
                image=self.test_image,
                command=["sh", "-c", TEST_COMMAND],
                volumes={
                    self.workspace_path: {"bind": _WORKSPACE_MOUNT, "mode": "ro"},
                },
                environment={"CI": "true"},
                working_dir="/tmp",
                mem_limit=_MEMORY_LIMIT,
                nano_cpus=_CPU_COUNT * 1_000_000_000,
                name=f"valencloud-test-{event.commit_sha[:12]}-{int(time.time())}",
                labels={"project": "valencloud", "role": "test", "commit": event.commit_sha},
                detach=True,
            )

            try:
                wait_result = container.wait(timeout=self.test_timeout_seconds)
            except (ReadTimeout, RequestsConnectionError):
                result.full_log = self._container_log(container)
                raise TestFailure(
                    TEST_TIMEOUT,
                    f"test run exceeded {self.test_timeout_seconds}s and was killed",
                    log=create_log_excerpt(result.full_log),
                )

            result.exit_code = wait_result.get("StatusCode", -1)
            result.full_log = self._container_log(container)
            result.environment_metadata = {
                "image": self.test_image,
                "container_id": container.short_id,
                "timeout_applied": self.test_timeout_seconds,
            }

        except ImageNotFound:
            raise TestFailure(TEST_INFRA_ERROR, f"test image '{self.test_image}' not found")

        except APIError as e:
            raise TestFailure(TEST_INFRA_ERROR, f"Docker API error: {e}")

        except (DockerException, RequestException) as e:
            raise TestFailure(TEST_INFRA_ERROR, f"Docker engine unavailable: {e}")

        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                    logger.info("Test container %s destroyed", container.short_id)
                except (DockerException, RequestException):
                    logger.warning("Failed to remove test container", exc_info=True)

        result.execution_time_seconds = round(time.monotonic() - start_time, 3)
        result.log_excerpt = create_log_excerpt(result.full_log)

        logger.info(
            "Tests complete | exit=%d | time=%.2fs",
            result.exit_code, result.execution_time_seconds,
        )

        if result.exit_code != 0:
            raise TestFailure(
                TESTS_FAILED,
                f"test process exited with {result.exit_code}",
                log=result.log_excerpt,
            )
        return result

    @staticmethod
    def _container_log(container) -> str:
        try:
            return container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        except (DockerException, RequestException):
            logger.warning("Could not read container logs", exc_info=True)
            return ""

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def build_image(self, event: PushEvent):
        """
        Build the service image from the workspace, tagged <repository>:<commit>.

        Returns the docker Image. Raises BuildFailure.
        """
        tag = f"{self.repository}:{event.commit_sha}"
        logger.info("Building image %s from %s", tag, self.workspace_path)
        start_time = time.monotonic()

        try:
            image, build_logs = self.client.images.build(
                path=self.workspace_path,
                tag=tag,
                rm=True,
                forcerm=True,
                labels={"org.opencontainers.image.revision": event.commit_sha},
            )
        except BuildError as e:
            raise BuildFailure(BUILD_ERROR, e.msg, log=_join_build_log(e.build_log))
        except APIError as e:
            raise BuildFailure(BUILD_ERROR, f"Docker API error: {e}")
        except (DockerException, RequestException) as e:
            raise BuildFailure(BUILD_ERROR, f"Docker engine unavailable: {e}")

        logger.info(
            "Built %s (%s) in %.2fs",
            tag, image.short_id, time.monotonic() - start_time,
        )
        logger.debug("Build log:\n%s", _join_build_log(build_logs))
        return image

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------
    def publish(
        self,
        image,
        event: PushEvent,
        credentials: Optional[RegistryCredentials],
    ) -> PublishedArtifact:
        """
        Push the image under the commit tag, then under latest.

        The commit tag goes first and is never overwritten: if the registry
        already holds it, nothing is pushed. latest is only repointed once the
        commit tag is in place. If the registry cannot say whether the commit
        tag exists, nothing is pushed either. Any push error, including a
        connection dropped mid-stream, raises PublishFailure carrying the
        artifact with whatever tags did make it.
        """
        artifact = PublishedArtifact(
            repository=self.repository,
            commit_sha=event.commit_sha,
            image_id=str(getattr(image, "id", "") or ""),
        )

        if credentials is None:
            raise PublishFailure(
                MISSING_CREDENTIALS,
                "REGISTRY_USERNAME and REGISTRY_TOKEN must be set to publish",
                artifact=artifact,
            )

        auth_config = {"username": credentials.username, "password": credentials.token}
        try:
            self.client.login(
                username=credentials.username,
                password=credentials.token,
                registry=credentials.registry or None,
            )
        except (DockerException, RequestException) as e:
            raise PublishFailure(REGISTRY_AUTH_FAILED, f"registry login failed: {e}", artifact=artifact)

        reference = artifact.reference(event.commit_sha)
        try:
            exists = self._tag_exists(reference, auth_config)
        except (DockerException, RequestException) as e:
            # An unanswered lookup blocks the push
            raise PublishFailure(PUSH_FAILED, f"cannot verify whether {reference} exists: {e}", artifact=artifact)
        if exists:
            raise PublishFailure(TAG_EXISTS, f"{reference} already exists and is immutable", artifact=artifact)

        for tag in artifact.tags:
            try:
                image.tag(self.repository, tag=tag)
                digest = _consume_push_stream(self.client.images.push(
                    self.repository,
                    tag=tag,
                    stream=True,
                    decode=True,
                    auth_config=auth_config,
                ))
            except (DockerException, RequestException, _PushStreamError) as e:
                reason = PARTIAL_PUBLISH if artifact.pushed_tags else PUSH_FAILED
                logger.error(
                    "Push of %s failed (%s); pushed so far: %s",
                    artifact.reference(tag), reason, artifact.pushed_tags or "none",
                )
                raise PublishFailure(reason, f"push of {artifact.reference(tag)} failed: {e}", artifact=artifact)

            artifact.pushed_tags.append(tag)
            if digest:
                artifact.digests[tag] = digest
            logger.info("Pushed %s (%s)", artifact.reference(tag), digest or "no digest reported")

        if artifact.digests and not artifact.consistent:
            raise PublishFailure(
                PARTIAL_PUBLISH,
                f"tag digests differ: {artifact.digests}",
                artifact=artifact,
            )
        return artifact

    def _tag_exists(self, reference: str, auth_config: Dict[str, str]) -> bool:
        try:
            self.client.images.get_registry_data(reference, auth_config=auth_config)
        except NotFound:
            return False
        return True


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------
class _PushStreamError(Exception):
    """An error line reported inside the registry push stream."""


def _consume_push_stream(stream: Iterable[dict]) -> str:
    """Drain a decoded push stream; return the digest, raise on error lines."""
    digest = ""
    for chunk in stream:
        if "error" in chunk:
            raise _PushStreamError(chunk.get("error") or chunk.get("errorDetail"))
        aux = chunk.get("aux")
        if isinstance(aux, dict) and aux.get("Digest"):
            digest = aux["Digest"]
    return digest


def _join_build_log(build_log) -> str:
    lines = []
    for chunk in build_log or []:
        if isinstance(chunk, dict):
            text = chunk.get("stream") or chunk.get("error") or ""
        else:
            text = str(chunk)
        if text:
            lines.append(text.rstrip("\n"))
    return create_log_excerpt("\n".join(lines))
