"""
Pipeline Errors
===============
Exception hierarchy for the pipeline gate, plus standardised reason
constants so that stage results carry clean, machine-readable causes.

    PipelineError
    ├── InvalidTransition      - gate driven out of order (programming error)
    └── StageFailure           - a stage failed; the run halts
        ├── TestFailure
        ├── BuildFailure
        └── PublishFailure     - carries the (possibly partial) artifact
"""
from typing import Optional

from valencloud.models.published_artifact import PublishedArtifact


# ---------------------------------------------------------------------------
# Failure Reason Constants
# ---------------------------------------------------------------------------
TESTS_FAILED = "TESTS_FAILED"
TEST_TIMEOUT = "TEST_TIMEOUT"
TEST_INFRA_ERROR = "TEST_INFRA_ERROR"
BUILD_ERROR = "BUILD_ERROR"
MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
REGISTRY_AUTH_FAILED = "REGISTRY_AUTH_FAILED"
TAG_EXISTS = "TAG_EXISTS"
PUSH_FAILED = "PUSH_FAILED"
PARTIAL_PUBLISH = "PARTIAL_PUBLISH"

ALL_FAILURE_REASONS = frozenset({
    TESTS_FAILED,
    TEST_TIMEOUT,
    TEST_INFRA_ERROR,
    BUILD_ERROR,
    MISSING_CREDENTIALS,
    REGISTRY_AUTH_FAILED,
    TAG_EXISTS,
    PUSH_FAILED,
    PARTIAL_PUBLISH,
})


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class InvalidTransition(PipelineError):
    """Raised when a gate transition is requested from the wrong state."""


class StageFailure(PipelineError):
    stage = ""

    def __init__(self, reason: str, message: str = "", log: str = "") -> None:
        self.reason = reason
        self.message = message or reason
        self.log = log
        super().__init__(f"[{self.stage}] {reason}: {self.message}")


class TestFailure(StageFailure):
    __test__ = False  # not a pytest test class
    stage = "test"


class BuildFailure(StageFailure):
    stage = "build"


class PublishFailure(StageFailure):
    stage = "publish"

    def __init__(
        self,
        reason: str,
        message: str = "",
        log: str = "",
        artifact: Optional[PublishedArtifact] = None,
    ) -> None:
        self.artifact = artifact
        super().__init__(reason, message, log)
