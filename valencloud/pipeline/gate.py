"""
Pipeline Gate
=============
The three-stage gate (test → build → publish) as an explicit state machine.

    PENDING → TESTING → TEST_FAILED
                      → BUILDING → BUILD_FAILED
                                 → DONE              (not the release branch)
                                 → PUBLISHING → PUBLISH_FAILED
                                              → DONE

Every transition function is pure: it takes the current state plus the
stage outcome and returns (next_state, reason). No I/O, no Docker, no CI
platform, so the gating policy is unit-testable on its own.

Rules:
    - Any push or pull-request event starts testing.
    - Build runs only if every test passed.
    - Publish runs only if the build succeeded AND the event is a push to
      the release branch. Other branches and PRs end in DONE unpublished.
    - Publish succeeds only if BOTH tags (commit SHA and latest) reached the
      registry. A partial publication is PUBLISH_FAILED, not rolled back.
    - Failed states are terminal. Asking a terminal state to advance raises
      InvalidTransition.
"""
from enum import Enum
from typing import Optional, Tuple

from valencloud.core.config import RELEASE_BRANCH
from valencloud.models.push_event import PushEvent
from valencloud.models.published_artifact import PublishedArtifact
from valencloud.pipeline.errors import InvalidTransition, PARTIAL_PUBLISH


class GateState(str, Enum):
    PENDING = "PENDING"
    TESTING = "TESTING"
    TEST_FAILED = "TEST_FAILED"
    BUILDING = "BUILDING"
    BUILD_FAILED = "BUILD_FAILED"
    PUBLISHING = "PUBLISHING"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    DONE = "DONE"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self in FAILED_STATES


FAILED_STATES = frozenset({
    GateState.TEST_FAILED,
    GateState.BUILD_FAILED,
    GateState.PUBLISH_FAILED,
})
TERMINAL_STATES = FAILED_STATES | {GateState.DONE}

Transition = Tuple[GateState, str]


def _require(state: GateState, expected: GateState, action: str) -> None:
    if state != expected:
        raise InvalidTransition(
            f"cannot {action} from {state.value} (expected {expected.value})"
        )


def should_publish(event: PushEvent, release_branch: str = RELEASE_BRANCH) -> bool:
    """Branch predicate for the publish stage."""
    return not event.is_pull_request and event.branch == release_branch


def start(state: GateState, event: PushEvent) -> Transition:
    _require(state, GateState.PENDING, "start")
    return GateState.TESTING, f"{event.event_name} to {event.branch} @ {event.commit_sha}"


def after_test(state: GateState, passed: bool, reason: str = "") -> Transition:
    _require(state, GateState.TESTING, "finish tests")
    if not passed:
        return GateState.TEST_FAILED, reason or "test suite failed"
    return GateState.BUILDING, "all tests passed"


def after_build(
    state: GateState,
    succeeded: bool,
    event: PushEvent,
    release_branch: str = RELEASE_BRANCH,
    reason: str = "",
) -> Transition:
    _require(state, GateState.BUILDING, "finish build")
    if not succeeded:
        return GateState.BUILD_FAILED, reason or "image build failed"
    if should_publish(event, release_branch):
        return GateState.PUBLISHING, f"build succeeded on release branch {release_branch}"
    if event.is_pull_request:
        return GateState.DONE, "build validated for pull request, not publishing"
    return GateState.DONE, f"build validated on {event.branch}, not publishing"


def after_publish(
    state: GateState,
    artifact: Optional[PublishedArtifact],
    reason: str = "",
) -> Transition:
    _require(state, GateState.PUBLISHING, "finish publish")
    if artifact is None:
        return GateState.PUBLISH_FAILED, reason or "publish failed"
    if not artifact.complete:
        missing = [t for t in artifact.tags if t not in artifact.pushed_tags]
        return GateState.PUBLISH_FAILED, reason or f"{PARTIAL_PUBLISH}: missing {', '.join(missing)}"
    if reason:
        return GateState.PUBLISH_FAILED, reason
    return GateState.DONE, f"published {', '.join(artifact.reference(t) for t in artifact.tags)}"
