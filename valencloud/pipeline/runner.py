"""
Pipeline Runner
===============
Drives one PipelineRun through the gate: test → build → (publish).

The runner owns no policy. Every decision comes from the pure transition
functions in gate.py; the runner only executes the stage the gate asks
for, turns StageFailure into a failed outcome, and records a StageResult
per stage. Stages the run never reaches are recorded as "skipped".

Fail-fast: the first failed stage ends the run. No retries; re-running is a
manual re-trigger on the CI platform.

Credential scope: registry credentials are loaded only after the gate has
entered PUBLISHING, and are handed to the publish stage alone.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from valencloud.core.config import RELEASE_BRANCH, RegistryCredentials, load_registry_credentials
from valencloud.core.constants import STAGES
from valencloud.models.pipeline_run import PipelineRun
from valencloud.models.published_artifact import PublishedArtifact
from valencloud.models.push_event import PushEvent
from valencloud.models.stage_result import StageResult
from valencloud.pipeline import gate
from valencloud.pipeline.errors import BuildFailure, PublishFailure, TestFailure
from valencloud.pipeline.gate import GateState

logger = logging.getLogger(__name__)


class StageExecutor(Protocol):
    def run_tests(self, event: PushEvent): ...

    def build_image(self, event: PushEvent): ...

    def publish(
        self,
        image,
        event: PushEvent,
        credentials: Optional[RegistryCredentials],
    ) -> PublishedArtifact: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PipelineRunner:
    """Runs the gate for a single event against a StageExecutor."""

    def __init__(
        self,
        executor: StageExecutor,
        release_branch: str = RELEASE_BRANCH,
        credentials_loader: Callable[[], Optional[RegistryCredentials]] = load_registry_credentials,
    ) -> None:
        self.executor = executor
        self.release_branch = release_branch
        self.credentials_loader = credentials_loader

    def run(self, event: PushEvent) -> PipelineRun:
        run = PipelineRun(event=event)
        self._advance(run, gate.start(run.state, event))

        # ---- test ------------------------------------------------------
        started = _now()
        try:
            result = self.executor.run_tests(event)
        except TestFailure as e:
            self._record(run, "test", "fail", e.message, started, e.log)
            self._advance(run, gate.after_test(run.state, False, f"{e.reason}: {e.message}"))
            return self._finish(run)
        self._record(run, "test", "pass", "all tests passed", started, getattr(result, "log_excerpt", ""))
        self._advance(run, gate.after_test(run.state, True))

        # ---- build -----------------------------------------------------
        started = _now()
        try:
            image = self.executor.build_image(event)
        except BuildFailure as e:
            self._record(run, "build", "fail", e.message, started, e.log)
            self._advance(run, gate.after_build(
                run.state, False, event, self.release_branch, f"{e.reason}: {e.message}",
            ))
            return self._finish(run)
        self._record(run, "build", "pass", f"built {getattr(image, 'short_id', image)}", started)
        self._advance(run, gate.after_build(run.state, True, event, self.release_branch))

        if run.state != GateState.PUBLISHING:
            return self._finish(run)

        # ---- publish ---------------------------------------------------
        started = _now()
        try:
            artifact = self.executor.publish(image, event, self.credentials_loader())
        except PublishFailure as e:
            run.artifact = e.artifact
            self._record(run, "publish", "fail", f"{e.reason}: {e.message}", started, e.log)
            self._advance(run, gate.after_publish(run.state, e.artifact, f"{e.reason}: {e.message}"))
            if e.artifact is not None and e.artifact.pushed_tags:
                logger.error(
                    "[run %s] partial publication needs manual remediation: %s pushed, %s missing",
                    run.run_id,
                    e.artifact.pushed_tags,
                    [t for t in e.artifact.tags if t not in e.artifact.pushed_tags],
                )
            return self._finish(run)
        run.artifact = artifact
        self._record(run, "publish", "pass", ", ".join(artifact.pushed_tags), started)
        self._advance(run, gate.after_publish(run.state, artifact))
        return self._finish(run)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _advance(self, run: PipelineRun, transition: gate.Transition) -> None:
        next_state, reason = transition
        logger.info("[run %s] %s → %s (%s)", run.run_id, run.state.value, next_state.value, reason)
        run.state = next_state
        run.reason = reason

    @staticmethod
    def _record(
        run: PipelineRun,
        stage: str,
        outcome: str,
        reason: str,
        started_at: datetime,
        log_excerpt: str = "",
    ) -> None:
        run.stages.append(StageResult(
            stage=stage,
            outcome=outcome,
            reason=reason,
            started_at=started_at,
            finished_at=_now(),
            log_excerpt=log_excerpt or "",
        ))

    def _finish(self, run: PipelineRun) -> PipelineRun:
        reached = {r.stage for r in run.stages}
        for stage in STAGES:
            if stage not in reached:
                reason = "not on release branch" if (
                    stage == "publish" and run.state == GateState.DONE
                ) else "earlier stage failed"
                run.stages.append(StageResult(stage=stage, outcome="skipped", reason=reason))
        run.finished_at = _now()

        log = logger.info if run.succeeded else logger.error
        log(
            "[run %s] finished in %s | branch=%s | commit=%s | published=%s",
            run.run_id, run.state.value, run.event.branch, run.event.commit_sha, run.published,
        )
        return run
