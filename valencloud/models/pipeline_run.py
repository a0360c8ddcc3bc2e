"""
Pipeline Run Model
==================
Pydantic model for one run of the gate, created per push / pull-request
event. The runner appends one StageResult per stage in order; a run is
terminal once a stage fails or every applicable stage has completed.

Fields:
    run_id      - short unique id for log correlation
    event       - the triggering PushEvent (branch + commit)
    state       - current GateState
    stages      - ordered StageResult list (test, build, publish)
    artifact    - PublishedArtifact when the publish stage ran
    reason      - reason attached to the latest transition
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from valencloud.models.push_event import PushEvent
from valencloud.models.published_artifact import PublishedArtifact
from valencloud.models.stage_result import StageResult
from valencloud.pipeline.gate import GateState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineRun(BaseModel):
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    event: PushEvent
    state: GateState = GateState.PENDING
    stages: List[StageResult] = []
    artifact: Optional[PublishedArtifact] = None
    reason: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.state == GateState.DONE

    @property
    def exit_code(self) -> int:
        """0 only when the run reached DONE; what the CI runner gates on."""
        return 0 if self.succeeded else 1

    @property
    def published(self) -> bool:
        return self.artifact is not None and self.artifact.complete

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.stage == name:
                return result
        return None
