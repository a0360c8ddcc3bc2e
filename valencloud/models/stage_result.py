"""
Stage Result Model
Pydantic model for the outcome of one pipeline stage (test, build, publish).
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

StageName = Literal["test", "build", "publish"]
StageOutcome = Literal["pass", "fail", "skipped"]


class StageResult(BaseModel):
    stage: StageName
    outcome: StageOutcome
    reason: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    log_excerpt: str = ""

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return round((self.finished_at - self.started_at).total_seconds(), 3)
