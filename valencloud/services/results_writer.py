"""
Results Writer
==============
Serializes a finished PipelineRun into a JSON summary that CI can upload
as a build artifact. The run itself is never persisted anywhere else.
"""
import json
import logging
import os
from typing import Any, Dict

from valencloud.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class ResultsWriter:

    @staticmethod
    def build_summary(run: PipelineRun) -> Dict[str, Any]:
        artifact = run.artifact
        return {
            "run_id": run.run_id,
            "trigger": {
                "event": run.event.event_name,
                "branch": run.event.branch,
                "commit": run.event.commit_sha,
            },
            "state": run.state.value,
            "reason": run.reason,
            "exit_code": run.exit_code,
            "stages": [
                {
                    "stage": s.stage,
                    "outcome": s.outcome,
                    "reason": s.reason,
                    "duration_seconds": s.duration_seconds,
                }
                for s in run.stages
            ],
            "artifact": None if artifact is None else {
                "repository": artifact.repository,
                "image_id": artifact.image_id,
                "pushed_tags": artifact.pushed_tags,
                "digests": artifact.digests,
                "consistent": artifact.consistent,
            },
            "started_at": run.started_at.isoformat(),
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        }

    @staticmethod
    def write_results(run: PipelineRun, output_path: str = "pipeline-results.json") -> bool:
        """Write the run summary. Returns False instead of raising on I/O errors."""
        abs_output = os.path.abspath(output_path)
        try:
            data = ResultsWriter.build_summary(run)
            logger.info("Writing pipeline results to %s", abs_output)
            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            return True
        except OSError as e:
            logger.error("Failed to write %s: %s", abs_output, e, exc_info=True)
            return False
