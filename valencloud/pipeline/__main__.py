"""
Pipeline CLI
============
    python -m valencloud.pipeline [--branch B --sha S] [--event push|pull_request]
                                  [--workspace PATH] [--results FILE]

Without --branch/--sha the event is read from the GitHub Actions environment.
Exit code is 0 only when the run reaches DONE; any failed stage exits 1 and
a malformed invocation exits 2.
"""
import argparse
import logging
import os
import sys
from typing import List, Optional

from pydantic import ValidationError

from valencloud.core.config import IMAGE_REPOSITORY, LOG_LEVEL, REGISTRY, RELEASE_BRANCH
from valencloud.executor.stage_executor import DockerStageExecutor
from valencloud.models.push_event import PushEvent
from valencloud.pipeline.runner import PipelineRunner
from valencloud.services.results_writer import ResultsWriter
from valencloud.utils.logging_config import setup_logging

logger = logging.getLogger("valencloud.pipeline")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="valencloud-pipeline",
        description="Run the test → build → publish gate for one commit.",
    )
    parser.add_argument("--event", choices=["push", "pull_request"], default=None,
                        help="Trigger type (default: from GITHUB_EVENT_NAME, else push)")
    parser.add_argument("--branch", help="Triggering branch (default: from GitHub env)")
    parser.add_argument("--sha", help="Commit SHA (default: GITHUB_SHA)")
    parser.add_argument("--workspace", default=os.getcwd(),
                        help="Source tree / build context (default: cwd)")
    parser.add_argument("--repository", default=IMAGE_REPOSITORY, help="Image repository")
    parser.add_argument("--registry", default=REGISTRY, help="Registry host (empty = Docker Hub)")
    parser.add_argument("--release-branch", default=RELEASE_BRANCH,
                        help="Branch whose builds are published")
    parser.add_argument("--results", default=None, help="Write a JSON run summary here")
    return parser


def resolve_event(args: argparse.Namespace) -> PushEvent:
    if args.branch or args.sha:
        return PushEvent(
            event_name=args.event or "push",
            branch=args.branch or "",
            commit_sha=args.sha or "",
        )
    event = PushEvent.from_github_env()
    if args.event:
        event = event.model_copy(update={"event_name": args.event})
    return event


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=LOG_LEVEL, prefix="pipeline")

    try:
        event = resolve_event(args)
    except ValidationError as e:
        logger.error("Invalid trigger event: %s", e)
        return 2

    executor = DockerStageExecutor(
        workspace_path=os.path.abspath(args.workspace),
        repository=args.repository,
        registry=args.registry,
    )
    run = PipelineRunner(executor, release_branch=args.release_branch).run(event)

    if args.results:
        ResultsWriter.write_results(run, args.results)

    for stage in run.stages:
        print(f"{stage.stage:<8} {stage.outcome:<8} {stage.reason}")
    print(f"{run.state.value}: {run.reason}")
    return run.exit_code


if __name__ == "__main__":
    sys.exit(main())
