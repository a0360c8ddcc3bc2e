"""
Workflow Reader
===============
Parses a GitHub Actions workflow and checks it against the pipeline gate
policy, so the declarative CI definition and the Python gate cannot drift
apart silently.

Gate policy checked by check_gate_policy():
    1. Triggers include push and pull_request.
    2. Jobs test, build and publish exist.
    3. build needs test; publish needs build (fail-fast chain).
    4. publish is guarded by a condition on the release branch ref and on
       github.event_name == 'push', so pull requests never publish.
    5. Registry secrets are referenced by the publish job only.

Deterministic: same workflow file → same violations list, always.
"""
import os
import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

from valencloud.core.config import RELEASE_BRANCH

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_PATH = os.path.join(".github", "workflows", "ci.yml")

_SECRET_REF = re.compile(r"\$\{\{\s*secrets\.([A-Za-z0-9_]+)\s*\}\}")
REGISTRY_SECRETS = frozenset({"REGISTRY_USERNAME", "REGISTRY_TOKEN"})
_PUSH_ONLY = re.compile(r"github\.event_name\s*==\s*['\"]push['\"]")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------
@dataclass
class WorkflowJob:
    """A single job in a workflow."""
    name: str
    needs: List[str] = field(default_factory=list)
    condition: str = ""
    secrets: List[str] = field(default_factory=list)
    run_commands: List[str] = field(default_factory=list)


@dataclass
class Workflow:
    """
    Parsed workflow.

    Attributes
    ----------
    name : str
        Workflow display name.
    triggers : list[str]
        Event names under ``on:``.
    jobs : list[WorkflowJob]
        Jobs in file order.
    """
    name: str = ""
    triggers: List[str] = field(default_factory=list)
    jobs: List[WorkflowJob] = field(default_factory=list)

    def job(self, name: str) -> Optional[WorkflowJob]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None


class WorkflowParseError(ValueError):
    """Raised when a workflow file is not a valid workflow mapping."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [str(k) for k in value]
    return [str(v) for v in value]


def _iter_strings(node):
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _iter_strings(value)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_strings(item)


def parse_workflow(content: str) -> Workflow:
    """Parse workflow YAML text. Raises WorkflowParseError on malformed input."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WorkflowParseError(f"invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise WorkflowParseError("workflow must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    triggers = data.get("on", data.get(True))
    workflow = Workflow(name=str(data.get("name", "")), triggers=_as_list(triggers))

    jobs_data = data.get("jobs")
    if not isinstance(jobs_data, dict):
        raise WorkflowParseError("workflow has no jobs mapping")

    for job_name, job_def in jobs_data.items():
        if not isinstance(job_def, dict):
            continue

        job = WorkflowJob(
            name=str(job_name),
            needs=_as_list(job_def.get("needs")),
            condition=str(job_def.get("if", "")),
        )
        # Any secret referenced anywhere in the job definition counts
        job.secrets = sorted({
            secret
            for text in _iter_strings(job_def)
            for secret in _SECRET_REF.findall(text)
        })

        for step in job_def.get("steps") or []:
            if isinstance(step, dict) and step.get("run"):
                job.run_commands.append(str(step["run"]).strip())

        workflow.jobs.append(job)

    return workflow


def read_workflow(workspace_path: str, relative_path: str = DEFAULT_WORKFLOW_PATH) -> Workflow:
    full_path = os.path.join(workspace_path, relative_path)
    logger.debug("Reading workflow %s", full_path)
    with open(full_path, "r", encoding="utf-8") as f:
        return parse_workflow(f.read())


# ---------------------------------------------------------------------------
# Gate Policy
# ---------------------------------------------------------------------------
def check_gate_policy(workflow: Workflow, release_branch: str = RELEASE_BRANCH) -> List[str]:
    """Return human-readable policy violations; empty list means compliant."""
    violations: List[str] = []

    for trigger in ("push", "pull_request"):
        if trigger not in workflow.triggers:
            violations.append(f"workflow is not triggered on {trigger}")

    test, build, publish = (workflow.job(n) for n in ("test", "build", "publish"))
    for name, job in (("test", test), ("build", build), ("publish", publish)):
        if job is None:
            violations.append(f"missing job: {name}")

    if build is not None and "test" not in build.needs:
        violations.append("build does not need test")
    if publish is not None:
        if "build" not in publish.needs:
            violations.append("publish does not need build")
        if f"refs/heads/{release_branch}" not in publish.condition:
            violations.append(f"publish is not restricted to {release_branch}")
        if not _PUSH_ONLY.search(publish.condition):
            violations.append("publish does not exclude pull requests")

    for job in workflow.jobs:
        leaked = REGISTRY_SECRETS.intersection(job.secrets)
        if leaked and job.name != "publish":
            violations.append(f"job {job.name} references registry secrets: {', '.join(sorted(leaked))}")

    for violation in violations:
        logger.warning("Gate policy violation: %s", violation)
    return violations
