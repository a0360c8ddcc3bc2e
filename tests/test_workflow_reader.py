"""
Unit Tests - Workflow Reader
============================
The shipped CI workflow must implement the same gate the Python runner
does: test → build → publish, publish on pushes to main only, registry secrets in
the publish job only.
"""
import os
import pytest

from valencloud.parser.workflow_reader import (
    WorkflowParseError,
    check_gate_policy,
    parse_workflow,
    read_workflow,
)

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

COMPLIANT = """
name: CI
on: [push, pull_request]
jobs:
  test:
    runs-on: ubuntu-latest
    steps:
      - run: pytest
  build:
    needs: test
    steps:
      - run: docker build .
  publish:
    needs: [build]
    if: github.event_name == 'push' && github.ref == 'refs/heads/main'
    env:
      REGISTRY_TOKEN: ${{ secrets.REGISTRY_TOKEN }}
    steps:
      - run: docker push x
"""


# ===========================================================================
# 1. Shipped workflow
# ===========================================================================
def test_shipped_workflow_follows_gate_policy():
    workflow = read_workflow(REPO_ROOT)
    assert check_gate_policy(workflow, "main") == []


def test_shipped_workflow_structure():
    workflow = read_workflow(REPO_ROOT)
    assert [j.name for j in workflow.jobs] == ["test", "build", "publish"]
    assert set(workflow.triggers) >= {"push", "pull_request"}
    publish = workflow.job("publish")
    assert publish.secrets == ["REGISTRY_TOKEN", "REGISTRY_USERNAME"]
    assert workflow.job("test").secrets == []
    assert any("pytest" in cmd for cmd in workflow.job("test").run_commands)


# ===========================================================================
# 2. Parser
# ===========================================================================
class TestParseWorkflow:

    def test_bare_on_key(self):
        workflow = parse_workflow(COMPLIANT)
        assert workflow.triggers == ["push", "pull_request"]
        assert workflow.job("publish").needs == ["build"]
        assert workflow.job("build").needs == ["test"]

    def test_invalid_yaml(self):
        with pytest.raises(WorkflowParseError):
            parse_workflow("jobs: [unclosed")

    def test_no_jobs(self):
        with pytest.raises(WorkflowParseError):
            parse_workflow("name: CI\non: push\n")

    def test_not_a_mapping(self):
        with pytest.raises(WorkflowParseError):
            parse_workflow("- just\n- a list\n")


# ===========================================================================
# 3. Policy violations
# ===========================================================================
class TestGatePolicy:

    def test_compliant(self):
        assert check_gate_policy(parse_workflow(COMPLIANT), "main") == []

    def test_publish_without_branch_guard(self):
        content = COMPLIANT.replace(" && github.ref == 'refs/heads/main'", "")
        violations = check_gate_policy(parse_workflow(content), "main")
        assert violations == ["publish is not restricted to main"]

    def test_publish_on_pull_requests(self):
        content = COMPLIANT.replace("github.event_name == 'push' && ", "")
        violations = check_gate_policy(parse_workflow(content), "main")
        assert violations == ["publish does not exclude pull requests"]

    def test_publish_without_condition(self):
        content = COMPLIANT.replace("    if: github.event_name == 'push' && github.ref == 'refs/heads/main'\n", "")
        violations = check_gate_policy(parse_workflow(content), "main")
        assert violations == ["publish is not restricted to main", "publish does not exclude pull requests"]

    def test_double_quoted_event_check(self):
        content = COMPLIANT.replace("github.event_name == 'push'", 'github.event_name == "push"')
        assert check_gate_policy(parse_workflow(content), "main") == []

    def test_build_not_gated_on_tests(self):
        content = COMPLIANT.replace("    needs: test\n", "")
        assert "build does not need test" in check_gate_policy(parse_workflow(content), "main")

    def test_secret_leak_into_test_job(self):
        content = COMPLIANT.replace(
            "      - run: pytest\n",
            "      - run: pytest\n        env:\n          U: ${{ secrets.REGISTRY_USERNAME }}\n",
        )
        violations = check_gate_policy(parse_workflow(content), "main")
        assert violations == ["job test references registry secrets: REGISTRY_USERNAME"]

    def test_missing_trigger_and_job(self):
        content = COMPLIANT.replace("on: [push, pull_request]", "on: push")
        content = content.split("  publish:")[0]
        violations = check_gate_policy(parse_workflow(content), "main")
        assert "workflow is not triggered on pull_request" in violations
        assert "missing job: publish" in violations
