"""Tests for the published (host-facing) form of templates."""

import pytest
import yaml

from callable_ci.checker import lint_published
from callable_ci.expressions import find_references
from callable_ci.loader import parse_workflow
from callable_ci.publish import HOST_CONTEXTS, HOST_STEP_KEYS, host_step
from callable_ci.runner import shell_executor
from callable_ci.workflows import ALL_WORKFLOWS


def _host_problems(text):
    """Step keys and ${{ }} roots in text that the host would reject."""
    problems = []
    doc = yaml.safe_load(text)
    for job in doc["jobs"].values():
        for step in job["steps"]:
            problems.extend(key for key in step if key not in HOST_STEP_KEYS)
            for key, value in step.items():
                values = value.values() if isinstance(value, dict) else [value]
                for text_value in values:
                    for root, _ in find_references(text_value, bare=(key == "if")):
                        if root not in HOST_CONTEXTS:
                            problems.append(root)
    return problems


class TestPublishedTemplates:
    @pytest.mark.parametrize("name", list(ALL_WORKFLOWS))
    def test_bundled_template_valid_on_host(self, name):
        assert _host_problems(ALL_WORKFLOWS[name]["published"]) == []

    @pytest.mark.parametrize("name", list(ALL_WORKFLOWS))
    def test_lint_published_clean(self, name):
        assert lint_published(ALL_WORKFLOWS[name]) == []

    def test_plain_templates_published_verbatim(self):
        wf = ALL_WORKFLOWS["terraform-plan"]
        assert wf["published"] == wf["source"]

    def test_db_bootstrap_loop_step(self):
        wf = ALL_WORKFLOWS["db-bootstrap"]
        assert wf["published"] != wf["source"]
        doc = yaml.safe_load(wf["published"])
        assert "workflow_call" in doc["on"]
        step = doc["jobs"]["bootstrap"]["steps"][1]
        assert step["name"] == "Run SQL script"
        assert step["shell"] == "bash"
        assert step["env"] == {"FOR_EACH_ITEMS": "${{ inputs.sql_paths }}"}
        assert 'psql -v ON_ERROR_STOP=1 -f "$ITEM"' in step["run"]
        assert "for-each" not in step
        # job env and contract survive the rewrite
        assert doc["jobs"]["bootstrap"]["env"]["PGPASSWORD"] == "${{ secrets.DB_PASSWORD }}"
        assert doc["on"]["workflow_call"]["secrets"]["DB_PASSWORD"]["required"] is True

    def test_published_text_parses_to_same_contract(self):
        wf = ALL_WORKFLOWS["db-bootstrap"]
        again = parse_workflow(wf["published"], wf["filename"])
        assert again["required_inputs"] == wf["required_inputs"]
        assert again["secrets"] == wf["secrets"]
        assert again["published"] == wf["published"]


class TestLoopScript:
    STEP = {
        "name": "each",
        "for-each": "${{ inputs.items }}",
        "run": 'echo "got $ITEM"\n[ "$ITEM" != bad ]\n',
    }

    def test_step_shape(self):
        compiled = host_step(self.STEP)
        assert list(compiled) == ["name", "env", "shell", "run"]
        assert compiled["env"] == {"FOR_EACH_ITEMS": "${{ inputs.items }}"}

    def test_non_loop_step_unchanged(self):
        step = {"name": "x", "run": "echo x"}
        assert host_step(step) is step

    def test_runs_items_in_order(self, tmp_path):
        script = host_step(self.STEP)["run"]
        rc, out = shell_executor(script, {"FOR_EACH_ITEMS": "a, b\n\nc"}, str(tmp_path))
        assert rc == 0
        assert [line for line in out.splitlines() if line.startswith("got")] == [
            "got a", "got b", "got c",
        ]
        assert "::group::each (a)" in out

    def test_stops_at_first_failing_item(self, tmp_path):
        script = host_step(self.STEP)["run"]
        rc, out = shell_executor(script, {"FOR_EACH_ITEMS": "a\nbad\nc"}, str(tmp_path))
        assert rc != 0
        assert "got bad" in out
        assert "got c" not in out
