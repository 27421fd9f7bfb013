"""Tests for the step sequencer."""

import logging

import pytest

from callable_ci.errors import ContractError
from callable_ci.loader import parse_workflow
from callable_ci.runner import run_workflow, shell_executor, split_items
from callable_ci.workflows import ALL_WORKFLOWS

DB_INPUTS = {
    "db_endpoint": "db.example.com",
    "db_name": "app",
    "db_user": "admin",
    "sql_paths": ["a.sql", "b.sql"],
}


class RecordingExecutor:
    """Stands in for bash; fails any command containing a marker, or any
    for-each item equal to it."""

    def __init__(self, fail_on=None, output=""):
        self.calls = []
        self.fail_on = fail_on
        self.output = output

    def __call__(self, command, env, cwd, timeout=None):
        self.calls.append({"command": command, "env": env, "cwd": cwd, "timeout": timeout})
        if self.fail_on and (self.fail_on in command or self.fail_on == env.get("ITEM")):
            return 3, f"ERROR running {command}\n{self.output}"
        return 0, self.output


def _statuses(result):
    return [(s["name"], s["status"]) for s in result["steps"]]


class TestDbBootstrap:
    def test_runs_each_script_in_order(self):
        executor = RecordingExecutor()
        result = run_workflow(ALL_WORKFLOWS["db-bootstrap"], DB_INPUTS,
                              {"DB_PASSWORD": "x"}, executor=executor)
        assert result["status"] == "success"
        assert [c["command"] for c in executor.calls] == ['psql -v ON_ERROR_STOP=1 -f "$ITEM"'] * 2
        assert [c["env"]["ITEM"] for c in executor.calls] == ["a.sql", "b.sql"]
        assert _statuses(result) == [
            ("Checkout", "delegated"),
            ("Run SQL script (a.sql)", "success"),
            ("Run SQL script (b.sql)", "success"),
        ]
        assert result["steps"][1]["command"] == 'ITEM=a.sql psql -v ON_ERROR_STOP=1 -f "$ITEM"'

    def test_stops_after_failing_script(self):
        executor = RecordingExecutor(fail_on="a.sql")
        result = run_workflow(ALL_WORKFLOWS["db-bootstrap"], DB_INPUTS,
                              {"DB_PASSWORD": "x"}, executor=executor)
        assert result["status"] == "failure"
        assert len(executor.calls) == 1
        assert executor.calls[0]["env"]["ITEM"] == "a.sql"
        assert _statuses(result)[1:] == [
            ("Run SQL script (a.sql)", "failure"),
            ("Run SQL script (b.sql)", "skipped"),
        ]
        assert result["steps"][1]["returncode"] == 3

    def test_connection_env(self):
        executor = RecordingExecutor()
        run_workflow(ALL_WORKFLOWS["db-bootstrap"], dict(DB_INPUTS, require_ssl="false"),
                     {"DB_PASSWORD": "s3cret"}, executor=executor)
        env = executor.calls[0]["env"]
        assert env["PGHOST"] == "db.example.com"
        assert env["PGDATABASE"] == "app"
        assert env["PGUSER"] == "admin"
        assert env["PGPASSWORD"] == "s3cret"
        assert env["PGSSLMODE"] == "prefer"

    def test_ssl_required_by_default(self):
        executor = RecordingExecutor()
        run_workflow(ALL_WORKFLOWS["db-bootstrap"], DB_INPUTS,
                     {"DB_PASSWORD": "x"}, executor=executor)
        assert executor.calls[0]["env"]["PGSSLMODE"] == "require"

    def test_missing_endpoint_rejected_before_any_step(self):
        executor = RecordingExecutor()
        inputs = {k: v for k, v in DB_INPUTS.items() if k != "db_endpoint"}
        with pytest.raises(ContractError) as exc:
            run_workflow(ALL_WORKFLOWS["db-bootstrap"], inputs,
                         {"DB_PASSWORD": "x"}, executor=executor)
        assert exc.value.fields == ["db_endpoint"]
        assert executor.calls == []

    def test_missing_password_rejected_before_any_step(self):
        executor = RecordingExecutor()
        with pytest.raises(ContractError):
            run_workflow(ALL_WORKFLOWS["db-bootstrap"], DB_INPUTS, {}, executor=executor)
        assert executor.calls == []

    def test_secret_masked_in_output(self):
        executor = RecordingExecutor(fail_on="a.sql", output="auth failed for s3cret")
        result = run_workflow(ALL_WORKFLOWS["db-bootstrap"], DB_INPUTS,
                              {"DB_PASSWORD": "s3cret"}, executor=executor)
        failed = result["steps"][1]
        assert "s3cret" not in failed["output"]
        assert "***" in failed["output"]


class TestTerraformRds:
    INPUTS = {"aws_region": "eu-central-1"}
    SECRETS = {"AWS_ROLE_ARN": "arn:aws:iam::123456789012:role/terraform"}

    def test_plan_only_without_apply(self):
        executor = RecordingExecutor()
        result = run_workflow(ALL_WORKFLOWS["terraform-rds"], dict(self.INPUTS, run_apply=False),
                              self.SECRETS, executor=executor)
        commands = [c["command"] for c in executor.calls]
        assert commands == [
            "terraform init -input=false",
            "terraform validate -no-color",
            "terraform plan -input=false -no-color -out=tfplan",
        ]
        assert not any("apply" in c for c in commands)
        assert ("Terraform Apply", "skipped") in _statuses(result)
        assert result["status"] == "success"

    def test_apply_when_requested(self):
        executor = RecordingExecutor()
        run_workflow(ALL_WORKFLOWS["terraform-rds"], dict(self.INPUTS, run_apply="true"),
                     self.SECRETS, executor=executor)
        assert executor.calls[-1]["command"].startswith("terraform apply")

    def test_apply_skipped_when_plan_fails(self):
        executor = RecordingExecutor(fail_on="terraform plan")
        result = run_workflow(ALL_WORKFLOWS["terraform-rds"], dict(self.INPUTS, run_apply=True),
                              self.SECRETS, executor=executor)
        assert result["status"] == "failure"
        assert not any("apply" in c["command"] for c in executor.calls)

    def test_oidc_step_delegated_with_masked_role(self):
        result = run_workflow(ALL_WORKFLOWS["terraform-rds"], self.INPUTS, self.SECRETS,
                              executor=RecordingExecutor())
        creds = result["steps"][1]
        assert creds["status"] == "delegated"
        assert creds["with"] == {"role-to-assume": "***", "aws-region": "eu-central-1"}

    def test_working_directory(self, tmp_path):
        executor = RecordingExecutor()
        run_workflow(ALL_WORKFLOWS["terraform-rds"], dict(self.INPUTS, working_directory="infra"),
                     self.SECRETS, executor=executor, workdir=str(tmp_path))
        assert executor.calls[0]["cwd"] == str(tmp_path / "infra")
        assert executor.calls[0]["env"]["AWS_REGION"] == "eu-central-1"


class TestTerraformPlan:
    def test_comment_step_only_on_pull_request(self):
        result = run_workflow(ALL_WORKFLOWS["terraform-plan"], executor=RecordingExecutor())
        assert result["steps"][-1]["status"] == "skipped"

        result = run_workflow(ALL_WORKFLOWS["terraform-plan"], executor=RecordingExecutor(),
                              event_name="pull_request")
        assert result["steps"][-1]["status"] == "delegated"

    def test_comment_step_runs_after_failure(self):
        result = run_workflow(ALL_WORKFLOWS["terraform-plan"],
                              executor=RecordingExecutor(fail_on="terraform validate"),
                              event_name="pull_request")
        statuses = [s["status"] for s in result["steps"]]
        assert statuses == [
            "delegated", "delegated", "success", "success", "failure", "skipped", "delegated",
        ]
        assert result["status"] == "failure"


class TestSequencing:
    TEMPLATE = """\
on:
  workflow_call:
    inputs:
      items:
        type: string
        default: ""
jobs:
  j:
    steps:
      - name: first
        run: echo first
      - name: flaky
        run: exit 1
        continue-on-error: true
      - name: each
        for-each: ${{ inputs.items }}
        run: echo "$ITEM"
      - name: cleanup
        if: always()
        run: echo cleanup
      - name: on failure
        if: failure()
        run: echo failed
"""

    def test_continue_on_error_keeps_success(self):
        wf = parse_workflow(self.TEMPLATE, "seq.yml")
        executor = RecordingExecutor(fail_on="exit 1")
        result = run_workflow(wf, {"items": "x, y"}, executor=executor)
        assert result["status"] == "success"
        assert [c["command"] for c in executor.calls] == [
            "echo first", "exit 1", 'echo "$ITEM"', 'echo "$ITEM"', "echo cleanup",
        ]
        assert [c["env"].get("ITEM") for c in executor.calls] == [None, None, "x", "y", None]
        assert _statuses(result)[-1] == ("on failure", "skipped")

    def test_always_and_failure_steps_after_failure(self):
        wf = parse_workflow(self.TEMPLATE, "seq.yml")
        executor = RecordingExecutor(fail_on="echo first")
        result = run_workflow(wf, {"items": "x"}, executor=executor)
        assert [c["command"] for c in executor.calls] == [
            "echo first", "echo cleanup", "echo failed",
        ]
        assert result["status"] == "failure"

    def test_empty_for_each_runs_nothing(self):
        wf = parse_workflow(self.TEMPLATE, "seq.yml")
        result = run_workflow(wf, executor=RecordingExecutor())
        assert not any(s["name"].startswith("each") for s in result["steps"])

    def test_dry_run_executes_nothing(self):
        wf = parse_workflow(self.TEMPLATE, "seq.yml")
        executor = RecordingExecutor()
        result = run_workflow(wf, {"items": "x"}, executor=executor, dry_run=True)
        assert executor.calls == []
        assert result["steps"][0] == {
            "name": "first", "job": "j", "status": "planned",
            "returncode": None, "command": "echo first", "output": "",
        }

    def test_logs_step_progress(self, caplog):
        wf = parse_workflow(self.TEMPLATE, "seq.yml")
        with caplog.at_level(logging.INFO, logger="callable_ci.runner"):
            run_workflow(wf, executor=RecordingExecutor(fail_on="echo first"))
        assert "Running step 'first'" in caplog.text
        assert "exited 3" in caplog.text


class TestJobs:
    TEMPLATE = """\
on:
  workflow_call:
    inputs:
      run_apply:
        type: boolean
        default: false
jobs:
  plan:
    steps:
      - run: terraform plan
  apply:
    needs: plan
    if: ${{ inputs.run_apply }}
    steps:
      - run: terraform apply
  report:
    needs: [plan, apply]
    if: always()
    steps:
      - run: echo report
  lint:
    steps:
      - run: tflint
"""

    def _commands(self, executor):
        return [c["command"] for c in executor.calls]

    def test_job_condition_false_skips_whole_job(self):
        wf = parse_workflow(self.TEMPLATE, "jobs.yml")
        executor = RecordingExecutor()
        result = run_workflow(wf, {"run_apply": False}, executor=executor)
        assert self._commands(executor) == ["terraform plan", "echo report", "tflint"]
        assert ("terraform apply", "skipped") in _statuses(result)
        assert result["status"] == "success"

    def test_job_condition_true_runs_job(self):
        wf = parse_workflow(self.TEMPLATE, "jobs.yml")
        executor = RecordingExecutor()
        run_workflow(wf, {"run_apply": True}, executor=executor)
        assert self._commands(executor) == [
            "terraform plan", "terraform apply", "echo report", "tflint",
        ]

    def test_failed_need_skips_dependent_job(self):
        wf = parse_workflow(self.TEMPLATE, "jobs.yml")
        executor = RecordingExecutor(fail_on="terraform plan")
        result = run_workflow(wf, {"run_apply": True}, executor=executor)
        # report runs through always(); the independent lint job still runs
        assert self._commands(executor) == ["terraform plan", "echo report", "tflint"]
        assert result["status"] == "failure"

    def test_job_gate_logged(self, caplog):
        wf = parse_workflow(self.TEMPLATE, "jobs.yml")
        with caplog.at_level(logging.INFO, logger="callable_ci.runner"):
            run_workflow(wf, executor=RecordingExecutor())
        assert "Skipping job 'apply'" in caplog.text


class TestTimeouts:
    TEMPLATE = """\
on:
  workflow_call: {}
jobs:
  j:
    steps:
      - run: slow
        timeout-minutes: 2
      - run: fast
"""

    def test_timeout_passed_to_executor(self):
        wf = parse_workflow(self.TEMPLATE, "t.yml")
        executor = RecordingExecutor()
        run_workflow(wf, executor=executor)
        assert [c["timeout"] for c in executor.calls] == [120, None]


class TestShellExecutor:
    def test_success(self, tmp_path):
        rc, out = shell_executor("echo $GREETING", {"GREETING": "hello"}, str(tmp_path))
        assert rc == 0
        assert out.strip() == "hello"

    def test_fail_fast_inside_script(self, tmp_path):
        rc, out = shell_executor("false\necho never", {}, str(tmp_path))
        assert rc == 1
        assert "never" not in out

    def test_missing_directory(self, tmp_path):
        rc, _ = shell_executor("true", {}, str(tmp_path / "missing"))
        assert rc == 127

    def test_timeout(self, tmp_path):
        rc, out = shell_executor("echo started; sleep 5", {}, str(tmp_path), timeout=0.5)
        assert rc == 124
        assert "Timed out after 0.5s" in out


@pytest.mark.parametrize("value,expected", [
    ("a.sql\nb.sql", ["a.sql", "b.sql"]),
    ("a.sql, b.sql,", ["a.sql", "b.sql"]),
    ("", []),
    (None, []),
    (["a.sql", " "], ["a.sql"]),
])
def test_split_items(value, expected):
    assert split_items(value) == expected
