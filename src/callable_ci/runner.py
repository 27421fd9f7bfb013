"""Run a template's steps locally, in order, stopping at the first failure.

``run:`` steps are handed to an executor (bash by default). ``uses:`` steps
are actions that only exist on the host platform; they are recorded as
delegated and never executed here.

Jobs run in declaration order. A job runs only when every job it
``needs`` succeeded and its own ``if:`` holds; otherwise all its steps are
skipped. Jobs without ``needs`` are independent, so a failure in one does
not skip another.
"""

import logging
import os
import re
import shlex
import subprocess

from callable_ci.expressions import evaluate_condition, format_value, interpolate
from callable_ci.publish import ITEM_VAR
from callable_ci.validator import validate_invocation

logger = logging.getLogger(__name__)

MASK = "***"

SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
DELEGATED = "delegated"
PLANNED = "planned"

TIMEOUT_RC = 124


def shell_executor(command, env, cwd, timeout=None):
    """Run a step script with bash fail-fast flags. Returns (returncode, output)."""
    try:
        result = subprocess.run(
            ["bash", "-e", "-o", "pipefail", "-c", command],
            capture_output=True,
            text=True,
            cwd=cwd,
            env={**os.environ, **env},
            timeout=timeout,
        )
    except (FileNotFoundError, NotADirectoryError) as e:
        return 127, str(e)
    except subprocess.TimeoutExpired as e:
        partial = ""
        for stream in (e.stdout, e.stderr):
            if isinstance(stream, bytes):
                stream = stream.decode(errors="replace")
            partial += stream or ""
        return TIMEOUT_RC, partial + f"\nTimed out after {timeout:g}s"
    return result.returncode, result.stdout + result.stderr


def split_items(value):
    """Split a multi-value input on newlines and commas, dropping blanks."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = re.split(r"[\n,]", format_value(value))
    return [item.strip() for item in items if item and item.strip()]


class _Masker:
    def __init__(self, secrets):
        self.values = sorted(
            {str(v) for v in secrets.values() if v}, key=len, reverse=True
        )

    def __call__(self, text):
        if not isinstance(text, str):
            return text
        for value in self.values:
            text = text.replace(value, MASK)
        return text


def _expand(step, context):
    """Yield (step, item) pairs; a for-each step yields one per item."""
    if "for-each" not in step:
        yield step, None
        return
    source = step["for-each"]
    items = split_items(interpolate(source, context))
    if not items:
        logger.debug("for-each over %r produced no items; step %r not run",
                     source, step["name"])
    for item in items:
        yield step, item


def _render_env(env, context):
    rendered = {}
    for key, value in (env or {}).items():
        rendered[key] = interpolate(value if isinstance(value, str) else format_value(value),
                                    context)
    return rendered


def _record(name, job):
    return {
        "name": name,
        "job": job,
        "status": SKIPPED,
        "returncode": None,
        "command": None,
        "output": "",
    }


def _timeout(step):
    minutes = step.get("timeout-minutes")
    if minutes in (None, ""):
        return None
    return float(minutes) * 60


def _run_step(step, item, context, masker, executor, dry_run, workdir):
    name = interpolate(step["name"], context)
    if item is not None:
        name = f"{name} ({item})"
    record = _record(masker(name), step["job"])

    if not evaluate_condition(step.get("if"), context):
        logger.info("Skipping step '%s' (condition %r is false)", record["name"], step.get("if"))
        return record

    env = _render_env(step.get("env"), context)
    if item is not None:
        env[ITEM_VAR] = item
    ctx = {**context, "env": env}

    if "uses" in step:
        record["status"] = DELEGATED
        record["command"] = f"uses: {step['uses']}"
        record["with"] = {
            key: masker(interpolate(value, ctx)) for key, value in (step.get("with") or {}).items()
        }
        logger.info("Delegating step '%s' to the host platform (%s)", record["name"], step["uses"])
        return record

    command = interpolate(step["run"], ctx)
    shown = command if item is None else f"{ITEM_VAR}={shlex.quote(item)} {command}"
    record["command"] = masker(shown)
    cwd = workdir
    if step.get("working-directory"):
        cwd = os.path.join(workdir, interpolate(step["working-directory"], ctx))

    if dry_run:
        record["status"] = PLANNED
        logger.info("Would run step '%s' in %s: %s", record["name"], cwd, record["command"])
        return record

    logger.info("Running step '%s' in %s", record["name"], cwd)
    returncode, output = executor(command, env, cwd, timeout=_timeout(step))
    record["returncode"] = returncode
    record["output"] = masker(output or "")

    if returncode == 0:
        record["status"] = SUCCESS
    elif step.get("continue-on-error"):
        record["status"] = FAILURE
        logger.warning("Step '%s' exited %d; continuing (continue-on-error)",
                       record["name"], returncode)
    else:
        record["status"] = FAILURE
        context["job"]["status"] = FAILURE
        logger.error("Step '%s' exited %d", record["name"], returncode)
    return record


def _job_runs(job_id, gate, results, context):
    """Evaluate a job's needs and if: once, when the job starts."""
    needed = [results.get(need) for need in gate["needs"]]
    if FAILURE in needed:
        status = FAILURE
    elif all(result == SUCCESS for result in needed):
        status = SUCCESS
    else:
        status = SKIPPED
    runs = evaluate_condition(gate["if"], {**context, "job": {"status": status}})
    if not runs:
        logger.info("Skipping job '%s' (needs %s, condition %r)",
                    job_id, gate["needs"] or "-", gate["if"])
    return runs


def run_workflow(template, inputs=None, secrets=None, executor=None,
                 dry_run=False, event_name="workflow_call", workdir="."):
    """Validate an invocation, then run its steps in order.

    Raises ContractError before any step runs if the invocation is invalid.
    Returns a dict with the overall ``status`` and one record per step.
    """
    secrets = dict(secrets or {})
    resolved = validate_invocation(template, inputs, secrets)
    executor = executor or shell_executor
    masker = _Masker(secrets)

    context = {
        "inputs": resolved,
        "secrets": secrets,
        "github": {
            "event_name": event_name,
            "workflow": template["workflow_name"],
        },
        "job": {"status": SUCCESS},
        "runner": {"os": "Linux"},
        "env": {},
    }

    logger.info("Running %s with inputs %s", template["name"], sorted(resolved))
    gates = template.get("jobs") or {}
    results = {}
    records = []
    for step in template["steps"]:
        job_id = step["job"]
        if job_id not in results:
            gate = gates.get(job_id, {"if": None, "needs": []})
            context["job"] = {"status": SUCCESS}
            results[job_id] = SUCCESS if _job_runs(job_id, gate, results, context) else SKIPPED
        if results[job_id] == SKIPPED:
            records.append(_record(masker(step["name"]), job_id))
            continue
        for expanded, item in _expand(step, context):
            records.append(
                _run_step(expanded, item, context, masker, executor, dry_run, workdir)
            )
        results[job_id] = context["job"]["status"]

    status = FAILURE if FAILURE in results.values() else SUCCESS
    logger.info("%s finished: %s", template["name"], status)
    return {
        "workflow": template["name"],
        "status": status,
        "inputs": resolved,
        "steps": records,
    }
