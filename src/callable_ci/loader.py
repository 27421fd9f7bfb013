"""Parse callable workflow YAML documents into template entries."""

import hashlib
import os

import yaml

from callable_ci.errors import TemplateError
from callable_ci.publish import host_document

INPUT_TYPES = ("string", "boolean", "number")

# Step keys understood by the sequencer. Anything else is passed through
# untouched for the host platform.
_STEP_KEYS = (
    "name", "id", "run", "uses", "if", "with", "env",
    "working-directory", "continue-on-error", "shell", "for-each",
    "timeout-minutes",
)


def _triggers(doc):
    # PyYAML follows YAML 1.1, where a bare `on` key loads as True.
    if "on" in doc:
        return doc["on"]
    return doc.get(True)


def _parse_inputs(raw, filename):
    required, optional = {}, {}
    for key, meta in (raw or {}).items():
        meta = meta or {}
        input_type = meta.get("type", "string")
        if input_type not in INPUT_TYPES:
            raise TemplateError(
                f"{filename}: input '{key}' has unsupported type '{input_type}'"
            )
        entry = {
            "type": input_type,
            "description": meta.get("description", ""),
        }
        if meta.get("required", False):
            if "default" in meta:
                raise TemplateError(
                    f"{filename}: required input '{key}' must not declare a default"
                )
            entry["default"] = None
            required[key] = entry
        else:
            entry["default"] = meta.get("default", _empty_default(input_type))
            optional[key] = entry
    return required, optional


def _empty_default(input_type):
    return {"string": "", "boolean": False, "number": 0}[input_type]


def _parse_secrets(raw):
    secrets = {}
    for key, meta in (raw or {}).items():
        meta = meta or {}
        secrets[key] = {
            "required": bool(meta.get("required", False)),
            "description": meta.get("description", ""),
        }
    return secrets


def _parse_jobs(jobs, filename):
    """Return {job_id: {"if", "needs"}}, jobs in declaration order.

    A job may only need jobs declared before it, so declaration order is a
    valid run order.
    """
    parsed = {}
    for job_id, job in jobs.items():
        job = job or {}
        if not isinstance(job, dict):
            raise TemplateError(f"{filename}: job '{job_id}' is not a mapping")
        if "strategy" in job:
            raise TemplateError(
                f"{filename}: job '{job_id}' uses a matrix strategy, which is not supported"
            )
        needs = job.get("needs") or []
        if isinstance(needs, str):
            needs = [needs]
        for need in needs:
            if need not in parsed:
                raise TemplateError(
                    f"{filename}: job '{job_id}' needs '{need}', which is not declared before it"
                )
        parsed[job_id] = {"if": job.get("if"), "needs": list(needs)}
    return parsed


def _parse_steps(jobs, filename):
    steps = []
    for job_id, job in jobs.items():
        job = job or {}
        job_defaults = (job.get("defaults") or {}).get("run") or {}
        job_env = job.get("env") or {}
        job_steps = job.get("steps")
        if not job_steps:
            raise TemplateError(f"{filename}: job '{job_id}' has no steps")
        for index, raw in enumerate(job_steps):
            if not isinstance(raw, dict):
                raise TemplateError(
                    f"{filename}: step {index + 1} of job '{job_id}' is not a mapping"
                )
            has_run = "run" in raw
            has_uses = "uses" in raw
            if has_run == has_uses:
                raise TemplateError(
                    f"{filename}: step {index + 1} of job '{job_id}' "
                    f"must have exactly one of 'run' or 'uses'"
                )
            if "for-each" in raw and has_uses:
                raise TemplateError(
                    f"{filename}: step {index + 1} of job '{job_id}' "
                    f"cannot combine 'for-each' with 'uses'"
                )
            step = {key: raw[key] for key in _STEP_KEYS if key in raw}
            step["job"] = job_id
            step.setdefault("name", raw.get("uses") or raw["run"].splitlines()[0])
            step["env"] = {**job_env, **(raw.get("env") or {})}
            if has_run and "working-directory" not in step and "working-directory" in job_defaults:
                step["working-directory"] = job_defaults["working-directory"]
            steps.append(step)
    return steps


def content_digest(text):
    """SHA-256 of the exact template bytes."""
    if isinstance(text, str):
        text = text.encode()
    return hashlib.sha256(text).hexdigest()


def parse_workflow(text, filename):
    """Parse a workflow_call document into a template entry dict."""
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TemplateError(f"{filename}: invalid YAML: {e}") from e
    if not isinstance(doc, dict):
        raise TemplateError(f"{filename}: not a workflow document")

    triggers = _triggers(doc)
    if isinstance(triggers, str):
        triggers = {triggers: None}
    elif isinstance(triggers, list):
        triggers = {name: None for name in triggers}
    if not isinstance(triggers, dict) or "workflow_call" not in triggers:
        raise TemplateError(f"{filename}: missing 'workflow_call' trigger")
    call = triggers["workflow_call"] or {}

    jobs = doc.get("jobs")
    if not isinstance(jobs, dict) or not jobs:
        raise TemplateError(f"{filename}: no jobs defined")

    name = os.path.splitext(os.path.basename(filename))[0]
    required, optional = _parse_inputs(call.get("inputs"), filename)
    job_gates = _parse_jobs(jobs, filename)
    steps = _parse_steps(jobs, filename)
    published = host_document(text, doc, os.path.basename(filename))
    return {
        "name": name,
        "filename": os.path.basename(filename),
        "workflow_name": doc.get("name", name),
        "ref_path": f".github/workflows/{os.path.basename(filename)}",
        "required_inputs": required,
        "optional_inputs": optional,
        "secrets": _parse_secrets(call.get("secrets")),
        "permissions": dict(doc.get("permissions") or {}),
        "jobs": job_gates,
        "steps": steps,
        "source": text,
        "published": published,
        "digest": content_digest(published),
    }


def load_workflow_file(path):
    with open(path) as f:
        return parse_workflow(f.read(), path)


def all_inputs(template):
    """Declared inputs, required first, in declaration order."""
    merged = {}
    merged.update(template["required_inputs"])
    merged.update(template["optional_inputs"])
    return merged
