"""Lint templates and validate a consumer's caller workflows."""

import os
import re

import yaml

from callable_ci.config import CONFIG_FILENAME, config_path, read_config
from callable_ci.errors import ExpressionError
from callable_ci.expressions import EXPR_RE, find_references
from callable_ci.loader import all_inputs
from callable_ci.pins import moved_tags
from callable_ci.publish import HOST_CONTEXTS, HOST_STEP_KEYS
from callable_ci.updater import default_repo
from callable_ci.validator import IMPLICIT_SECRETS, validate_inputs
from callable_ci.workflows import ALL_WORKFLOWS

KNOWN_CONTEXTS = ("inputs", "secrets", "github", "job", "runner", "env")


def _step_fields(step):
    """Yield (label, text, bare) for every templated field of a step."""
    yield "name", step.get("name"), False
    if "if" in step:
        yield "if", step["if"], True
    for key in ("run", "working-directory", "for-each"):
        if key in step:
            yield key, step[key], False
    for key, value in (step.get("env") or {}).items():
        yield f"env.{key}", value, False
    for key, value in (step.get("with") or {}).items():
        yield f"with.{key}", value, False


def lint_workflow(template):
    """Check a template's body against its own declared contract.

    Returns list of (level, message) tuples.
    """
    issues = []
    name = template["name"]
    declared = all_inputs(template)
    used_inputs = set()

    for index, step in enumerate(template["steps"], 1):
        label = f"{name}: step {index} ({step['name']})"
        for field, text, bare in _step_fields(step):
            if not isinstance(text, str):
                continue
            try:
                refs = find_references(text, bare=bare)
            except ExpressionError as e:
                issues.append(("error", f"{label} {field}: {e}"))
                continue
            for root, key in refs:
                if root not in KNOWN_CONTEXTS:
                    issues.append(("error", f"{label} {field}: unknown context '{root}'"))
                elif root == "inputs":
                    used_inputs.add(key)
                    if key not in declared:
                        issues.append((
                            "error",
                            f"{label} {field}: references undeclared input '{key}'",
                        ))
                elif root == "secrets":
                    if key not in template["secrets"] and key not in IMPLICIT_SECRETS:
                        issues.append((
                            "error",
                            f"{label} {field}: references undeclared secret '{key}'",
                        ))

        if "for-each" in step:
            try:
                roots = [root for root, _ in find_references(step["for-each"])]
            except ExpressionError:
                roots = []
            if "inputs" not in roots:
                issues.append((
                    "warning", f"{label}: for-each does not iterate over an input"
                ))

    for job_id, gate in (template.get("jobs") or {}).items():
        if not isinstance(gate["if"], str):
            continue
        label = f"{name}: job '{job_id}' if"
        try:
            refs = find_references(gate["if"], bare=True)
        except ExpressionError as e:
            issues.append(("error", f"{label}: {e}"))
            continue
        for root, key in refs:
            if root not in KNOWN_CONTEXTS:
                issues.append(("error", f"{label}: unknown context '{root}'"))
            elif root == "inputs":
                used_inputs.add(key)
                if key not in declared:
                    issues.append(("error", f"{label}: references undeclared input '{key}'"))

    issues.extend(lint_published(template))

    for key in declared:
        if key not in used_inputs:
            issues.append(("warning", f"{name}: input '{key}' is declared but never used"))

    return issues


def _strings(value):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _strings(item)


def lint_published(template):
    """Check the published text only uses step keys and contexts the host accepts."""
    issues = []
    doc = yaml.safe_load(template["published"])
    for job_id, job in doc["jobs"].items():
        for index, step in enumerate(job.get("steps") or [], 1):
            label = f"{template['filename']}: job '{job_id}' step {index}"
            for key in step:
                if key not in HOST_STEP_KEYS:
                    issues.append(("error", f"{label}: key '{key}' is not accepted by the host"))
            roots = set()
            for key, value in step.items():
                for text in _strings(value):
                    try:
                        refs = find_references(text, bare=(key == "if"))
                    except ExpressionError:
                        continue
                    roots.update(root for root, _ in refs)
            for root in sorted(roots - set(HOST_CONTEXTS)):
                issues.append(("error", f"{label}: context '{root}' does not exist on the host"))
    return issues


def lint_all(registry=None):
    """Lint every template. Returns list of (level, message) tuples."""
    registry = ALL_WORKFLOWS if registry is None else registry
    issues = []
    for template in registry.values():
        issues.extend(lint_workflow(template))
    if not issues:
        issues.append(("ok", f"All {len(registry)} templates honor their declared contract"))
    return issues


def _caller_job(content, ref_prefix):
    """Return the job dict that calls ref_prefix, or None."""
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    if not isinstance(doc, dict):
        return None
    for job in (doc.get("jobs") or {}).values():
        if isinstance(job, dict) and str(job.get("uses", "")).startswith(ref_prefix):
            return job
    return None


def _check_caller_contract(wf, job):
    """Validate the with:/secrets: a caller job passes to wf."""
    issues = []
    passed = job.get("with") or {}
    static = {}
    dynamic = set()
    for key, value in passed.items():
        if isinstance(value, str) and EXPR_RE.search(value):
            dynamic.add(key)
        else:
            static[key] = value

    _, errors = validate_inputs(wf, static)
    for field, msg in errors:
        if field in dynamic and msg == "required input not provided":
            continue
        issues.append(("error", f"{wf['filename']}: input '{field}': {msg}"))

    secrets = job.get("secrets")
    if secrets != "inherit":
        secrets = secrets or {}
        for key, meta in wf["secrets"].items():
            if meta["required"] and key not in secrets:
                issues.append((
                    "error", f"{wf['filename']}: required secret '{key}' is not passed"
                ))
    return issues


def recorded_tags(config):
    """The {tag: sha} snapshot kept in the config, or the current pin alone."""
    tags = dict(config.get("tags") or {})
    if config.get("tag") and config.get("sha"):
        tags.setdefault(config["tag"], config["sha"])
    return tags


def check(project_dir=".", tag_lister=None):
    """Validate setup. Returns list of (level, message) tuples.

    With a tag_lister (``repo -> {tag: sha}``) the recorded tag snapshot is
    compared to the repository; a tag that now points elsewhere, or has
    gone, has been moved.
    """
    issues = []
    config = read_config(config_path(project_dir))

    if not config:
        issues.append(("error", f"{CONFIG_FILENAME} not found - run `callable-ci init` first"))
        return issues

    workflows_dir = os.path.join(project_dir, ".github", "workflows")
    enabled = config.get("workflows", [])
    if not enabled:
        issues.append(("error", f"No workflows listed in {CONFIG_FILENAME}"))
        return issues

    repo = default_repo(config)
    pinned_sha = config.get("sha", "")
    pinned_tag = config.get("tag", "")

    for wf_name in enabled:
        if wf_name not in ALL_WORKFLOWS:
            issues.append(("warning", f"Unknown workflow '{wf_name}' in {CONFIG_FILENAME}"))
            continue

        wf = ALL_WORKFLOWS[wf_name]
        wf_path = os.path.join(workflows_dir, wf["filename"])

        if not os.path.exists(wf_path):
            issues.append(("error", f"Missing workflow file: .github/workflows/{wf['filename']}"))
            continue

        with open(wf_path) as f:
            content = f.read()

        ref_pattern = f"{repo}/{wf['ref_path']}@"
        if ref_pattern not in content:
            issues.append(("error", f"{wf['filename']}: does not call {repo}/{wf['ref_path']}"))
            continue

        # Check SHA pin
        match = re.search(re.escape(ref_pattern) + r"([0-9a-f]{40})\b", content)
        if not match:
            issues.append(("warning", f"{wf['filename']}: not pinned to a full SHA"))
        elif pinned_sha and match.group(1) != pinned_sha:
            issues.append((
                "warning",
                f"{wf['filename']}: SHA mismatch - "
                f"file has {match.group(1)[:12]}, config has {pinned_sha[:12]}"
            ))

        job = _caller_job(content, ref_pattern)
        if job is None:
            issues.append(("error", f"{wf['filename']}: could not parse caller job"))
            continue
        issues.extend(_check_caller_contract(wf, job))

    recorded = recorded_tags(config)
    if tag_lister and recorded:
        try:
            current = tag_lister(repo)
        except RuntimeError as e:
            issues.append(("warning", f"Could not list tags of {repo}: {e}"))
        else:
            for tag, old_sha, new_sha in moved_tags(recorded, current):
                now = new_sha[:12] if new_sha else "deleted"
                issues.append((
                    "error",
                    f"Tag {tag} moved: recorded {old_sha[:12]}, "
                    f"now {now} - pin the SHA, never re-tag"
                ))

    if not issues:
        tag_info = f" ({pinned_tag})" if pinned_tag else ""
        issues.append(("ok", f"All {len(enabled)} workflows match {CONFIG_FILENAME}{tag_info}"))

    return issues
