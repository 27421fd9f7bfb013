"""Generate caller workflow YAML files that invoke a pinned template."""

import re

from callable_ci.updater import REPO
from callable_ci.workflows import ALL_WORKFLOWS, DEFAULT_TRIGGERS

DEFAULT_CRON = "0 6 * * 1"

_PLAIN_RE = re.compile(r"^[A-Za-z0-9_/.][A-Za-z0-9_/. -]*$")
_NUMERIC_RE = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
_RESERVED = ("true", "false", "yes", "no", "on", "off", "null", "~")


def _yaml_value(value, indent=6):
    """Format a value for inline YAML."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        value = "\n".join(value)
    if "\n" in value:
        pad = " " * (indent + 2)
        return "|\n" + "\n".join(pad + line for line in value.splitlines())
    if not value:
        return "''"
    # Quote strings that could be misinterpreted
    if (value.lower() in _RESERVED or _NUMERIC_RE.match(value)
            or not _PLAIN_RE.match(value) or value.endswith(" ")):
        return "'" + value.replace("'", "''") + "'"
    return value


def _trigger_lines(triggers, branches, cron):
    lines = ["on:"]
    for trigger in triggers:
        if trigger in ("pull_request", "push"):
            lines.append(f"  {trigger}:")
            lines.append(f"    branches: [{', '.join(branches)}]")
        elif trigger == "schedule":
            lines.append("  schedule:")
            lines.append(f"    - cron: '{cron}'")
        elif trigger == "workflow_dispatch":
            lines.append("  workflow_dispatch:")
        else:
            raise ValueError(f"Unsupported trigger '{trigger}'")
    return lines


def generate_workflow(workflow_name, inputs, sha, tag_name, triggers=None,
                      repo=REPO, branches=("main",), cron=DEFAULT_CRON):
    """Generate a caller workflow YAML string.

    Args:
        workflow_name: key in ALL_WORKFLOWS (e.g. 'terraform-plan')
        inputs: dict of input values (only non-defaults are emitted)
        sha: full SHA to pin the workflow ref
        tag_name: tag name for the comment
        triggers: events that start the caller (defaults per template)
        repo: owner/name of the template repository

    Returns:
        YAML string
    """
    wf = ALL_WORKFLOWS[workflow_name]
    if triggers is None:
        triggers = DEFAULT_TRIGGERS.get(workflow_name, ["workflow_dispatch"])

    lines = [f"name: {wf['workflow_name']}", ""]
    lines.extend(_trigger_lines(triggers, branches, cron))
    lines.extend([
        "",
        "jobs:",
        f"  {workflow_name.replace('-', '_')}:",
        f"    uses: {repo}/{wf['ref_path']}@{sha}  # {tag_name}",
    ])

    all_inputs = {}
    all_inputs.update(wf["required_inputs"])
    all_inputs.update(wf["optional_inputs"])

    with_lines = []
    for key, meta in all_inputs.items():
        if key in inputs and inputs[key] not in (None, ""):
            value = inputs[key]
            # Skip if it matches the default
            if key in wf["optional_inputs"] and value == meta["default"]:
                continue
            with_lines.append(f"      {key}: {_yaml_value(value)}")
        elif key in wf["required_inputs"]:
            # Required but not provided - leave a marker for `check`
            with_lines.append(f"      {key}: ''  # TODO: set this value")

    if with_lines:
        lines.append("    with:")
        lines.extend(with_lines)

    if wf["secrets"]:
        lines.append("    secrets:")
        for secret in wf["secrets"]:
            lines.append(f"      {secret}: ${{{{ secrets.{secret} }}}}")

    if wf["permissions"]:
        lines.append("    permissions:")
        for perm, level in sorted(wf["permissions"].items()):
            lines.append(f"      {perm}: {level}")

    lines.append("")
    return "\n".join(lines)
