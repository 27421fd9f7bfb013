"""Render templates in the shape the host platform accepts.

``for-each`` is understood only by the local runner. When a template is
published, each for-each step becomes a single bash ``run:`` step that
loops over the same items, exports each one as ``$ITEM`` and stops at the
first failing item. Templates without for-each steps are published
byte-for-byte.
"""

import yaml

# Step keys and expression contexts the host accepts in a callable workflow
HOST_STEP_KEYS = (
    "id", "if", "name", "uses", "run", "shell", "with", "env",
    "working-directory", "continue-on-error", "timeout-minutes",
)
HOST_CONTEXTS = (
    "github", "env", "vars", "job", "jobs", "steps", "runner", "secrets",
    "strategy", "matrix", "needs", "inputs",
)

ITEM_VAR = "ITEM"
ITEMS_VAR = "FOR_EACH_ITEMS"


class _Dumper(yaml.SafeDumper):
    pass


def _represent_str(dumper, value):
    style = "|" if "\n" in value else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_Dumper.add_representer(str, _represent_str)


def _loop_script(name, body):
    label = name.replace("\\", "\\\\").replace('"', '\\"')
    lines = [
        f"while IFS= read -r {ITEM_VAR}; do",
        f"  {ITEM_VAR}=\"$(printf '%s' \"${ITEM_VAR}\" | sed -e 's/^[[:space:]]*//' -e 's/[[:space:]]*$//')\"",
        f"  [ -n \"${ITEM_VAR}\" ] || continue",
        f"  export {ITEM_VAR}",
        f"  echo \"::group::{label} (${ITEM_VAR})\"",
    ]
    lines.extend("  " + line if line else "" for line in body.rstrip("\n").splitlines())
    lines.append('  echo "::endgroup::"')
    lines.append(f"done < <(printf '%s\\n' \"${ITEMS_VAR}\" | tr ',' '\\n')")
    return "\n".join(lines) + "\n"


def host_step(step):
    """Return the host form of one raw step dict."""
    if "for-each" not in step:
        return step
    env = dict(step.get("env") or {})
    env[ITEMS_VAR] = step["for-each"]
    name = step.get("name") or step["run"].splitlines()[0]
    compiled = {"name": name}
    for key, value in step.items():
        if key in ("name", "for-each", "env", "run", "shell"):
            continue
        compiled[key] = value
    compiled["env"] = env
    compiled["shell"] = "bash"
    compiled["run"] = _loop_script(name, step["run"])
    return compiled


def _has_for_each(doc):
    for job in (doc.get("jobs") or {}).values():
        for step in (job or {}).get("steps") or []:
            if isinstance(step, dict) and "for-each" in step:
                return True
    return False


def host_document(text, doc, filename):
    """Return the text to publish for a parsed template document."""
    if not _has_for_each(doc):
        return text

    rendered = {}
    for key, value in doc.items():
        # PyYAML loads a bare `on` key as True
        rendered["on" if key is True else key] = value
    jobs = {}
    for job_id, job in rendered["jobs"].items():
        job = dict(job)
        job["steps"] = [host_step(step) for step in job["steps"]]
        jobs[job_id] = job
    rendered["jobs"] = jobs

    header = f"# Published from {filename} by callable-ci; edit the source template.\n"
    return header + yaml.dump(rendered, Dumper=_Dumper, sort_keys=False,
                              default_flow_style=False, width=1000)
