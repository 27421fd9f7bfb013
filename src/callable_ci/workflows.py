"""Registry of callable workflow templates shipped with the package."""

from importlib import resources

from callable_ci.errors import UnknownWorkflowError
from callable_ci.loader import parse_workflow

TEMPLATE_PACKAGE = "callable_ci.bundled"

# Listing order for `callable-ci list` and scaffolding.
# Templates not named here are appended alphabetically.
WORKFLOW_ORDER = [
    "terraform-plan",
    "terraform-apply",
    "terraform-rds",
    "db-bootstrap",
    "security-scan",
    "site-deploy",
    "site-quality",
    "frontmatter-validate",
]


def load_registry(package=TEMPLATE_PACKAGE):
    """Parse every bundled *.yml template. Returns {name: template}."""
    found = {}
    for entry in resources.files(package).iterdir():
        if not entry.name.endswith((".yml", ".yaml")):
            continue
        template = parse_workflow(entry.read_text(), entry.name)
        found[template["name"]] = template

    ordered = {}
    for name in WORKFLOW_ORDER:
        if name in found:
            ordered[name] = found.pop(name)
    for name in sorted(found):
        ordered[name] = found[name]
    return ordered


ALL_WORKFLOWS = load_registry()

# Detected project stack -> templates to scaffold
STACK_WORKFLOWS = {
    "terraform": ["terraform-plan", "terraform-apply"],
    "rds": ["terraform-rds"],
    "database": ["db-bootstrap"],
    "site": ["site-quality", "frontmatter-validate", "site-deploy"],
}

# Always offered regardless of stack
COMMON_WORKFLOWS = ["security-scan"]

# Events that start the generated caller workflow
DEFAULT_TRIGGERS = {
    "terraform-plan": ["pull_request", "workflow_dispatch"],
    "terraform-apply": ["push", "workflow_dispatch"],
    "terraform-rds": ["pull_request", "workflow_dispatch"],
    "db-bootstrap": ["workflow_dispatch"],
    "security-scan": ["pull_request", "push", "schedule"],
    "site-deploy": ["push", "workflow_dispatch"],
    "site-quality": ["pull_request"],
    "frontmatter-validate": ["pull_request"],
}


def get_workflow(key, registry=None):
    """Look a template up by name, filename or ref path.

    A full reference such as ``org/repo/.github/workflows/x.yml@v1`` is
    accepted too; only its path part is used.
    """
    registry = ALL_WORKFLOWS if registry is None else registry
    if key in registry:
        return registry[key]
    path = key.split("@", 1)[0]
    for template in registry.values():
        if path == template["filename"] or path.endswith("/" + template["ref_path"]) \
                or path == template["ref_path"]:
            return template
    raise UnknownWorkflowError(
        f"Unknown workflow '{key}' (available: {', '.join(registry)})"
    )
