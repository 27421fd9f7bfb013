"""Preset configurations: minimal, recommended, full."""

# Each preset maps workflow names to their input overrides.
# Only non-default values are listed - everything else uses the workflow default.

# Workflows that change infrastructure or publish something. Re-running them
# is only as safe as the underlying tool makes it.
MUTATING_WORKFLOWS = ["terraform-apply", "site-deploy", "db-bootstrap"]

MINIMAL = {
    "terraform-plan": {},
    "terraform-rds": {},
    "security-scan": {
        # Latest commit only
        "fetch_depth": 1,
    },
    "site-quality": {},
    "frontmatter-validate": {},
}

RECOMMENDED = {
    "terraform-plan": {},
    "terraform-apply": {},
    "terraform-rds": {},
    "db-bootstrap": {},
    "security-scan": {},
    "site-deploy": {},
    "site-quality": {},
    "frontmatter-validate": {},
}

FULL = {
    "terraform-plan": {},
    "terraform-apply": {},
    "terraform-rds": {
        "run_apply": True,
    },
    "db-bootstrap": {
        "require_ssl": True,
    },
    "security-scan": {},
    "site-deploy": {},
    "site-quality": {},
    "frontmatter-validate": {},
}

ALL_PRESETS = {
    "minimal": MINIMAL,
    "recommended": RECOMMENDED,
    "full": FULL,
}


def preset_allows(preset, workflow_name):
    """True if the preset scaffolds this workflow at all."""
    return workflow_name in preset
