"""Auto-detect which template stacks a project needs."""

import os

TERRAFORM_DIRS = ("terraform", "infra", "infrastructure")
SQL_DIRS = ("sql", "migrations", "db")
RDS_MARKERS = ("aws_db_instance", "aws_rds_cluster")


def _tf_files(path):
    found = []
    for directory in (path,) + tuple(os.path.join(path, d) for d in TERRAFORM_DIRS):
        if not os.path.isdir(directory):
            continue
        for f in sorted(os.listdir(directory)):
            if f.endswith(".tf"):
                found.append(os.path.join(directory, f))
    return found


def find_terraform_dir(path="."):
    """Return the Terraform root module directory relative to path, or None."""
    files = _tf_files(path)
    if not files:
        return None
    return os.path.relpath(os.path.dirname(files[0]), path)


def find_sql_scripts(path="."):
    """Return SQL scripts (relative paths, sorted) in the first SQL directory found."""
    if any(f.endswith(".sql") for f in os.listdir(path)):
        return sorted(f for f in os.listdir(path) if f.endswith(".sql"))
    for d in SQL_DIRS:
        directory = os.path.join(path, d)
        if os.path.isdir(directory):
            scripts = sorted(f for f in os.listdir(directory) if f.endswith(".sql"))
            if scripts:
                return [f"{d}/{f}" for f in scripts]
    return []


def detect_stacks(path="."):
    """Return set of detected stacks: 'terraform', 'rds', 'database', 'site'."""
    stacks = set()
    tf_files = _tf_files(path)
    if tf_files:
        stacks.add("terraform")
        for tf in tf_files:
            with open(tf) as f:
                if any(marker in f.read() for marker in RDS_MARKERS):
                    stacks.add("rds")
                    break
    if find_sql_scripts(path):
        stacks.add("database")
    entries = set(os.listdir(path))
    if entries & {"_config.yml", "Gemfile"}:
        stacks.add("site")
    return stacks
