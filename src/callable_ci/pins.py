"""Version pins: parse callable references and check template immutability.

Callers pick one of three tiers:

* a full commit SHA - immutable, always the same bytes;
* a tag - intended to be immutable; moving one breaks callers;
* a branch - mutable, tracks "latest".
"""

import re
import subprocess

from callable_ci.loader import content_digest

SHA_RE = re.compile(r"^[0-9a-f]{40}$")
VERSION_TAG_RE = re.compile(r"^v?\d+(\.\d+)*([-+][0-9A-Za-z.-]+)?$")


def parse_reference(reference):
    """Split ``owner/repo/path/to/workflow.yml@ref``.

    Returns dict with repo, path and ref. Raises ValueError when the
    reference has no ref or no path.
    """
    target, sep, ref = reference.partition("@")
    if not sep or not ref:
        raise ValueError(f"Reference '{reference}' has no @<ref> version pin")
    parts = target.split("/", 2)
    if len(parts) < 3 or not all(parts):
        raise ValueError(f"Reference '{reference}' is not owner/repo/path@ref")
    return {"repo": f"{parts[0]}/{parts[1]}", "path": parts[2], "ref": ref}


def classify_ref(ref, tags=None):
    """Return 'sha', 'tag' or 'branch' for a version pin."""
    if SHA_RE.match(ref):
        return "sha"
    if tags is not None:
        return "tag" if ref in tags else "branch"
    if VERSION_TAG_RE.match(ref):
        return "tag"
    return "branch"


def read_at_ref(repo_dir, ref, path):
    """Return the bytes of path at ref in a local clone (via git show)."""
    try:
        result = subprocess.run(
            ["git", "show", f"{ref}:{path}"],
            capture_output=True,
            cwd=repo_dir,
            timeout=15,
        )
    except FileNotFoundError:
        raise RuntimeError("git not found")
    if result.returncode != 0:
        raise RuntimeError(
            f"git show {ref}:{path} failed: {result.stderr.decode().strip()}"
        )
    return result.stdout


def verify_digest(repo_dir, ref, path, expected):
    """True when path at ref is byte-identical to the recorded digest."""
    return content_digest(read_at_ref(repo_dir, ref, path)) == expected


def moved_tags(recorded, current):
    """Tags whose commit changed between two {tag: sha} snapshots.

    Returns a list of (tag, old_sha, new_sha), sorted by tag. Tags that
    disappeared are reported with new_sha None.
    """
    moved = []
    for tag, old_sha in sorted(recorded.items()):
        new_sha = current.get(tag)
        if new_sha != old_sha:
            moved.append((tag, old_sha, new_sha))
    return moved
