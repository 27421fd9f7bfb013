"""Resolve tags of the template repository to commit SHAs."""

import json
import os
import subprocess
import urllib.error
import urllib.request

REPO = "platform-eng/callable-workflows"


def default_repo(config=None):
    """Template repo from the environment, then config, then REPO."""
    env_repo = os.environ.get("CALLABLE_CI_REPO")
    if env_repo:
        return env_repo
    if config and config.get("repo"):
        return config["repo"]
    return REPO


def resolve_tag_sha(tag=None, repo=REPO):
    """Resolve a git tag to its full SHA.

    If tag is None, resolves the latest tag.
    Returns (sha, tag_name) or raises RuntimeError.
    """
    # Try GitHub API first (no git required)
    try:
        return _resolve_via_api(tag, repo)
    except (urllib.error.URLError, OSError, ValueError, KeyError, RuntimeError):
        pass
    # Fallback to git ls-remote
    return _resolve_via_git(tag, repo)


def list_tags(repo=REPO):
    """Return {tag: sha} for every tag of repo, oldest first."""
    return dict(_ls_remote_tags(repo))


def _resolve_via_api(tag, repo):
    """Resolve via GitHub REST API."""
    url = f"https://api.github.com/repos/{repo}/tags"
    req = urllib.request.Request(url, headers={"User-Agent": "callable-ci"})
    with urllib.request.urlopen(req, timeout=10) as resp:
        tags = json.loads(resp.read().decode())
    if not tags:
        raise RuntimeError("No tags found")
    if tag is None:
        entry = tags[0]
        return entry["commit"]["sha"], entry["name"]
    for entry in tags:
        if entry["name"] == tag:
            return entry["commit"]["sha"], entry["name"]
    raise RuntimeError(f"Tag {tag} not found")


def _ls_remote_tags(repo):
    try:
        result = subprocess.run(
            ["git", "ls-remote", "--tags", f"https://github.com/{repo}.git"],
            capture_output=True,
            text=True,
            timeout=15,
        )
    except FileNotFoundError:
        raise RuntimeError("git not found and GitHub API unavailable")
    if result.returncode != 0:
        raise RuntimeError(f"git ls-remote failed: {result.stderr.strip()}")

    # Annotated tags appear twice; the peeled "^{}" line carries the commit.
    entries = {}
    for line in result.stdout.strip().splitlines():
        sha, ref = line.split("\t", 1)
        ref = ref.replace("refs/tags/", "")
        if ref.endswith("^{}"):
            entries[ref[:-3]] = sha
        else:
            entries.setdefault(ref, sha)
    return list(entries.items())


def _resolve_via_git(tag, repo):
    """Resolve via git ls-remote (fallback)."""
    entries = _ls_remote_tags(repo)
    if not entries:
        raise RuntimeError("No tags found via git ls-remote")

    if tag is None:
        # Last entry is the latest
        name, sha = entries[-1]
        return sha, name
    for name, sha in entries:
        if name == tag:
            return sha, name
    raise RuntimeError(f"Tag {tag} not found via git ls-remote")
