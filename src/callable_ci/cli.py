"""CLI entry point for callable-ci."""

import argparse
import logging
import os
import sys

import yaml

from callable_ci import __version__
from callable_ci.checker import check, lint_all, lint_workflow, recorded_tags
from callable_ci.config import CONFIG_FILENAME, config_path, read_config, write_config
from callable_ci.detect import detect_stacks, find_sql_scripts, find_terraform_dir
from callable_ci.errors import CallableCIError, ContractError
from callable_ci.loader import all_inputs, content_digest, load_workflow_file
from callable_ci.pins import classify_ref, parse_reference, read_at_ref, verify_digest
from callable_ci.presets import ALL_PRESETS, MUTATING_WORKFLOWS, preset_allows
from callable_ci.prompt import ask_input, ask_yn
from callable_ci.runner import run_workflow
from callable_ci.templates import generate_workflow
from callable_ci.updater import default_repo, list_tags, resolve_tag_sha
from callable_ci.validator import validate_invocation
from callable_ci.workflows import (
    ALL_WORKFLOWS,
    COMMON_WORKFLOWS,
    STACK_WORKFLOWS,
    get_workflow,
)


def _fail(msg):
    print(f"Error: {msg}", file=sys.stderr)
    sys.exit(1)


def _report(issues):
    """Print (level, message) issues; return True if any is an error."""
    has_errors = False
    for level, msg in issues:
        if level == "error":
            print(f"ERROR: {msg}")
            has_errors = True
        elif level == "warning":
            print(f"WARNING: {msg}")
        else:
            print(f"OK: {msg}")
    return has_errors


def _parse_pairs(pairs, flag):
    """Parse repeated KEY=VALUE options. A repeated key collects a list."""
    values = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not key:
            _fail(f"{flag} expects KEY=VALUE, got '{pair}'")
        if not sep:
            value = None
        if key in values and value is not None:
            previous = values[key]
            values[key] = (previous if isinstance(previous, list) else [previous]) + [value]
        else:
            values[key] = value
    return values


def _collect_inputs(args):
    inputs = {}
    if args.inputs_file:
        with open(args.inputs_file) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            _fail(f"{args.inputs_file}: expected a mapping of input names to values")
        inputs.update(loaded)
    for key, value in _parse_pairs(args.input, "--input").items():
        if value is None:
            _fail(f"--input {key} needs a value (KEY=VALUE)")
        inputs[key] = value
    return inputs


def _collect_secrets(args):
    """-s NAME=VALUE binds a value; -s NAME reads $NAME from the environment."""
    secrets = {}
    for key, value in _parse_pairs(args.secret, "--secret").items():
        if value is None:
            value = os.environ.get(key, "")
        if isinstance(value, list):
            _fail(f"--secret {key} given more than once")
        if value:
            secrets[key] = value
    return secrets


def _lookup(name):
    """Template by registry key, or parsed from a local file path."""
    try:
        if os.path.isfile(name):
            return load_workflow_file(name)
        return get_workflow(name)
    except CallableCIError as e:
        _fail(str(e))


def _print_contract_errors(e):
    print(f"Invocation of {e.workflow} rejected:", file=sys.stderr)
    for field, msg in e.errors:
        print(f"  {field}: {msg}", file=sys.stderr)


def cmd_list(args):
    """List bundled templates and their required parameters."""
    for name, wf in ALL_WORKFLOWS.items():
        required = ", ".join(wf["required_inputs"]) or "-"
        secrets = ", ".join(k for k, m in wf["secrets"].items() if m["required"]) or "-"
        print(f"{name:<22} {wf['workflow_name']:<24} inputs: {required:<40} secrets: {secrets}")


def cmd_show(args):
    """Print a template's call contract and step list."""
    wf = _lookup(args.workflow)
    print(f"{wf['workflow_name']} ({wf['ref_path']})")
    print(f"  digest: sha256:{wf['digest']}")
    if wf["name"] in MUTATING_WORKFLOWS:
        print("  mutates external state: re-runs rely on the tool's own idempotence")
    print("\nInputs:")
    for key, meta in all_inputs(wf).items():
        flag = "required" if key in wf["required_inputs"] else f"default: {meta['default']!r}"
        print(f"  {key:<20} {meta['type']:<8} {flag}")
    if not all_inputs(wf):
        print("  (none)")
    print("\nSecrets:")
    for key, meta in wf["secrets"].items():
        print(f"  {key:<20} {'required' if meta['required'] else 'optional'}")
    if not wf["secrets"]:
        print("  (none)")
    print("\nSteps:")
    for index, step in enumerate(wf["steps"], 1):
        kind = f"uses {step['uses']}" if "uses" in step else "run"
        extras = []
        if "if" in step:
            extras.append(f"if {step['if']}")
        if "for-each" in step:
            extras.append(f"for each of {step['for-each']}")
        suffix = f"  [{'; '.join(extras)}]" if extras else ""
        print(f"  {index}. {step['name']} ({kind}){suffix}")


def cmd_lint(args):
    """Check template bodies against their declared contracts."""
    if not args.workflows:
        issues = lint_all()
    else:
        issues = []
        for name in args.workflows:
            issues.extend(lint_workflow(_lookup(name)))
        if not issues:
            issues.append(("ok", f"{len(args.workflows)} template(s) honor their declared contract"))
    if _report(issues):
        sys.exit(1)


def cmd_validate(args):
    """Validate an invocation without running anything."""
    wf = _lookup(args.workflow)
    try:
        resolved = validate_invocation(wf, _collect_inputs(args), _collect_secrets(args))
    except ContractError as e:
        _print_contract_errors(e)
        sys.exit(1)
    print(f"OK: {wf['name']} invocation is valid")
    for key, value in resolved.items():
        print(f"  {key} = {value!r}")


def cmd_run(args):
    """Validate, then run a template's steps locally."""
    wf = _lookup(args.workflow)
    if wf["name"] in MUTATING_WORKFLOWS and not args.dry_run:
        logging.getLogger(__name__).warning(
            "%s changes external state; use --dry-run to preview", wf["name"]
        )
    try:
        result = run_workflow(
            wf,
            _collect_inputs(args),
            _collect_secrets(args),
            dry_run=args.dry_run,
            event_name=args.event,
            workdir=args.workdir,
        )
    except ContractError as e:
        _print_contract_errors(e)
        sys.exit(1)

    for step in result["steps"]:
        line = f"[{step['status']:>9}] {step['name']}"
        if step["returncode"]:
            line += f" (exit {step['returncode']})"
        print(line)
        if args.dry_run and step["status"] == "planned":
            print(f"            $ {step['command']}")
        if step["status"] == "failure" and step["output"]:
            for out_line in step["output"].rstrip().splitlines():
                print(f"            {out_line}")

    print(f"\n{wf['name']}: {result['status']}")
    if result["status"] != "success":
        sys.exit(1)


def cmd_digest(args):
    """Print content digests, from the package or from a ref of a clone."""
    if args.verify and not args.ref:
        _fail("--verify needs --ref")
    names = args.workflows or list(ALL_WORKFLOWS)
    mismatched = []
    for name in names:
        wf = _lookup(name)
        try:
            if args.verify:
                if not verify_digest(args.repo_dir, args.ref, wf["ref_path"], wf["digest"]):
                    mismatched.append(wf["ref_path"])
                    print(f"MISMATCH  {wf['ref_path']} differs from the packaged template")
                else:
                    print(f"OK        {wf['ref_path']} sha256:{wf['digest']}")
                continue
            if args.ref:
                digest = content_digest(read_at_ref(args.repo_dir, args.ref, wf["ref_path"]))
            else:
                digest = wf["digest"]
        except RuntimeError as e:
            _fail(str(e))
        print(f"sha256:{digest}  {wf['ref_path']}")
    if mismatched:
        sys.exit(1)


def cmd_pin(args):
    """Explain which versioning tier a reference pins to."""
    try:
        ref = parse_reference(args.reference)
    except ValueError as e:
        _fail(str(e))
    tags = None
    if args.resolve:
        try:
            tags = list_tags(ref["repo"])
        except RuntimeError as e:
            _fail(str(e))
    kind = classify_ref(ref["ref"], tags)
    print(f"repo: {ref['repo']}")
    print(f"path: {ref['path']}")
    print(f"ref:  {ref['ref']} ({kind})")
    if kind == "sha":
        print("Immutable: always resolves to the same template bytes.")
    elif kind == "tag":
        if tags:
            print(f"Tag currently points at {tags[ref['ref']]}")
        print("Intended-immutable: pin the commit SHA to guard against a moved tag.")
    else:
        print("Mutable: tracks the branch head and may change under you.")


def cmd_export(args):
    """Write the bundled templates to <dir>/.github/workflows for publishing."""
    workflows_dir = os.path.join(args.output_dir or ".", ".github", "workflows")
    os.makedirs(workflows_dir, exist_ok=True)
    for wf in ALL_WORKFLOWS.values():
        with open(os.path.join(workflows_dir, wf["filename"]), "w") as f:
            f.write(wf["published"])
        print(f"  Exported: {wf['ref_path']}")


def _selected_workflows(stacks, preset):
    names = list(COMMON_WORKFLOWS)
    for stack in sorted(stacks):
        names.extend(STACK_WORKFLOWS.get(stack, []))
    # Deduplicate while preserving order
    seen = set()
    unique = []
    for name in names:
        if name not in seen and preset_allows(preset, name):
            seen.add(name)
            unique.append(name)
    return unique


def _detected_inputs(wf_name, project_dir):
    detected = {}
    if wf_name.startswith("terraform-"):
        tf_dir = find_terraform_dir(project_dir)
        if tf_dir and tf_dir != ".":
            detected["working_directory"] = tf_dir
    if wf_name == "db-bootstrap":
        scripts = find_sql_scripts(project_dir)
        if scripts:
            detected["sql_paths"] = scripts
    return detected


def cmd_init(args):
    """Scaffold caller workflow files and .callable-ci.yml."""
    project_dir = args.output_dir or "."
    repo = args.repo or default_repo()

    # Resolve SHA
    print(f"Resolving {'tag ' + args.pin if args.pin else 'latest tag'} of {repo}...")
    try:
        sha, tag_name = resolve_tag_sha(args.pin, repo)
    except RuntimeError as e:
        _fail(str(e))
    print(f"  {tag_name} -> {sha[:12]}")

    stacks = detect_stacks(project_dir)
    if stacks:
        print(f"Detected: {', '.join(sorted(stacks))}")
    else:
        print("No stack markers detected (*.tf, sql/, _config.yml, etc.)")
        if not args.non_interactive:
            for stack in ("terraform", "database", "site"):
                if ask_yn(f"Enable {stack} workflows?", default=False):
                    stacks.add(stack)

    preset = ALL_PRESETS[args.preset]
    workflow_names = _selected_workflows(stacks, preset)

    # Collect inputs per workflow
    all_configs = {}
    for wf_name in workflow_names:
        wf = ALL_WORKFLOWS[wf_name]
        inputs = _detected_inputs(wf_name, project_dir)
        inputs.update(preset.get(wf_name, {}))

        if not args.non_interactive:
            print(f"{wf['workflow_name']}:")
            for key, meta in wf["required_inputs"].items():
                if not inputs.get(key):
                    inputs[key] = ask_input(key, meta)
            for key, meta in wf["optional_inputs"].items():
                if meta["type"] == "boolean":
                    inputs[key] = ask_input(key, meta, inputs.get(key))

        all_configs[wf_name] = inputs

    # Generate workflow files
    workflows_dir = os.path.join(project_dir, ".github", "workflows")
    os.makedirs(workflows_dir, exist_ok=True)

    generated = []
    for wf_name, inputs in all_configs.items():
        yaml_content = generate_workflow(wf_name, inputs, sha, tag_name, repo=repo)
        filename = ALL_WORKFLOWS[wf_name]["filename"]
        with open(os.path.join(workflows_dir, filename), "w") as f:
            f.write(yaml_content)
        generated.append(filename)
        print(f"  Generated: .github/workflows/{filename}")

    config_data = {
        "version": __version__,
        "preset": args.preset,
        "repo": repo,
        "tag": tag_name,
        "sha": sha,
        "tags": {tag_name: sha},
        "workflows": list(all_configs.keys()),
    }
    # Store per-workflow inputs (only non-empty)
    for wf_name, inputs in all_configs.items():
        if inputs:
            config_data[wf_name] = inputs

    write_config(config_path(project_dir), config_data)
    print(f"  Generated: {CONFIG_FILENAME}")
    print(f"\nDone! {len(generated)} workflow(s) pinned to {tag_name} ({sha[:12]})")


def cmd_update(args):
    """Update SHA pins to the latest release."""
    project_dir = args.output_dir or "."
    path = config_path(project_dir)
    config = read_config(path)

    if not config:
        _fail(f"{CONFIG_FILENAME} not found - run `callable-ci init` first")

    repo = default_repo(config)
    old_sha = config.get("sha", "")
    old_tag = config.get("tag", "")

    print(f"Current: {old_tag} ({old_sha[:12] if old_sha else 'unknown'})")
    print(f"Resolving {'tag ' + args.pin if args.pin else 'latest tag'}...")

    try:
        new_sha, new_tag = resolve_tag_sha(args.pin, repo)
    except RuntimeError as e:
        _fail(str(e))

    print(f"Latest:  {new_tag} ({new_sha[:12]})")

    if old_sha == new_sha:
        print("Already up to date.")
        return

    if args.dry_run:
        print(f"\nWould update: {old_tag} -> {new_tag}")
        print(f"  SHA: {old_sha[:12]} -> {new_sha[:12]}")
        return

    workflows_dir = os.path.join(project_dir, ".github", "workflows")
    updated = 0

    for wf_name in config.get("workflows", []):
        if wf_name not in ALL_WORKFLOWS:
            continue
        wf = ALL_WORKFLOWS[wf_name]
        filepath = os.path.join(workflows_dir, wf["filename"])
        if not os.path.exists(filepath):
            continue

        with open(filepath) as f:
            content = f.read()

        if old_sha and old_sha in content:
            content = content.replace(old_sha, new_sha)
            content = content.replace(f"# {old_tag}", f"# {new_tag}")
            with open(filepath, "w") as f:
                f.write(content)
            updated += 1
            print(f"  Updated: .github/workflows/{wf['filename']}")

    config["tags"] = {**recorded_tags(config), new_tag: new_sha}
    config["sha"] = new_sha
    config["tag"] = new_tag
    write_config(path, config)

    print(f"\nUpdated {updated} workflow(s): {old_tag} -> {new_tag}")


def cmd_check(args):
    """Validate caller workflows match .callable-ci.yml."""
    project_dir = args.output_dir or "."
    tag_lister = list_tags if args.verify_tag else None
    if _report(check(project_dir, tag_lister=tag_lister)):
        sys.exit(1)


def _add_invocation_args(p):
    p.add_argument("workflow", help="Template name, filename, ref path or local file")
    p.add_argument("-i", "--input", action="append", metavar="KEY=VALUE",
                   help="Input value (repeat a key to pass a list)")
    p.add_argument("--inputs-file", metavar="FILE", help="YAML mapping of inputs")
    p.add_argument("-s", "--secret", action="append", metavar="NAME[=VALUE]",
                   help="Secret binding; without a value it is read from $NAME")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="callable-ci",
        description="Validate, run and pin callable CI/CD pipeline templates",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log each step")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("list", help="List bundled templates")

    p_show = sub.add_parser("show", help="Show a template's call contract")
    p_show.add_argument("workflow", help="Template name, filename, ref path or local file")

    p_lint = sub.add_parser("lint", help="Check templates only use declared inputs/secrets")
    p_lint.add_argument("workflows", nargs="*", metavar="WORKFLOW",
                        help="Template names or files (default: all bundled)")

    p_validate = sub.add_parser("validate", help="Validate an invocation")
    _add_invocation_args(p_validate)

    p_run = sub.add_parser("run", help="Run a template's steps locally")
    _add_invocation_args(p_run)
    p_run.add_argument("--dry-run", action="store_true", help="Print commands without running")
    p_run.add_argument("--event", default="workflow_call",
                       help="github.event_name seen by conditions (default: workflow_call)")
    p_run.add_argument("--workdir", default=".", help="Checkout directory (default: .)")

    p_digest = sub.add_parser("digest", help="Print template content digests")
    p_digest.add_argument("workflows", nargs="*", metavar="WORKFLOW")
    p_digest.add_argument("--ref", help="Read templates at this git ref instead")
    p_digest.add_argument("--repo-dir", default=".", help="Clone to read --ref from")
    p_digest.add_argument("--verify", action="store_true",
                          help="Exit 1 unless the files at --ref match the packaged templates")

    p_pin = sub.add_parser("pin", help="Classify a owner/repo/path@ref reference")
    p_pin.add_argument("reference")
    p_pin.add_argument("--resolve", action="store_true", help="Look tags up remotely")

    p_export = sub.add_parser("export", help="Write templates to .github/workflows")
    p_export.add_argument("--output-dir", metavar="DIR", help="Repository root (default: .)")

    # init
    p_init = sub.add_parser("init", help="Scaffold caller workflow files")
    p_init.add_argument(
        "--preset",
        choices=sorted(ALL_PRESETS),
        default="recommended",
        help="Preset configuration (default: recommended)",
    )
    p_init.add_argument(
        "--non-interactive",
        action="store_true",
        help="Accept all defaults without prompting",
    )
    p_init.add_argument("--pin", metavar="TAG", help="Pin to specific tag (default: latest)")
    p_init.add_argument("--repo", metavar="OWNER/NAME", help="Template repository")
    p_init.add_argument("--output-dir", metavar="DIR", help="Project directory (default: .)")

    # update
    p_update = sub.add_parser("update", help="Update SHA pins to latest release")
    p_update.add_argument("--dry-run", action="store_true", help="Show what would change")
    p_update.add_argument("--pin", metavar="TAG", help="Pin to specific tag (default: latest)")
    p_update.add_argument("--output-dir", metavar="DIR", help="Project directory (default: .)")

    # check
    p_check = sub.add_parser("check", help=f"Validate setup matches {CONFIG_FILENAME}")
    p_check.add_argument("--output-dir", metavar="DIR", help="Project directory (default: .)")
    p_check.add_argument("--verify-tag", action="store_true",
                         help="Fail if the pinned tag now resolves to another SHA")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "list": cmd_list,
        "show": cmd_show,
        "lint": cmd_lint,
        "validate": cmd_validate,
        "run": cmd_run,
        "digest": cmd_digest,
        "pin": cmd_pin,
        "export": cmd_export,
        "init": cmd_init,
        "update": cmd_update,
        "check": cmd_check,
    }
    try:
        commands[args.command](args)
    except CallableCIError as e:
        _fail(str(e))
