"""Interactive prompt helpers."""

import sys

from callable_ci.validator import coerce_value


def _read(prompt):
    try:
        return input(prompt).strip()
    except (EOFError, KeyboardInterrupt):
        print()
        sys.exit(1)


def ask_yn(question, default=True):
    """Ask a yes/no question, return bool."""
    hint = "[Y/n]" if default else "[y/N]"
    answer = _read(f"{question} {hint} ").lower()
    if not answer:
        return default
    return answer.startswith("y")


def ask_value(question, default=""):
    """Ask for a string value with a default."""
    suffix = f" [{default}]" if default not in (None, "") else ""
    answer = _read(f"{question}{suffix} ")
    return answer if answer else default


def ask_input(key, meta, current=None):
    """Ask for a template input, re-asking until it matches the declared type."""
    if meta["type"] == "boolean":
        default = meta["default"] if current is None else current
        return ask_yn(f"  {meta['description'] or key}?", default=bool(default))
    default = meta["default"] if current is None else current
    while True:
        answer = ask_value(f"  {key} ({meta['description'] or meta['type']}):", default)
        if answer in (None, ""):
            return answer
        try:
            return coerce_value(answer, meta["type"])
        except ValueError as e:
            print(f"  {e}")
