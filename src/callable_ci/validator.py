"""Check an invocation against a template's declared inputs and secrets.

Validation is pure: it never touches the network or runs a tool, so a
rejected invocation has nothing to roll back.
"""

from callable_ci.errors import ContractError
from callable_ci.loader import all_inputs

_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")

# Always available to called workflows without a declaration
IMPLICIT_SECRETS = ("GITHUB_TOKEN",)


def coerce_value(value, input_type):
    """Convert a caller-supplied value to the declared input type.

    Strings coming from the command line are parsed; a list given for a
    string input is joined one item per line. Raises ValueError on mismatch.
    """
    if input_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE:
            return True
        if isinstance(value, str) and value.strip().lower() in _FALSE:
            return False
        raise ValueError(f"expected boolean, got {value!r}")

    if input_type == "number":
        if isinstance(value, bool):
            raise ValueError(f"expected number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                return float(text)
            except ValueError:
                pass
        raise ValueError(f"expected number, got {value!r}")

    if isinstance(value, (list, tuple)):
        if not all(isinstance(item, str) for item in value):
            raise ValueError(f"expected a list of strings, got {value!r}")
        return "\n".join(value)
    if isinstance(value, str):
        return value
    raise ValueError(f"expected string, got {type(value).__name__} {value!r}")


def validate_inputs(template, inputs):
    """Return (resolved_inputs, errors) for the input half of the contract."""
    declared = all_inputs(template)
    errors = []
    resolved = {}

    for key in inputs:
        if key not in declared:
            errors.append((key, "not defined in the referenced workflow"))

    for key, meta in declared.items():
        if key not in inputs or inputs[key] is None:
            if key in template["required_inputs"]:
                errors.append((key, "required input not provided"))
            else:
                resolved[key] = meta["default"]
            continue
        try:
            value = coerce_value(inputs[key], meta["type"])
        except ValueError as e:
            errors.append((key, str(e)))
            continue
        if key in template["required_inputs"] and value == "":
            errors.append((key, "required input is empty"))
            continue
        resolved[key] = value

    return resolved, errors


def validate_secrets(template, secrets):
    """Return errors for unbound required secrets and undeclared ones."""
    errors = []
    declared = template["secrets"]
    for key in secrets:
        if key not in declared and key not in IMPLICIT_SECRETS:
            errors.append((key, "secret not defined in the referenced workflow"))
    for key, meta in declared.items():
        if meta["required"] and not secrets.get(key):
            errors.append((key, "required secret not provided"))
    return errors


def validate_invocation(template, inputs=None, secrets=None):
    """Validate a full invocation. Returns resolved inputs or raises ContractError."""
    inputs = inputs or {}
    secrets = secrets or {}
    resolved, errors = validate_inputs(template, inputs)
    errors.extend(validate_secrets(template, secrets))
    if errors:
        raise ContractError(template["name"], errors)
    return resolved
