"""Evaluate the ${{ }} expression subset used inside templates.

Supported: string/number/boolean/null literals, dotted context lookups
(``inputs.aws_region``, ``github.event_name``), ``!``, comparison operators,
``&&`` and ``||`` with short-circuit semantics (operands are returned, so
``inputs.require_ssl && 'require' || 'prefer'`` yields a string), parentheses
and the status functions ``success()``, ``failure()``, ``always()`` and
``cancelled()``.
"""

import re

from callable_ci.errors import ExpressionError

EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>().])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")
_KEYWORDS = {"true": True, "false": False, "null": None}


def _tokenize(expr):
    tokens = []
    pos = 0
    while pos < len(expr):
        match = _TOKEN_RE.match(expr, pos)
        if not match:
            raise ExpressionError(f"Unexpected character {expr[pos]!r} in '{expr}'")
        pos = match.end()
        kind = match.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, match.group()))
    return tokens


def truthy(value):
    """Truthiness as the host platform defines it."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def _as_number(value):
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value) if value.strip() else 0
    except (ValueError, AttributeError):
        return float("nan")


def _loose_equal(left, right):
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if type(left) is type(right):
        return left == right
    return _as_number(left) == _as_number(right)


def format_value(value):
    """Render an evaluated value the way it appears in interpolated text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class _Parser:
    def __init__(self, expr, context):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0
        self.context = context

    def _peek(self):
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return (None, None)

    def _take(self, value=None):
        kind, text = self._peek()
        if kind is None:
            raise ExpressionError(f"Unexpected end of expression '{self.expr}'")
        if value is not None and text != value:
            raise ExpressionError(f"Expected {value!r}, got {text!r} in '{self.expr}'")
        self.pos += 1
        return kind, text

    def parse(self):
        if not self.tokens:
            raise ExpressionError("Empty expression")
        value = self._or()
        if self.pos != len(self.tokens):
            raise ExpressionError(
                f"Unexpected token {self._peek()[1]!r} in '{self.expr}'"
            )
        return value

    def _or(self):
        value = self._and()
        while self._peek()[1] == "||":
            self._take()
            right = self._and()
            value = value if truthy(value) else right
        return value

    def _and(self):
        value = self._comparison()
        while self._peek()[1] == "&&":
            self._take()
            right = self._comparison()
            value = right if truthy(value) else value
        return value

    def _comparison(self):
        left = self._unary()
        op = self._peek()[1]
        if op in ("==", "!=", "<", "<=", ">", ">="):
            self._take()
            right = self._unary()
            if op == "==":
                return _loose_equal(left, right)
            if op == "!=":
                return not _loose_equal(left, right)
            a, b = _as_number(left), _as_number(right)
            return {"<": a < b, "<=": a <= b, ">": a > b, ">=": a >= b}[op]
        return left

    def _unary(self):
        if self._peek()[1] == "!":
            self._take()
            return not truthy(self._unary())
        return self._primary()

    def _primary(self):
        kind, text = self._take()
        if kind == "string":
            return text[1:-1].replace("''", "'")
        if kind == "number":
            return float(text) if "." in text else int(text)
        if text == "(":
            value = self._or()
            self._take(")")
            return value
        if kind != "ident":
            raise ExpressionError(f"Unexpected token {text!r} in '{self.expr}'")
        if text in _KEYWORDS:
            return _KEYWORDS[text]
        if self._peek()[1] == "(":
            if text not in STATUS_FUNCTIONS:
                raise ExpressionError(f"Unsupported function {text}() in '{self.expr}'")
            self._take("(")
            self._take(")")
            return self._call(text)
        return self._lookup(text)

    def _call(self, name):
        status = self.context.get("job", {}).get("status", "success")
        if name == "always":
            return True
        if name == "cancelled":
            return False
        if name == "failure":
            return status == "failure"
        return status == "success"

    def _lookup(self, root):
        if root not in self.context:
            raise ExpressionError(f"Unrecognized named-value '{root}' in '{self.expr}'")
        value = self.context[root]
        while self._peek()[1] == ".":
            self._take(".")
            kind, key = self._take()
            if kind != "ident":
                raise ExpressionError(f"Expected property name after '.' in '{self.expr}'")
            value = value.get(key) if isinstance(value, dict) else None
        return value


def evaluate(expr, context):
    """Evaluate a bare expression (no ${{ }} wrapper) against context."""
    return _Parser(expr, context).parse()


def interpolate(text, context):
    """Replace every ${{ expr }} in text with its rendered value."""
    if not isinstance(text, str):
        return text
    return EXPR_RE.sub(lambda m: format_value(evaluate(m.group(1), context)), text)


def _unwrap(condition):
    condition = condition.strip()
    match = EXPR_RE.fullmatch(condition)
    if match:
        return match.group(1)
    return condition


def _calls_status_function(expr):
    tokens = _tokenize(expr)
    for index, (kind, text) in enumerate(tokens):
        if kind == "ident" and text in STATUS_FUNCTIONS and index + 1 < len(tokens) \
                and tokens[index + 1][1] == "(":
            return True
    return False


def evaluate_condition(condition, context):
    """Evaluate an ``if:`` value.

    Without an explicit status function the condition only holds while the
    job is still succeeding, matching ``success() && (condition)``.
    """
    if condition is None:
        condition = "success()"
    if isinstance(condition, bool):
        condition = "true" if condition else "false"
    expr = _unwrap(str(condition))
    if not _calls_status_function(expr):
        expr = f"success() && ({expr})"
    return truthy(evaluate(expr, context))


class _AnyContext(dict):
    """Accepts every named-value; used to check syntax without real values."""

    def __contains__(self, key):
        return True

    def __getitem__(self, key):
        return {}


def references(expr):
    """Return the dotted names referenced by a bare expression.

    Raises ExpressionError if the expression is malformed.
    """
    _Parser(expr, _AnyContext()).parse()
    names = []
    tokens = _tokenize(expr)
    i = 0
    while i < len(tokens):
        kind, text = tokens[i]
        if kind == "ident" and text not in _KEYWORDS and not (
            i + 1 < len(tokens) and tokens[i + 1][1] == "("
        ) and not (i > 0 and tokens[i - 1][1] == "."):
            parts = [text]
            j = i + 1
            while j + 1 < len(tokens) and tokens[j][1] == "." and tokens[j + 1][0] == "ident":
                parts.append(tokens[j + 1][1])
                j += 2
            names.append(".".join(parts))
            i = j
            continue
        i += 1
    return names


def find_references(text, bare=False):
    """Return (context, name) pairs referenced in text.

    With ``bare=True`` the whole text is one expression (an ``if:`` value);
    otherwise only ${{ }} segments are inspected. A reference with no
    property, such as ``item``, is returned as ``(name, None)``.
    """
    if not isinstance(text, str):
        return []
    if bare:
        exprs = [_unwrap(text)]
    else:
        exprs = [m.group(1) for m in EXPR_RE.finditer(text)]
    found = []
    for expr in exprs:
        for name in references(expr):
            root, _, rest = name.partition(".")
            found.append((root, rest.split(".")[0] if rest else None))
    return found
