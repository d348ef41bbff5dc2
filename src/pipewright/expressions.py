# expressions.py
"""
Tiny expression language used by step/job conditions and `${{ }}` templates.

    steps.deps.outputs.cache-hit != 'true'
    success() && event.ref == 'main'
    !cancelled() || startsWith(event.ref, 'release/')

Values are looked up in a nested dict context. Comparisons are loose and
case-insensitive on the string form of both sides (None -> '', True -> 'true').
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping

from .errors import ConfigurationError

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")

_TEMPLATE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")

_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<str>'(?:[^']|'')*')
      | (?P<num>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,|\.)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    )""",
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Tok:
    kind: str
    value: str


def _tokenize(expr: str) -> List[_Tok]:
    toks: List[_Tok] = []
    pos = 0
    expr = expr.rstrip()
    while pos < len(expr):
        m = _TOKEN.match(expr, pos)
        if not m or m.end() == pos:
            raise ConfigurationError(f"invalid expression {expr!r} near position {pos}")
        pos = m.end()
        for kind in ("str", "num", "op", "ident"):
            if m.group(kind) is not None:
                toks.append(_Tok(kind, m.group(kind)))
                break
    return toks


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set, frozenset)):
        return any(_stringify(x).lower() == _stringify(needle).lower() for x in haystack)
    return _stringify(needle).lower() in _stringify(haystack).lower()


BUILTIN_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startsWith": lambda a, b: _stringify(a).lower().startswith(_stringify(b).lower()),
    "endsWith": lambda a, b: _stringify(a).lower().endswith(_stringify(b).lower()),
}


class _Parser:
    def __init__(self, expr: str, context: Mapping[str, Any], functions: Mapping[str, Callable[..., Any]]):
        self.expr = expr
        self.toks = _tokenize(expr)
        self.i = 0
        self.context = context
        self.functions = functions

    # -- token helpers --------------------------------------------------

    def _peek(self) -> _Tok | None:
        return self.toks[self.i] if self.i < len(self.toks) else None

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.value == value:
            self.i += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise ConfigurationError(f"invalid expression {self.expr!r}: expected {value!r}")

    # -- grammar --------------------------------------------------------

    def parse(self) -> Any:
        value = self._or()
        if self._peek() is not None:
            raise ConfigurationError(f"invalid expression {self.expr!r}: unexpected {self._peek().value!r}")
        return value

    def _or(self) -> Any:
        left = self._and()
        while self._accept("||"):
            right = self._and()
            left = left if truthy(left) else right
        return left

    def _and(self) -> Any:
        left = self._unary()
        while self._accept("&&"):
            right = self._unary()
            left = right if truthy(left) else left
        return left

    def _unary(self) -> Any:
        if self._accept("!"):
            return not truthy(self._unary())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._primary()
        if self._accept("=="):
            return _stringify(left).lower() == _stringify(self._primary()).lower()
        if self._accept("!="):
            return _stringify(left).lower() != _stringify(self._primary()).lower()
        return left

    def _primary(self) -> Any:
        tok = self._peek()
        if tok is None:
            raise ConfigurationError(f"invalid expression {self.expr!r}: unexpected end")
        self.i += 1

        if tok.kind == "str":
            return tok.value[1:-1].replace("''", "'")
        if tok.kind == "num":
            return float(tok.value) if "." in tok.value else int(tok.value)
        if tok.kind == "op" and tok.value == "(":
            value = self._or()
            self._expect(")")
            return value
        if tok.kind != "ident":
            raise ConfigurationError(f"invalid expression {self.expr!r}: unexpected {tok.value!r}")

        if tok.value in ("true", "false"):
            return tok.value == "true"
        if tok.value == "null":
            return None

        if self._accept("("):
            args = []
            if not self._accept(")"):
                args.append(self._or())
                while self._accept(","):
                    args.append(self._or())
                self._expect(")")
            fn = self.functions.get(tok.value)
            if fn is None:
                raise ConfigurationError(f"unknown function {tok.value}() in {self.expr!r}")
            return fn(*args)

        value: Any = self.context.get(tok.value)
        while self._accept("."):
            name = self._peek()
            if name is None or name.kind not in ("ident", "num"):
                raise ConfigurationError(f"invalid expression {self.expr!r}: dangling '.'")
            self.i += 1
            value = value.get(name.value) if isinstance(value, Mapping) else None
        return value


def has_template(text: str) -> bool:
    return bool(_TEMPLATE.search(text))


def _strip_template(expr: str) -> str:
    m = _TEMPLATE.fullmatch(expr.strip())
    return m.group(1) if m else expr.strip()


def evaluate(
    expr: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> Any:
    fns = dict(BUILTIN_FUNCTIONS)
    fns.update(functions or {})
    return _Parser(_strip_template(expr), context, fns).parse()


def uses_status_function(expr: str) -> bool:
    return any(re.search(rf"\b{name}\s*\(", expr) for name in STATUS_FUNCTIONS)


def evaluate_condition(
    expr: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> bool:
    """
    Evaluate a condition. Without an explicit status function the condition
    is implicitly `success() && (<expr>)`.
    """
    expr = _strip_template(expr)
    if not uses_status_function(expr):
        expr = f"success() && ({expr})"
    return truthy(evaluate(expr, context, functions))


def interpolate(
    text: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> str:
    """Replace every ${{ expr }} in text with the string form of its value."""
    if "${{" not in text:
        return text
    return _TEMPLATE.sub(lambda m: _stringify(evaluate(m.group(1), context, functions)), text)


def referenced_paths(text: str, root: str) -> List[str]:
    """Names referenced as `<root>.<name>` inside ${{ }} templates or a bare expression."""
    names = []
    for m in re.finditer(rf"\b{re.escape(root)}\.([A-Za-z_][A-Za-z0-9_-]*)", text):
        if m.group(1) not in names:
            names.append(m.group(1))
    return names
