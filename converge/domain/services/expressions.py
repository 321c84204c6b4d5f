"""
Expression Language

Architectural Intent:
- Tiny, side-effect free expression language for attribute templates,
  conditions and pipeline artifact templates
- References are parsed once into typed Ref values, so the graph builder can
  turn them into edges and the executors can substitute values later
- Not a general-purpose configuration language: no arithmetic, no functions

Grammar:
    expr    := or ( "?" expr ":" expr )?
    or      := and ( "||" and )*
    and     := not ( "&&" not )*
    not     := "!" not | cmp
    cmp     := primary ( ("==" | "!=") primary )?
    primary := STRING | NUMBER | true | false | null | ref | "(" expr ")"
    ref     := IDENT "." IDENT ( "." IDENT )*

Templates embed expressions in strings with ${ ... }; "$${" escapes a
literal "${".
"""

from __future__ import annotations
import json
import re
import shlex
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from converge.domain.errors import UnknownReferenceError, ValidationError

VAR_ROOT = "var"
TRIGGER_ROOT = "trigger"
STEP_ROOT = "step"
RESERVED_ROOTS = frozenset({VAR_ROOT, TRIGGER_ROOT, STEP_ROOT})

_TOKEN_RE = re.compile(
    r"""
    (?P<number>-?\d+(?:\.\d+)?)
    | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<op>==|!=|&&|\|\||[!?:().])
    | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


class _Unknown:
    """Value that will only be known after apply."""

    _instance = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"


UNKNOWN = _Unknown()


# -- AST ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    root: str
    field: str
    path: tuple[str, ...] = ()

    @property
    def is_node_ref(self) -> bool:
        return self.root not in RESERVED_ROOTS

    def __str__(self) -> str:
        return ".".join((self.root, self.field) + self.path)


@dataclass(frozen=True)
class Not:
    operand: "Expr"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Conditional:
    test: "Expr"
    if_true: "Expr"
    if_false: "Expr"


Expr = Union[Literal, Ref, Not, BinaryOp, Conditional]
Resolver = Callable[[Ref], Any]


@dataclass(frozen=True)
class Template:
    parts: tuple[Union[str, Expr], ...]

    @property
    def expressions(self) -> list[Expr]:
        return [p for p in self.parts if not isinstance(p, str)]

    @property
    def is_single_expression(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)


# -- Parsing -----------------------------------------------------------------

def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ValidationError(
                [f"unexpected character {text[pos]!r} in expression {text!r}"]
            )
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def parse(self) -> Expr:
        if not self.tokens:
            self._fail("empty expression")
        expr = self._expr()
        if self.index != len(self.tokens):
            self._fail(f"unexpected token {self.tokens[self.index][1]!r}")
        return expr

    def _fail(self, message: str) -> None:
        raise ValidationError([f"{message} in expression {self.text!r}"])

    def _peek(self) -> tuple[str, str] | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _accept(self, op: str) -> bool:
        token = self._peek()
        if token and token[0] == "op" and token[1] == op:
            self.index += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            self._fail(f"expected {op!r}")

    def _expr(self) -> Expr:
        test = self._or()
        if self._accept("?"):
            if_true = self._expr()
            self._expect(":")
            if_false = self._expr()
            return Conditional(test, if_true, if_false)
        return test

    def _or(self) -> Expr:
        left = self._and()
        while self._accept("||"):
            left = BinaryOp("||", left, self._and())
        return left

    def _and(self) -> Expr:
        left = self._not()
        while self._accept("&&"):
            left = BinaryOp("&&", left, self._not())
        return left

    def _not(self) -> Expr:
        if self._accept("!"):
            return Not(self._not())
        return self._cmp()

    def _cmp(self) -> Expr:
        left = self._primary()
        for op in ("==", "!="):
            if self._accept(op):
                return BinaryOp(op, left, self._primary())
        return left

    def _primary(self) -> Expr:
        token = self._peek()
        if token is None:
            self._fail("unexpected end")
        kind, value = token
        self.index += 1
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(re.sub(r"\\(.)", r"\1", value[1:-1]))
        if kind == "op" and value == "(":
            expr = self._expr()
            self._expect(")")
            return expr
        if kind == "ident":
            if value in _KEYWORDS:
                return Literal(_KEYWORDS[value])
            parts = [value]
            while self._accept("."):
                nxt = self._peek()
                if nxt is None or nxt[0] != "ident":
                    self._fail(f"expected a name after '{'.'.join(parts)}.'")
                parts.append(nxt[1])
                self.index += 1
            if len(parts) < 2:
                self._fail(f"bare name {value!r}; references look like 'node.field'")
            return Ref(parts[0], parts[1], tuple(parts[2:]))
        self._fail(f"unexpected token {value!r}")
        raise AssertionError("unreachable")


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> Expr:
    return _Parser(text).parse()


def parse_condition(text: str) -> Expr:
    """Parse a condition, accepting both 'var.x' and '${var.x}' spellings."""
    stripped = text.strip()
    if stripped.startswith("${") and stripped.endswith("}"):
        stripped = stripped[2:-1]
    return parse_expression(stripped)


def _find_closing(text: str, start: int) -> int:
    quote = None
    j = start
    while j < len(text):
        c = text[j]
        if quote:
            if c == "\\":
                j += 1
            elif c == quote:
                quote = None
        elif c in "\"'":
            quote = c
        elif c == "}":
            return j
        j += 1
    return -1


@lru_cache(maxsize=4096)
def parse_template(text: str) -> Template:
    parts: list[Union[str, Expr]] = []
    buf: list[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buf.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = _find_closing(text, i + 2)
            if end == -1:
                raise ValidationError([f"unterminated placeholder in {text!r}"])
            if buf:
                parts.append("".join(buf))
                buf = []
            parts.append(parse_expression(text[i + 2:end]))
            i = end + 1
            continue
        buf.append(text[i])
        i += 1
    if buf:
        parts.append("".join(buf))
    return Template(tuple(parts))


# -- Walking -----------------------------------------------------------------

def iter_refs(expr: Expr) -> Iterator[Ref]:
    if isinstance(expr, Ref):
        yield expr
    elif isinstance(expr, Not):
        yield from iter_refs(expr.operand)
    elif isinstance(expr, BinaryOp):
        yield from iter_refs(expr.left)
        yield from iter_refs(expr.right)
    elif isinstance(expr, Conditional):
        yield from iter_refs(expr.test)
        yield from iter_refs(expr.if_true)
        yield from iter_refs(expr.if_false)


def iter_expressions(value: Any) -> Iterator[Expr]:
    """Yield every expression embedded in a literal/template value."""
    if isinstance(value, str):
        yield from parse_template(value).expressions
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_expressions(item)


def references(value: Any) -> set[Ref]:
    return {ref for expr in iter_expressions(value) for ref in iter_refs(expr)}


def _live_refs(
    expr: Expr, resolve_static: Resolver, static_roots: frozenset[str]
) -> Iterator[Ref]:
    if isinstance(expr, Conditional):
        test_refs = list(iter_refs(expr.test))
        if all(ref.root in static_roots for ref in test_refs):
            branch = evaluate(expr.test, resolve_static)
            if isinstance(branch, bool):
                chosen = expr.if_true if branch else expr.if_false
                yield from _live_refs(chosen, resolve_static, static_roots)
                return
        yield from iter_refs(expr)
    elif isinstance(expr, Not):
        yield from _live_refs(expr.operand, resolve_static, static_roots)
    elif isinstance(expr, BinaryOp):
        yield from _live_refs(expr.left, resolve_static, static_roots)
        yield from _live_refs(expr.right, resolve_static, static_roots)
    elif isinstance(expr, Ref):
        yield expr


def live_references(
    value: Any,
    resolve_static: Resolver,
    static_roots: Iterable[str] = (VAR_ROOT,),
) -> set[Ref]:
    """References that can actually be read given the static (variable) scope.

    Ternaries whose test only reads static roots are decided up front, so
    the untaken arm contributes no references.
    """
    roots = frozenset(static_roots)
    return {
        ref
        for expr in iter_expressions(value)
        for ref in _live_refs(expr, resolve_static, roots)
    }


# -- Evaluation --------------------------------------------------------------

def _require_bool(value: Any, what: str) -> Any:
    if value is UNKNOWN or isinstance(value, bool):
        return value
    raise ValidationError([f"{what} must be a boolean, got {value!r}"])


def evaluate(expr: Expr, resolve: Resolver) -> Any:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Ref):
        return resolve(expr)
    if isinstance(expr, Not):
        operand = _require_bool(evaluate(expr.operand, resolve), "operand of '!'")
        return UNKNOWN if operand is UNKNOWN else not operand
    if isinstance(expr, BinaryOp):
        if expr.op in ("==", "!="):
            left = evaluate(expr.left, resolve)
            right = evaluate(expr.right, resolve)
            if left is UNKNOWN or right is UNKNOWN:
                return UNKNOWN
            return (left == right) if expr.op == "==" else (left != right)
        left = _require_bool(evaluate(expr.left, resolve), f"left side of '{expr.op}'")
        if expr.op == "&&" and left is False:
            return False
        if expr.op == "||" and left is True:
            return True
        right = _require_bool(evaluate(expr.right, resolve), f"right side of '{expr.op}'")
        if left is UNKNOWN:
            if expr.op == "&&" and right is False:
                return False
            if expr.op == "||" and right is True:
                return True
            return UNKNOWN
        return right
    if isinstance(expr, Conditional):
        test = _require_bool(evaluate(expr.test, resolve), "ternary condition")
        if test is UNKNOWN:
            return UNKNOWN
        return evaluate(expr.if_true if test else expr.if_false, resolve)
    raise TypeError(f"not an expression: {expr!r}")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def render(value: Any, resolve: Resolver) -> Any:
    """Substitute every placeholder in a literal/template value."""
    if isinstance(value, str):
        template = parse_template(value)
        if not template.expressions:
            return "".join(template.parts)
        if template.is_single_expression:
            return evaluate(template.parts[0], resolve)
        pieces = []
        for part in template.parts:
            if isinstance(part, str):
                pieces.append(part)
                continue
            result = evaluate(part, resolve)
            if result is UNKNOWN:
                return UNKNOWN
            pieces.append(_stringify(result))
        return "".join(pieces)
    if isinstance(value, Mapping):
        return {k: render(v, resolve) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render(v, resolve) for v in value]
    return value


def render_command(text: str, resolve: Resolver) -> str:
    """Render a shell command template, quoting every substituted value.

    Literal template text reaches the shell as written; values coming from
    variables, the trigger or artifacts always arrive as single words.
    """
    pieces = []
    for part in parse_template(text).parts:
        if isinstance(part, str):
            pieces.append(part)
        else:
            pieces.append(shlex.quote(_stringify(evaluate(part, resolve))))
    return "".join(pieces)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def walk_path(value: Any, ref: Ref) -> Any:
    """Index into nested mappings for the path part of a reference."""
    for key in ref.path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, Mapping) and key in value:
            value = value[key]
        else:
            raise UnknownReferenceError("expression", str(ref), f"no key '{key}'")
    return value


def scoped_resolver(
    scopes: Mapping[str, Mapping[str, Any]],
    nodes: Resolver | None = None,
) -> Resolver:
    """Build a resolver reading reserved roots from scopes, nodes elsewhere."""

    def resolve(ref: Ref) -> Any:
        if ref.root in scopes:
            scope = scopes[ref.root]
            if ref.field not in scope:
                raise UnknownReferenceError("expression", str(ref))
            return walk_path(scope[ref.field], ref)
        if nodes is None:
            raise UnknownReferenceError("expression", str(ref), "no such scope here")
        return nodes(ref)

    return resolve
