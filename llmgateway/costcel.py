"""A small CEL-style expression language for computing request costs."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from lark import Lark, Token, Tree
from lark.exceptions import LarkError

_GRAMMAR = r"""
?start: expr
?expr: or_expr "?" expr ":" expr -> cond
     | or_expr
?or_expr: or_expr "||" and_expr -> or_
        | and_expr
?and_expr: and_expr "&&" rel -> and_
         | rel
?rel: rel "==" add -> eq
    | rel "!=" add -> ne
    | rel "<=" add -> le
    | rel ">=" add -> ge
    | rel "<" add -> lt
    | rel ">" add -> gt
    | add
?add: add "+" mul -> plus
    | add "-" mul -> minus
    | mul
?mul: mul "*" unary -> times
    | mul "/" unary -> div
    | mul "%" unary -> mod
    | unary
?unary: "-" unary -> neg
      | "!" unary -> not_
      | primary
?primary: UINT -> uint_lit
        | INT -> int_lit
        | STRING -> str_lit
        | "true" -> true
        | "false" -> false
        | NAME "(" args ")" -> call
        | NAME "(" ")" -> call
        | NAME -> var
        | "(" expr ")"
args: expr ("," expr)*
UINT.2: /\d+[uU]/
INT: /\d+/
STRING: /'[^']*'/ | /"[^"]*"/
NAME: /[A-Za-z_][A-Za-z0-9_]*/
%ignore /\s+/
"""

_PARSER = Lark(_GRAMMAR, parser="lalr")
_PARSE_LOCK = threading.Lock()

_VARIABLES = ("model", "backend", "input_tokens", "output_tokens", "total_tokens")
_FUNCTIONS = ("int", "uint", "string")
_INT_MIN, _INT_MAX = -(2**63), 2**63 - 1
_UINT_MAX = 2**64 - 1


class CostExpressionError(Exception):
    """Raised when a cost expression cannot be compiled or evaluated."""


class _EvalError(Exception):
    pass


class _Uint(int):
    """An unsigned integer value."""


def _kind(v: Any) -> str:
    if isinstance(v, bool):
        return "bool"
    if isinstance(v, _Uint):
        return "uint"
    if isinstance(v, int):
        return "int"
    return "string"


def _num(kind: str, value: int) -> Any:
    if kind == "uint":
        if not 0 <= value <= _UINT_MAX:
            raise _EvalError("unsigned integer overflow")
        return _Uint(value)
    if not _INT_MIN <= value <= _INT_MAX:
        raise _EvalError("integer overflow")
    return int(value)


def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


@dataclass(frozen=True)
class Program:
    """A compiled cost expression."""

    expr: str
    tree: Any


def _check(node: Any) -> None:
    if isinstance(node, Token):
        return
    if node.data == "var":
        name = str(node.children[0])
        if name not in _VARIABLES:
            raise CostExpressionError(
                f"cannot compile CEL expression: undeclared reference to '{name}'"
            )
        return
    if node.data == "call":
        name = str(node.children[0])
        if name not in _FUNCTIONS:
            raise CostExpressionError(
                f"cannot compile CEL expression: undeclared reference to '{name}'"
            )
        for child in node.children[1:]:
            _check(child)
        return
    if node.data in ("int_lit", "uint_lit"):
        text = str(node.children[0]).rstrip("uU")
        limit = _UINT_MAX if node.data == "uint_lit" else _INT_MAX
        if int(text) > limit:
            raise CostExpressionError("cannot compile CEL expression: integer literal out of range")
        return
    for child in node.children:
        _check(child)


_BINARY = {
    "plus": lambda a, b: a + b,
    "minus": lambda a, b: a - b,
    "times": lambda a, b: a * b,
}
_COMPARE = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "lt": lambda a, b: a < b,
    "le": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "ge": lambda a, b: a >= b,
}


def _eval(node: Any, env: dict[str, Any]) -> Any:
    op = node.data
    ch = node.children
    if op == "int_lit":
        return int(str(ch[0]))
    if op == "uint_lit":
        return _Uint(int(str(ch[0])[:-1]))
    if op == "str_lit":
        return str(ch[0])[1:-1]
    if op == "true":
        return True
    if op == "false":
        return False
    if op == "var":
        return env[str(ch[0])]
    if op == "cond":
        c = _eval(ch[0], env)
        if _kind(c) != "bool":
            raise _EvalError("no matching overload for '_?_:_'")
        return _eval(ch[1] if c else ch[2], env)
    if op in ("or_", "and_"):
        a = _eval(ch[0], env)
        if _kind(a) != "bool":
            raise _EvalError("no such overload")
        if (op == "or_" and a) or (op == "and_" and not a):
            return a
        b = _eval(ch[1], env)
        if _kind(b) != "bool":
            raise _EvalError("no such overload")
        return b
    if op == "not_":
        a = _eval(ch[0], env)
        if _kind(a) != "bool":
            raise _EvalError("no such overload")
        return not a
    if op == "neg":
        a = _eval(ch[0], env)
        if _kind(a) != "int":
            raise _EvalError("no such overload")
        return _num("int", -a)
    if op == "call":
        return _call(str(ch[0]), [_eval(c, env) for c in (ch[1].children if len(ch) > 1 else [])])
    a, b = _eval(ch[0], env), _eval(ch[1], env)
    ka, kb = _kind(a), _kind(b)
    if op in _COMPARE:
        numeric = {ka, kb} <= {"int", "uint"}
        if ka != kb and not numeric:
            if op in ("eq", "ne"):
                return op == "ne"
            raise _EvalError("no such overload")
        return _COMPARE[op](a, b)
    if ka != kb:
        raise _EvalError("no such overload")
    if op == "plus" and ka == "string":
        return a + b
    if ka not in ("int", "uint"):
        raise _EvalError("no such overload")
    if op in _BINARY:
        return _num(ka, _BINARY[op](int(a), int(b)))
    if b == 0:
        raise _EvalError("division by zero" if op == "div" else "modulus by zero")
    q = _trunc_div(int(a), int(b))
    return _num(ka, q if op == "div" else int(a) - q * int(b))


def _call(name: str, args: list[Any]) -> Any:
    if len(args) != 1:
        raise _EvalError(f"no matching overload for '{name}'")
    (v,) = args
    kind = _kind(v)
    if name == "string":
        return str(v).lower() if kind == "bool" else str(int(v) if kind != "string" else v)
    if kind == "bool":
        raise _EvalError(f"no matching overload for '{name}'")
    if kind == "string":
        try:
            v = int(v)
        except ValueError as exc:
            raise _EvalError(f"cannot parse '{v}' as {name}") from exc
    if name == "int":
        if not _INT_MIN <= v <= _INT_MAX:
            raise _EvalError("integer overflow")
        return int(v)
    if v < 0 or v > _UINT_MAX:
        raise _EvalError("unsigned integer overflow")
    return _Uint(v)


def new_program(expr: str) -> Program:
    """Compile ``expr`` and check that it evaluates with placeholder values."""
    try:
        with _PARSE_LOCK:
            tree = _PARSER.parse(expr)
    except LarkError as exc:
        raise CostExpressionError(f"cannot compile CEL expression: {exc}") from exc
    if isinstance(tree, Token):
        tree = Tree("str_lit" if tree.type == "STRING" else "int_lit", [tree])
    _check(tree)
    program = Program(expr=expr, tree=tree)
    try:
        evaluate_program(program, "dummy", "dummy", 0, 0, 0)
    except CostExpressionError as exc:
        raise CostExpressionError(f"failed to evaluate CEL expression: {exc}") from exc
    return program


def evaluate_program(
    program: Program,
    model_name: str,
    backend: str,
    input_tokens: int,
    output_tokens: int,
    total_tokens: int,
) -> int:
    """Evaluate ``program`` and return a non-negative integer cost."""
    env = {
        "model": model_name,
        "backend": backend,
        "input_tokens": _Uint(input_tokens),
        "output_tokens": _Uint(output_tokens),
        "total_tokens": _Uint(total_tokens),
    }
    try:
        result = _eval(program.tree, env)
    except _EvalError as exc:
        raise CostExpressionError(f"failed to evaluate CEL expression: {exc}") from exc
    kind = _kind(result)
    if kind == "int":
        if result < 0:
            raise CostExpressionError(f"CEL expression result is negative ({result})")
        return int(result)
    if kind == "uint":
        return int(result)
    raise CostExpressionError(f"CEL expression result is not an integer, got {kind}")