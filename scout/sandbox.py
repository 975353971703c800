"""Restricted evaluator for per-target assertion scripts.

A script is a handful of Python statements run against a probe result::

    assert status_code == 200, f"unexpected status {status_code}"
    latency = response_time
    check(latency < 2000, "too slow")
    assert body["status"] == "ok"

Only ``assert``, assignment to plain names and bare function calls are
accepted. Expressions cannot reach attributes, dunder names, imports or
loops, and the only callables are the whitelisted pure helpers below, so a
script has no handle on the host process, the network or the filesystem.
Every run gets a fresh namespace and its own copy of the body.

Repetition, concatenation, integer products and string rendering are size
checked at run time, so a script cannot build values larger than
``MAX_SEQUENCE_LEN`` items.
"""

from __future__ import annotations

import ast
import copy
import re
from dataclasses import dataclass
from functools import lru_cache
from types import CodeType
from typing import Any, Callable

from scout.errors import ProbeAssertionError, ScriptError


MAX_SCRIPT_CHARS = 20_000
# Upper bound on items (or characters) a script may build in one value.
MAX_SEQUENCE_LEN = 1_000_000
MAX_INT_BITS = 16_384
MAX_FSTRING_FIELDS = 16

_SEQUENCE_TYPES = (str, bytes, list, tuple)
_WIDE_FORMAT_SPEC = re.compile(r"\d{5,}")


def check(condition: Any, message: Any = None) -> None:
    if not condition:
        raise ProbeAssertionError(str(message) if message is not None else "check failed")


def _silent_log(*args: Any, **kwargs: Any) -> None:
    return None


def _check_len(n: int) -> None:
    if n > MAX_SEQUENCE_LEN:
        raise ScriptError(f"value too large: {n} items exceeds {MAX_SEQUENCE_LEN}")


def _check_int(bits: int) -> None:
    if bits > MAX_INT_BITS:
        raise ScriptError(f"integer too large: more than {MAX_INT_BITS} bits")


def _bounded_mult(left: Any, right: Any) -> Any:
    if isinstance(left, _SEQUENCE_TYPES) and isinstance(right, int):
        _check_len(len(left) * max(right, 0))
    elif isinstance(right, _SEQUENCE_TYPES) and isinstance(left, int):
        _check_len(len(right) * max(left, 0))
    elif isinstance(left, int) and isinstance(right, int):
        _check_int(abs(left).bit_length() + abs(right).bit_length())
    return left * right


def _bounded_add(left: Any, right: Any) -> Any:
    if isinstance(left, _SEQUENCE_TYPES) and isinstance(right, _SEQUENCE_TYPES):
        _check_len(len(left) + len(right))
    return left + right


def _bounded_mod(left: Any, right: Any) -> Any:
    if isinstance(left, (str, bytes)):
        raise ScriptError("%-formatting is not supported; use an f-string")
    return left % right


def _rendered_size(value: Any) -> int:
    """Approximate length of str(value); stops counting past MAX_SEQUENCE_LEN."""
    total = 0
    stack = [value]
    while stack and total <= MAX_SEQUENCE_LEN:
        item = stack.pop()
        if isinstance(item, (str, bytes)):
            total += len(item) + 2
        elif isinstance(item, (list, tuple, set, frozenset)):
            total += len(item) + 2
            stack.extend(item)
        elif isinstance(item, dict):
            total += 2 * len(item) + 2
            stack.extend(item.keys())
            stack.extend(item.values())
        else:
            total += 8
    return total


def _bounded_render(value: Any) -> Any:
    _check_len(_rendered_size(value))
    return value


def _bounded_str(*args: Any) -> str:
    if args:
        _bounded_render(args[0])
    return str(*args)


SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "int": int,
    "float": float,
    "str": _bounded_str,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
    "sorted": sorted,
    "check": check,
    "log": _silent_log,
}

_ALLOWED_NODES = (
    ast.Module,
    ast.Assert,
    ast.Assign,
    ast.Expr,
    ast.Pass,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Store,
    ast.Constant,
    ast.Call,
    ast.keyword,
    ast.Subscript,
    ast.Slice,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Set,
    ast.JoinedStr,
    ast.FormattedValue,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
)


class _ScriptValidator(ast.NodeVisitor):
    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, _ALLOWED_NODES):
            raise ScriptError(f"unsupported syntax: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            raise ScriptError(f"name not allowed: {node.id}")
        if isinstance(node.ctx, ast.Store) and node.id in SAFE_FUNCTIONS:
            raise ScriptError(f"cannot assign to builtin: {node.id}")
        self.generic_visit(node)

    def visit_Assign(self, node: ast.Assign) -> None:
        for target in node.targets:
            if not isinstance(target, ast.Name):
                raise ScriptError("only assignment to plain names is allowed")
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name):
            raise ScriptError("only direct function calls are allowed")
        if node.func.id not in SAFE_FUNCTIONS:
            raise ScriptError(f"function not allowed: {node.func.id}")
        for kw in node.keywords:
            if kw.arg is None:
                raise ScriptError("keyword unpacking is not allowed")
        self.generic_visit(node)

    def visit_JoinedStr(self, node: ast.JoinedStr) -> None:
        fields = sum(1 for v in node.values if isinstance(v, ast.FormattedValue))
        if fields > MAX_FSTRING_FIELDS:
            raise ScriptError(f"f-string has more than {MAX_FSTRING_FIELDS} fields")
        self.generic_visit(node)

    def visit_FormattedValue(self, node: ast.FormattedValue) -> None:
        spec = node.format_spec
        if spec is not None:
            if not all(isinstance(v, ast.Constant) for v in spec.values):
                raise ScriptError("dynamic format specs are not allowed")
            if any(_WIDE_FORMAT_SPEC.search(str(v.value)) for v in spec.values):
                raise ScriptError("format width too large")
        self.generic_visit(node)


# Operators rewritten into size-checked helper calls.
_GUARDED_OPS: dict[type, str] = {
    ast.Mult: "_bounded_mult",
    ast.Add: "_bounded_add",
    ast.Mod: "_bounded_mod",
}

_GUARD_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "_bounded_mult": _bounded_mult,
    "_bounded_add": _bounded_add,
    "_bounded_mod": _bounded_mod,
    "_bounded_render": _bounded_render,
}


class _SizeGuard(ast.NodeTransformer):
    """Routes value-growing operations through the checks above. Runs after validation."""

    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        helper = _GUARDED_OPS.get(type(node.op))
        if helper is None:
            return node
        call = ast.Call(func=ast.Name(id=helper, ctx=ast.Load()), args=[node.left, node.right], keywords=[])
        return ast.copy_location(call, node)

    def visit_FormattedValue(self, node: ast.FormattedValue) -> ast.AST:
        self.generic_visit(node)
        node.value = ast.copy_location(
            ast.Call(func=ast.Name(id="_bounded_render", ctx=ast.Load()), args=[node.value], keywords=[]),
            node.value,
        )
        return node


@dataclass(frozen=True)
class _Step:
    kind: str  # assert | assign | eval
    source: str
    code: CodeType
    message: CodeType | None = None
    names: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompiledScript:
    steps: tuple[_Step, ...]


def _expr_code(node: ast.expr, filename: str) -> CodeType:
    expression = ast.fix_missing_locations(_SizeGuard().visit(ast.Expression(body=node)))
    return compile(expression, filename, "eval")


@lru_cache(maxsize=256)
def compile_script(script: str) -> CompiledScript:
    """Parse and validate a script. Raises ScriptError when it is not acceptable."""
    source = script or ""
    if len(source) > MAX_SCRIPT_CHARS:
        raise ScriptError(f"script exceeds {MAX_SCRIPT_CHARS} characters")
    try:
        tree = ast.parse(source, filename="<test_case>", mode="exec")
    except SyntaxError as exc:
        raise ScriptError(f"syntax error at line {exc.lineno}: {exc.msg}") from exc

    _ScriptValidator().visit(tree)

    steps: list[_Step] = []
    for stmt in tree.body:
        text = ast.get_source_segment(source, stmt) or type(stmt).__name__
        if isinstance(stmt, ast.Assert):
            test_text = ast.get_source_segment(source, stmt.test) or text
            steps.append(
                _Step(
                    kind="assert",
                    source=test_text,
                    code=_expr_code(stmt.test, "<test_case>"),
                    message=_expr_code(stmt.msg, "<test_case>") if stmt.msg is not None else None,
                )
            )
        elif isinstance(stmt, ast.Assign):
            steps.append(
                _Step(
                    kind="assign",
                    source=text,
                    code=_expr_code(stmt.value, "<test_case>"),
                    names=tuple(t.id for t in stmt.targets if isinstance(t, ast.Name)),
                )
            )
        elif isinstance(stmt, ast.Expr):
            steps.append(_Step(kind="eval", source=text, code=_expr_code(stmt.value, "<test_case>")))
    return CompiledScript(steps=tuple(steps))


def _fresh_namespace(status_code: int | None, response_time: float | None, body: Any) -> dict[str, Any]:
    body_copy = copy.deepcopy(body)
    env: dict[str, Any] = {"__builtins__": {}}
    env.update(SAFE_FUNCTIONS)
    env.update(_GUARD_FUNCTIONS)
    env.update(
        {
            "status_code": status_code,
            "statusCode": status_code,
            "response_time": response_time,
            "responseTime": response_time,
            "body": body_copy,
        }
    )
    return env


def run_script(
    script: str,
    *,
    status_code: int | None,
    response_time: float | None,
    body: Any,
) -> None:
    """
    Run an assertion script against a captured probe result.

    Returns normally when every assertion holds. Raises ProbeAssertionError
    when one does not and ScriptError for anything else the script does wrong.
    """
    compiled = compile_script(script or "")
    env = _fresh_namespace(status_code, response_time, body)

    for step in compiled.steps:
        try:
            value = eval(step.code, env)
            if step.kind == "assign":
                for name in step.names:
                    env[name] = value
            elif step.kind == "assert" and not value:
                message = eval(step.message, env) if step.message is not None else None
                if message is None:
                    raise ProbeAssertionError(f"assertion failed: {step.source}")
                raise ProbeAssertionError(str(message))
        except ProbeAssertionError:
            raise
        except ScriptError as exc:
            raise ScriptError(f"{exc} (in: {step.source})") from exc
        except Exception as exc:
            raise ScriptError(f"{type(exc).__name__}: {exc} (in: {step.source})") from exc
