# src/hubflow/engine/expression_parser.py
"""Restricted expression language for formulas, filters, edge and step conditions.

Expressions are Python expression syntax, parsed with the ast module and
compiled once into a tree of closures. Nothing is ever handed to eval().
Every construct is checked while compiling; an expression that compiles
can only read the record and the pipeline variables and call functions
from the closed table in hubflow.engine.functions.

Name resolution:
    record       the record being evaluated
    vars         the pipeline variables
    other names  a field of the record (``price * qty``)

The only method calls are ``record.get(key[, default])`` and
``vars.get(key[, default])``.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from hubflow.engine.functions import FUNCTION_TABLE


class ExpressionSecurityError(Exception):
    """Expression uses a construct outside the language."""


class ExpressionSyntaxError(Exception):
    """Expression is not valid syntax."""


class ExpressionEvaluationError(Exception):
    """A valid expression failed against a particular record.

    Raised for missing fields, bad operand types, division by zero and
    functions rejecting their arguments. The underlying exception is
    chained via __cause__.
    """


@dataclass(frozen=True, slots=True)
class _Scope:
    record: dict[str, Any]
    variables: dict[str, Any]


_Compiled = Callable[[_Scope], Any]

_COMPARE: dict[type[ast.cmpop], Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ARITHMETIC: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

# Python syntax that is valid in an expression but not in this language
_REJECTED: dict[type[ast.AST], str] = {
    ast.Lambda: "Lambda expressions are forbidden",
    ast.ListComp: "List comprehensions are forbidden",
    ast.DictComp: "Dict comprehensions are forbidden",
    ast.SetComp: "Set comprehensions are forbidden",
    ast.GeneratorExp: "Generator expressions are forbidden",
    ast.Await: "Await expressions are forbidden",
    ast.Yield: "Yield expressions are forbidden",
    ast.YieldFrom: "Yield from expressions are forbidden",
    ast.NamedExpr: "Assignment expressions (:=) are forbidden",
    ast.JoinedStr: "F-strings are forbidden",
    ast.Starred: "Starred expressions (*) are forbidden",
    ast.Slice: "Slice syntax (e.g., [1:3]) is forbidden",
}

_MAPPINGS = ("record", "vars")


def _mapping_get(node: ast.expr) -> str | None:
    """'record' or 'vars' when node is ``record.get`` / ``vars.get``."""
    if isinstance(node, ast.Attribute) and node.attr == "get" and isinstance(node.value, ast.Name) and node.value.id in _MAPPINGS:
        return node.value.id
    return None


def _is_none(node: ast.expr) -> bool:
    return isinstance(node, ast.Constant) and node.value is None


def _missing_field(key: Any, mapping: dict[str, Any]) -> ExpressionEvaluationError:
    return ExpressionEvaluationError(f"Field '{key}' not found. Available fields: {sorted(mapping)}")


def _field(name: str) -> _Compiled:
    def read(scope: _Scope) -> Any:
        try:
            return scope.record[name]
        except KeyError as e:
            raise _missing_field(name, scope.record) from e

    return read


def _index(value: Any, key: Any) -> Any:
    try:
        return value[key]
    except KeyError as e:
        if isinstance(value, dict):
            raise _missing_field(key, value) from e
        raise ExpressionEvaluationError(f"Key '{key}' not found in {type(value).__name__}") from e
    except IndexError as e:
        raise ExpressionEvaluationError(f"Index {key} out of range for {type(value).__name__} of length {len(value)}") from e
    except TypeError as e:
        raise ExpressionEvaluationError(f"Cannot access '{key}' on {type(value).__name__}: {e}") from e


class _Compiler:
    """Turns a parsed expression into closures, collecting every rejected construct."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def reject(self, message: str) -> _Compiled:
        self.errors.append(message)
        return lambda scope: None

    def compile(self, node: ast.AST) -> _Compiled:
        if type(node) in _REJECTED:
            return self.reject(_REJECTED[type(node)])
        method = getattr(self, f"_{type(node).__name__}", None)
        if method is None:
            return self.reject(f"Unsupported syntax: {type(node).__name__}")
        compiled: _Compiled = method(node)
        return compiled

    def _Constant(self, node: ast.Constant) -> _Compiled:
        value = node.value
        if value is not None and not isinstance(value, str | int | float | bool):
            return self.reject(f"Forbidden constant type: {type(value).__name__}")
        return lambda scope: value

    def _Name(self, node: ast.Name) -> _Compiled:
        if node.id == "record":
            return lambda scope: scope.record
        if node.id == "vars":
            return lambda scope: scope.variables
        if node.id.startswith("__"):
            return self.reject(f"Forbidden name: {node.id!r}")
        return _field(node.id)

    def _Attribute(self, node: ast.Attribute) -> _Compiled:
        # Reached only outside a call; record.get(...) is handled by _Call
        if _mapping_get(node) is not None:
            return self.reject("Bare '.get' is forbidden; use 'record.get(key)' or 'record.get(key, default)'")
        return self.reject(f"Forbidden attribute access: {node.attr!r}")

    def _Subscript(self, node: ast.Subscript) -> _Compiled:
        if not isinstance(node.value, ast.Name | ast.Subscript | ast.Call):
            self.errors.append("Subscript access is only allowed on fields, record or vars")
        value = self.compile(node.value)
        key = self.compile(node.slice)
        return lambda scope: _index(value(scope), key(scope))

    def _Call(self, node: ast.Call) -> _Compiled:
        if node.keywords:
            self.errors.append("Keyword arguments are not supported in function calls")
        args = [self.compile(arg) for arg in node.args]

        mapping = _mapping_get(node.func)
        if mapping is not None:
            if not 1 <= len(args) <= 2:
                return self.reject(f".get() requires 1 or 2 arguments, got {len(args)}")
            if mapping == "record":
                return lambda scope: scope.record.get(*(arg(scope) for arg in args))
            return lambda scope: scope.variables.get(*(arg(scope) for arg in args))

        if not isinstance(node.func, ast.Name):
            return self.reject(f"Forbidden function call: {ast.dump(node.func)}")
        name = node.func.id
        function = FUNCTION_TABLE.get(name)
        if function is None:
            return self.reject(f"Unknown function: {name!r}")

        def call(scope: _Scope) -> Any:
            values = [arg(scope) for arg in args]
            try:
                return function(*values)
            except (TypeError, ValueError, ArithmeticError) as e:
                raise ExpressionEvaluationError(f"{name}() failed: {e}") from e

        return call

    def _Compare(self, node: ast.Compare) -> _Compiled:
        operands = [node.left, *node.comparators]
        steps: list[tuple[str, Callable[[Any, Any], Any], _Compiled]] = []
        for i, op in enumerate(node.ops):
            if isinstance(op, ast.Is | ast.IsNot) and not (_is_none(operands[i]) or _is_none(operands[i + 1])):
                self.errors.append("'is' and 'is not' operators are only allowed for None checks")
            steps.append((type(op).__name__, _COMPARE[type(op)], self.compile(operands[i + 1])))
        first = self.compile(node.left)

        def compare(scope: _Scope) -> bool:
            left = first(scope)
            for op_name, op, compiled in steps:
                right = compiled(scope)
                try:
                    if not op(left, right):
                        return False
                except TypeError as e:
                    raise ExpressionEvaluationError(
                        f"type error in comparison ({op_name}): cannot compare {type(left).__name__} and {type(right).__name__}"
                    ) from e
                left = right
            return True

        return compare

    def _BoolOp(self, node: ast.BoolOp) -> _Compiled:
        values = [self.compile(value) for value in node.values]
        stop_when = not isinstance(node.op, ast.And)

        def boolean(scope: _Scope) -> Any:
            result: Any = None
            for value in values:
                result = value(scope)
                if bool(result) is stop_when:
                    return result
            return result

        return boolean

    def _BinOp(self, node: ast.BinOp) -> _Compiled:
        op = _ARITHMETIC.get(type(node.op))
        op_name = type(node.op).__name__
        if op is None:
            return self.reject(f"Forbidden binary operator: {op_name}")
        left, right = self.compile(node.left), self.compile(node.right)

        def arithmetic(scope: _Scope) -> Any:
            a, b = left(scope), right(scope)
            try:
                return op(a, b)
            except ZeroDivisionError as e:
                raise ExpressionEvaluationError(f"division by zero in {op_name} operation") from e
            except TypeError as e:
                raise ExpressionEvaluationError(
                    f"type error in {op_name}: cannot apply to {type(a).__name__} and {type(b).__name__}"
                ) from e

        return arithmetic

    def _UnaryOp(self, node: ast.UnaryOp) -> _Compiled:
        op = _UNARY.get(type(node.op))
        op_name = type(node.op).__name__
        if op is None:
            return self.reject(f"Forbidden unary operator: {op_name}")
        operand = self.compile(node.operand)

        def unary(scope: _Scope) -> Any:
            value = operand(scope)
            try:
                return op(value)
            except TypeError as e:
                raise ExpressionEvaluationError(f"type error in unary {op_name}: cannot apply to {type(value).__name__}") from e

        return unary

    def _IfExp(self, node: ast.IfExp) -> _Compiled:
        test, body, orelse = self.compile(node.test), self.compile(node.body), self.compile(node.orelse)
        return lambda scope: body(scope) if test(scope) else orelse(scope)

    def _List(self, node: ast.List) -> _Compiled:
        items = [self.compile(elt) for elt in node.elts]
        return lambda scope: [item(scope) for item in items]

    def _Tuple(self, node: ast.Tuple) -> _Compiled:
        items = [self.compile(elt) for elt in node.elts]
        return lambda scope: tuple(item(scope) for item in items)

    def _Set(self, node: ast.Set) -> _Compiled:
        items = [self.compile(elt) for elt in node.elts]

        def build(scope: _Scope) -> set[Any]:
            try:
                return {item(scope) for item in items}
            except TypeError as e:
                raise ExpressionEvaluationError(f"cannot create set literal: {e}") from e

        return build

    def _Dict(self, node: ast.Dict) -> _Compiled:
        if any(key is None for key in node.keys):
            return self.reject("Dict spread (**) is forbidden")
        pairs = [(self.compile(k), self.compile(v)) for k, v in zip(node.keys, node.values, strict=True) if k is not None]

        def build(scope: _Scope) -> dict[Any, Any]:
            try:
                return {key(scope): value(scope) for key, value in pairs}
            except TypeError as e:
                raise ExpressionEvaluationError(f"cannot create dict literal: {e}") from e

        return build


class ExpressionParser:
    """A parsed, checked and compiled expression.

    Allowed:
    - Field access: ``price``, ``record['price']``, ``record.get('price', 0)``
    - Variables: ``vars['threshold']``, ``vars.get('threshold')``
    - Comparisons, ``in``/``not in``, ``is None``/``is not None``
    - and, or, not; ternary ``a if cond else b``
    - Arithmetic: + - * / // %
    - Literals, including list/tuple/set/dict literals
    - Calls to the closed function table (``upper(name)``, ``round(x, 2)``)

    Example:
        parser = ExpressionParser("price * qty > 100")
        parser.evaluate({"price": 20, "qty": 6})  # True
    """

    def __init__(self, expression: str) -> None:
        """Parse and compile.

        Raises:
            ExpressionSecurityError: Every forbidden construct, joined with "; "
            ExpressionSyntaxError: If expression is not valid syntax
        """
        self._expression = expression
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise ExpressionSyntaxError(f"Invalid syntax: {e.msg}") from e

        compiler = _Compiler()
        self._compiled = compiler.compile(tree.body)
        if compiler.errors:
            raise ExpressionSecurityError("; ".join(compiler.errors))

    @property
    def expression(self) -> str:
        return self._expression

    def evaluate(self, record: dict[str, Any] | None = None, variables: dict[str, Any] | None = None) -> Any:
        """Evaluate against a record and pipeline variables.

        Raises:
            ExpressionEvaluationError: If evaluation fails for this record
        """
        return self._compiled(_Scope(record if record is not None else {}, variables if variables is not None else {}))

    def __repr__(self) -> str:
        return f"ExpressionParser({self._expression!r})"


@lru_cache(maxsize=1024)
def parse_expression(expression: str) -> ExpressionParser:
    """Parse an expression, reusing previously compiled instances.

    Compiled expressions hold no per-evaluation state, so sharing them
    across threads is safe.
    """
    return ExpressionParser(expression)


def check_expression(expression: str) -> str | None:
    """Return why an expression is invalid, or None."""
    try:
        parse_expression(expression)
    except (ExpressionSyntaxError, ExpressionSecurityError) as e:
        return str(e)
    return None
