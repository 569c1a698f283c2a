"""Restricted expression evaluation for ``core.condition`` steps.

Conditions are written against the run context, e.g.
``steps.fetch.status == 200 and len(trigger.body.items) > 0``. The expression
is parsed with :mod:`ast` and walked by :class:`ConditionEvaluator`, which only
knows how to evaluate an allowlisted set of nodes. Dotted access reads keys of
mappings; there is no way to reach Python attributes.
"""
from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Callable

ARITHMETIC: Mapping[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

COMPARISONS: Mapping[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

CONDITION_FUNCTIONS: Mapping[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda value: str(value).lower(),
    "contains": lambda haystack, needle: needle in haystack,
}

# YAML spellings authors reach for in workflow files
LITERAL_ALIASES = {"true": True, "false": False, "null": None}

FORBIDDEN_NODES = (
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
)

MAX_DEPTH = 100


class ConditionEvaluator(ast.NodeVisitor):
    """Evaluates a parsed condition; any node without a ``visit_`` method is rejected."""

    def __init__(self, names: Mapping[str, Any], functions: Mapping[str, Callable[..., Any]] | None = None):
        self.names = {**LITERAL_ALIASES, **names}
        self.functions = functions or {}
        self._depth = 0

    def visit(self, node: ast.AST) -> Any:
        self._depth += 1
        try:
            if self._depth > MAX_DEPTH:
                raise ValueError("expression too deeply nested")
            return super().visit(node)
        finally:
            self._depth -= 1

    def generic_visit(self, node: ast.AST) -> Any:
        raise ValueError(f"unsupported expression node: {type(node).__name__}")

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        try:
            return self.names[node.id]
        except KeyError:
            raise ValueError(f"unknown name {node.id}") from None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        target = self.visit(node.value)
        if not isinstance(target, Mapping):
            raise ValueError("attribute access is only allowed on mappings")
        return target.get(node.attr)

    def visit_BoolOp(self, node: ast.BoolOp) -> bool:
        if isinstance(node.op, ast.And):
            return all(bool(self.visit(value)) for value in node.values)
        return any(bool(self.visit(value)) for value in node.values)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = ARITHMETIC.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        return op(self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = COMPARISONS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name):
            raise ValueError("only named functions can be called")
        func = self.functions.get(node.func.id)
        if func is None:
            raise ValueError(f"function '{node.func.id}' is not available in conditions")
        if node.keywords:
            raise ValueError("keyword arguments not permitted")
        return func(*(self.visit(arg) for arg in node.args))

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        index = self.visit(node.slice)
        if not isinstance(target, (Mapping, Sequence)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}") from exc

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(element) for element in node.elts)


def parse_condition(expression: str) -> ast.Expression:
    """Parse and statically vet a condition before anything is evaluated."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc
    for node in ast.walk(tree):
        if isinstance(node, FORBIDDEN_NODES):
            raise ValueError(f"{type(node).__name__} is not allowed in conditions")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ValueError("private attribute access is not permitted")
    return tree


def evaluate_condition(
    expression: str,
    names: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> Any:
    return ConditionEvaluator(names, functions).visit(parse_condition(expression))
