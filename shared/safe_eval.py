"""Safe expression evaluator used by the ``expression`` condition kind.

Supports a constrained grammar: literals, declared-variable lookups,
boolean logic, arithmetic and comparisons. No calls, attribute access,
subscripts or comprehensions; nothing is ever handed to ``eval``.
"""

from __future__ import annotations

import ast
import re
from typing import Any, Mapping


class SafeExpressionError(ValueError):
    """Raised when an expression contains unsupported/unsafe constructs."""


MAX_EXPRESSION_LENGTH = 500

_LITERAL_NAMES = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
    "none": None,
}

# String literals are matched first so operators inside quotes stay untouched.
_JS_OPERATOR_PATTERN = re.compile(
    r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")|(===|!==|&&|\|\||!(?!=))"""
)
_JS_OPERATORS = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
}


def normalize_js_operators(expression: str) -> str:
    """Rewrite JavaScript-style operators to their Python spelling."""

    def _replace(match: re.Match[str]) -> str:
        if match.group(1) is not None:
            return match.group(1)
        return _JS_OPERATORS[match.group(2)]

    return _JS_OPERATOR_PATTERN.sub(_replace, expression)


class _SafeEvaluator:
    def __init__(self, variables: Mapping[str, Any]):
        self.variables = variables

    def eval(self, expression: str) -> Any:
        tree = ast.parse(expression, mode="eval")
        return self._eval_node(tree)

    def _eval_node(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self._eval_node(node.body)

        if isinstance(node, ast.Constant):
            if isinstance(node.value, (str, int, float, bool)) or node.value is None:
                return node.value
            raise SafeExpressionError(f"Unsupported literal: {type(node.value).__name__}")

        if isinstance(node, ast.Name):
            name = node.id
            if name in _LITERAL_NAMES:
                return _LITERAL_NAMES[name]
            if name not in self.variables:
                raise SafeExpressionError(f"Undeclared variable '{name}'")
            return self.variables[name]

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(bool(self._eval_node(value)) for value in node.values)
            if isinstance(node.op, ast.Or):
                return any(bool(self._eval_node(value)) for value in node.values)
            raise SafeExpressionError("Unsupported boolean operator")

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand)
            if isinstance(node.op, ast.Not):
                return not bool(operand)
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            raise SafeExpressionError("Unsupported unary operator")

        if isinstance(node, ast.BinOp):
            left = self._eval_node(node.left)
            right = self._eval_node(node.right)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                if isinstance(left, str) or isinstance(right, str):
                    raise SafeExpressionError("String repetition is not allowed")
                return left * right
            if isinstance(node.op, ast.Div):
                return left / right
            if isinstance(node.op, ast.FloorDiv):
                return left // right
            if isinstance(node.op, ast.Mod):
                return left % right
            raise SafeExpressionError("Unsupported binary operator")

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval_node(comparator)
                result = self._compare(op, left, right)
                if not result:
                    return False
                left = right
            return True

        raise SafeExpressionError(f"Unsupported expression node: {type(node).__name__}")

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return left == right
        if isinstance(op, ast.NotEq):
            return left != right
        if isinstance(op, ast.Lt):
            return left < right
        if isinstance(op, ast.LtE):
            return left <= right
        if isinstance(op, ast.Gt):
            return left > right
        if isinstance(op, ast.GtE):
            return left >= right
        if isinstance(op, ast.In):
            return left in right
        if isinstance(op, ast.NotIn):
            return left not in right
        raise SafeExpressionError(f"Unsupported comparison operator: {type(op).__name__}")


def safe_eval_expression(expression: str, variables: Mapping[str, Any], default: Any = None) -> Any:
    """Evaluate a constrained expression safely; return default on failure."""
    expr = normalize_js_operators(str(expression or "")).strip()
    if not expr or len(expr) > MAX_EXPRESSION_LENGTH:
        return default
    try:
        evaluator = _SafeEvaluator(variables)
        return evaluator.eval(expr)
    except Exception:
        return default


def safe_eval_bool(expression: str, variables: Mapping[str, Any], default: bool = False) -> bool:
    """Evaluate expression and coerce to bool with a safe default fallback."""
    value = safe_eval_expression(expression, variables, default=default)
    try:
        return bool(value)
    except Exception:
        return default
