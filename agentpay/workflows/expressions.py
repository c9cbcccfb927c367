"""
Sandboxed boolean expression evaluator for CONDITION steps and branch edges.

Expressions are small comparisons over the execution's variables, e.g.::

    amount > 100 && currency === "USD"
    ${payment.status} == 'settled'
    not customer.flagged and tags.includes("vip")

The source text is normalised (JS-style operators and literals are mapped to
their Python spellings, outside string literals only), parsed with
``ast.parse(mode="eval")``, and walked node by node.  Nothing is ever passed
to eval/exec/compile, and only a whitelisted subset of nodes is accepted:
there are no calls except ``<expr>.includes(<expr>)``, no imports, no
attribute access on anything but plain data.
"""

from __future__ import annotations

import ast
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_MAX_EXPRESSION_LENGTH = 1000

# String literals are matched first so rewrites never touch their contents.
_STRING_RE = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")

_REWRITES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\$\{\s*([^}]+?)\s*\}"), r"\1"),
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
]


class UnsafeExpression(ValueError):
    """Expression uses syntax outside the allowed subset."""


class UnknownVariable(LookupError):
    """Expression references a variable that is not in scope."""


def normalize_expression(expression: str) -> str:
    """Rewrite JS-flavoured operators and literals into Python syntax."""
    parts = _STRING_RE.split(expression)
    out = []
    for i, part in enumerate(parts):
        if i % 2 == 1:  # string literal
            out.append(part)
            continue
        for pattern, repl in _REWRITES:
            part = pattern.sub(repl, part)
        out.append(part)
    return "".join(out).strip()


class ExpressionEvaluator:
    """Evaluates boolean condition strings against a variable scope.

    ``evaluate`` never raises: malformed, unsafe, or failing expressions are
    logged and evaluate to ``False``.
    """

    def evaluate(self, expression: str, variables: dict[str, Any]) -> bool:
        if not expression or not str(expression).strip():
            return False
        if len(expression) > _MAX_EXPRESSION_LENGTH:
            logger.warning(
                "[Expressions] Expression rejected: longer than %d chars", _MAX_EXPRESSION_LENGTH
            )
            return False
        try:
            tree = ast.parse(normalize_expression(expression), mode="eval")
            return bool(self._eval(tree.body, variables or {}))
        except (SyntaxError, UnsafeExpression) as exc:
            logger.warning("[Expressions] Rejected %r: %s", expression, exc)
        except UnknownVariable as exc:
            logger.warning("[Expressions] Unknown variable in %r: %s", expression, exc)
        except (TypeError, ValueError, KeyError, IndexError) as exc:
            logger.warning("[Expressions] Evaluation of %r failed: %s", expression, exc)
        except (RecursionError, MemoryError):
            logger.warning("[Expressions] Rejected %r: nested too deeply", expression)
        return False

    # ── AST walk ─────────────────────────────────────────────────────────

    def _eval(self, node: ast.AST, variables: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in variables:
                return variables[node.id]
            raise UnknownVariable(node.id)

        if isinstance(node, ast.Attribute):
            base = self._eval(node.value, variables)
            if isinstance(base, dict):
                if node.attr not in base:
                    raise UnknownVariable(node.attr)
                return base[node.attr]
            if node.attr == "length" and isinstance(base, (str, list, tuple)):
                return len(base)
            raise UnsafeExpression(f"attribute access '.{node.attr}' on {type(base).__name__}")

        if isinstance(node, ast.Subscript):
            base = self._eval(node.value, variables)
            key = self._eval(node.slice, variables)
            if not isinstance(base, (dict, list, tuple, str)):
                raise UnsafeExpression(f"subscript on {type(base).__name__}")
            return base[key]

        if isinstance(node, (ast.Tuple, ast.List)):
            return tuple(self._eval(el, variables) for el in node.elts)

        if isinstance(node, ast.Call):
            return self._eval_includes(node, variables)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, variables)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, variables)
                if not _compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(v, variables) for v in node.values)
            return any(self._eval(v, variables) for v in node.values)

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, variables)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, (ast.USub, ast.UAdd)) and _is_number(operand):
                return -operand if isinstance(node.op, ast.USub) else operand

        raise UnsafeExpression(f"disallowed syntax: {type(node).__name__}")

    def _eval_includes(self, node: ast.Call, variables: dict[str, Any]) -> bool:
        func = node.func
        if (
            not isinstance(func, ast.Attribute)
            or func.attr != "includes"
            or len(node.args) != 1
            or node.keywords
        ):
            raise UnsafeExpression("only <value>.includes(<item>) calls are allowed")
        container = self._eval(func.value, variables)
        item = self._eval(node.args[0], variables)
        if isinstance(container, str):
            return isinstance(item, str) and item in container
        if isinstance(container, (list, tuple, dict)):
            return item in container
        raise UnsafeExpression(f".includes() on {type(container).__name__}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
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
    raise UnsafeExpression(f"disallowed operator: {type(op).__name__}")


_default_evaluator = ExpressionEvaluator()


def evaluate_expression(expression: str, variables: dict[str, Any]) -> bool:
    """Evaluate with the shared module-level evaluator."""
    return _default_evaluator.evaluate(expression, variables)
