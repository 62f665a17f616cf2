"""
Sandboxed boolean expressions for ``condition`` nodes.

The expression is parsed with ``ast`` and walked against a whitelist; nothing is
ever passed to ``eval``. Supported: comparisons (including ``in`` / ``not in``),
``and`` / ``or`` / ``not`` (uppercase accepted), parentheses, literals, variable
names, ``node.field`` references and ``{name}`` / ``{node.field}`` placeholders.

Placeholders are never pasted into the source. Outside string literals each one
becomes a reference that is looked up while walking the tree; inside a string
literal it is substituted into the parsed constant. Either way a variable value
can only ever be a value, not syntax.
"""
from __future__ import annotations

import ast
import operator
import re
from typing import Any

from agentcore.services.errors import ValidationError
from agentcore.services.variable_resolver import MISSING, VariableResolver

_KEYWORDS = {"AND": "and", "OR": "or", "NOT": "not"}
_TOKEN_RE = re.compile(
    r"(?P<string>'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\")"
    r"|\{(?P<name>[A-Za-z_][\w-]*)(?:\.(?P<field>[A-Za-z_][\w-]*))?\}"
    r"|\b(?P<keyword>AND|OR|NOT)\b"
)
_REF_PREFIX = "_ref_"
_LITERAL_NAMES = {"true": True, "false": False, "null": None, "none": None}

_COMPARATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


class ConditionEvaluator:
    def __init__(self, resolver: VariableResolver | None = None) -> None:
        self.resolver = resolver or VariableResolver()
        self._refs: dict[str, tuple[str, str | None]] = {}

    def _prepare(self, expression: str) -> str:
        refs: dict[str, tuple[str, str | None]] = {}

        def _sub(match: re.Match) -> str:
            if match.group("string") is not None:
                return match.group("string")
            if match.group("keyword") is not None:
                return _KEYWORDS[match.group("keyword")]
            ref = f"{_REF_PREFIX}{len(refs)}"
            refs[ref] = (match.group("name"), match.group("field"))
            return ref

        source = _TOKEN_RE.sub(_sub, expression.strip())
        self._refs = refs
        return source

    def evaluate(self, expression: str) -> bool:
        source = self._prepare(expression)
        if not source:
            raise ValidationError("Condition expression is empty")
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as exc:
            raise ValidationError(f"Invalid condition expression: {expression}") from exc
        return bool(self._eval(tree.body))

    def _eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(v) for v in node.values)
            return any(self._eval(v) for v in node.values)

        if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
            return not self._eval(node.operand)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                fn = _COMPARATORS.get(type(op))
                if fn is None:
                    raise ValidationError(f"Unsupported comparison operator: {type(op).__name__}")
                right = self._eval(comparator)
                try:
                    if not fn(left, right):
                        return False
                except TypeError as exc:
                    raise ValidationError(f"Cannot compare {left!r} and {right!r}") from exc
                left = right
            return True

        if isinstance(node, ast.Constant):
            if isinstance(node.value, str):
                return self.resolver.resolve_text(node.value)
            return node.value

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(el) for el in node.elts]

        if isinstance(node, ast.Name):
            return self._name(node.id)

        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
            value = self.resolver.lookup(node.value.id, node.attr)
            return None if value is MISSING else value

        raise ValidationError(f"Unsupported expression element: {type(node).__name__}")

    def _name(self, name: str) -> Any:
        if name in self._refs:
            value = self.resolver.lookup(*self._refs[name])
        elif name.lower() in _LITERAL_NAMES:
            return _LITERAL_NAMES[name.lower()]
        else:
            value = self.resolver.lookup(name)
        return None if value is MISSING else value


def evaluate_condition(expression: str, resolver: VariableResolver | None = None) -> bool:
    return ConditionEvaluator(resolver).evaluate(expression)
