from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][\w-]*)(?:\.([A-Za-z_][\w-]*))?\}")
MISSING = object()


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class VariableResolver:
    """Substitutes ``{name}`` from run variables and ``{node.field}`` from node results.

    Unresolved placeholders stay in the text as written.
    """

    def __init__(self, variables: dict[str, Any] | None = None, node_results: dict[str, dict] | None = None):
        self.variables = variables if variables is not None else {}
        self.node_results = node_results if node_results is not None else {}

    def lookup(self, name: str, field: str | None = None) -> Any:
        if field is None:
            return self.variables.get(name, MISSING)
        if name in self.node_results:
            source = self.node_results[name]
        else:
            source = self.variables.get(name)
        if isinstance(source, dict) and field in source:
            return source[field]
        return MISSING

    def resolve_text(self, text: str) -> str:
        def _sub(match: re.Match) -> str:
            value = self.lookup(match.group(1), match.group(2))
            if value is MISSING:
                return match.group(0)
            return render_value(value)

        return _PLACEHOLDER.sub(_sub, text)

    def resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.resolve_text(value)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value
