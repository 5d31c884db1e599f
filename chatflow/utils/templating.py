"""
Variable interpolation for node content.

Flow authors write ``{{contact.name}}`` or ``{{ order_id }}`` inside message
text, URLs and request bodies. Unknown variables render as an empty string.
"""

import json
import re
from typing import Any

VARIABLE_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def lookup_variable(variables: dict[str, Any], name: str) -> Any:
    """Resolve a variable, trying the flat key first, then a dotted path."""
    if name in variables:
        return variables[name]

    current: Any = variables
    for part in name.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_template(text: str | None, variables: dict[str, Any]) -> str:
    """Replace every ``{{name}}`` placeholder in text."""
    if not text:
        return ""
    return VARIABLE_PATTERN.sub(lambda m: _stringify(lookup_variable(variables, m.group(1))), text)


def render_value(value: Any, variables: dict[str, Any]) -> Any:
    """Recursively render placeholders inside strings, dicts and lists."""
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    return value
