"""
Message template rendering.

Placeholders look like ``{{ name }}``. Unknown or null variables render as
an empty string, never as the literal placeholder.
"""
import re
from typing import Any, Dict, Optional

PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


def render_template(body: str, variables: Optional[Dict[str, Any]] = None) -> str:
    variables = variables or {}

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return ""
        return str(value)

    return PLACEHOLDER_RE.sub(_sub, body or "")
