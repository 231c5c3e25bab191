"""
Response templates for admin-defined webhook routes.

Two placeholder forms are supported, substituted in a single pass:

    {{query.hub.challenge}}   value at a dotted path in a scope
    {{json body}}             the scope (or a path inside it) as JSON text

Scopes are `query`, `body` and `headers`. Anything that does not resolve
renders as an empty string. There are no conditionals, loops or filters,
and substituted values are never re-scanned for placeholders.
"""

import json
import logging
import re
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

SCOPES = ("query", "body", "headers")

_PLACEHOLDER = re.compile(r"\{\{\s*(?:(json)\s+)?([A-Za-z_][\w.\-]*)\s*\}\}")

_MISSING = object()


def _lookup(value: Any, parts: list) -> Any:
    if not parts:
        return value

    if isinstance(value, Mapping):
        # Longest key first so flat keys like "hub.challenge" win over nesting
        for end in range(len(parts), 0, -1):
            key = ".".join(parts[:end])
            if key in value:
                found = _lookup(value[key], parts[end:])
                if found is not _MISSING:
                    return found
        return _MISSING

    if isinstance(value, (list, tuple)) and parts[0].isdigit():
        index = int(parts[0])
        if index < len(value):
            return _lookup(value[index], parts[1:])

    return _MISSING


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """
    Resolve "scope.a.b" against the render context.

    Returns:
        The value, or None when the scope or any segment is missing
    """
    scope, _, rest = path.partition(".")
    if scope not in SCOPES or scope not in context:
        return None
    found = _lookup(context[scope], rest.split(".") if rest else [])
    return None if found is _MISSING else found


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.warning(f"Template json serialization failed: {e}")
        return ""


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return _to_json(value)
    return str(value)


def render_template(
    template: Optional[str],
    query: Optional[Mapping[str, Any]] = None,
    body: Any = None,
    headers: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Render a response template against the current request.

    Args:
        template: Template text as configured by an admin
        query: Request query parameters
        body: Parsed request body (any JSON value)
        headers: Request headers (lower-cased names)

    Returns:
        Rendered text; unresolved placeholders become ""
    """
    if not template:
        return ""

    context = {
        "query": dict(query or {}),
        "body": body if body is not None else {},
        "headers": dict(headers or {}),
    }

    def substitute(match: "re.Match") -> str:
        as_json, path = match.group(1), match.group(2)
        value = resolve_path(context, path)
        if as_json:
            return "" if value is None else _to_json(value)
        return _to_text(value)

    return _PLACEHOLDER.sub(substitute, template)
