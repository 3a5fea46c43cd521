"""Template expression resolution for stage commands and deployment targets.

Resolves ``{{ expression }}`` templates in pipeline YAML values against the
run's namespace before a stage is invoked.

Supports:
    - Dotted path access: ``{{ trigger.revision }}``
    - Index access: ``{{ context.regions[0] }}``
    - Filter functions: ``{{ trigger.revision | short }}``

The resolver is intentionally small: no Jinja2 dependency, no arbitrary
code execution, no loops/conditionals. Known roots are ``trigger``,
``context``, ``run`` and ``stages`` (metrics of earlier stages by name).
"""

from __future__ import annotations

import logging
import re
import shlex
from typing import Any, Callable

logger = logging.getLogger("conveyor.pipeline.templates")

# Matches {{ expression }} with optional whitespace
_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

# Matches a filter: expr | filter_name
_FILTER_RE = re.compile(r"^(.+?)\s*\|\s*([a-zA-Z_][a-zA-Z0-9_]*)$")

# Matches dotted path segment with optional array index: regions[0]
_PATH_SEGMENT_RE = re.compile(r"([a-zA-Z_][a-zA-Z0-9_-]*)(?:\[(\d+)\])?")

# Private-use code points stand in for expressions while a command is split
_PLACEHOLDER_OPEN = "\ue000"
_PLACEHOLDER_CLOSE = "\ue001"
_PLACEHOLDER_RE = re.compile(f"{_PLACEHOLDER_OPEN}(\\d+){_PLACEHOLDER_CLOSE}")


def _short(value: Any) -> str:
    return str(value)[:7] if value is not None else ""


_BUILTIN_FILTERS: dict[str, Callable[[Any], Any]] = {
    "str": lambda v: str(v) if v is not None else "",
    "lower": lambda v: str(v).lower() if v is not None else "",
    "upper": lambda v: str(v).upper() if v is not None else "",
    "short": _short,
    "default": lambda v: v if v is not None else "",
}


class TemplateResolver:
    """Resolves ``{{ expression }}`` templates against a namespace of values.

    Usage::

        resolver = TemplateResolver({
            "trigger": run.trigger.model_dump(),
            "context": definition.context,
        })
        resolver.render("docker build -t app:{{ trigger.revision | short }} .")
    """

    def __init__(
        self,
        namespace: dict[str, Any] | None = None,
        *,
        filters: dict[str, Callable[[Any], Any]] | None = None,
    ):
        self._namespace = namespace or {}
        self._filters = {**_BUILTIN_FILTERS, **(filters or {})}

    def render(self, text: str) -> str:
        """Interpolate every expression in ``text``; unknown paths render empty."""
        if "{{" not in text:
            return text

        def _replacer(m: re.Match) -> str:
            result = self.resolve_expr(m.group(1))
            if result is None:
                logger.warning("Template expression '%s' resolved to nothing", m.group(1))
                return ""
            return str(result)

        return _TEMPLATE_RE.sub(_replacer, text)

    def render_mapping(self, values: dict[str, str]) -> dict[str, str]:
        return {k: self.render(v) for k, v in values.items()}

    def render_argv(self, command: str) -> list[str]:
        """Split ``command`` shell-style, then render inside each argument.

        Expressions are swapped for placeholders before splitting, so a
        rendered value stays inside the argument it appears in: spaces or
        quotes in a revision or context value never add arguments.

        Raises:
            ValueError: If the command itself has unbalanced quotes.
        """
        expressions: list[str] = []

        def _protect(m: re.Match) -> str:
            expressions.append(m.group(0))
            return f"{_PLACEHOLDER_OPEN}{len(expressions) - 1}{_PLACEHOLDER_CLOSE}"

        argv = shlex.split(_TEMPLATE_RE.sub(_protect, command))
        return [
            _PLACEHOLDER_RE.sub(lambda m: self.render(expressions[int(m.group(1))]), arg)
            for arg in argv
        ]

    def resolve_expr(self, expr: str) -> Any:
        """Resolve a single expression (without ``{{ }}``); None if the path is missing."""
        filter_match = _FILTER_RE.match(expr)
        if filter_match:
            inner_value = self._resolve_path(filter_match.group(1))
            return self._apply_filter(filter_match.group(2), inner_value)
        return self._resolve_path(expr)

    def _resolve_path(self, path: str) -> Any:
        current: Any = self._namespace
        for segment in path.strip().split("."):
            if current is None:
                return None

            match = _PATH_SEGMENT_RE.fullmatch(segment)
            if not match:
                return None

            key, idx_str = match.group(1), match.group(2)
            if isinstance(current, dict):
                current = current.get(key)
            elif hasattr(current, key):
                current = getattr(current, key)
            else:
                return None

            if idx_str is not None:
                idx = int(idx_str)
                if isinstance(current, (list, tuple)) and 0 <= idx < len(current):
                    current = current[idx]
                else:
                    return None

        return current

    def _apply_filter(self, filter_name: str, value: Any) -> Any:
        fn = self._filters.get(filter_name)
        if fn is None:
            logger.warning("Unknown template filter: '%s'", filter_name)
            return value
        return fn(value)
