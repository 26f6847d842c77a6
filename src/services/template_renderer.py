"""Template rendering over Jinja2's sandboxed environment.

Rendering never raises into the conversation turn: a missing key renders
as an empty string (ChainableUndefined, so ``a.b.c`` on a missing ``a`` is
also empty) and any other failure is logged and replaced by the configured
fallback string. Compiled templates are cached by source text since the
set of templates is fixed configuration.
"""

from typing import Any, Dict, Mapping, Optional

import structlog
from jinja2 import ChainableUndefined, Template
from jinja2.sandbox import SandboxedEnvironment

from src.core.config import settings
from src.core.redaction import sanitize_for_logging

log = structlog.get_logger(__name__)


class TemplateRenderer:
    """Pure ``template + context -> str`` function with failure fallback."""

    def __init__(self, fallback: Optional[str] = None):
        self.fallback = settings.template_fallback if fallback is None else fallback
        self._env = SandboxedEnvironment(
            undefined=ChainableUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._templates: Dict[str, Template] = {}
        self._expressions: Dict[str, Any] = {}

    def render(self, source: Optional[str], context: Mapping[str, Any]) -> str:
        if not source:
            return ""
        try:
            template = self._templates.get(source)
            if template is None:
                template = self._env.from_string(source)
                self._templates[source] = template
            return template.render(**context)
        except Exception as e:
            log.warning(
                "template_render_failed",
                template=sanitize_for_logging(source[:120]),
                error_type=type(e).__name__,
                error=sanitize_for_logging(e),
            )
            return self.fallback

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        """Evaluate a single expression and return its native value.

        Undefined names yield None; errors are logged and yield None.
        """
        try:
            compiled = self._expressions.get(expression)
            if compiled is None:
                compiled = self._env.compile_expression(expression, undefined_to_none=True)
                self._expressions[expression] = compiled
            value = compiled(**context)
        except Exception as e:
            log.warning(
                "template_expression_failed",
                expression=sanitize_for_logging(expression[:120]),
                error_type=type(e).__name__,
                error=sanitize_for_logging(e),
            )
            return None
        if isinstance(value, ChainableUndefined):
            return None
        return value

    def is_truthy(self, expression: Optional[str], context: Mapping[str, Any]) -> bool:
        """Evaluate a condition. An empty condition is always true."""
        if not expression:
            return True
        return bool(self.evaluate(expression, context))
