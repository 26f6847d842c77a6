"""Compiled action parameter trees.

Action parameters are configuration data that may contain template
placeholders. They are compiled once, when the tenant configuration is
loaded, into a small tree of nodes and resolved against a fresh template
context each time the action runs:

    "Your report"                 -> LiteralParam
    "Ref {{ ref_code }}"          -> TemplateParam   (always renders to str)
    "{{ session_data.email }}"    -> ExpressionParam (keeps the native type)
    {"to": ..., "cc": [...]}      -> MappingParam / SequenceParam

A whole-string ``{{ expr }}`` keeps its native value so that a parameter
can carry a dict or list from the context into an action unchanged. An
expression that is undefined (or evaluates to None) resolves to "", the
same as a missing key in a rendered template.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Protocol


_WHOLE_EXPRESSION_RE = re.compile(r"^\{\{\s*(?P<expr>.+?)\s*\}\}$", re.DOTALL)
_TEMPLATE_MARKERS = ("{{", "{%", "{#")


class ParamRenderer(Protocol):
    """Subset of the template renderer used to resolve parameters."""

    def render(self, source: str, context: Mapping[str, Any]) -> str: ...

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any: ...


class ParamNode(ABC):
    @abstractmethod
    def resolve(self, renderer: ParamRenderer, context: Mapping[str, Any]) -> Any:
        pass


class LiteralParam(ParamNode):
    def __init__(self, value: Any):
        self.value = value

    def resolve(self, renderer: ParamRenderer, context: Mapping[str, Any]) -> Any:
        return self.value

    def __repr__(self) -> str:
        return f"LiteralParam({self.value!r})"


class TemplateParam(ParamNode):
    def __init__(self, source: str):
        self.source = source

    def resolve(self, renderer: ParamRenderer, context: Mapping[str, Any]) -> Any:
        return renderer.render(self.source, context)

    def __repr__(self) -> str:
        return f"TemplateParam({self.source!r})"


class ExpressionParam(ParamNode):
    def __init__(self, expression: str):
        self.expression = expression

    def resolve(self, renderer: ParamRenderer, context: Mapping[str, Any]) -> Any:
        value = renderer.evaluate(self.expression, context)
        # Missing keys resolve like a rendered template: empty string
        return "" if value is None else value

    def __repr__(self) -> str:
        return f"ExpressionParam({self.expression!r})"


class MappingParam(ParamNode):
    def __init__(self, children: Dict[str, ParamNode]):
        self.children = children

    def resolve(self, renderer: ParamRenderer, context: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: node.resolve(renderer, context) for key, node in self.children.items()}


class SequenceParam(ParamNode):
    def __init__(self, children: List[ParamNode]):
        self.children = children

    def resolve(self, renderer: ParamRenderer, context: Mapping[str, Any]) -> List[Any]:
        return [node.resolve(renderer, context) for node in self.children]


def compile_params(value: Any) -> ParamNode:
    """Compile a raw configuration value into a parameter tree."""
    if isinstance(value, Mapping):
        return MappingParam({str(k): compile_params(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return SequenceParam([compile_params(v) for v in value])
    if isinstance(value, str):
        match = _WHOLE_EXPRESSION_RE.match(value)
        if match and "{{" not in match.group("expr") and "}}" not in match.group("expr"):
            return ExpressionParam(match.group("expr"))
        if any(marker in value for marker in _TEMPLATE_MARKERS):
            return TemplateParam(value)
    return LiteralParam(value)
