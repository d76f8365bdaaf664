"""Placeholder expressions used by step parameter mappings.

A mapping value such as ``"{{steps.0.result.data.0.id}}"`` is parsed once into
a :class:`Template` made of literal text and :class:`Reference` nodes. Only the
text between ``{{`` and ``}}`` is interpreted, and rendered values are never
rescanned, so user text that happens to contain braces cannot be mistaken for
a placeholder.

Address families:

``steps.<position>.result.<path>``
    result of an earlier step; ``user_response`` may replace ``result``.
``context.<path>``
    value accumulated in ``flow_context``.
``user_input[.<path>]``
    the current step's own user response.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from opsflow.service.errors import MissingDependencyError, ValidationError

_PLACEHOLDER = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$|^\d+$")

Segment = Union[str, int]

_MISSING = object()


class ExpressionSyntaxError(ValidationError):
    """A mapping string contains a malformed placeholder."""

    error_code = "invalid_expression"


class AddressFamily(str, Enum):
    STEPS = "steps"
    CONTEXT = "context"
    USER_INPUT = "user_input"


STEP_ATTRIBUTES = ("result", "user_response")


@dataclass(frozen=True)
class Reference:
    segments: Tuple[Segment, ...]

    @property
    def family(self) -> Optional[AddressFamily]:
        head = self.segments[0] if self.segments else None
        try:
            return AddressFamily(head)
        except ValueError:
            return None

    @property
    def step_position(self) -> Optional[int]:
        if self.family is AddressFamily.STEPS and len(self.segments) > 1:
            position = self.segments[1]
            return position if isinstance(position, int) else None
        return None

    def render(self) -> str:
        return "{{" + ".".join(str(s) for s in self.segments) + "}}"

    def with_step_position(self, position: int) -> "Reference":
        return Reference(self.segments[:1] + (position,) + self.segments[2:])


@dataclass(frozen=True)
class Template:
    parts: Tuple[Union[str, Reference], ...] = field(default_factory=tuple)

    @property
    def references(self) -> List[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]

    @property
    def is_single_reference(self) -> bool:
        return len(self.parts) == 1 and isinstance(self.parts[0], Reference)

    def render(self) -> str:
        return "".join(p.render() if isinstance(p, Reference) else p for p in self.parts)


def parse_reference(text: str) -> Reference:
    body = text.strip()
    if not body:
        raise ExpressionSyntaxError("empty placeholder", detail={"expression": text})
    segments: List[Segment] = []
    for raw in body.split("."):
        raw = raw.strip()
        if not _SEGMENT.match(raw):
            raise ExpressionSyntaxError(
                f"invalid placeholder segment {raw!r} in {{{{{body}}}}}",
                detail={"expression": body},
            )
        segments.append(int(raw) if raw.isdigit() else raw)
    return Reference(tuple(segments))


def parse_template(text: str) -> Template:
    parts: List[Union[str, Reference]] = []
    cursor = 0
    for match in _PLACEHOLDER.finditer(text):
        if match.start() > cursor:
            parts.append(text[cursor : match.start()])
        parts.append(parse_reference(match.group(1)))
        cursor = match.end()
    if cursor < len(text):
        parts.append(text[cursor:])
    return Template(tuple(parts))


def parse_mapping(text: str) -> Template:
    """Parse a step-mapping placeholder and check its address family."""
    template = parse_template(text)
    for ref in template.references:
        _check_family(ref, text)
    return template


def _check_family(ref: Reference, source: str) -> None:
    family = ref.family
    if family is None:
        raise ExpressionSyntaxError(
            f"unknown address family in {ref.render()}",
            detail={"expression": source},
        )
    if family is AddressFamily.STEPS:
        if ref.step_position is None:
            raise ExpressionSyntaxError(
                f"step reference needs a numeric position: {ref.render()}",
                detail={"expression": source},
            )
        if len(ref.segments) < 3 or ref.segments[2] not in STEP_ATTRIBUTES:
            raise ExpressionSyntaxError(
                f"step reference must address result or user_response: {ref.render()}",
                detail={"expression": source},
            )
    if family is AddressFamily.CONTEXT and len(ref.segments) < 2:
        raise ExpressionSyntaxError(
            f"context reference needs a path: {ref.render()}",
            detail={"expression": source},
        )


def walk_path(value: Any, path: Iterable[Segment]) -> Any:
    """Follow ``path`` through dicts and lists; ``_MISSING`` when absent."""
    current = value
    for segment in path:
        if isinstance(current, Mapping):
            if segment in current:
                current = current[segment]
            elif str(segment) in current:
                current = current[str(segment)]
            else:
                return _MISSING
        elif isinstance(current, (list, tuple)) and isinstance(segment, int):
            if segment >= len(current):
                return _MISSING
            current = current[segment]
        else:
            return _MISSING
    return current


@dataclass
class ResolutionScope:
    """Explicit state a step's mappings may address."""

    position: int
    flow_context: Dict[str, Any]
    step_results: Dict[int, Any] = field(default_factory=dict)
    step_responses: Dict[int, Any] = field(default_factory=dict)
    user_input: Any = None


def resolve_reference(ref: Reference, scope: ResolutionScope) -> Any:
    expression = ref.render()
    family = ref.family
    if family is AddressFamily.STEPS:
        position = ref.step_position
        if position is None or len(ref.segments) < 3:
            raise MissingDependencyError(expression, "malformed step reference")
        if position >= scope.position:
            raise MissingDependencyError(
                expression,
                f"step {position} is not earlier than the current step {scope.position}",
            )
        attribute = ref.segments[2]
        source = scope.step_responses if attribute == "user_response" else scope.step_results
        if position not in source or source[position] is None:
            raise MissingDependencyError(expression, f"step {position} has no {attribute}")
        value = walk_path(source[position], ref.segments[3:])
    elif family is AddressFamily.CONTEXT:
        value = walk_path(scope.flow_context, ref.segments[1:])
    elif family is AddressFamily.USER_INPUT:
        if scope.user_input is None:
            raise MissingDependencyError(expression, "the current step has no user response")
        value = walk_path(scope.user_input, ref.segments[1:])
    else:
        raise MissingDependencyError(expression, "unknown address family")
    if value is _MISSING:
        raise MissingDependencyError(expression, "path does not exist")
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if value is None:
        return ""
    return str(value)


def evaluate_template(template: Template, scope: ResolutionScope) -> Any:
    if template.is_single_reference:
        return resolve_reference(template.parts[0], scope)
    rendered = []
    for part in template.parts:
        if isinstance(part, Reference):
            rendered.append(_stringify(resolve_reference(part, scope)))
        else:
            rendered.append(part)
    return "".join(rendered)


def resolve_params(
    input_params: Mapping[str, Any],
    param_mappings: Mapping[str, Any],
    scope: ResolutionScope,
) -> Dict[str, Any]:
    """Merge literal params with resolved mappings; mappings win on collision."""
    resolved = dict(input_params or {})
    for key, mapping in (param_mappings or {}).items():
        if isinstance(mapping, str):
            template = parse_mapping(mapping)
            resolved[key] = evaluate_template(template, scope)
        else:
            resolved[key] = mapping
    return resolved


def mapping_references(param_mappings: Mapping[str, Any]) -> List[Reference]:
    refs: List[Reference] = []
    for mapping in (param_mappings or {}).values():
        if isinstance(mapping, str):
            refs.extend(parse_mapping(mapping).references)
    return refs


def forward_references(param_mappings: Mapping[str, Any], position: int) -> List[str]:
    """Rendered step references that point at ``position`` or later."""
    return [
        ref.render()
        for ref in mapping_references(param_mappings)
        if ref.step_position is not None and ref.step_position >= position
    ]


def shift_mapping_references(
    param_mappings: Dict[str, Any], from_position: int, delta: int
) -> Dict[str, Any]:
    """Rewrite ``steps.N`` addresses with ``N >= from_position`` by ``delta``.

    Keeps mappings pointing at the same logical step after an insert or delete.
    Values that do not parse are returned untouched.
    """
    shifted: Dict[str, Any] = {}
    for key, mapping in (param_mappings or {}).items():
        if not isinstance(mapping, str) or "{{" not in mapping:
            shifted[key] = mapping
            continue
        try:
            template = parse_template(mapping)
        except ExpressionSyntaxError:
            shifted[key] = mapping
            continue
        parts: List[Union[str, Reference]] = []
        for part in template.parts:
            if isinstance(part, Reference):
                position = part.step_position
                if position is not None and position >= from_position:
                    part = part.with_step_position(position + delta)
            parts.append(part)
        shifted[key] = Template(tuple(parts)).render()
    return shifted


def shift_step_references(step: Any, from_position: int, delta: int) -> None:
    """Shift every positional reference ``step`` holds when the plan is spliced.

    Covers ``param_mappings``, placeholders inside ``condition`` and the
    ``on_success_goto``/``on_fail_goto`` targets. Targets below
    ``from_position`` still point at the same step and are left alone.
    """
    step.param_mappings = shift_mapping_references(step.param_mappings, from_position, delta)
    if step.condition:
        step.condition = shift_mapping_references(step.condition, from_position, delta)
    for attr in ("on_success_goto", "on_fail_goto"):
        target = getattr(step, attr)
        if target is not None and target >= from_position:
            setattr(step, attr, target + delta)


_COMPARATORS = {
    "eq": lambda left, right: left == right,
    "neq": lambda left, right: left != right,
    "gt": lambda left, right: left is not None and left > right,
    "lt": lambda left, right: left is not None and left < right,
    "gte": lambda left, right: left is not None and left >= right,
    "lte": lambda left, right: left is not None and left <= right,
}


def evaluate_condition(condition: Optional[Mapping[str, Any]], scope: ResolutionScope) -> bool:
    """Evaluate ``{if: "{{expr}}", <op>: operand}``; a missing value is None."""
    if not condition:
        return True
    subject = condition.get("if")
    if not subject:
        return True
    value: Any = subject
    if isinstance(subject, str):
        template = parse_mapping(subject)
        try:
            value = evaluate_template(template, scope) if template.references else subject
        except MissingDependencyError:
            value = None
    for op, compare in _COMPARATORS.items():
        if op in condition:
            try:
                return bool(compare(value, condition[op]))
            except TypeError:
                return False
    if "exists" in condition:
        return (value is not None) if condition["exists"] else (value is None)
    return bool(value)


def interpolate(value: Any, variables: Mapping[str, Any]) -> Any:
    """Render ``{{key}}`` placeholders in nested config against flat variables.

    Unknown keys are left verbatim so optional placeholders survive.
    """
    if isinstance(value, str):
        if "{{" not in value:
            return value
        try:
            template = parse_template(value)
        except ExpressionSyntaxError:
            return value
        if template.is_single_reference:
            found = walk_path(variables, template.parts[0].segments)
            return template.render() if found is _MISSING else found
        rendered = []
        for part in template.parts:
            if isinstance(part, Reference):
                found = walk_path(variables, part.segments)
                rendered.append(part.render() if found is _MISSING else _stringify(found))
            else:
                rendered.append(part)
        return "".join(rendered)
    if isinstance(value, dict):
        return {k: interpolate(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, variables) for v in value]
    return value


__all__ = [
    "AddressFamily",
    "ExpressionSyntaxError",
    "Reference",
    "ResolutionScope",
    "Template",
    "evaluate_condition",
    "evaluate_template",
    "forward_references",
    "interpolate",
    "mapping_references",
    "parse_mapping",
    "parse_reference",
    "parse_template",
    "resolve_params",
    "resolve_reference",
    "shift_mapping_references",
    "shift_step_references",
    "walk_path",
]
