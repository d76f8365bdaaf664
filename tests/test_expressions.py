import pytest

from opsflow.service.errors import MissingDependencyError
from opsflow.service.expressions import (
    ExpressionSyntaxError,
    ResolutionScope,
    evaluate_condition,
    forward_references,
    interpolate,
    parse_mapping,
    resolve_params,
    shift_mapping_references,
)


def _scope(position=2, **kwargs):
    kwargs.setdefault("flow_context", {"resolved_entities": {"task_id": "t-1"}})
    return ResolutionScope(position=position, **kwargs)


def test_single_reference_keeps_native_type():
    scope = _scope(step_results={0: {"data": [{"id": "abc", "count": 3}]}})

    params = resolve_params({}, {"count": "{{steps.0.result.data.0.count}}"}, scope)

    assert params == {"count": 3}


def test_mixed_template_renders_text():
    scope = _scope(step_results={0: {"data": {"title": "Landing page"}}})

    params = resolve_params({}, {"content": "Re: {{steps.0.result.data.title}}!"}, scope)

    assert params["content"] == "Re: Landing page!"


def test_mappings_win_over_literal_params():
    params = resolve_params(
        {"task_id": "literal", "content": "Done"},
        {"task_id": "{{context.resolved_entities.task_id}}"},
        _scope(),
    )

    assert params == {"task_id": "t-1", "content": "Done"}


def test_forward_reference_is_missing_dependency():
    scope = _scope(position=1, step_results={0: {"data": []}, 1: {"data": []}})

    with pytest.raises(MissingDependencyError) as excinfo:
        resolve_params({}, {"x": "{{steps.1.result.data}}"}, scope)

    assert excinfo.value.expression == "{{steps.1.result.data}}"
    assert excinfo.value.error_code == "missing_dependency"


def test_missing_path_is_missing_dependency():
    scope = _scope(step_results={0: {"data": []}})

    with pytest.raises(MissingDependencyError):
        resolve_params({}, {"x": "{{steps.0.result.data.0.id}}"}, scope)


def test_user_input_requires_a_response():
    with pytest.raises(MissingDependencyError):
        resolve_params({}, {"x": "{{user_input}}"}, _scope())

    params = resolve_params({}, {"x": "{{user_input.value}}"}, _scope(user_input={"value": "yes"}))
    assert params == {"x": "yes"}


def test_user_response_of_earlier_step():
    scope = _scope(step_responses={1: "blue"})

    assert resolve_params({}, {"color": "{{steps.1.user_response}}"}, scope) == {"color": "blue"}


@pytest.mark.parametrize(
    "expression",
    ["{{}}", "{{unknown.path}}", "{{steps.x.result}}", "{{steps.0.output}}", "{{context}}", "{{a b}}"],
)
def test_malformed_placeholders_are_rejected(expression):
    with pytest.raises(ExpressionSyntaxError):
        parse_mapping(expression)


def test_rendered_values_are_not_rescanned():
    scope = _scope(step_results={0: {"data": {"title": "{{context.resolved_entities.task_id}}"}}})

    params = resolve_params({}, {"title": "T: {{steps.0.result.data.title}}"}, scope)

    assert params["title"] == "T: {{context.resolved_entities.task_id}}"


def test_forward_references_lists_later_steps():
    mappings = {"a": "{{steps.0.result.id}}", "b": "{{steps.3.result.id}}", "c": "plain"}

    assert forward_references(mappings, 2) == ["{{steps.3.result.id}}"]


def test_shift_mapping_references_only_moves_later_positions():
    mappings = {
        "a": "{{steps.0.result.data.0.id}}",
        "b": "x {{steps.2.result.id}} y",
        "c": 7,
    }

    shifted = shift_mapping_references(mappings, 1, 1)

    assert shifted == {
        "a": "{{steps.0.result.data.0.id}}",
        "b": "x {{steps.3.result.id}} y",
        "c": 7,
    }


@pytest.mark.parametrize(
    "condition,expected",
    [
        ({"if": "{{context.resolved_entities.task_id}}", "exists": True}, True),
        ({"if": "{{context.resolved_entities.contact_id}}", "exists": True}, False),
        ({"if": "{{context.resolved_entities.task_id}}", "eq": "t-1"}, True),
        ({"if": "{{context.count}}", "gt": 1}, False),
        ({"if": "{{context.resolved_entities.task_id}}", "gt": 1}, False),
        (None, True),
    ],
)
def test_evaluate_condition(condition, expected):
    assert evaluate_condition(condition, _scope()) is expected


def test_interpolate_leaves_unknown_placeholders():
    config = {"url": "{{api_url}}/items", "headers": {"Authorization": "Bearer {{api_key}}"}}

    rendered = interpolate(config, {"api_url": "https://example.test"})

    assert rendered == {
        "url": "https://example.test/items",
        "headers": {"Authorization": "Bearer {{api_key}}"},
    }
