"""MemoryStore step bookkeeping: dense positions, counters and persistence."""

import pytest

from opsflow.storage.errors import ConstraintViolation
from opsflow.storage.memory import MemoryStore
from opsflow.storage.models import (
    Flow,
    FlowStatus,
    FlowStep,
    LogType,
    StepStatus,
    StepType,
    initial_flow_context,
    new_id,
)


def _flow(store, n_steps=3, **mappings_by_position):
    flow = Flow(
        id=new_id(),
        tenant_id="acme",
        user_id="user-1",
        title="Test flow",
        original_request="do things",
        flow_context=initial_flow_context("do things", []),
    )
    steps = [
        FlowStep(
            id=new_id(),
            flow_id=flow.id,
            position=i,
            step_type=StepType.TOOL_CALL,
            title=f"step {i}",
            capability_slug="search_tasks",
            param_mappings=mappings_by_position.get(f"p{i}", {}),
        )
        for i in range(n_steps)
    ]
    return store.create_flow(flow, steps)


def _positions(flow):
    return [s.position for s in flow.steps]


def test_create_flow_counts_steps():
    store = MemoryStore()
    flow = _flow(store)

    assert flow.total_steps == 3
    assert flow.completed_steps == 0
    assert _positions(flow) == [0, 1, 2]


def test_create_flow_rejects_gaps():
    store = MemoryStore()
    flow = Flow(id=new_id(), tenant_id="acme", user_id="u", title="t", original_request="r")
    steps = [
        FlowStep(id=new_id(), flow_id=flow.id, position=0, step_type=StepType.WAIT, title="a"),
        FlowStep(id=new_id(), flow_id=flow.id, position=2, step_type=StepType.WAIT, title="b"),
    ]

    with pytest.raises(ConstraintViolation):
        store.create_flow(flow, steps)


def test_insert_step_shifts_positions_and_mappings():
    store = MemoryStore()
    flow = _flow(store, p2={"task_id": "{{steps.1.result.data.0.id}}"})
    prompt = FlowStep(id=new_id(), flow_id=flow.id, position=0, step_type=StepType.USER_PROMPT, title="ask")

    inserted = store.insert_step(flow.id, 0, prompt)
    flow = store.get_flow(flow.id)

    assert inserted.position == 1
    assert flow.total_steps == 4
    assert _positions(flow) == [0, 1, 2, 3]
    assert flow.step_at(1).id == prompt.id
    # the old step 1 is now step 2, and step 3 still points at it
    assert flow.step_at(3).param_mappings == {"task_id": "{{steps.2.result.data.0.id}}"}


def test_delete_step_closes_the_gap():
    store = MemoryStore()
    flow = _flow(store, n_steps=4, p3={"task_id": "{{steps.2.result.id}}"})
    victim = flow.step_at(1)

    store.delete_step(flow.id, victim.id)
    flow = store.get_flow(flow.id)

    assert flow.total_steps == 3
    assert _positions(flow) == [0, 1, 2]
    assert flow.step_at(2).param_mappings == {"task_id": "{{steps.1.result.id}}"}


def test_delete_step_refuses_started_steps():
    store = MemoryStore()
    flow = _flow(store)
    store.update_step(flow.step_at(0).id, status=StepStatus.RUNNING)

    with pytest.raises(ConstraintViolation):
        store.delete_step(flow.id, flow.step_at(0).id)


def test_completed_counter_includes_skipped():
    store = MemoryStore()
    flow = _flow(store)
    store.update_step(flow.step_at(0).id, status=StepStatus.COMPLETED)
    store.update_step(flow.step_at(1).id, status=StepStatus.SKIPPED)

    flow = store.get_flow(flow.id)

    assert flow.completed_steps == 2
    assert flow.progress == pytest.approx(66.7)


def test_terminal_flow_rejects_updates_unless_allowed():
    store = MemoryStore()
    flow = _flow(store)
    store.update_flow(flow.id, status=FlowStatus.FAILED)

    with pytest.raises(ConstraintViolation):
        store.update_flow(flow.id, status=FlowStatus.RUNNING)

    revived = store.update_flow(flow.id, allow_terminal=True, status=FlowStatus.RUNNING)
    assert revived.status == FlowStatus.RUNNING


def test_splicing_shifts_conditional_targets_and_condition():
    store = MemoryStore()
    flow = _flow(store)
    conditional = flow.step_at(1)
    store.update_step(
        conditional.id,
        step_type=StepType.CONDITIONAL,
        condition={"if": "{{steps.0.result.data.0.status}}", "eq": "done"},
        on_success_goto=2,
    )

    store.insert_step(flow.id, -1, FlowStep(id=new_id(), flow_id=flow.id, position=0, step_type=StepType.WAIT, title="first"))
    moved = store.get_flow(flow.id).step_at(2)

    assert moved.id == conditional.id
    assert moved.on_success_goto == 3
    assert moved.condition == {"if": "{{steps.1.result.data.0.status}}", "eq": "done"}

    store.delete_step(flow.id, store.get_flow(flow.id).step_at(0).id)
    back = store.get_flow(flow.id).step_at(1)

    assert back.on_success_goto == 2
    assert back.condition["if"] == "{{steps.0.result.data.0.status}}"


def test_terminal_flow_rejects_step_and_context_writes():
    store = MemoryStore()
    flow = _flow(store)
    store.update_flow(flow.id, status=FlowStatus.CANCELLED)
    step_id = flow.step_at(0).id

    with pytest.raises(ConstraintViolation):
        store.update_step(step_id, status=StepStatus.COMPLETED)
    with pytest.raises(ConstraintViolation):
        store.update_steps(flow.id, lambda s: True, status=StepStatus.COMPLETED)
    with pytest.raises(ConstraintViolation):
        store.merge_flow_context(flow.id, {"x": 1})

    fresh = store.get_flow(flow.id)
    assert fresh.step_at(0).status == StepStatus.PENDING
    assert fresh.completed_steps == 0
    assert "x" not in fresh.flow_context

    store.update_steps(flow.id, lambda s: True, allow_terminal=True, status=StepStatus.CANCELLED)
    assert {s.status for s in store.get_flow(flow.id).steps} == {StepStatus.CANCELLED}


def test_merge_flow_context_merges_nested_dicts():
    store = MemoryStore()
    flow = _flow(store)

    store.merge_flow_context(flow.id, {"resolved_entities": {"task_id": "t1"}})
    flow = store.merge_flow_context(flow.id, {"resolved_entities": {"project_id": "p1"}})

    assert flow.flow_context["resolved_entities"] == {"task_id": "t1", "project_id": "p1"}


def test_reads_are_copies():
    store = MemoryStore()
    flow = _flow(store)

    flow.steps[0].title = "mutated"
    flow.flow_context["original_intent"] = "mutated"

    fresh = store.get_flow(flow.id)
    assert fresh.steps[0].title == "step 0"
    assert fresh.flow_context["original_intent"] == "do things"


def test_state_survives_reload(tmp_path):
    store = MemoryStore(state_root=str(tmp_path))
    flow = _flow(store)
    store.append_log(flow.id, LogType.FLOW_CREATED, "created")
    store.update_step(flow.step_at(0).id, status=StepStatus.COMPLETED, result={"data": [1]})

    reloaded = MemoryStore(state_root=str(tmp_path))
    again = reloaded.get_flow(flow.id)

    assert again.completed_steps == 1
    assert again.step_at(0).status == StepStatus.COMPLETED
    assert again.step_at(0).step_type == StepType.TOOL_CALL
    assert [entry.log_type for entry in reloaded.list_logs(flow.id)] == [LogType.FLOW_CREATED]


def test_search_records_filters_by_tenant_and_text():
    store = MemoryStore()
    store.create_record("acme", "task", {"title": "Landing page copy", "status": "new"})
    store.create_record("acme", "task", {"title": "Pricing page", "status": "done"})
    store.create_record("other", "task", {"title": "Landing page", "status": "new"})

    found = store.search_records("acme", "task", text="landing", match_fields=("title",))
    done = store.search_records("acme", "task", text="page", match_fields=("title",), filters={"status": "done"})

    assert [r.data["title"] for r in found] == ["Landing page copy"]
    assert [r.data["title"] for r in done] == ["Pricing page"]
