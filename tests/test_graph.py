from decimal import Decimal

import pytest

from fwafunnel.errors import IllegalTransitionError, ValidationError
from fwafunnel.graph import build_graph, default_state, merge, step_funnel
from fwafunnel.routing import TRANSITIONS
from fwafunnel.state import Step


def test_default_state(funnel_config):
    state = default_state("spryfi", funnel_config)
    assert state["step"] is Step.ADDRESS
    assert state["lead_id"] is None
    assert state["qualified"] is False
    assert state["total_amount_due_today"] == Decimal("0.00")


def test_default_state_with_lead_record(funnel_config):
    state = default_state("spryfi", funnel_config, lead_record={"lead_id": 42, "qualified": True})
    assert state["lead_id"] == 42
    assert state["lead_record"]["lead_id"] == 42


def test_merge_recomputes_total(funnel_config):
    state = default_state("spryfi", funnel_config)
    state = merge(state, {"plan_selected": "premium"})
    assert state["total_amount_due_today"] == Decimal("139.95")
    state = merge(state, {"router_added": True})
    assert state["total_amount_due_today"] == Decimal("164.95")


def test_merge_rejects_total(funnel_config):
    state = default_state("spryfi", funnel_config)
    with pytest.raises(ValueError, match="derived"):
        merge(state, {"total_amount_due_today": Decimal("0.01")})


def test_merge_rejects_lead_id_change(funnel_config):
    state = merge(default_state("spryfi", funnel_config), {"lead_id": 1})
    assert merge(state, {"lead_id": 1})["lead_id"] == 1
    with pytest.raises(ValueError, match="reassigned"):
        merge(state, {"lead_id": 2})


def test_merge_rejects_qualified_change_after_address(funnel_config):
    state = {**default_state("spryfi", funnel_config), "step": Step.CONTACT, "qualified": True}
    with pytest.raises(ValueError, match="address step"):
        merge(state, {"qualified": False})


def test_merge_empty_update_is_identity(funnel_config):
    state = default_state("spryfi", funnel_config)
    assert merge(state, {}) is state


@pytest.mark.anyio
async def test_step_funnel_terminal(funnel_config, services):
    state = {**default_state("spryfi", funnel_config), "step": Step.NOT_QUALIFIED}
    with pytest.raises(IllegalTransitionError, match="finished"):
        await step_funnel(state, {}, services)


@pytest.mark.anyio
async def test_step_funnel_leaves_state_on_error(funnel_config, services):
    state = default_state("spryfi", funnel_config)
    with pytest.raises(ValidationError):
        await step_funnel(state, {"line1": "1 Main St"}, services)
    assert state["step"] is Step.ADDRESS
    assert state["address"] is None
    assert services["geocoder"].calls == []


@pytest.mark.anyio
async def test_step_funnel_clears_error(funnel_config, services):
    state = {**default_state("spryfi", funnel_config), "error": "try again"}
    state = await step_funnel(state, {"query": "123 Main St, Austin, TX 78701"}, services)
    assert state["step"] is Step.CONTACT
    assert state["error"] is None


def test_build_graph_mirrors_transition_table():
    drawn = build_graph().get_graph()
    nodes = set(drawn.nodes)
    edges = {(e.source, e.target) for e in drawn.edges}

    for step, targets in TRANSITIONS.items():
        assert f"{step.value}_step" in nodes
        for target in targets:
            assert (f"{step.value}_step", f"{target.value}_step") in edges
