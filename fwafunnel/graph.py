"""State machine for the checkout funnel.

build_graph() returns a compiled LangGraph StateGraph built from the
transition table (for visualization and validation).
step_funnel() drives the funnel one submission at a time: it runs the
handler for the current step, merges its update, and moves along the edge
chosen by routing once check_transition() allows it.
"""

from __future__ import annotations

from langgraph.graph import StateGraph, START, END

from fwafunnel.errors import IllegalTransitionError
from fwafunnel.nodes import (
    address_node,
    contact_node,
    qualification_success_node,
    plan_selection_node,
    wifi_setup_node,
    router_offer_node,
    checkout_node,
    enroll_waitlist,
    send_order_confirmation,
    send_new_customer_notification,
)
from fwafunnel.pricing import money, total_amount_due_today
from fwafunnel.routing import (
    DIRECT_EDGES,
    INITIAL_STEP,
    ROUTING_TABLE,
    TERMINAL_STEPS,
    TRANSITIONS,
    check_transition,
    next_step,
)
from fwafunnel.state import FunnelState, Step


# ---------------------------------------------------------------------------
# Node registry
# ---------------------------------------------------------------------------

NODES = {
    Step.ADDRESS: address_node,
    Step.CONTACT: contact_node,
    Step.QUALIFICATION_SUCCESS: qualification_success_node,
    Step.PLAN_SELECTION: plan_selection_node,
    Step.WIFI_SETUP: wifi_setup_node,
    Step.ROUTER_OFFER: router_offer_node,
    Step.CHECKOUT: checkout_node,
}

# Background effects started once a step has been entered
ON_ENTER = {
    Step.NOT_QUALIFIED: (enroll_waitlist,),
    Step.COMPLETE: (send_order_confirmation, send_new_customer_notification),
}


# ---------------------------------------------------------------------------
# State helpers
# ---------------------------------------------------------------------------

def default_state(
    funnel_id: str,
    funnel_config: dict,
    *,
    preselected_plan: str | None = None,
    lead_record: dict | None = None,
) -> dict:
    """Create a fresh initial state."""
    return {
        "funnel_id": funnel_id,
        "funnel_config": funnel_config,
        "step": INITIAL_STEP,
        "session_started_at": None,
        "preselected_plan": preselected_plan,
        "address": None,
        "contact": None,
        "lead_id": lead_record["lead_id"] if lead_record else None,
        "lead_record": lead_record,
        "qualified": False,
        "qualification_source": None,
        "qualification_detail": None,
        "plan_selected": None,
        "router_added": False,
        "total_amount_due_today": money(0),
        "wifi": None,
        "payment_reference": None,
        "customer_id": None,
        "error": None,
    }


def merge(state: dict, update: dict) -> dict:
    """Merge a partial update into the state and recompute derived fields.

    Raises:
        ValueError: If the update writes total_amount_due_today, changes an
            assigned lead_id, or changes `qualified` outside the address step.
    """
    if not update:
        return state
    if "total_amount_due_today" in update:
        raise ValueError("total_amount_due_today is derived and cannot be set directly")
    if (
        "lead_id" in update
        and state.get("lead_id") is not None
        and update["lead_id"] != state["lead_id"]
    ):
        raise ValueError(f"lead_id {state['lead_id']} cannot be reassigned")
    if (
        "qualified" in update
        and update["qualified"] != state.get("qualified")
        and state.get("step") != Step.ADDRESS
    ):
        raise ValueError("qualified can only change on the address step")

    merged = {**state, **update}
    merged["total_amount_due_today"] = total_amount_due_today(
        merged.get("plan_selected"),
        bool(merged.get("router_added")),
        merged["funnel_config"],
    )
    return merged


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _node_name(step: Step) -> str:
    # Node names may not collide with FunnelState keys such as "address"
    return f"{step.value}_step"


def build_graph(services: dict | None = None):
    """Build and compile the LangGraph StateGraph.

    This is useful for visualization and schema validation.
    For interactive stepping, use step_funnel() instead.
    """
    def _wrap(fn):
        async def wrapper(state: dict) -> dict:
            return await fn(state, {}, services or {})
        wrapper.__name__ = fn.__name__
        return wrapper

    def _finish(state: dict) -> dict:
        return {}

    builder = StateGraph(FunnelState)

    for step in TRANSITIONS:
        if step in NODES:
            builder.add_node(_node_name(step), _wrap(NODES[step]))
        else:
            builder.add_node(_node_name(step), _finish)

    builder.add_edge(START, _node_name(INITIAL_STEP))
    for step, targets in TRANSITIONS.items():
        if step in TERMINAL_STEPS:
            builder.add_edge(_node_name(step), END)
        elif step in DIRECT_EDGES:
            builder.add_edge(_node_name(step), _node_name(DIRECT_EDGES[step]))
        else:
            builder.add_conditional_edges(
                _node_name(step),
                ROUTING_TABLE[step],
                {target.value: _node_name(target) for target in targets},
            )

    return builder.compile()


async def step_funnel(state: dict, data: dict | None, services: dict) -> dict:
    """Run the current step's handler and advance to the next step.

    Returns the new state. Errors from the handler propagate and the
    caller's state is left untouched.
    """
    current = Step(state["step"])
    if current in TERMINAL_STEPS:
        raise IllegalTransitionError(current.value, current.value, "funnel is finished")

    update = await NODES[current](state, data or {}, services)
    candidate = merge(state, update)

    target = check_transition(current, next_step(current, candidate), candidate)
    return merge(candidate, {"step": target, "error": None})
