"""Transition table and routing functions for the funnel state machine.

Every edge the funnel may take is listed in TRANSITIONS. Routing functions
take a FunnelState dict and return the next step; check_transition() is the
only gate a step change passes through.
"""

from __future__ import annotations

from fwafunnel.errors import IllegalTransitionError
from fwafunnel.state import Step


TRANSITIONS: dict[Step, frozenset[Step]] = {
    Step.ADDRESS: frozenset({Step.CONTACT, Step.PLAN_SELECTION, Step.NOT_QUALIFIED}),
    Step.CONTACT: frozenset({Step.QUALIFICATION_SUCCESS}),
    Step.QUALIFICATION_SUCCESS: frozenset({Step.PLAN_SELECTION}),
    Step.PLAN_SELECTION: frozenset({Step.WIFI_SETUP}),
    Step.WIFI_SETUP: frozenset({Step.ROUTER_OFFER, Step.CHECKOUT}),
    Step.ROUTER_OFFER: frozenset({Step.CHECKOUT}),
    Step.CHECKOUT: frozenset({Step.COMPLETE}),
    Step.COMPLETE: frozenset(),
    Step.NOT_QUALIFIED: frozenset(),
}

INITIAL_STEP = Step.ADDRESS

TERMINAL_STEPS = frozenset(step for step, targets in TRANSITIONS.items() if not targets)

# Steps that may only be entered once the address has qualified
QUALIFIED_ONLY = frozenset({
    Step.QUALIFICATION_SUCCESS,
    Step.PLAN_SELECTION,
    Step.WIFI_SETUP,
    Step.ROUTER_OFFER,
    Step.CHECKOUT,
    Step.COMPLETE,
})

# Qualification source recorded when a prior lead record answers for the address
LEAD_RECORD_SOURCE = "lead-record"


def check_transition(source: Step | str, target: Step | str, state: dict) -> Step:
    """Validate a step change and return the target as a Step.

    Raises:
        IllegalTransitionError: If the edge is not in TRANSITIONS, or the
            target requires a qualified address and the state isn't.
    """
    try:
        source, target = Step(source), Step(target)
    except ValueError as e:
        raise IllegalTransitionError(str(source), str(target), "unknown step") from e

    if target not in TRANSITIONS[source]:
        raise IllegalTransitionError(source.value, target.value)
    if target in QUALIFIED_ONLY and not state.get("qualified"):
        raise IllegalTransitionError(source.value, target.value, "address not qualified")
    return target


def route_after_address(state: dict) -> str:
    if not state.get("qualified"):
        return Step.NOT_QUALIFIED.value
    if state.get("qualification_source") == LEAD_RECORD_SOURCE and state.get("contact"):
        return Step.PLAN_SELECTION.value
    return Step.CONTACT.value


def route_after_wifi_setup(state: dict) -> str:
    router = (state.get("funnel_config") or {}).get("router", {})
    if router.get("offer_enabled", True):
        return Step.ROUTER_OFFER.value
    return Step.CHECKOUT.value


# Steps whose successor depends on state
ROUTING_TABLE = {
    Step.ADDRESS: route_after_address,
    Step.WIFI_SETUP: route_after_wifi_setup,
}

# Direct edges (no routing needed)
DIRECT_EDGES = {
    Step.CONTACT: Step.QUALIFICATION_SUCCESS,
    Step.QUALIFICATION_SUCCESS: Step.PLAN_SELECTION,
    Step.PLAN_SELECTION: Step.WIFI_SETUP,
    Step.ROUTER_OFFER: Step.CHECKOUT,
    Step.CHECKOUT: Step.COMPLETE,
}


def next_step(current: Step | str, state: dict) -> Step | None:
    """Determine the step that follows `current` given the updated state."""
    current = Step(current)
    if current in TERMINAL_STEPS:
        return None
    if current in DIRECT_EDGES:
        return DIRECT_EDGES[current]
    if current in ROUTING_TABLE:
        return Step(ROUTING_TABLE[current](state))
    return None
