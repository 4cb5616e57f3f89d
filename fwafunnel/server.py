"""FastAPI server for the checkout funnel.

Provides REST endpoints for session management and step-by-step form
submission. Run with:

    uvicorn fwafunnel.server:create_app --factory
"""

from __future__ import annotations

import time
from datetime import timedelta
from decimal import Decimal

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fwafunnel.config import FunnelConfigError, env, load_funnel_config
from fwafunnel.db import Database, MockDatabase
from fwafunnel.drip import enroll_incomplete_leads
from fwafunnel.errors import (
    AlreadyCustomerError,
    CollaboratorError,
    FunnelError,
    IllegalTransitionError,
    SessionExpiredError,
    StepMismatchError,
    SubmissionInFlightError,
    ValidationError,
)
from fwafunnel.graph import build_graph
from fwafunnel.integrations.geocoder import GoogleGeocoder, MockGeocoder
from fwafunnel.integrations.mailer import MockMailer, SendGridMailer
from fwafunnel.integrations.payments import MockPayments, StripePayments
from fwafunnel.log import setup_logging
from fwafunnel.nodes import describe_address
from fwafunnel.qualification import GisQualifier, MockQualifier
from fwafunnel.routing import TERMINAL_STEPS
from fwafunnel.session import FunnelSession
from fwafunnel.state import Step


log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class SessionRequest(BaseModel):
    funnel_id: str | None = None
    preselected_plan: str | None = None
    lead_id: int | None = None


class FunnelRequest(BaseModel):
    session_id: str
    step: str | None = None
    data: dict = {}


class FieldDescriptor(BaseModel):
    name: str
    type: str
    label: str
    required: bool = True
    options: list[str] | None = None


class OrderSummary(BaseModel):
    plan: str | None = None
    plan_name: str | None = None
    router_added: bool = False
    total_amount_due_today: Decimal
    lead_id: int | None = None
    customer_id: int | None = None
    qualified: bool = False
    service_address: str | None = None
    wifi_ssid: str | None = None


class FunnelResponse(BaseModel):
    session_id: str
    step: str
    message: str
    fields: list[FieldDescriptor] | None = None
    options: list[str] | None = None
    summary: OrderSummary
    error: str | None = None
    retry: bool = False
    done: bool = False


# ---------------------------------------------------------------------------
# Step -> form helpers
# ---------------------------------------------------------------------------

_STEP_FIELDS = {
    Step.ADDRESS: [
        FieldDescriptor(name="line1", type="text", label="Street address"),
        FieldDescriptor(name="line2", type="text", label="Apt, suite, unit", required=False),
        FieldDescriptor(name="city", type="text", label="City"),
        FieldDescriptor(name="state", type="text", label="State"),
        FieldDescriptor(name="zip_code", type="text", label="ZIP code"),
    ],
    Step.CONTACT: [
        FieldDescriptor(name="first_name", type="text", label="First name"),
        FieldDescriptor(name="last_name", type="text", label="Last name"),
        FieldDescriptor(name="email", type="email", label="Email address"),
        FieldDescriptor(name="phone", type="tel", label="Phone number"),
    ],
    Step.WIFI_SETUP: [
        FieldDescriptor(name="ssid", type="text", label="Network name", required=False),
        FieldDescriptor(name="passkey", type="password", label="Network password", required=False),
        FieldDescriptor(name="skip", type="checkbox", label="Generate them for me", required=False),
    ],
    Step.CHECKOUT: [
        FieldDescriptor(name="payment_method", type="payment", label="Card details"),
    ],
}

_STATUS_CODES = [
    (ValidationError, 422),
    (SubmissionInFlightError, 429),
    (IllegalTransitionError, 409),
    (StepMismatchError, 409),
    (AlreadyCustomerError, 409),
    (CollaboratorError, 502),
]


def _determine_fields(state: dict) -> list[FieldDescriptor] | None:
    step = Step(state["step"])
    if step == Step.PLAN_SELECTION:
        return [FieldDescriptor(
            name="plan",
            type="select",
            label="Plan",
            required=state.get("preselected_plan") is None,
            options=list(state["funnel_config"]["plans"]),
        )]
    if step == Step.ROUTER_OFFER:
        return [FieldDescriptor(
            name="add_router", type="select", label="Add the router?", options=["Yes", "No"]
        )]
    return _STEP_FIELDS.get(step)


def _determine_options(state: dict) -> list[str] | None:
    step = Step(state["step"])
    if step == Step.PLAN_SELECTION:
        return list(state["funnel_config"]["plans"])
    if step == Step.ROUTER_OFFER:
        return ["Yes", "No"]
    return None


def _summary(state: dict) -> OrderSummary:
    plan_id = state.get("plan_selected")
    plan = state["funnel_config"]["plans"].get(plan_id or "", {})
    return OrderSummary(
        plan=plan_id,
        plan_name=plan.get("name"),
        router_added=bool(state.get("router_added")),
        total_amount_due_today=state["total_amount_due_today"],
        lead_id=state.get("lead_id"),
        customer_id=state.get("customer_id"),
        qualified=bool(state.get("qualified")),
        service_address=describe_address(state.get("address")) or None,
        wifi_ssid=(state.get("wifi") or {}).get("ssid"),
    )


def _state_to_response(session: FunnelSession, retry: bool = False) -> FunnelResponse:
    """Convert session state into a FunnelResponse."""
    state = session.state
    step = Step(state["step"])
    messaging = state["funnel_config"].get("messaging", {})
    return FunnelResponse(
        session_id=session.session_id,
        step=step.value,
        message=messaging.get(step.value.replace("-", "_"), ""),
        fields=_determine_fields(state),
        options=_determine_options(state),
        summary=_summary(state),
        error=state.get("error"),
        retry=retry,
        done=step in TERMINAL_STEPS,
    )


def _error_response(session: FunnelSession, error: FunnelError) -> JSONResponse:
    status_code = next(
        (code for kind, code in _STATUS_CODES if isinstance(error, kind)), 400
    )
    retry = isinstance(error, CollaboratorError) and error.retryable
    body = _state_to_response(session, retry=retry)
    body.error = error.user_message
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def mock_services() -> dict:
    """In-memory collaborators, for local runs and tests."""
    return {
        "db": MockDatabase(),
        "geocoder": MockGeocoder(),
        "qualifier": MockQualifier(),
        "payments": MockPayments(),
        "mailer": MockMailer(),
        "notify_email": "ops@example.com",
    }


def default_services(funnel_config: dict) -> dict:
    """Real collaborators configured from the environment.

    Set FUNNEL_SERVICES=mock to run against in-memory collaborators.
    """
    if env("FUNNEL_SERVICES") == "mock":
        return mock_services()

    qualification = funnel_config.get("qualification", {})
    return {
        "db": Database(),
        "geocoder": GoogleGeocoder(),
        "qualifier": GisQualifier(
            min_signal_dbm=qualification.get("min_signal_dbm", -100),
            default_network_type=qualification.get("default_network_type", "5G_HOME"),
        ),
        "payments": StripePayments(),
        "mailer": SendGridMailer(),
        "notify_email": env("NEW_CUSTOMER_NOTIFY_EMAIL"),
    }


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    services: dict | None = None,
    funnel_id: str = "spryfi",
    clock=time.time,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Dict with db, geocoder, qualifier, payments, mailer for
            dependency injection. Defaults to default_services().
        funnel_id: Default funnel to load config for.
        clock: Time source for session expiry and eviction.
    """
    setup_logging()
    app = FastAPI(title="FWA Checkout Funnel")

    funnel_config = load_funnel_config(funnel_id)
    if services is None:
        services = default_services(funnel_config)

    # Build graph (for validation)
    app.state.graph = build_graph(services)

    # In-memory session store
    sessions: dict[str, FunnelSession] = {}

    async def _sweep() -> None:
        """Drop abandoned sessions and reset expired ones."""
        for session_id, session in list(sessions.items()):
            if session.abandoned():
                sessions.pop(session_id, None)
                session.close()
                log.info("session_evicted", session_id=session_id)
            else:
                await session.expire_if_due()

    def _get_session(session_id: str) -> FunnelSession:
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @app.post("/session", response_model=FunnelResponse)
    async def create_session(req: SessionRequest):
        await _sweep()
        config = funnel_config
        if req.funnel_id and req.funnel_id != funnel_id:
            try:
                config = load_funnel_config(req.funnel_id)
            except FunnelConfigError:
                raise HTTPException(status_code=400, detail="Unknown funnel ID")

        try:
            session = await FunnelSession.open(
                config,
                services,
                preselected_plan=req.preselected_plan,
                lead_id=req.lead_id,
                clock=clock,
            )
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.user_message)
        except CollaboratorError as e:
            raise HTTPException(status_code=502, detail=e.user_message)

        sessions[session.session_id] = session
        log.info("session_opened", session_id=session.session_id, funnel_id=config["funnel_id"])
        return _state_to_response(session)

    @app.post("/funnel", response_model=FunnelResponse)
    async def submit(req: FunnelRequest):
        await _sweep()
        session = _get_session(req.session_id)
        try:
            await session.submit(req.data, expected_step=req.step)
        except SessionExpiredError:
            return _state_to_response(session)
        except FunnelError as e:
            return _error_response(session, e)
        return _state_to_response(session)

    @app.get("/session/{session_id}", response_model=FunnelResponse)
    async def get_session(session_id: str):
        await _sweep()
        return _state_to_response(_get_session(session_id))

    @app.post("/session/{session_id}/close")
    async def close_session(session_id: str):
        await _sweep()
        session = sessions.pop(session_id, None)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session.close()
        return {"session_id": session_id, "closed": True}

    @app.post("/jobs/enroll-drip-leads")
    async def enroll_drip_leads():
        minutes = funnel_config.get("drip", {}).get("incomplete_after_minutes", 30)
        return await enroll_incomplete_leads(
            services["db"], older_than=timedelta(minutes=minutes)
        )

    return app
