"""Step handlers for the funnel state machine.

Each handler takes the current FunnelState, the submitted form data and a
services dict (db, geocoder, qualifier, payments, mailer) and returns a
partial state dict to be merged by graph.merge(). Handlers never set `step`;
the next step is decided by routing once the update is merged.

Side effects run after a step is entered (waitlist enrollment, order
emails) live at the bottom of the module and are scheduled as background
tasks by the session.
"""

from __future__ import annotations

import re

import structlog

from fwafunnel.db import lead_fields
from fwafunnel.errors import (
    AddressNotFound,
    AlreadyCustomerError,
    CollaboratorError,
    PaymentDeclined,
)
from fwafunnel.pricing import activation_fee, plan_details, shipping_quote, to_cents
from fwafunnel.routing import LEAD_RECORD_SOURCE
from fwafunnel.validation import (
    validate_address_input,
    validate_contact,
    validate_payment_method,
    validate_plan,
    validate_router_choice,
    validate_wifi,
)


log = structlog.get_logger(__name__)

# Qualification source recorded when the geocoder rejects the address outright
GEOCODER_SOURCE = "geocoder"


def _squash(text: str | None) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def describe_address(address: dict | None) -> str:
    """One-line rendering of an Address for emails and the waitlist."""
    if not address:
        return ""
    if address.get("formatted_address"):
        return address["formatted_address"]
    parts = [address.get("line1"), address.get("line2"), address.get("city")]
    region = f"{address.get('state') or ''} {address.get('zip_code') or ''}".strip()
    return ", ".join(p for p in parts + [region] if p)


def _full_name(contact: dict | None) -> str:
    if not contact:
        return ""
    return f"{contact['first_name']} {contact['last_name']}".strip()


def _matches_lead_address(lead_record: dict, address: dict) -> bool:
    """True if a stored lead's service address is the normalized address."""
    if lead_record.get("place_id") and address.get("place_id"):
        return lead_record["place_id"] == address["place_id"]
    return (
        _squash(lead_record.get("address_line1")) == _squash(address.get("line1"))
        and (lead_record.get("zip_code") or "")[:5] == (address.get("zip_code") or "")[:5]
    )


def _contact_from_lead(lead_record: dict) -> dict | None:
    fields = ("email", "phone", "first_name", "last_name")
    if not all(lead_record.get(f) for f in fields):
        return None
    return {f: lead_record[f] for f in fields}


def _qualification(state: dict) -> dict:
    detail = state.get("qualification_detail") or {}
    return {
        "qualified": state.get("qualified", False),
        "source": state.get("qualification_source"),
        "network_type": detail.get("network_type"),
        "reason": detail.get("reason"),
    }


def _require_lead(state: dict) -> int:
    lead_id = state.get("lead_id")
    if lead_id is None:
        raise CollaboratorError(
            "No lead_id on a step that requires a saved lead",
            collaborator="database",
            user_message="We lost track of your signup. Please start again.",
        )
    return lead_id


# ---------------------------------------------------------------------------
# Address
# ---------------------------------------------------------------------------

async def address_node(state: dict, data: dict, services: dict) -> dict:
    raw = validate_address_input(data)

    try:
        address = await services["geocoder"].normalize(raw)
    except AddressNotFound as e:
        log.info("address_not_found", error=str(e))
        unresolved = {"formatted_address": raw["query"]} if "query" in raw else raw
        return {
            "address": unresolved,
            "qualified": False,
            "qualification_source": GEOCODER_SOURCE,
            "qualification_detail": {
                "network_type": None,
                "min_signal": None,
                "reason": e.user_message,
            },
        }

    # Returning lead whose address already qualified: skip the coverage check
    lead_record = state.get("lead_record")
    if lead_record and lead_record.get("qualified") and _matches_lead_address(lead_record, address):
        contact = _contact_from_lead(lead_record)
        log.info("qualification_from_lead_record", lead_id=lead_record.get("lead_id"))
        update = {
            "address": address,
            "qualified": True,
            "qualification_source": LEAD_RECORD_SOURCE,
            "qualification_detail": {
                "network_type": lead_record.get("network_type"),
                "min_signal": None,
                "reason": "Previously qualified",
            },
        }
        if contact is not None:
            update["contact"] = contact
        return update

    result = await services["qualifier"].check(address)
    log.info(
        "address_qualification",
        zip_code=address.get("zip_code"),
        qualified=result["qualified"],
        source=result["source"],
    )
    return {
        "address": address,
        "qualified": bool(result["qualified"]),
        "qualification_source": result["source"],
        "qualification_detail": {
            "network_type": result.get("network_type"),
            "min_signal": result.get("min_signal"),
            "reason": result.get("reason", ""),
        },
    }


# ---------------------------------------------------------------------------
# Contact
# ---------------------------------------------------------------------------

async def contact_node(state: dict, data: dict, services: dict) -> dict:
    contact = validate_contact(data)
    db = services["db"]
    lead_id = state.get("lead_id")

    if lead_id is None:
        existing = await db.lookup_lead(contact["email"])
        if existing and existing.get("flow_completed"):
            log.info("contact_already_customer", lead_id=existing["lead_id"])
            raise AlreadyCustomerError(existing["lead_id"])
        lead_id = await db.create_lead(contact, state["address"], _qualification(state))
        log.info("lead_created", lead_id=lead_id)
    else:
        await db.update_lead(
            lead_id, lead_fields(contact, state.get("address"), _qualification(state))
        )
        log.info("lead_updated", lead_id=lead_id)

    return {"contact": contact, "lead_id": lead_id}


# ---------------------------------------------------------------------------
# Qualification success
# ---------------------------------------------------------------------------

async def qualification_success_node(state: dict, data: dict, services: dict) -> dict:
    return {}


# ---------------------------------------------------------------------------
# Plan selection
# ---------------------------------------------------------------------------

async def plan_selection_node(state: dict, data: dict, services: dict) -> dict:
    config = state["funnel_config"]
    plan_id = validate_plan(data, config, state.get("preselected_plan"))
    details = plan_details(plan_id, config)

    await services["db"].update_lead(_require_lead(state), {
        "status": "plan_selected",
        "plan_selected": plan_id,
        "plan_price": details["plan_price"],
    })
    return {"plan_selected": plan_id}


# ---------------------------------------------------------------------------
# WiFi setup
# ---------------------------------------------------------------------------

async def wifi_setup_node(state: dict, data: dict, services: dict) -> dict:
    prefix = state["funnel_config"]["brand"].get("ssid_prefix", "WiFi")
    wifi = validate_wifi(data, prefix, services.get("rng"))
    lead_id = _require_lead(state)

    await services["db"].save_provisioning(lead_id, wifi["ssid"], wifi["passkey"])
    log.info("wifi_saved", lead_id=lead_id, generated=wifi["generated"])
    return {"wifi": wifi}


# ---------------------------------------------------------------------------
# Router offer
# ---------------------------------------------------------------------------

async def router_offer_node(state: dict, data: dict, services: dict) -> dict:
    router_added = validate_router_choice(data)
    await services["db"].update_lead(_require_lead(state), {
        "status": "router_offered",
        "router_added": router_added,
    })
    return {"router_added": router_added}


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

async def _charge(state: dict, payment_method: str, services: dict) -> str:
    """Create and confirm a payment intent. Returns the payment reference."""
    payments = services["payments"]
    customer = {
        "lead_id": state.get("lead_id"),
        "email": (state.get("contact") or {}).get("email"),
        "name": _full_name(state.get("contact")),
        "address": state.get("address") or {},
    }
    client_secret = await payments.create_payment_intent(
        to_cents(state["total_amount_due_today"]), customer
    )
    result = await payments.confirm_payment(client_secret, payment_method)
    if result["status"] != "succeeded":
        raise PaymentDeclined(
            f"Payment confirmation returned status {result['status']!r}",
            status=result["status"],
        )
    return result["payment_reference"]


async def checkout_node(state: dict, data: dict, services: dict) -> dict:
    config = state["funnel_config"]
    lead_id = _require_lead(state)

    reference = state.get("payment_reference")
    if reference is None:
        payment_method = validate_payment_method(data)
        # Converted leads are never charged again
        lead = await services["db"].get_lead(lead_id)
        if lead and lead.get("flow_completed"):
            raise AlreadyCustomerError(lead_id)
        reference = await _charge(state, payment_method, services)
        log.info("payment_confirmed", lead_id=lead_id, payment_reference=reference)
    else:
        log.info("payment_already_confirmed", lead_id=lead_id, payment_reference=reference)

    details = plan_details(state["plan_selected"], config)
    order = {
        "plan_id": details["plan_id"],
        "plan_name": details["plan_name"],
        "plan_price": details["plan_price"],
        "router_added": bool(state.get("router_added")),
        "amount_paid": state["total_amount_due_today"],
        "shipping_cost": shipping_quote((state.get("address") or {}).get("state"))["cost"],
        "activation_fee": activation_fee(config),
    }
    try:
        customer_id = await services["db"].convert_lead_to_customer(lead_id, reference, order)
    except CollaboratorError as e:
        e.state_update = {"payment_reference": reference}
        raise

    log.info("lead_converted", lead_id=lead_id, customer_id=customer_id)
    return {"payment_reference": reference, "customer_id": customer_id}


# ---------------------------------------------------------------------------
# After-entry side effects (run in the background by the session)
# ---------------------------------------------------------------------------

async def enroll_waitlist(state: dict, services: dict) -> None:
    """Add a not-qualified address to the drip marketing waitlist."""
    contact = state.get("contact") or {}
    await services["db"].enroll_drip({
        "lead_id": state.get("lead_id"),
        "email": contact.get("email"),
        "name": _full_name(contact) or None,
        "address": describe_address(state.get("address")),
        "qualified": False,
    })


def order_email_fields(state: dict) -> dict:
    config = state["funnel_config"]
    contact = state.get("contact") or {}
    wifi = state.get("wifi") or {}
    plan = config["plans"].get(state.get("plan_selected") or "", {})
    return {
        "brand": config["brand"]["name"],
        "support_email": config["brand"].get("support_email"),
        "first_name": contact.get("first_name"),
        "last_name": contact.get("last_name"),
        "email": contact.get("email"),
        "plan_name": plan.get("name"),
        "router": "Yes" if state.get("router_added") else "No",
        "amount": str(state.get("total_amount_due_today")),
        "service_address": describe_address(state.get("address")),
        "lead_id": state.get("lead_id"),
        "customer_id": state.get("customer_id"),
        "ssid": wifi.get("ssid"),
        "passkey": wifi.get("passkey"),
    }


async def send_order_confirmation(state: dict, services: dict) -> None:
    recipient = state["contact"]["email"]
    await services["mailer"].send_email("order-confirmation", recipient, order_email_fields(state))


async def send_new_customer_notification(state: dict, services: dict) -> None:
    recipient = services.get("notify_email")
    if not recipient:
        log.info("new_customer_notification_skipped", reason="no notify_email configured")
        return
    await services["mailer"].send_email(
        "new-customer-notification", recipient, order_email_fields(state)
    )
