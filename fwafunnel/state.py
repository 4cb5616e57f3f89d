"""FunnelState definition for the checkout funnel state machine."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import TypedDict


class Step(str, Enum):
    ADDRESS = "address"
    CONTACT = "contact"
    QUALIFICATION_SUCCESS = "qualification-success"
    PLAN_SELECTION = "plan-selection"
    WIFI_SETUP = "wifi-setup"
    ROUTER_OFFER = "router-offer"
    CHECKOUT = "checkout"
    COMPLETE = "complete"
    NOT_QUALIFIED = "not-qualified"

    def __str__(self) -> str:
        return self.value


class Address(TypedDict, total=False):
    line1: str
    line2: str | None
    city: str
    state: str
    zip_code: str
    latitude: float | None
    longitude: float | None
    place_id: str | None
    formatted_address: str | None


class Contact(TypedDict):
    email: str
    phone: str
    first_name: str
    last_name: str


class QualificationDetail(TypedDict, total=False):
    network_type: str | None
    min_signal: float | None
    reason: str


class WifiCredentials(TypedDict):
    ssid: str
    passkey: str
    generated: bool


class LeadRecord(TypedDict, total=False):
    """Row from fwa_leads, as loaded when a session reuses a lead."""

    lead_id: int
    email: str | None
    phone: str | None
    first_name: str | None
    last_name: str | None
    address_line1: str | None
    zip_code: str | None
    place_id: str | None
    qualified: bool | None
    network_type: str | None
    status: str


class FunnelState(TypedDict, total=False):
    # Session
    funnel_id: str
    funnel_config: dict
    step: Step
    session_started_at: float | None
    preselected_plan: str | None

    # Collected data
    address: Address | None
    contact: Contact | None

    # Lead
    lead_id: int | None
    lead_record: LeadRecord | None

    # Qualification
    qualified: bool
    qualification_source: str | None
    qualification_detail: QualificationDetail | None

    # Order
    plan_selected: str | None
    router_added: bool
    total_amount_due_today: Decimal
    wifi: WifiCredentials | None

    # Outcome
    payment_reference: str | None
    customer_id: int | None
    error: str | None
