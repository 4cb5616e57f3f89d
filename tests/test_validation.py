import random

import pytest

from fwafunnel.errors import ValidationError
from fwafunnel.validation import (
    normalize_phone,
    validate_address_input,
    validate_contact,
    validate_passkey,
    validate_payment_method,
    validate_plan,
    validate_router_choice,
    validate_wifi,
)


def test_normalize_phone_strips_country_code():
    assert normalize_phone("+1 (512) 555-1234") == "5125551234"
    assert normalize_phone("512.555.1234") == "5125551234"


def test_address_free_text():
    assert validate_address_input({"query": " 123 Main St, Austin, TX 78701 "}) == {
        "query": "123 Main St, Austin, TX 78701"
    }


def test_address_structured():
    address = validate_address_input({
        "line1": "123 Main St",
        "city": "Austin",
        "state": "tx",
        "zip_code": "78701-1234",
    })
    assert address == {
        "line1": "123 Main St",
        "line2": None,
        "city": "Austin",
        "state": "TX",
        "zip_code": "78701",
    }


@pytest.mark.parametrize("data, field", [
    ({}, "line1"),
    ({"line1": "1 Main St", "state": "TX", "zip_code": "78701"}, "city"),
    ({"line1": "1 Main St", "city": "Austin", "state": "Texas", "zip_code": "78701"}, "state"),
    ({"line1": "1 Main St", "city": "Austin", "state": "TX", "zip_code": "787"}, "zip_code"),
])
def test_address_rejects(data, field):
    with pytest.raises(ValidationError) as exc:
        validate_address_input(data)
    assert exc.value.field == field


def test_contact_normalizes():
    contact = validate_contact({
        "email": " A@B.com ",
        "phone": "1-512-555-1234",
        "first_name": "Ada",
        "last_name": "Byron",
    })
    assert contact == {
        "email": "a@b.com",
        "phone": "5125551234",
        "first_name": "Ada",
        "last_name": "Byron",
    }


@pytest.mark.parametrize("overrides, field", [
    ({"email": "not-an-email"}, "email"),
    ({"phone": "555-1234"}, "phone"),
    ({"first_name": ""}, "first_name"),
    ({"last_name": "  "}, "last_name"),
])
def test_contact_rejects(overrides, field):
    data = {"email": "a@b.com", "phone": "5125551234", "first_name": "A", "last_name": "B"}
    with pytest.raises(ValidationError) as exc:
        validate_contact({**data, **overrides})
    assert exc.value.field == field
    assert exc.value.user_message


def test_plan_uses_preselected(funnel_config):
    assert validate_plan({}, funnel_config, preselected="home") == "home"
    assert validate_plan({"plan": "premium"}, funnel_config, preselected="home") == "premium"


def test_plan_rejects(funnel_config):
    with pytest.raises(ValidationError):
        validate_plan({}, funnel_config)
    with pytest.raises(ValidationError):
        validate_plan({"plan": "gigabit"}, funnel_config)


def test_passkey_rules():
    assert validate_passkey("abcd1234") == "abcd1234"
    with pytest.raises(ValidationError, match="at least 8"):
        validate_passkey("abc123")
    with pytest.raises(ValidationError, match="only letters and numbers"):
        validate_passkey("abcd-1234")


def test_wifi_skip_generates_credentials():
    wifi = validate_wifi({"skip": True}, "SpryFi", random.Random(3))
    assert wifi["generated"] is True
    assert wifi["ssid"].startswith("SpryFi_")
    assert len(wifi["ssid"]) == len("SpryFi_") + 4
    assert len(wifi["passkey"]) == 8
    assert wifi["passkey"].isalpha()


def test_wifi_custom_credentials():
    wifi = validate_wifi({"ssid": "Home Net", "passkey": "sunflower9"}, "SpryFi")
    assert wifi == {"ssid": "Home Net", "passkey": "sunflower9", "generated": False}


def test_wifi_rejects_long_ssid():
    with pytest.raises(ValidationError) as exc:
        validate_wifi({"ssid": "x" * 33, "passkey": "sunflower9"}, "SpryFi")
    assert exc.value.field == "ssid"


@pytest.mark.parametrize("value, expected", [
    (True, True),
    (False, False),
    ("Yes", True),
    ("no", False),
])
def test_router_choice(value, expected):
    assert validate_router_choice({"add_router": value}) is expected


def test_router_choice_required():
    with pytest.raises(ValidationError):
        validate_router_choice({})


def test_payment_method_required():
    assert validate_payment_method({"payment_method": "pm_card_visa"}) == "pm_card_visa"
    with pytest.raises(ValidationError):
        validate_payment_method({})
