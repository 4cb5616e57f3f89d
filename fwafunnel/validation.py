"""Local validation of user-entered funnel fields.

Everything here runs before any network call; failures raise
ValidationError and the step does not change.
"""

from __future__ import annotations

import random
import re

from fwafunnel.errors import ValidationError


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")
_STATE_RE = re.compile(r"^[A-Za-z]{2}$")
_ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")
_PASSKEY_RE = re.compile(r"^[A-Za-z0-9]+$")
_SSID_RE = re.compile(r"^[\x20-\x7E]{1,32}$")

_PASSKEY_WORDS = (
    "mint", "bike", "book", "lamp", "fish", "snow", "tree", "star",
    "moon", "ring", "bird", "leaf", "rock", "wind", "fire", "wave",
    "sand", "gold", "blue", "soft", "warm", "cool", "fast", "slow",
    "jump", "walk", "swim", "play", "sing", "hope", "love", "help",
    "work", "home", "food", "time", "life", "mind", "hand", "kite",
)

MIN_PASSKEY_LENGTH = 8


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return str(value).strip()


def normalize_phone(phone: str) -> str:
    """Normalize a US phone number to 10 digits."""
    digits = "".join(c for c in phone if c.isdigit())
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits


def validate_address_input(data: dict) -> dict:
    """Validate an address form.

    Accepts either a free-text `query` or structured fields. Returns a dict
    the geocoder understands: {"query": str} or the structured fields.
    """
    query = _text(data, "query")
    if query and not _text(data, "line1"):
        return {"query": query}

    line1 = _text(data, "line1")
    city = _text(data, "city")
    state = _text(data, "state")
    zip_code = _text(data, "zip_code")

    if not line1:
        raise ValidationError("Please enter your street address.", field="line1")
    if not city:
        raise ValidationError("Please enter your city.", field="city")
    if not _STATE_RE.match(state):
        raise ValidationError("Please enter a two-letter state code.", field="state")
    if not _ZIP_RE.match(zip_code):
        raise ValidationError("Please enter a valid 5-digit ZIP code.", field="zip_code")

    return {
        "line1": line1,
        "line2": _text(data, "line2") or None,
        "city": city,
        "state": state.upper(),
        "zip_code": zip_code[:5],
    }


def validate_contact(data: dict) -> dict:
    email = _text(data, "email")
    phone = normalize_phone(_text(data, "phone"))
    first_name = _text(data, "first_name")
    last_name = _text(data, "last_name")

    if not _EMAIL_RE.match(email):
        raise ValidationError("Please enter a valid email address.", field="email")
    if len(phone) != 10:
        raise ValidationError("Please enter a 10-digit phone number.", field="phone")
    if not first_name or not last_name:
        raise ValidationError(
            "Please enter your first and last name.",
            field="first_name" if not first_name else "last_name",
        )

    return {
        "email": email.lower(),
        "phone": phone,
        "first_name": first_name,
        "last_name": last_name,
    }


def validate_plan(data: dict, config: dict, preselected: str | None = None) -> str:
    plan_id = _text(data, "plan") or (preselected or "")
    if not plan_id:
        raise ValidationError("Please choose a plan.", field="plan")
    if plan_id not in config["plans"]:
        raise ValidationError("Please choose one of the available plans.", field="plan")
    return plan_id


def validate_passkey(passkey: str) -> str:
    if len(passkey) < MIN_PASSKEY_LENGTH:
        raise ValidationError(
            "Password must be at least 8 alphanumeric characters.", field="passkey"
        )
    if not _PASSKEY_RE.match(passkey):
        raise ValidationError(
            "Password must contain only letters and numbers.", field="passkey"
        )
    return passkey


def generate_ssid(prefix: str, rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    return f"{prefix}_{rng.randint(1000, 9999)}"


def generate_passkey(rng: random.Random | None = None) -> str:
    """Two random four-letter words, e.g. 'mintlamp'."""
    rng = rng or random.SystemRandom()
    return rng.choice(_PASSKEY_WORDS) + rng.choice(_PASSKEY_WORDS)


def validate_wifi(data: dict, ssid_prefix: str, rng: random.Random | None = None) -> dict:
    """Validate chosen WiFi credentials, or generate them when skipped.

    Returns {"ssid", "passkey", "generated"}.
    """
    if data.get("skip"):
        return {
            "ssid": generate_ssid(ssid_prefix, rng),
            "passkey": generate_passkey(rng),
            "generated": True,
        }

    ssid = _text(data, "ssid")
    passkey = _text(data, "passkey")
    if not _SSID_RE.match(ssid):
        raise ValidationError(
            "Network name must be 1 to 32 printable characters.", field="ssid"
        )
    validate_passkey(passkey)
    return {"ssid": ssid, "passkey": passkey, "generated": False}


def validate_router_choice(data: dict) -> bool:
    choice = data.get("add_router")
    if isinstance(choice, bool):
        return choice
    if isinstance(choice, str) and choice.strip().lower() in ("yes", "true", "1"):
        return True
    if isinstance(choice, str) and choice.strip().lower() in ("no", "false", "0"):
        return False
    raise ValidationError("Please choose whether to add the router.", field="add_router")


def validate_payment_method(data: dict) -> str:
    payment_method = _text(data, "payment_method")
    if not payment_method:
        raise ValidationError("Please enter your card details.", field="payment_method")
    return payment_method
