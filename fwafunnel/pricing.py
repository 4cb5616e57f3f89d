"""Order pricing.

Amount due today is a pure function of the selected plan and the router
add-on. The activation fee and the shipping quote are recorded on the
customer record at conversion but are not part of the amount charged.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")

_SHIPPING_ZONES = [
    ("Zone 1 Shipping", ("TX", "OK", "AR", "LA", "NM"), "12.95", 3),
    ("Zone 2 Shipping", ("AZ", "CA", "NV", "UT", "CO", "KS", "MO", "TN", "MS", "AL", "GA", "FL"), "16.95", 5),
    ("Zone 3 Shipping", ("WA", "OR", "ID", "MT", "WY", "ND", "SD", "NE", "IA", "IL", "IN", "OH", "KY", "WV", "VA", "NC", "SC"), "19.95", 7),
    ("Zone 4 Shipping", ("AK", "HI", "ME", "VT", "NH", "MA", "RI", "CT", "NY", "NJ", "PA", "DE", "MD", "DC"), "24.95", 10),
]
_STANDARD_SHIPPING = ("Standard Shipping", "16.95", 5)


def money(value) -> Decimal:
    """Coerce a config or user value to a Decimal rounded to cents."""
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def plan_price(plan_id: str | None, config: dict) -> Decimal:
    if plan_id is None:
        return money(0)
    try:
        return money(config["plans"][plan_id]["price"])
    except KeyError:
        raise ValueError(f"Unknown plan: {plan_id!r}") from None


def router_price(config: dict) -> Decimal:
    return money(config["router"]["price"])


def total_amount_due_today(plan_id: str | None, router_added: bool, config: dict) -> Decimal:
    """planPrice(plan) + routerPrice if the router add-on was taken."""
    total = plan_price(plan_id, config)
    if router_added:
        total += router_price(config)
    return money(total)


def activation_fee(config: dict) -> Decimal:
    """List activation fee after the configured percentage discount."""
    activation = config.get("activation") or {}
    fee = money(activation.get("fee", "99.00"))
    discount = Decimal(str(activation.get("discount_percent", 0)))
    return money(fee * (Decimal(100) - discount) / Decimal(100))


def shipping_quote(state_code: str | None) -> dict:
    """Flat shipping rate for the router, by destination state zone."""
    code = (state_code or "").strip().upper()
    for zone_name, states, rate, days in _SHIPPING_ZONES:
        if code in states:
            return {"zone": zone_name, "cost": money(rate), "estimated_days": days}
    zone_name, rate, days = _STANDARD_SHIPPING
    return {"zone": zone_name, "cost": money(rate), "estimated_days": days}


def plan_details(plan_id: str, config: dict) -> dict:
    plan = config["plans"][plan_id]
    return {
        "plan_id": plan_id,
        "plan_name": plan.get("name", plan_id),
        "plan_price": money(plan["price"]),
        "plan_speed": plan.get("speed"),
    }
