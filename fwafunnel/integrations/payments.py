"""Payment authorization.

Defines the Payments protocol and implementations:
- StripePayments: Stripe PaymentIntents (requires secret key).
- MockPayments: In-memory intents for testing.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Protocol, runtime_checkable

import stripe
import structlog

from fwafunnel.config import env
from fwafunnel.errors import CollaboratorError, PaymentDeclined


log = structlog.get_logger(__name__)

_UNAVAILABLE = "We couldn't reach our payment processor. You have not been charged. Please try again."


@runtime_checkable
class Payments(Protocol):
    async def create_payment_intent(self, amount_cents: int, customer: dict) -> str:
        """Create an intent for amount_cents and return its client secret."""
        ...

    async def confirm_payment(self, client_secret: str, payment_method: str) -> dict:
        """Confirm an intent. Returns {status, payment_reference}."""
        ...


def intent_id_from_secret(client_secret: str) -> str:
    """PaymentIntent client secrets have the form '<intent id>_secret_<token>'."""
    intent_id, sep, _ = client_secret.partition("_secret_")
    if not sep or not intent_id:
        raise ValueError("Malformed payment client secret")
    return intent_id


class StripePayments:
    """Stripe PaymentIntents in USD, confirmed server-side.

    Requires STRIPE_SECRET_KEY environment variable or explicit api_key param.
    """

    def __init__(self, api_key: str | None = None, currency: str = "usd"):
        self.api_key = api_key or env("STRIPE_SECRET_KEY")
        if not self.api_key:
            raise ValueError(
                "StripePayments requires a Stripe secret key. "
                "Pass api_key or set STRIPE_SECRET_KEY env var."
            )
        self.currency = currency

    async def create_payment_intent(self, amount_cents: int, customer: dict) -> str:
        address = customer.get("address") or {}
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=amount_cents,
                currency=self.currency,
                receipt_email=customer.get("email"),
                description=f"Service activation for {address.get('city', '')}, {address.get('state', '')}",
                metadata={
                    "lead_id": str(customer.get("lead_id") or ""),
                    "customer_name": customer.get("name", ""),
                    "shipping_zip": address.get("zip_code", ""),
                },
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )
        except stripe.StripeError as e:
            log.warning("payment_intent_failed", error=str(e))
            raise CollaboratorError(
                f"Creating payment intent failed: {e}",
                collaborator="payments",
                user_message=_UNAVAILABLE,
            ) from e
        return intent.client_secret

    async def confirm_payment(self, client_secret: str, payment_method: str) -> dict:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.confirm,
                intent_id_from_secret(client_secret),
                api_key=self.api_key,
                payment_method=payment_method,
            )
        except stripe.CardError as e:
            raise PaymentDeclined(f"Card declined: {e.user_message}", status="card_declined") from e
        except stripe.StripeError as e:
            log.warning("payment_confirm_failed", error=str(e))
            raise CollaboratorError(
                f"Confirming payment failed: {e}",
                collaborator="payments",
                user_message=_UNAVAILABLE,
            ) from e
        return {"status": intent.status, "payment_reference": intent.id}


class MockPayments:
    """In-memory payments for testing.

    `confirm_status` controls what confirm_payment reports; `fail_confirm`
    makes it raise instead, as a network failure would.
    """

    def __init__(
        self,
        confirm_status: str = "succeeded",
        fail_create: Exception | None = None,
        fail_confirm: Exception | None = None,
    ):
        self.confirm_status = confirm_status
        self.fail_create = fail_create
        self.fail_confirm = fail_confirm
        self.intents: dict[str, dict] = {}
        self.confirmations: list[dict] = []
        self._ids = itertools.count(1)

    async def create_payment_intent(self, amount_cents: int, customer: dict) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        intent_id = f"pi_mock{next(self._ids)}"
        self.intents[intent_id] = {
            "amount": amount_cents,
            "customer": dict(customer),
            "status": "requires_confirmation",
        }
        return f"{intent_id}_secret_mock"

    async def confirm_payment(self, client_secret: str, payment_method: str) -> dict:
        if self.fail_confirm is not None:
            raise self.fail_confirm
        intent_id = intent_id_from_secret(client_secret)
        intent = self.intents[intent_id]
        intent["status"] = self.confirm_status
        intent["payment_method"] = payment_method
        self.confirmations.append({"intent_id": intent_id, "payment_method": payment_method})
        return {"status": self.confirm_status, "payment_reference": intent_id}
