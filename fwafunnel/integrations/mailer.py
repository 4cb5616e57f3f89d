"""Transactional email.

Defines the Mailer protocol, the message templates, and implementations:
- SendGridMailer: SendGrid v3 mail send through the sendgrid SDK (requires API key).
- MockMailer: Records rendered messages, for testing.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Protocol, runtime_checkable

import structlog
from python_http_client.exceptions import HTTPError as SendGridHTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Email, Mail, To

from fwafunnel.config import env
from fwafunnel.errors import CollaboratorError


log = structlog.get_logger(__name__)


TEMPLATES = {
    "order-confirmation": {
        "subject": "Welcome to {brand}! Your order is confirmed",
        "body": (
            "Hi {first_name},\n\n"
            "Thanks for choosing {brand}. Your order is confirmed.\n\n"
            "Plan: {plan_name}\n"
            "Router add-on: {router}\n"
            "Charged today: ${amount}\n"
            "Service address: {service_address}\n\n"
            "Our team will contact you to schedule device setup and activation.\n"
            "Questions? Reply to this email or write to {support_email}.\n"
        ),
    },
    "new-customer-notification": {
        "subject": "New {brand} customer activated: lead {lead_id} -> client {customer_id}",
        "body": (
            "A new customer has just checked out and is live:\n\n"
            "Lead ID:   {lead_id}\n"
            "Client ID: {customer_id}\n"
            "Name:      {first_name} {last_name}\n"
            "Email:     {email}\n"
            "Plan:      {plan_name}\n"
            "SSID:      {ssid}\n"
            "Passkey:   {passkey}\n"
            "Service address: {service_address}\n\n"
            "Please follow up as needed.\n"
        ),
    },
}


class _Defaults(dict):
    def __missing__(self, key):
        return "N/A"


def render(template: str, fields: dict) -> tuple[str, str]:
    """Render a template to (subject, body). Missing fields render as 'N/A'."""
    try:
        template_def = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown email template: {template!r}") from None

    values = _Defaults({k: v for k, v in fields.items() if v is not None})
    return template_def["subject"].format_map(values), template_def["body"].format_map(values)


@runtime_checkable
class Mailer(Protocol):
    async def send_email(self, template: str, recipient: str, fields: dict) -> str:
        """Send a templated email and return the provider message id."""
        ...


class SendGridMailer:
    """SendGrid mail sender built on the sendgrid SDK.

    Requires SENDGRID_API_KEY environment variable or explicit api_key param.
    The SDK is blocking, so sends run in a worker thread.
    """

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
        client: SendGridAPIClient | None = None,
    ):
        self.api_key = api_key or env("SENDGRID_API_KEY")
        if not self.api_key:
            raise ValueError(
                "SendGridMailer requires a SendGrid API key. "
                "Pass api_key or set SENDGRID_API_KEY env var."
            )
        self.from_email = from_email or env("SENDGRID_FROM_EMAIL", "notifications@sprybroadband.com")
        self.from_name = from_name or env("SENDGRID_FROM_NAME", "SpryFi Notifications")
        self._client = client or SendGridAPIClient(api_key=self.api_key)

    def _build(self, recipient: str, subject: str, body: str) -> Mail:
        return Mail(
            from_email=Email(self.from_email, self.from_name),
            to_emails=To(recipient),
            subject=subject,
            plain_text_content=body,
        )

    async def send_email(self, template: str, recipient: str, fields: dict) -> str:
        subject, body = render(template, fields)
        mail = self._build(recipient, subject, body)
        try:
            response = await asyncio.to_thread(self._client.send, mail)
        except (SendGridHTTPError, OSError) as e:
            log.warning("email_failed", template=template, error=str(e))
            raise CollaboratorError(
                f"SendGrid rejected {template!r} email: {e}", collaborator="mailer"
            ) from e

        if response.status_code not in (200, 201, 202):
            raise CollaboratorError(
                f"SendGrid returned status {response.status_code} for {template!r} email",
                collaborator="mailer",
            )
        message_id = response.headers.get("X-Message-Id", "")
        log.info("email_sent", template=template, message_id=message_id)
        return message_id


class MockMailer:
    """Mailer for testing. Keeps every rendered message in `sent`."""

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.sent: list[dict] = []
        self._ids = itertools.count(1)

    async def send_email(self, template: str, recipient: str, fields: dict) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        subject, body = render(template, fields)
        message_id = f"mock-{next(self._ids)}"
        self.sent.append({
            "template": template,
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "message_id": message_id,
        })
        return message_id
