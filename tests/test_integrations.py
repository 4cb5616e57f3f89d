from types import SimpleNamespace

import httpx
import pytest
import stripe
from python_http_client.exceptions import HTTPError as SendGridHTTPError

from fwafunnel.errors import AddressNotFound, CollaboratorError, PaymentDeclined
from fwafunnel.integrations.geocoder import GoogleGeocoder, MockGeocoder
from fwafunnel.integrations.mailer import MockMailer, SendGridMailer, render
from fwafunnel.integrations.payments import MockPayments, StripePayments, intent_id_from_secret


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Geocoder
# ---------------------------------------------------------------------------

GOOGLE_RESULT = {
    "place_id": "ChIJ123",
    "formatted_address": "123 Main St, Austin, TX 78701, USA",
    "geometry": {"location": {"lat": 30.27, "lng": -97.74}},
    "address_components": [
        {"long_name": "123", "short_name": "123", "types": ["street_number"]},
        {"long_name": "Main Street", "short_name": "Main St", "types": ["route"]},
        {"long_name": "Austin", "short_name": "Austin", "types": ["locality", "political"]},
        {"long_name": "Texas", "short_name": "TX", "types": ["administrative_area_level_1"]},
        {"long_name": "78701", "short_name": "78701", "types": ["postal_code"]},
    ],
}


@pytest.mark.anyio
async def test_google_geocoder_normalizes():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"status": "OK", "results": [GOOGLE_RESULT]})

    async with _client(handler) as client:
        geocoder = GoogleGeocoder(api_key="test-key", client=client)
        address = await geocoder.normalize({"query": "123 main st austin tx"})

    assert seen["params"]["components"] == "country:US"
    assert seen["params"]["key"] == "test-key"
    assert address["line1"] == "123 Main Street"
    assert address["city"] == "Austin"
    assert address["state"] == "TX"
    assert address["zip_code"] == "78701"
    assert address["place_id"] == "ChIJ123"
    assert address["latitude"] == 30.27


@pytest.mark.anyio
async def test_google_geocoder_zero_results():
    def handler(request):
        return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})

    async with _client(handler) as client:
        with pytest.raises(AddressNotFound) as exc:
            await GoogleGeocoder(api_key="k", client=client).normalize({"query": "nowhere"})

    assert exc.value.retryable is False


@pytest.mark.anyio
async def test_google_geocoder_region_match_is_not_found():
    region = {**GOOGLE_RESULT, "address_components": GOOGLE_RESULT["address_components"][2:4]}

    def handler(request):
        return httpx.Response(200, json={"status": "OK", "results": [region]})

    async with _client(handler) as client:
        with pytest.raises(AddressNotFound):
            await GoogleGeocoder(api_key="k", client=client).normalize({"query": "Austin"})


@pytest.mark.anyio
async def test_google_geocoder_denied_is_collaborator_error():
    def handler(request):
        return httpx.Response(200, json={"status": "REQUEST_DENIED"})

    async with _client(handler) as client:
        with pytest.raises(CollaboratorError) as exc:
            await GoogleGeocoder(api_key="k", client=client).normalize({"query": "x"})

    assert not isinstance(exc.value, AddressNotFound)
    assert exc.value.retryable is True


@pytest.mark.anyio
async def test_google_geocoder_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async with _client(handler) as client:
        with pytest.raises(CollaboratorError) as exc:
            await GoogleGeocoder(api_key="k", client=client).normalize({"query": "x"})

    assert exc.value.collaborator == "geocoder"


@pytest.mark.anyio
@pytest.mark.parametrize("body", [
    [],
    {"status": "OK", "results": ["123 Main St"]},
    {"status": "OK", "results": [{"address_components": [None]}]},
])
async def test_google_geocoder_malformed_body(body):
    def handler(request):
        return httpx.Response(200, json=body)

    async with _client(handler) as client:
        with pytest.raises(CollaboratorError) as exc:
            await GoogleGeocoder(api_key="k", client=client).normalize({"query": "x"})

    assert not isinstance(exc.value, AddressNotFound)
    assert exc.value.retryable is True


def test_google_geocoder_requires_key(monkeypatch):
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    with pytest.raises(ValueError, match="GOOGLE_MAPS_API_KEY"):
        GoogleGeocoder()


@pytest.mark.anyio
async def test_mock_geocoder():
    geocoder = MockGeocoder(unknown={"1 Nowhere Rd"})
    address = await geocoder.normalize({"query": "123 Main St, Austin, tx 78701"})
    assert address["state"] == "TX"
    assert address["formatted_address"] == "123 Main St, Austin, TX 78701, USA"

    with pytest.raises(AddressNotFound):
        await geocoder.normalize({"query": "1 Nowhere Rd, Austin, TX 78701"})
    with pytest.raises(AddressNotFound):
        await geocoder.normalize({"query": "somewhere"})


# ---------------------------------------------------------------------------
# Mailer
# ---------------------------------------------------------------------------

def test_render_fills_missing_fields():
    subject, body = render("order-confirmation", {"brand": "SpryFi", "first_name": "Ada"})
    assert subject == "Welcome to SpryFi! Your order is confirmed"
    assert body.startswith("Hi Ada,")
    assert "Plan: N/A" in body


def test_render_unknown_template():
    with pytest.raises(ValueError, match="Unknown email template"):
        render("password-reset", {})


class FakeSendGrid:
    """Stands in for SendGridAPIClient; records the mail payloads it sends."""

    def __init__(self, status_code=202, error=None):
        self.status_code = status_code
        self.error = error
        self.sent = []

    def send(self, mail):
        self.sent.append(mail.get())
        if self.error is not None:
            raise self.error
        return SimpleNamespace(status_code=self.status_code, headers={"X-Message-Id": "sg-1"})


@pytest.mark.anyio
async def test_sendgrid_sends():
    client = FakeSendGrid()
    mailer = SendGridMailer(api_key="sg-key", from_email="from@test", client=client)
    message_id = await mailer.send_email(
        "new-customer-notification", "ops@test", {"brand": "SpryFi", "lead_id": 7, "customer_id": 1001}
    )

    assert message_id == "sg-1"
    payload = client.sent[0]
    assert payload["personalizations"][0]["to"] == [{"email": "ops@test"}]
    assert payload["subject"] == "New SpryFi customer activated: lead 7 -> client 1001"
    assert payload["from"]["email"] == "from@test"
    assert payload["content"][0]["type"] == "text/plain"
    assert "Lead ID:   7" in payload["content"][0]["value"]


@pytest.mark.anyio
async def test_sendgrid_rejected():
    client = FakeSendGrid(error=SendGridHTTPError(401, "Unauthorized", {}, b'{"errors": []}'))
    with pytest.raises(CollaboratorError) as exc:
        await SendGridMailer(api_key="bad", client=client).send_email(
            "order-confirmation", "a@b.com", {}
        )

    assert exc.value.collaborator == "mailer"


@pytest.mark.anyio
async def test_sendgrid_unexpected_status():
    client = FakeSendGrid(status_code=500)
    with pytest.raises(CollaboratorError):
        await SendGridMailer(api_key="k", client=client).send_email("order-confirmation", "a@b.com", {})


def test_sendgrid_requires_key(monkeypatch):
    monkeypatch.delenv("SENDGRID_API_KEY", raising=False)
    with pytest.raises(ValueError, match="SENDGRID_API_KEY"):
        SendGridMailer()


@pytest.mark.anyio
async def test_mock_mailer_records():
    mailer = MockMailer()
    await mailer.send_email("order-confirmation", "a@b.com", {"brand": "SpryFi"})
    assert mailer.sent[0]["recipient"] == "a@b.com"
    assert mailer.sent[0]["message_id"] == "mock-1"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def test_intent_id_from_secret():
    assert intent_id_from_secret("pi_3Abc_secret_xyz") == "pi_3Abc"
    with pytest.raises(ValueError):
        intent_id_from_secret("pi_3Abc")


@pytest.mark.anyio
async def test_mock_payments():
    payments = MockPayments()
    secret = await payments.create_payment_intent(16495, {"email": "a@b.com"})
    result = await payments.confirm_payment(secret, "pm_card_visa")
    assert result == {"status": "succeeded", "payment_reference": "pi_mock1"}
    assert payments.intents["pi_mock1"]["amount"] == 16495


@pytest.mark.anyio
async def test_stripe_create_and_confirm(monkeypatch):
    calls = {}

    def fake_create(**params):
        calls["create"] = params
        return SimpleNamespace(client_secret="pi_1_secret_abc")

    def fake_confirm(intent_id, **params):
        calls["confirm"] = (intent_id, params)
        return SimpleNamespace(id=intent_id, status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    monkeypatch.setattr(stripe.PaymentIntent, "confirm", fake_confirm)

    payments = StripePayments(api_key="sk_test_123")
    secret = await payments.create_payment_intent(
        16495, {"email": "a@b.com", "lead_id": 3, "address": {"zip_code": "78701"}}
    )
    result = await payments.confirm_payment(secret, "pm_card_visa")

    assert calls["create"]["amount"] == 16495
    assert calls["create"]["currency"] == "usd"
    assert calls["create"]["metadata"]["lead_id"] == "3"
    assert calls["confirm"][0] == "pi_1"
    assert calls["confirm"][1]["payment_method"] == "pm_card_visa"
    assert result == {"status": "succeeded", "payment_reference": "pi_1"}


@pytest.mark.anyio
async def test_stripe_card_declined(monkeypatch):
    def fake_confirm(intent_id, **params):
        raise stripe.CardError("Your card was declined.", "card", "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", fake_confirm)
    with pytest.raises(PaymentDeclined):
        await StripePayments(api_key="sk_test_123").confirm_payment("pi_1_secret_abc", "pm_x")


@pytest.mark.anyio
async def test_stripe_network_error(monkeypatch):
    def fake_create(**params):
        raise stripe.APIConnectionError("Network error")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    with pytest.raises(CollaboratorError) as exc:
        await StripePayments(api_key="sk_test_123").create_payment_intent(100, {})

    assert exc.value.collaborator == "payments"
    assert not isinstance(exc.value, PaymentDeclined)


def test_stripe_requires_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with pytest.raises(ValueError, match="STRIPE_SECRET_KEY"):
        StripePayments()
