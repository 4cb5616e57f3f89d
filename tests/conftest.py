import random

import pytest

from fwafunnel.config import load_funnel_config
from fwafunnel.db import MockDatabase
from fwafunnel.integrations.geocoder import MockGeocoder
from fwafunnel.integrations.mailer import MockMailer
from fwafunnel.integrations.payments import MockPayments
from fwafunnel.qualification import MockQualifier


AUSTIN = {"query": "123 Main St, Austin, TX 78701"}
CONTACT = {"email": "a@b.com", "phone": "5125551234", "first_name": "A", "last_name": "B"}


@pytest.fixture
def anyio_backend():
    # Only asyncio; trio is not installed
    return "asyncio"


@pytest.fixture
def funnel_config():
    return load_funnel_config("spryfi")


@pytest.fixture
def services():
    return {
        "db": MockDatabase(),
        "geocoder": MockGeocoder(),
        "qualifier": MockQualifier(),
        "payments": MockPayments(),
        "mailer": MockMailer(),
        "notify_email": "ops@example.com",
        "rng": random.Random(7),
    }
