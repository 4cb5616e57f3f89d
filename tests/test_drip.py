from datetime import datetime, timedelta, timezone

import pytest

from fwafunnel.db import MockDatabase
from fwafunnel.drip import enroll_incomplete_leads
from fwafunnel.errors import CollaboratorError


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _seed(db, lead_id, email, minutes_ago, **extra):
    db.leads[lead_id] = {
        "lead_id": lead_id,
        "email": email,
        "first_name": "Lee",
        "last_name": str(lead_id),
        "qualified": True,
        "flow_completed": False,
        "started_at": NOW - timedelta(minutes=minutes_ago),
        **extra,
    }


@pytest.mark.anyio
async def test_enrolls_abandoned_leads():
    db = MockDatabase()
    _seed(db, 1, "old@test.com", 45)
    _seed(db, 2, "new@test.com", 5)
    _seed(db, 3, "done@test.com", 90, flow_completed=True)
    _seed(db, 4, None, 90)

    summary = await enroll_incomplete_leads(db, now=NOW)

    assert summary == {"checked": 1, "enrolled": 1, "skipped": 0, "failed": 0}
    assert db.drip[0]["lead_id"] == 1
    assert db.drip[0]["name"] == "Lee 1"
    assert db.drip[0]["qualified"] is True


@pytest.mark.anyio
async def test_skips_enrolled_and_customers():
    db = MockDatabase()
    _seed(db, 1, "enrolled@test.com", 45)
    _seed(db, 2, "customer@test.com", 45)
    db.drip.append({"id": 1, "lead_id": 1})
    db.customers[1001] = {"customer_id": 1001, "lead_id": 99, "email": "customer@test.com"}

    summary = await enroll_incomplete_leads(db, now=NOW)

    assert summary == {"checked": 2, "enrolled": 0, "skipped": 2, "failed": 0}
    assert len(db.drip) == 1


@pytest.mark.anyio
async def test_failure_on_one_lead_continues():
    class FlakyDatabase(MockDatabase):
        async def enroll_drip(self, entry):
            if entry["lead_id"] == 1:
                raise CollaboratorError("insert failed", collaborator="database")
            return await super().enroll_drip(entry)

    db = FlakyDatabase()
    _seed(db, 1, "a@test.com", 60)
    _seed(db, 2, "b@test.com", 50)

    summary = await enroll_incomplete_leads(db, now=NOW)

    assert summary == {"checked": 2, "enrolled": 1, "skipped": 0, "failed": 1}
    assert [d["lead_id"] for d in db.drip] == [2]


@pytest.mark.anyio
async def test_custom_cutoff():
    db = MockDatabase()
    _seed(db, 1, "a@test.com", 10)
    summary = await enroll_incomplete_leads(db, older_than=timedelta(minutes=5), now=NOW)
    assert summary["enrolled"] == 1
