"""Drip marketing enrollment for leads that abandoned the funnel."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from fwafunnel.errors import CollaboratorError


log = structlog.get_logger(__name__)

DEFAULT_INCOMPLETE_AFTER = timedelta(minutes=30)


async def enroll_incomplete_leads(
    db,
    *,
    older_than: timedelta = DEFAULT_INCOMPLETE_AFTER,
    now: datetime | None = None,
) -> dict:
    """Enroll leads that started the funnel but never finished it.

    Leads already enrolled, or whose email already belongs to a customer,
    are skipped. A failure on one lead is logged and the batch continues.

    Returns:
        Counts: {checked, enrolled, skipped, failed}.
    """
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    leads = await db.find_incomplete_leads(cutoff)
    summary = {"checked": len(leads), "enrolled": 0, "skipped": 0, "failed": 0}

    for lead in leads:
        lead_id = lead["lead_id"]
        try:
            if await db.is_drip_enrolled(lead_id) or await db.customer_exists(lead["email"]):
                summary["skipped"] += 1
                continue

            name = f"{lead.get('first_name') or ''} {lead.get('last_name') or ''}".strip()
            await db.enroll_drip({
                "lead_id": lead_id,
                "email": lead["email"],
                "name": name or None,
                "qualified": bool(lead.get("qualified")),
            })
            summary["enrolled"] += 1
        except CollaboratorError as e:
            log.warning("drip_enroll_failed", lead_id=lead_id, error=str(e))
            summary["failed"] += 1

    log.info("drip_enrollment_complete", cutoff=cutoff.isoformat(), **summary)
    return summary
