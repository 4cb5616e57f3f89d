"""PostgreSQL persistence for leads, provisioning and customers.

Provides the Database class with methods for:
- get_lead / lookup_lead: Find a lead by id or email
- create_lead: Create (or refresh, keyed by email) a lead record
- update_lead: Update lead fields
- save_provisioning: Upsert WiFi credentials for a lead
- convert_lead_to_customer: Record the paid order, idempotent per lead
- drip marketing queries used by fwafunnel.drip
"""

from __future__ import annotations

import itertools
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

import psycopg
import structlog
from psycopg import sql
from psycopg.rows import dict_row

from fwafunnel.errors import CollaboratorError


log = structlog.get_logger(__name__)

_UNAVAILABLE = "We couldn't save your details right now. Please try again."

# Columns update_lead may write
LEAD_COLUMNS = frozenset({
    "email", "phone", "first_name", "last_name",
    "address_line1", "address_line2", "city", "state", "zip_code",
    "latitude", "longitude", "place_id",
    "qualified", "qualification_source", "network_type", "qualification_reason",
    "qualification_checked_at", "status", "plan_selected", "plan_price",
    "router_added", "flow_completed",
})


class DatabaseProtocol(Protocol):
    """Protocol defining the persistence interface for dependency injection."""

    async def get_lead(self, lead_id: int) -> dict | None: ...

    async def lookup_lead(self, email: str) -> dict | None: ...

    async def create_lead(self, contact: dict, address: dict, qualification: dict) -> int: ...

    async def update_lead(self, lead_id: int, data: dict) -> None: ...

    async def save_provisioning(self, lead_id: int, ssid: str, passkey: str) -> None: ...

    async def convert_lead_to_customer(
        self, lead_id: int, payment_reference: str, order: dict
    ) -> int: ...

    async def enroll_drip(self, entry: dict) -> int | None: ...

    async def find_incomplete_leads(self, started_before: datetime) -> list[dict]: ...

    async def is_drip_enrolled(self, lead_id: int) -> bool: ...

    async def customer_exists(self, email: str) -> bool: ...


def lead_fields(contact: dict | None, address: dict | None, qualification: dict | None) -> dict:
    """Flatten funnel contact/address/qualification into lead columns."""
    fields: dict = {}
    if contact:
        fields.update({
            "email": contact["email"],
            "phone": contact["phone"],
            "first_name": contact["first_name"],
            "last_name": contact["last_name"],
        })
    if address:
        fields.update({
            "address_line1": address.get("line1"),
            "address_line2": address.get("line2"),
            "city": address.get("city"),
            "state": address.get("state"),
            "zip_code": address.get("zip_code"),
            "latitude": address.get("latitude"),
            "longitude": address.get("longitude"),
            "place_id": address.get("place_id"),
        })
    if qualification:
        fields.update({
            "qualified": qualification.get("qualified"),
            "qualification_source": qualification.get("source"),
            "network_type": qualification.get("network_type"),
            "qualification_reason": qualification.get("reason"),
            "qualification_checked_at": datetime.now(timezone.utc),
            "status": "qualified" if qualification.get("qualified") else "not_qualified",
        })
    return fields


def _get_connection_string() -> str:
    """Get database connection string from environment or default."""
    return os.environ.get(
        "DATABASE_URL",
        "postgresql://localhost/fwafunnel"
    )


class Database:
    """PostgreSQL client for the funnel's durable records."""

    def __init__(self, connection_string: str | None = None):
        """Initialize database client.

        Args:
            connection_string: PostgreSQL connection string.
                Defaults to DATABASE_URL env var or localhost/fwafunnel.
        """
        self._conninfo = connection_string or _get_connection_string()

    @asynccontextmanager
    async def _cursor(self):
        """Open a connection and cursor; commits on clean exit."""
        try:
            async with await psycopg.AsyncConnection.connect(
                self._conninfo, row_factory=dict_row
            ) as conn:
                async with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as e:
            log.error("database_error", error=str(e))
            raise CollaboratorError(
                f"Database error: {e}", collaborator="database", user_message=_UNAVAILABLE
            ) from e

    async def get_lead(self, lead_id: int) -> dict | None:
        async with self._cursor() as cur:
            await cur.execute("SELECT * FROM fwa_leads WHERE lead_id = %s", (lead_id,))
            row = await cur.fetchone()
        return dict(row) if row else None

    async def lookup_lead(self, email: str) -> dict | None:
        """Look up a lead by exact, case-insensitive email match."""
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT * FROM fwa_leads WHERE LOWER(email) = LOWER(%s)",
                (email,)
            )
            row = await cur.fetchone()
        return dict(row) if row else None

    async def create_lead(self, contact: dict, address: dict, qualification: dict) -> int:
        """Create a lead, or refresh the existing lead with the same email.

        Returns:
            The lead_id.
        """
        fields = lead_fields(contact, address, qualification)
        columns = list(fields)
        query = sql.SQL(
            """
            INSERT INTO fwa_leads ({columns})
            VALUES ({values})
            ON CONFLICT (email) DO UPDATE
            SET {updates}, updated_at = NOW()
            RETURNING lead_id
            """
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            updates=sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in columns
            ),
        )
        async with self._cursor() as cur:
            await cur.execute(query, [fields[c] for c in columns])
            result = await cur.fetchone()
        return result["lead_id"]

    async def update_lead(self, lead_id: int, data: dict) -> None:
        """Update fields on an existing lead.

        Args:
            lead_id: The lead to update.
            data: Dict of column names (see LEAD_COLUMNS) to new values.
        """
        if not data:
            return
        unknown = set(data) - LEAD_COLUMNS
        if unknown:
            raise ValueError(f"Unknown lead columns: {sorted(unknown)}")

        query = sql.SQL(
            "UPDATE fwa_leads SET {sets}, updated_at = NOW() WHERE lead_id = %s"
        ).format(
            sets=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(field)) for field in data
            )
        )
        async with self._cursor() as cur:
            await cur.execute(query, [*data.values(), lead_id])

    async def save_provisioning(self, lead_id: int, ssid: str, passkey: str) -> None:
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO fwa_provisioning_sessions (lead_id, ssid, passkey, status)
                VALUES (%s, %s, %s, 'in_progress')
                ON CONFLICT (lead_id) DO UPDATE
                SET ssid = EXCLUDED.ssid, passkey = EXCLUDED.passkey,
                    last_updated_at = NOW()
                """,
                (lead_id, ssid, passkey)
            )

    async def convert_lead_to_customer(
        self, lead_id: int, payment_reference: str, order: dict
    ) -> int:
        """Convert a lead into a customer via the convert_lead_to_customer() SQL function.

        Returns:
            The customer_id. Calling again for the same lead returns the same id.
        """
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT convert_lead_to_customer(
                    %(lead_id)s, %(payment_reference)s, %(plan_id)s, %(plan_name)s,
                    %(plan_price)s, %(router_added)s, %(amount_paid)s,
                    %(shipping_cost)s, %(activation_fee)s
                ) AS customer_id
                """,
                {"lead_id": lead_id, "payment_reference": payment_reference, **order}
            )
            result = await cur.fetchone()
        if not result or result["customer_id"] is None:
            raise CollaboratorError(
                f"convert_lead_to_customer returned no customer for lead {lead_id}",
                collaborator="database",
                user_message=_UNAVAILABLE,
            )
        return result["customer_id"]

    async def enroll_drip(self, entry: dict) -> int | None:
        """Add a lead or bare address to drip marketing. Returns the row id."""
        async with self._cursor() as cur:
            await cur.execute(
                """
                INSERT INTO fwa_drip_marketing (lead_id, email, name, address, qualified, status)
                VALUES (%s, %s, %s, %s, %s, 'active')
                ON CONFLICT (lead_id) DO NOTHING
                RETURNING id
                """,
                (
                    entry.get("lead_id"), entry.get("email"), entry.get("name"),
                    entry.get("address"), bool(entry.get("qualified")),
                )
            )
            row = await cur.fetchone()
        return row["id"] if row else None

    async def find_incomplete_leads(self, started_before: datetime) -> list[dict]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT lead_id, email, first_name, last_name, qualified, started_at
                FROM fwa_leads
                WHERE flow_completed = FALSE
                  AND started_at < %s
                  AND email IS NOT NULL
                ORDER BY started_at
                """,
                (started_before,)
            )
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def is_drip_enrolled(self, lead_id: int) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT 1 FROM fwa_drip_marketing WHERE lead_id = %s", (lead_id,)
            )
            return await cur.fetchone() is not None

    async def customer_exists(self, email: str) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT 1 FROM fwa_customers WHERE LOWER(email) = LOWER(%s)", (email,)
            )
            return await cur.fetchone() is not None


class MockDatabase:
    """In-memory mock database for testing.

    Methods named in `fail_on` raise CollaboratorError, as an unreachable
    database would.
    """

    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = set(fail_on or ())
        self.leads: dict[int, dict] = {}
        self.provisioning: dict[int, dict] = {}
        self.customers: dict[int, dict] = {}
        self.drip: list[dict] = []
        self.calls: list[str] = []
        self._lead_ids = itertools.count(1)
        self._customer_ids = itertools.count(1001)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if method in self.fail_on:
            raise CollaboratorError(
                f"MockDatabase.{method} unavailable",
                collaborator="database",
                user_message=_UNAVAILABLE,
            )

    async def get_lead(self, lead_id: int) -> dict | None:
        self._enter("get_lead")
        record = self.leads.get(lead_id)
        return dict(record) if record else None

    async def lookup_lead(self, email: str) -> dict | None:
        self._enter("lookup_lead")
        for record in self.leads.values():
            if (record.get("email") or "").lower() == email.lower():
                return dict(record)
        return None

    async def create_lead(self, contact: dict, address: dict, qualification: dict) -> int:
        self._enter("create_lead")
        fields = lead_fields(contact, address, qualification)
        for record in self.leads.values():
            if (record.get("email") or "").lower() == contact["email"].lower():
                record.update(fields)
                return record["lead_id"]

        lead_id = next(self._lead_ids)
        self.leads[lead_id] = {
            "lead_id": lead_id,
            "flow_completed": False,
            "started_at": datetime.now(timezone.utc),
            **fields,
        }
        return lead_id

    async def update_lead(self, lead_id: int, data: dict) -> None:
        self._enter("update_lead")
        unknown = set(data) - LEAD_COLUMNS
        if unknown:
            raise ValueError(f"Unknown lead columns: {sorted(unknown)}")
        self.leads[lead_id].update(data)

    async def save_provisioning(self, lead_id: int, ssid: str, passkey: str) -> None:
        self._enter("save_provisioning")
        self.provisioning[lead_id] = {"ssid": ssid, "passkey": passkey, "status": "in_progress"}

    async def convert_lead_to_customer(
        self, lead_id: int, payment_reference: str, order: dict
    ) -> int:
        self._enter("convert_lead_to_customer")
        for customer_id, customer in self.customers.items():
            if customer["lead_id"] == lead_id:
                return customer_id

        customer_id = next(self._customer_ids)
        lead = self.leads[lead_id]
        self.customers[customer_id] = {
            "customer_id": customer_id,
            "lead_id": lead_id,
            "email": lead.get("email"),
            "payment_reference": payment_reference,
            **order,
        }
        lead.update({"status": "converted", "flow_completed": True})
        return customer_id

    async def enroll_drip(self, entry: dict) -> int | None:
        self._enter("enroll_drip")
        lead_id = entry.get("lead_id")
        if lead_id is not None and any(d.get("lead_id") == lead_id for d in self.drip):
            return None
        self.drip.append({"id": len(self.drip) + 1, "status": "active", **entry})
        return len(self.drip)

    async def find_incomplete_leads(self, started_before: datetime) -> list[dict]:
        self._enter("find_incomplete_leads")
        return [
            dict(r) for r in sorted(self.leads.values(), key=lambda r: r["started_at"])
            if not r.get("flow_completed") and r.get("email") and r["started_at"] < started_before
        ]

    async def is_drip_enrolled(self, lead_id: int) -> bool:
        self._enter("is_drip_enrolled")
        return any(d.get("lead_id") == lead_id for d in self.drip)

    async def customer_exists(self, email: str) -> bool:
        self._enter("customer_exists")
        return any((c.get("email") or "").lower() == email.lower() for c in self.customers.values())
