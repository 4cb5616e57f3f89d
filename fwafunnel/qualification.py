"""Service qualification for a normalized address.

evaluate_signal() is the deterministic rule applied to the coverage
attributes returned by the GIS service. Qualifier implementations:
- GisQualifier: POSTs the address to the fixed-wireless coverage API.
- MockQualifier: Canned answers keyed by ZIP code, for tests and local runs.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx
import structlog

from fwafunnel.config import env
from fwafunnel.errors import CollaboratorError


log = structlog.get_logger(__name__)

DEFAULT_MIN_SIGNAL_DBM = -100
DEFAULT_NETWORK_TYPE = "5G_HOME"


@runtime_checkable
class Qualifier(Protocol):
    async def check(self, address: dict) -> dict:
        """Return {qualified, network_type, source, min_signal, reason}."""
        ...


def _coerce_signal(value) -> float | None:
    """Return a numeric minsignal attribute as a float, or None.

    Only JSON numbers count; strings and booleans are not signal data.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def evaluate_signal(
    attributes: dict,
    min_signal_dbm: float = DEFAULT_MIN_SIGNAL_DBM,
) -> tuple[bool, float | None, str]:
    """Evaluate coverage attributes against the minimum signal rule.

    Returns:
        Tuple of (qualified, min_signal, reason).
    """
    if not isinstance(attributes, dict):
        attributes = {}
    min_signal = _coerce_signal(attributes.get("minsignal"))

    if min_signal is None:
        return False, None, "No valid signal data available"
    if min_signal >= min_signal_dbm:
        return True, min_signal, (
            f"Signal strength {min_signal:g} dBm meets qualification criteria "
            f"(>= {min_signal_dbm:g} dBm)"
        )
    return False, min_signal, (
        f"Signal strength {min_signal:g} dBm does not meet qualification criteria "
        f"(< {min_signal_dbm:g} dBm)"
    )


class GisQualifier:
    """Fixed-wireless coverage check backed by the GIS API.

    Requires FWA_CHECK_URL environment variable or explicit url param.
    """

    source = "gis"

    def __init__(
        self,
        url: str | None = None,
        min_signal_dbm: float = DEFAULT_MIN_SIGNAL_DBM,
        default_network_type: str = DEFAULT_NETWORK_TYPE,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        self.url = url or env("FWA_CHECK_URL")
        if not self.url:
            raise ValueError(
                "GisQualifier requires a coverage API URL. "
                "Pass url or set FWA_CHECK_URL env var."
            )
        self.min_signal_dbm = min_signal_dbm
        self.default_network_type = default_network_type
        self._client = client
        self._timeout = timeout

    async def _post(self, payload: dict) -> dict:
        if self._client is not None:
            resp = await self._client.post(self.url, json=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self.url, json=payload)
        resp.raise_for_status()
        return resp.json()

    async def check(self, address: dict) -> dict:
        payload = {
            "address_line1": address["line1"],
            "city": address["city"],
            "state": address["state"],
            "zip_code": address["zip_code"],
        }
        try:
            data = await self._post(payload)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("gis_check_failed", zip_code=address.get("zip_code"), error=str(e))
            raise CollaboratorError(
                f"Coverage check failed: {e}",
                collaborator="qualification",
                user_message="We couldn't check availability right now. Please try again.",
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("attributes") or {}, dict):
            raise CollaboratorError(
                "Coverage check returned a malformed response",
                collaborator="qualification",
                user_message="We couldn't check availability right now. Please try again.",
            )

        attributes = data.get("attributes") or {}
        qualified, min_signal, reason = evaluate_signal(attributes, self.min_signal_dbm)
        log.info(
            "gis_check_complete",
            zip_code=address.get("zip_code"),
            qualified=qualified,
            min_signal=min_signal,
        )
        return {
            "qualified": qualified,
            "network_type": (data.get("network_type") or self.default_network_type) if qualified else None,
            "source": self.source,
            "min_signal": min_signal,
            "reason": reason,
        }


class MockQualifier:
    """Qualifier for testing. Answers from a ZIP code table and records calls."""

    source = "mock"

    def __init__(
        self,
        qualified_zips: set[str] | None = None,
        default: bool = True,
        fail_with: Exception | None = None,
    ):
        self.qualified_zips = qualified_zips
        self.default = default
        self.fail_with = fail_with
        self.calls: list[dict] = []

    async def check(self, address: dict) -> dict:
        self.calls.append(dict(address))
        if self.fail_with is not None:
            raise self.fail_with
        if self.qualified_zips is None:
            qualified = self.default
        else:
            qualified = address.get("zip_code") in self.qualified_zips
        min_signal = -85.0 if qualified else -112.0
        _, _, reason = evaluate_signal({"minsignal": min_signal})
        return {
            "qualified": qualified,
            "network_type": DEFAULT_NETWORK_TYPE if qualified else None,
            "source": self.source,
            "min_signal": min_signal,
            "reason": reason,
        }
