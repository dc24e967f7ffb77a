from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from urllib.parse import quote

import httpx

from rlsguard.models import Finding, ProbeOutcome, ProbeResult, TableDescriptor

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DENIED_STATUSES = {401, 403, 404}

ISSUE_PERMISSIVE_POLICY = "RLS is enabled but policy is too permissive (public access)"
ISSUE_RLS_DISABLED = "Anonymous users can read data from this table (RLS disabled)"


async def run_in_groups(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    group_size: int = 5,
) -> list[R]:
    """Run ``worker`` over ``items`` in consecutive groups of ``group_size``.

    A group must finish completely before the next one starts, so at most
    ``group_size`` workers are ever in flight. Results keep input order.
    """
    if group_size < 1:
        raise ValueError("group_size must be >= 1")
    results: list[R] = []
    for start in range(0, len(items), group_size):
        group = items[start : start + group_size]
        results.extend(await asyncio.gather(*(worker(item) for item in group)))
    return results


class ExposureProbe:
    """Single-row reads through the data API using the anonymous key."""

    def __init__(
        self,
        project_url: str,
        anon_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.project_url = project_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self._transport = transport

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "apikey": self.anon_key,
                "Authorization": f"Bearer {self.anon_key}",
                "Accept": "application/json",
            },
        )

    def table_url(self, table: str) -> str:
        return f"{self.project_url}/rest/v1/{quote(table, safe='')}"

    async def probe_table(self, client: httpx.AsyncClient, descriptor: TableDescriptor) -> ProbeResult:
        table = descriptor.name
        try:
            response = await client.get(self.table_url(table), params={"select": "*", "limit": "1"})
        except httpx.TimeoutException:
            LOGGER.debug("Probe timed out for %s", table)
            return ProbeResult(table=table, outcome=ProbeOutcome.INCONCLUSIVE, error="timeout")
        except httpx.HTTPError as exc:
            LOGGER.debug("Probe request failed for %s: %s", table, exc)
            return ProbeResult(table=table, outcome=ProbeOutcome.INCONCLUSIVE, error=str(exc) or type(exc).__name__)

        if response.status_code in DENIED_STATUSES:
            LOGGER.debug("%s blocked for anonymous reads (HTTP %s)", table, response.status_code)
            return ProbeResult(table=table, outcome=ProbeOutcome.SECURE)
        if not response.is_success:
            return ProbeResult(
                table=table,
                outcome=ProbeOutcome.INCONCLUSIVE,
                error=f"HTTP {response.status_code}",
            )

        try:
            rows = response.json()
        except ValueError:
            return ProbeResult(table=table, outcome=ProbeOutcome.INCONCLUSIVE, error="response is not JSON")
        if not isinstance(rows, list):
            return ProbeResult(table=table, outcome=ProbeOutcome.INCONCLUSIVE, error="unexpected response shape")
        if not rows:
            LOGGER.debug("%s returned no rows to anonymous reads", table)
            return ProbeResult(table=table, outcome=ProbeOutcome.SECURE)
        first = rows[0]
        if not isinstance(first, dict):
            return ProbeResult(table=table, outcome=ProbeOutcome.INCONCLUSIVE, error="unexpected row shape")
        return ProbeResult(table=table, outcome=ProbeOutcome.EXPOSED, row=first)


def build_finding(descriptor: TableDescriptor, row: dict[str, Any]) -> Finding:
    fields = list(row.keys())
    if descriptor.rls_enabled:
        issue = ISSUE_PERMISSIVE_POLICY
        details = (
            f'Table "{descriptor.name}" has RLS enabled, but a policy is allowing broad public access. '
            f"{len(fields)} fields are exposed."
        )
    else:
        issue = ISSUE_RLS_DISABLED
        details = (
            f'Table "{descriptor.name}" is publicly accessible without authentication. '
            f"{len(fields)} fields are exposed."
        )
    return Finding(
        table=descriptor.name,
        issue=issue,
        details=details,
        leaked_fields=fields,
        sample_data=row,
    )
