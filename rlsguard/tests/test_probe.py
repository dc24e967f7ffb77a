from __future__ import annotations

import asyncio

import httpx
import pytest

from rlsguard.models import ProbeOutcome, TableDescriptor
from rlsguard.probe import ExposureProbe, build_finding, run_in_groups

PROJECT_URL = "https://proj1.supabase.co"


@pytest.fixture
def probe(fake_supabase):
    return ExposureProbe(PROJECT_URL, "anon-key-123", timeout=5, transport=fake_supabase.transport())


async def _probe_one(probe, name, rls_enabled=False):
    async with probe.client() as client:
        return await probe.probe_table(client, TableDescriptor(name=name, rls_enabled=rls_enabled))


@pytest.mark.asyncio
async def test_readable_table_is_exposed(probe, fake_supabase):
    fake_supabase.add_table("user_secrets", False, rows=[{"id": 1, "api_key": "sk_live_x"}, {"id": 2, "api_key": "y"}])

    result = await _probe_one(probe, "user_secrets")

    assert result.outcome is ProbeOutcome.EXPOSED
    assert result.row == {"id": 1, "api_key": "sk_live_x"}
    headers = fake_supabase.probe_headers[0]
    assert headers["apikey"] == "anon-key-123"
    assert headers["authorization"] == "Bearer anon-key-123"


@pytest.mark.asyncio
async def test_probe_requests_single_row():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, json=[])

    probe = ExposureProbe(PROJECT_URL, "anon-key-123", transport=httpx.MockTransport(handler))
    await _probe_one(probe, "orders")
    assert seen[0].path == "/rest/v1/orders"
    assert seen[0].params["select"] == "*"
    assert seen[0].params["limit"] == "1"


@pytest.mark.asyncio
async def test_empty_result_is_secure(probe, fake_supabase):
    fake_supabase.add_table("orders", True, rows=[])
    result = await _probe_one(probe, "orders", rls_enabled=True)
    assert result.outcome is ProbeOutcome.SECURE
    assert result.row is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403, 404])
async def test_denied_statuses_are_secure(probe, fake_supabase, status):
    fake_supabase.add_table("orders", True, status=status)
    result = await _probe_one(probe, "orders")
    assert result.outcome is ProbeOutcome.SECURE


@pytest.mark.asyncio
async def test_server_error_is_inconclusive(probe, fake_supabase):
    fake_supabase.add_table("orders", True, status=500)
    result = await _probe_one(probe, "orders")
    assert result.outcome is ProbeOutcome.INCONCLUSIVE
    assert result.error == "HTTP 500"
    assert not result.exposed


@pytest.mark.asyncio
async def test_transport_errors_are_inconclusive():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    probe = ExposureProbe(PROJECT_URL, "anon-key-123", transport=httpx.MockTransport(handler))
    result = await _probe_one(probe, "orders")
    assert result.outcome is ProbeOutcome.INCONCLUSIVE
    assert result.error == "timeout"


@pytest.mark.asyncio
async def test_malformed_body_is_inconclusive():
    probe = ExposureProbe(
        PROJECT_URL,
        "anon-key-123",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"rows": []})),
    )
    result = await _probe_one(probe, "orders")
    assert result.outcome is ProbeOutcome.INCONCLUSIVE


@pytest.mark.asyncio
async def test_run_in_groups_bounds_in_flight_and_keeps_order():
    in_flight = 0
    peak = 0

    async def worker(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01 * (12 - item))
        in_flight -= 1
        return item * 10

    results = await run_in_groups(list(range(12)), worker, group_size=5)

    assert results == [item * 10 for item in range(12)]
    assert peak == 5


@pytest.mark.asyncio
async def test_run_in_groups_waits_for_whole_group():
    started = []

    async def worker(item):
        started.append(item)
        if item == 0:
            await asyncio.sleep(0.05)
            # the second group must not have started yet
            assert 2 not in started
        return item

    assert await run_in_groups([0, 1, 2, 3], worker, group_size=2) == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_run_in_groups_rejects_zero_group():
    async def worker(item):
        return item

    with pytest.raises(ValueError):
        await run_in_groups([1], worker, group_size=0)


def test_finding_text_depends_on_rls_flag():
    row = {"id": 1, "email": "a@example.com", "total": 10}

    disabled = build_finding(TableDescriptor("user_secrets", False), row)
    assert disabled.issue == "Anonymous users can read data from this table (RLS disabled)"
    assert disabled.details == (
        'Table "user_secrets" is publicly accessible without authentication. 3 fields are exposed.'
    )

    enabled = build_finding(TableDescriptor("orders", True), row)
    assert enabled.issue == "RLS is enabled but policy is too permissive (public access)"
    assert "has RLS enabled, but a policy is allowing broad public access" in enabled.details

    for finding in (disabled, enabled):
        assert finding.severity == "critical"
        assert finding.leaked_fields == ["id", "email", "total"]
        assert finding.sample_data == row
        assert finding.ai_analysis is None
