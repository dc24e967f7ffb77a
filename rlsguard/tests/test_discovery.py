from __future__ import annotations

import httpx
import pytest

from rlsguard.discovery import CATALOG_QUERY, discover_tables, parse_catalog_rows
from rlsguard.errors import SchemaQueryError
from rlsguard.management_api import ManagementApiClient
from rlsguard.models import TableDescriptor


def test_catalog_query_targets_public_schema():
    assert "relrowsecurity" in CATALOG_QUERY
    assert "schemaname = 'public'" in CATALOG_QUERY


def test_parse_catalog_rows_sorts_and_defaults_flag():
    rows = [
        {"table_name": "orders", "rls_enabled": True},
        {"table_name": "accounts", "rls_enabled": None},
    ]
    assert parse_catalog_rows(rows) == [
        TableDescriptor(name="accounts", rls_enabled=False),
        TableDescriptor(name="orders", rls_enabled=True),
    ]


@pytest.mark.parametrize(
    "rows",
    [
        {"table_name": "x"},
        [{"rls_enabled": True}],
        [{"table_name": "x", "rls_enabled": "yes"}],
        ["x"],
    ],
)
def test_parse_catalog_rows_rejects_malformed(rows):
    with pytest.raises(SchemaQueryError):
        parse_catalog_rows(rows)


@pytest.mark.asyncio
async def test_discover_tables(fake_supabase):
    fake_supabase.add_table("orders", rls_enabled=True)
    fake_supabase.add_table("user_secrets", rls_enabled=False)
    api = ManagementApiClient(transport=fake_supabase.transport())

    tables = await discover_tables(api, "token", "proj1")

    assert [t.name for t in tables] == ["orders", "user_secrets"]
    assert [t.rls_enabled for t in tables] == [True, False]


@pytest.mark.asyncio
async def test_empty_project_has_no_tables(fake_supabase):
    api = ManagementApiClient(transport=fake_supabase.transport())
    assert await discover_tables(api, "token", "proj1") == []


@pytest.mark.asyncio
async def test_query_failure_becomes_schema_error(fake_supabase):
    fake_supabase.catalog_status = 403
    api = ManagementApiClient(transport=fake_supabase.transport())
    with pytest.raises(SchemaQueryError):
        await discover_tables(api, "token", "proj1")


@pytest.mark.asyncio
async def test_transport_failure_becomes_schema_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    api = ManagementApiClient(transport=httpx.MockTransport(handler))
    with pytest.raises(SchemaQueryError):
        await discover_tables(api, "token", "proj1")
