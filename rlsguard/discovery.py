from __future__ import annotations

import logging
from typing import Any

from rlsguard.errors import ManagementApiError, SchemaQueryError
from rlsguard.management_api import ManagementApiClient
from rlsguard.models import TableDescriptor

LOGGER = logging.getLogger(__name__)

CATALOG_QUERY = """
SELECT
  t.tablename AS table_name,
  c.relrowsecurity AS rls_enabled
FROM pg_catalog.pg_tables t
JOIN pg_catalog.pg_class c ON c.relname = t.tablename
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace AND n.nspname = t.schemaname
WHERE t.schemaname = 'public'
ORDER BY t.tablename;
""".strip()


def parse_catalog_rows(rows: Any) -> list[TableDescriptor]:
    if not isinstance(rows, list):
        raise SchemaQueryError("Catalog query returned an unexpected response shape")
    descriptors: list[TableDescriptor] = []
    for row in rows:
        if not isinstance(row, dict):
            raise SchemaQueryError("Catalog query returned a malformed row")
        name = row.get("table_name")
        flag = row.get("rls_enabled")
        if not isinstance(name, str) or not name:
            raise SchemaQueryError("Catalog row is missing table_name")
        if flag is None:
            flag = False
        if not isinstance(flag, bool):
            raise SchemaQueryError(f"Catalog row for {name} has a non-boolean rls_enabled flag")
        descriptors.append(TableDescriptor(name=name, rls_enabled=flag))
    return sorted(descriptors, key=lambda item: item.name)


async def discover_tables(api: ManagementApiClient, access_token: str, project_ref: str) -> list[TableDescriptor]:
    """List the tables of the public schema with their row-security flag.

    Any failure aborts discovery with ``SchemaQueryError``; a partial catalog is
    never returned.
    """
    LOGGER.info("Querying database schema via Management API for project %s", project_ref)
    try:
        rows = await api.execute_query(access_token, project_ref, CATALOG_QUERY)
    except ManagementApiError as exc:
        raise SchemaQueryError(str(exc)) from exc

    descriptors = parse_catalog_rows(rows)
    LOGGER.info("Found %s tables in project %s", len(descriptors), project_ref)
    return descriptors
