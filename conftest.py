"""
Shared fixtures: a fake Supabase platform served through httpx.MockTransport.
"""
from __future__ import annotations

import asyncio
import json
from collections import Counter
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

from rlsguard.config import AppSettings, ClassifierConfig, OAuthConfig, ScanConfig

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
ANON_KEY = "anon-key-123"
SERVICE_KEY = "service-key-456"


class FakeSupabase:
    """Answers the OAuth token endpoint, the Management API and the data API."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, Any]] = {}
        self.projects: list[dict[str, Any]] = [
            {"id": "proj1", "name": "Project One", "organization_id": "org1", "region": "us-east-1"},
            {"id": "proj2", "name": "Project Two", "organization_id": "org1", "region": "eu-west-1"},
        ]
        self.api_keys: list[dict[str, str]] = [
            {"name": "anon", "api_key": ANON_KEY},
            {"name": "service_role", "api_key": SERVICE_KEY},
        ]
        self.token_responses: list[tuple[int, Any]] = []
        self.token_requests: list[dict[str, str]] = []
        self.projects_status = 200
        self.api_keys_error: Exception | None = None
        self.catalog_status = 200
        self.catalog_body: Any = None
        self.probe_delay = 0.0
        self.token_delay = 0.0
        self.calls: Counter = Counter()
        self.in_flight = 0
        self.max_in_flight = 0
        self.probe_headers: list[dict[str, str]] = []
        self._token_counter = 0

    def add_table(self, name: str, rls_enabled: bool, rows: list[dict] | None = None, status: int = 200) -> None:
        self.tables[name] = {"rls_enabled": rls_enabled, "rows": rows or [], "status": status}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def next_token(self, refresh: bool = True) -> dict[str, Any]:
        self._token_counter += 1
        payload = {
            "access_token": f"access-{self._token_counter}",
            "expires_in": 3600,
            "token_type": "bearer",
        }
        if refresh:
            payload["refresh_token"] = f"refresh-{self._token_counter}"
        return payload

    async def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path
        if host == "api.supabase.com":
            return await self._platform(request, path)
        if host.endswith(".supabase.co") and path.startswith("/rest/v1/"):
            return await self._data_api(request, path[len("/rest/v1/"):])
        return httpx.Response(404, json={"message": "not found"})

    async def _platform(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/v1/oauth/token":
            self.calls["token"] += 1
            form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            if self.token_responses:
                status, body = self.token_responses.pop(0)
                return httpx.Response(status, json=body)
            return httpx.Response(200, json=self.next_token())

        if not request.headers.get("authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"message": "missing bearer"})

        if path == "/v1/projects":
            self.calls["projects"] += 1
            if self.projects_status != 200:
                return httpx.Response(self.projects_status, json={"message": "projects unavailable"})
            return httpx.Response(200, json=self.projects)
        parts = path.strip("/").split("/")
        if len(parts) == 3 and parts[1] == "projects":
            self.calls["project"] += 1
            for project in self.projects:
                if project["id"] == parts[2]:
                    return httpx.Response(200, json=project)
            return httpx.Response(404, json={"message": "project not found"})
        if len(parts) == 4 and parts[3] == "api-keys":
            self.calls["api_keys"] += 1
            if self.api_keys_error is not None:
                raise self.api_keys_error
            return httpx.Response(200, json=self.api_keys)
        if len(parts) == 5 and parts[3:] == ["database", "query"]:
            self.calls["catalog"] += 1
            if self.catalog_status != 200:
                return httpx.Response(self.catalog_status, text="catalog unavailable")
            if self.catalog_body is not None:
                return httpx.Response(200, json=self.catalog_body)
            query = json.loads(request.content)["query"]
            assert "pg_tables" in query
            rows = [
                {"table_name": name, "rls_enabled": table["rls_enabled"]}
                for name, table in sorted(self.tables.items())
            ]
            return httpx.Response(200, json=rows)
        return httpx.Response(404, json={"message": "not found"})

    async def _data_api(self, request: httpx.Request, table: str) -> httpx.Response:
        self.calls["probe"] += 1
        self.probe_headers.append(dict(request.headers))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.probe_delay:
                await asyncio.sleep(self.probe_delay)
        finally:
            self.in_flight -= 1
        if request.headers.get("apikey") != ANON_KEY:
            return httpx.Response(401, json={"message": "invalid api key"})
        entry = self.tables.get(table)
        if entry is None:
            return httpx.Response(404, json={"message": "relation does not exist"})
        if entry["status"] != 200:
            return httpx.Response(entry["status"], json={"message": "error"})
        limit = int(request.url.params.get("limit", "1000"))
        return httpx.Response(200, json=entry["rows"][:limit])


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def encryption_key() -> str:
    return TEST_KEY_HEX


@pytest.fixture
def app_settings(tmp_path) -> AppSettings:
    return AppSettings(
        db_path=str(tmp_path / "rlsguard.db"),
        encryption_key=TEST_KEY_HEX,
        oauth=OAuthConfig(client_id="client-id", client_secret="client-secret"),
        scan=ScanConfig(max_tables=50),
        classifier=ClassifierConfig(enabled=False),
        max_concurrent_projects=2,
        session_secret="test-session-secret",
        public_url="http://testserver",
    )
