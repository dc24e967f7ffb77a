"""
Client for the platform's Management API (bearer-authenticated with the OAuth token).
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from rlsguard.config import SUPABASE_MANAGEMENT_API, SUPABASE_PROJECT_URL_TEMPLATE
from rlsguard.errors import ManagementApiError
from rlsguard.models import ProjectApiKeys

LOGGER = logging.getLogger(__name__)


class ManagementApiClient:
    def __init__(
        self,
        base_url: str = SUPABASE_MANAGEMENT_API,
        timeout: float = 30.0,
        project_url_template: str = SUPABASE_PROJECT_URL_TEMPLATE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.project_url_template = project_url_template
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: dict[str, Any] | None = None,
        action: str = "call Management API",
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, json=json_body)
        except httpx.TimeoutException as exc:
            raise ManagementApiError(f"Timed out trying to {action}") from exc
        except httpx.HTTPError as exc:
            raise ManagementApiError(f"Failed to {action}: {str(exc) or type(exc).__name__}") from exc
        if not response.is_success:
            body = response.text[:1000]
            raise ManagementApiError(
                f"Failed to {action}: {response.status_code} {body}",
                status_code=response.status_code,
                body=body,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ManagementApiError(f"Failed to {action}: response is not JSON") from exc

    async def list_projects(self, access_token: str) -> list[dict[str, Any]]:
        projects = await self._request("GET", "/projects", access_token, action="list projects")
        if not isinstance(projects, list):
            raise ManagementApiError("Failed to list projects: unexpected response shape")
        return projects

    async def get_project(self, access_token: str, project_ref: str) -> dict[str, Any]:
        return await self._request("GET", f"/projects/{project_ref}", access_token, action="get project details")

    async def get_project_api_keys(self, access_token: str, project_ref: str) -> ProjectApiKeys:
        keys = await self._request(
            "GET", f"/projects/{project_ref}/api-keys", access_token, action="get project API keys"
        )
        by_name = {}
        for item in keys if isinstance(keys, list) else []:
            if isinstance(item, dict) and item.get("name") and item.get("api_key"):
                by_name[item["name"]] = item["api_key"]
        anon = by_name.get("anon")
        service_role = by_name.get("service_role")
        if not anon or not service_role:
            raise ManagementApiError("Could not find required API keys (anon and service_role)")
        return ProjectApiKeys(anon=anon, service_role=service_role)

    async def execute_query(self, access_token: str, project_ref: str, query: str) -> Any:
        try:
            result = await self._request(
                "POST",
                f"/projects/{project_ref}/database/query",
                access_token,
                json_body={"query": query},
                action="execute query",
            )
        except ManagementApiError:
            LOGGER.error("Management API query failed for project %s", project_ref)
            raise
        LOGGER.info(
            "Management API query succeeded for project %s (%s rows)",
            project_ref,
            len(result) if isinstance(result, list) else "?",
        )
        return result

    async def validate_access_token(self, access_token: str) -> bool:
        try:
            await self.list_projects(access_token)
        except ManagementApiError as exc:
            LOGGER.warning("Access token validation failed: %s", exc)
            return False
        return True

    def project_url(self, project_ref: str) -> str:
        return self.project_url_template.format(ref=project_ref)
