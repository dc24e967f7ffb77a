from __future__ import annotations

import logging
from typing import Any

import httpx

from rlsguard.aggregator import aggregate, failed_result, insights_text
from rlsguard.classifier import RiskClassifier
from rlsguard.config import ScanConfig
from rlsguard.discovery import discover_tables
from rlsguard.errors import SchemaQueryError
from rlsguard.management_api import ManagementApiClient
from rlsguard.models import (
    Finding,
    ProbeOutcome,
    ProbeResult,
    ScanResult,
    ScanTarget,
    TableDescriptor,
    utc_now_iso,
)
from rlsguard.probe import ExposureProbe, build_finding, run_in_groups
from rlsguard.storage import save_scan_result, update_project_status
from rlsguard.tokens import TokenManager

LOGGER = logging.getLogger(__name__)


async def scan_project(
    target: ScanTarget,
    access_token: str,
    *,
    api: ManagementApiClient,
    config: ScanConfig,
    classifier: RiskClassifier | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ScanResult:
    """Discover the public tables of one project and probe each anonymously.

    Schema failures produce a failed result; probe and classifier failures
    are contained per table.
    """
    started_at = utc_now_iso()
    LOGGER.info("Starting RLS scan for project %s", target.project_ref)
    try:
        tables = await discover_tables(api, access_token, target.project_ref)
    except SchemaQueryError as exc:
        LOGGER.exception("Schema discovery failed for project %s", target.project_ref)
        return failed_result(str(exc) or "Failed to query database schema via Management API", started_at)

    selected = tables[: config.max_tables]
    if len(selected) < len(tables):
        LOGGER.info("Scanning first %s of %s tables", len(selected), len(tables))

    probe = ExposureProbe(
        target.project_url,
        target.anon_key,
        timeout=config.probe_timeout_seconds,
        transport=transport,
    )

    async with probe.client() as client:

        async def _scan_table(descriptor: TableDescriptor) -> tuple[ProbeResult, Finding | None]:
            try:
                result = await probe.probe_table(client, descriptor)
            except Exception as exc:  # noqa: BLE001
                LOGGER.debug("Probe crashed for %s: %s", descriptor.name, exc)
                result = ProbeResult(table=descriptor.name, outcome=ProbeOutcome.INCONCLUSIVE, error=str(exc))
            if not result.exposed or result.row is None:
                return result, None

            LOGGER.warning("CRITICAL: %s is publicly readable", descriptor.name)
            finding = build_finding(descriptor, result.row)
            if classifier is not None:
                finding.ai_analysis = await classifier.classify(
                    descriptor.name,
                    finding.leaked_fields,
                    finding.sample_data,
                    descriptor.rls_enabled,
                )
            return result, finding

        outcomes = await run_in_groups(selected, _scan_table, config.concurrency_limit)

    probes = [probe_result for probe_result, _ in outcomes]
    findings = [finding for _, finding in outcomes if finding is not None]
    result = aggregate(probes, findings, started_at)
    LOGGER.info(
        "Scan complete for project %s: %s vulnerable of %s tables",
        target.project_ref,
        result.summary.vulnerable_tables,
        result.summary.total_tables,
    )
    return result


class ProjectScanService:
    """Resolves credentials and project keys for a user, then runs ``scan_project``."""

    def __init__(
        self,
        token_manager: TokenManager,
        api: ManagementApiClient,
        config: ScanConfig,
        classifier: RiskClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_manager = token_manager
        self.api = api
        self.config = config
        self.classifier = classifier
        self.transport = transport

    async def resolve_target(self, access_token: str, project_ref: str) -> ScanTarget:
        keys = await self.api.get_project_api_keys(access_token, project_ref)
        return ScanTarget(
            project_ref=project_ref,
            project_url=self.api.project_url(project_ref),
            anon_key=keys.anon,
        )

    async def scan(self, user_id: str, project_ref: str) -> ScanResult:
        access_token = await self.token_manager.get_valid_token(user_id)
        target = await self.resolve_target(access_token, project_ref)
        return await scan_project(
            target,
            access_token,
            api=self.api,
            config=self.config,
            classifier=self.classifier,
            transport=self.transport,
        )

    async def list_available_projects(self, user_id: str) -> list[dict[str, Any]]:
        access_token = await self.token_manager.get_valid_token(user_id)
        projects = await self.api.list_projects(access_token)
        return [
            {
                "ref": project.get("id") or project.get("ref"),
                "name": project.get("name"),
                "organization_id": project.get("organization_id"),
                "region": project.get("region"),
                "created_at": project.get("created_at"),
                "status": project.get("status"),
            }
            for project in projects
            if isinstance(project, dict) and (project.get("id") or project.get("ref"))
        ]


async def scan_stored_project(
    service: ProjectScanService,
    db_path: str,
    user_id: str,
    project: dict[str, Any],
) -> tuple[ScanResult, str]:
    """Scan a saved project and record the outcome on its row.

    Any error raised before a result exists marks the project as ``error``
    and propagates to the caller.
    """
    project_id = project["id"]
    update_project_status(db_path, project_id, "scanning")
    try:
        result = await service.scan(user_id, project["project_ref"])
    except Exception as exc:
        update_project_status(db_path, project_id, "error", error=str(exc) or type(exc).__name__, scanned=True)
        raise

    scan_id = save_scan_result(db_path, project_id, user_id, result, ai_insights=insights_text(result))
    if result.success:
        update_project_status(db_path, project_id, "completed", scanned=True)
    else:
        update_project_status(db_path, project_id, "error", error=result.error, scanned=True)
    return result, scan_id
