from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any

import httpx

from rlsguard.aggregator import failed_result
from rlsguard.classifier import RiskClassifier, build_classifier
from rlsguard.config import AppSettings
from rlsguard.engine import ProjectScanService, scan_stored_project
from rlsguard.errors import ConfigurationError, IntegrationNotFoundError, RlsGuardError
from rlsguard.management_api import ManagementApiClient
from rlsguard.models import utc_now_iso
from rlsguard.storage import (
    CredentialStore,
    init_db,
    list_pending_projects,
    save_projects,
    write_json_file,
)
from rlsguard.tokens import TokenManager
from rlsguard.vault import CredentialVault

LOGGER = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_INVALID_ARGS = 2
EXIT_FINDINGS = 3
EXIT_FAILED = 4


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@dataclass
class Components:
    settings: AppSettings
    vault: CredentialVault
    store: CredentialStore
    token_manager: TokenManager
    api: ManagementApiClient
    classifier: RiskClassifier | None
    service: ProjectScanService


def build_components(
    settings: AppSettings,
    transport: httpx.AsyncBaseTransport | None = None,
    classifier: RiskClassifier | None = None,
) -> Components:
    """Wire every service from explicit settings. ``transport`` is shared by all HTTP clients."""
    vault = CredentialVault(settings.encryption_key)
    store = CredentialStore(settings.db_path)
    token_manager = TokenManager(settings.oauth, vault, store, transport=transport)
    api = ManagementApiClient(
        base_url=settings.scan.management_api_url,
        timeout=settings.scan.query_timeout_seconds,
        project_url_template=settings.scan.project_url_template,
        transport=transport,
    )
    if classifier is None:
        classifier = build_classifier(settings.classifier)
    service = ProjectScanService(token_manager, api, settings.scan, classifier=classifier, transport=transport)
    return Components(
        settings=settings,
        vault=vault,
        store=store,
        token_manager=token_manager,
        api=api,
        classifier=classifier,
        service=service,
    )


async def run_projects_concurrently(
    service: ProjectScanService,
    db_path: str,
    user_id: str,
    projects: list[dict[str, Any]],
    max_concurrent: int = 2,
) -> tuple[list[dict[str, Any]], int]:
    semaphore = asyncio.Semaphore(max(1, max_concurrent))

    async def _scan(project: dict[str, Any]) -> dict[str, Any]:
        async with semaphore:
            LOGGER.info("Starting scan for project=%s", project["project_ref"])
            try:
                result, scan_id = await scan_stored_project(service, db_path, user_id, project)
            except (RlsGuardError, httpx.HTTPError) as exc:
                LOGGER.error("Scan failed for project=%s: %s", project["project_ref"], exc)
                result, scan_id = failed_result(str(exc) or type(exc).__name__), None
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Unexpected error scanning project=%s", project["project_ref"])
                result, scan_id = failed_result(str(exc) or type(exc).__name__), None
        return {
            "project_id": project["id"],
            "project_ref": project["project_ref"],
            "scan_id": scan_id,
            **result.to_dict(),
        }

    results = await asyncio.gather(*(_scan(project) for project in projects))
    overall_exit = EXIT_CLEAN
    for item in results:
        if not item["success"]:
            overall_exit = max(overall_exit, EXIT_FAILED)
        elif item["vulnerabilities"]:
            overall_exit = max(overall_exit, EXIT_FINDINGS)
    return list(results), overall_exit


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scan Supabase projects for tables readable with the anon key")
    parser.add_argument("--user-id", required=True, help="Identity whose stored integration is used")
    selection = parser.add_mutually_exclusive_group(required=True)
    selection.add_argument("--project-ref", help="Project reference to scan")
    selection.add_argument("--pending", action="store_true", help="Scan every saved project in pending state")
    parser.add_argument("--settings", default=None, help="Path to settings YAML")
    parser.add_argument("--max-tables", type=int, help="Override the number of tables probed per project")
    parser.add_argument("--no-ai", action="store_true", help="Skip the risk classifier")
    parser.add_argument("--json-output", help="Optional path for aggregate JSON output")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    return parser


def load_settings(args: argparse.Namespace) -> AppSettings:
    settings = AppSettings.load(args.settings)
    if args.max_tables is not None:
        if args.max_tables < 0:
            raise ConfigurationError("--max-tables must be >= 0")
        settings.scan.max_tables = args.max_tables
    if args.no_ai:
        settings.classifier.enabled = False
    return settings


async def resolve_projects(components: Components, args: argparse.Namespace) -> list[dict[str, Any]]:
    db_path = components.settings.db_path
    if args.pending:
        return list_pending_projects(db_path, args.user_id)
    integration = components.token_manager.get_integration(args.user_id)
    if integration is None or integration.id is None:
        raise IntegrationNotFoundError(f"No Supabase integration found for user {args.user_id}")
    access_token = await components.token_manager.get_valid_token(args.user_id)
    details = await components.api.get_project(access_token, args.project_ref)
    details = details if isinstance(details, dict) else {}
    project = {
        "ref": args.project_ref,
        "name": details.get("name"),
        "organization_id": details.get("organization_id"),
        "region": details.get("region"),
    }
    return save_projects(db_path, args.user_id, integration.id, [project])


async def run_cli(components: Components, args: argparse.Namespace) -> tuple[list[dict[str, Any]], int]:
    projects = await resolve_projects(components, args)
    if not projects:
        LOGGER.info("No projects to scan for user %s", args.user_id)
    return await run_projects_concurrently(
        components.service,
        components.settings.db_path,
        args.user_id,
        projects,
        max_concurrent=components.settings.max_concurrent_projects,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = load_settings(args)
        components = build_components(settings)
    except (ConfigurationError, ValueError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_INVALID_ARGS

    init_db(settings.db_path)
    try:
        results, overall_exit = asyncio.run(run_cli(components, args))
    except RlsGuardError as exc:
        LOGGER.error("%s", exc)
        return EXIT_FAILED

    payload = {"results": results, "generated_at": utc_now_iso()}
    if args.json_output:
        write_json_file(args.json_output, payload)
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
    return overall_exit


if __name__ == "__main__":
    sys.exit(main())
