from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from rlsguard.models import PROVIDER_SUPABASE, CredentialRecord, ScanResult, utc_now_iso

LOGGER = logging.getLogger(__name__)

SCAN_STATUSES = {"pending", "scanning", "completed", "error"}


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS integrations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    token_expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, provider)
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    integration_id TEXT NOT NULL,
    project_ref TEXT NOT NULL,
    project_name TEXT NOT NULL,
    organization_id TEXT,
    region TEXT,
    scan_status TEXT NOT NULL DEFAULT 'pending',
    scan_error TEXT,
    last_scanned_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (integration_id, project_ref),
    FOREIGN KEY (integration_id) REFERENCES integrations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS scan_results (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    scan_date TEXT NOT NULL,
    success INTEGER NOT NULL,
    vulnerabilities_found INTEGER NOT NULL DEFAULT 0,
    summary_json TEXT NOT NULL,
    vulnerabilities_json TEXT NOT NULL,
    ai_insights TEXT,
    error TEXT,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_projects_user_id ON projects(user_id);
CREATE INDEX IF NOT EXISTS idx_projects_scan_status ON projects(scan_status);
CREATE INDEX IF NOT EXISTS idx_scan_results_project_id ON scan_results(project_id);
"""


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    conn = connect(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    with transaction(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
    LOGGER.info("SQLite initialized at %s", db_path)


def _iso(value: datetime) -> str:
    return value.isoformat()


class CredentialStore:
    """Credential records keyed by (user_id, provider); one row per pair."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def get(self, user_id: str, provider: str = PROVIDER_SUPABASE) -> CredentialRecord | None:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM integrations WHERE user_id = ? AND provider = ?",
                (user_id, provider),
            ).fetchone()
        return CredentialRecord.from_row(row) if row else None

    def get_by_id(self, integration_id: str) -> CredentialRecord | None:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM integrations WHERE id = ?", (integration_id,)).fetchone()
        return CredentialRecord.from_row(row) if row else None

    def upsert(self, record: CredentialRecord) -> CredentialRecord:
        now = utc_now_iso()
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO integrations (
                    id, user_id, provider, access_token, refresh_token,
                    token_expires_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_expires_at = excluded.token_expires_at,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id or str(uuid.uuid4()),
                    record.user_id,
                    record.provider,
                    record.access_token,
                    record.refresh_token,
                    _iso(record.expires_at),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM integrations WHERE user_id = ? AND provider = ?",
                (record.user_id, record.provider),
            ).fetchone()
        LOGGER.info("Stored %s credentials for user %s", record.provider, record.user_id)
        return CredentialRecord.from_row(row)

    def replace_tokens(self, record: CredentialRecord) -> bool:
        """Swap both sealed tokens and the expiry in a single statement."""
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE integrations
                SET access_token = ?, refresh_token = ?, token_expires_at = ?, updated_at = ?
                WHERE user_id = ? AND provider = ?
                """,
                (
                    record.access_token,
                    record.refresh_token,
                    _iso(record.expires_at),
                    utc_now_iso(),
                    record.user_id,
                    record.provider,
                ),
            )
        return cursor.rowcount > 0

    def delete(self, user_id: str, provider: str = PROVIDER_SUPABASE) -> bool:
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM integrations WHERE user_id = ? AND provider = ?",
                (user_id, provider),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            LOGGER.info("Deleted %s credentials for user %s", provider, user_id)
        return deleted


def save_projects(
    db_path: str,
    user_id: str,
    integration_id: str,
    projects: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    created_at = utc_now_iso()
    with transaction(db_path) as conn:
        conn.executemany(
            """
            INSERT INTO projects (
                id, user_id, integration_id, project_ref, project_name,
                organization_id, region, scan_status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
            ON CONFLICT (integration_id, project_ref) DO UPDATE SET
                project_name = excluded.project_name,
                organization_id = excluded.organization_id,
                region = excluded.region,
                scan_status = 'pending',
                scan_error = NULL
            """,
            [
                (
                    str(uuid.uuid4()),
                    user_id,
                    integration_id,
                    project["ref"],
                    project.get("name") or project["ref"],
                    project.get("organization_id"),
                    project.get("region"),
                    created_at,
                )
                for project in projects
            ],
        )
        refs = [project["ref"] for project in projects]
        placeholders = ",".join("?" for _ in refs)
        rows = conn.execute(
            f"SELECT * FROM projects WHERE integration_id = ? AND project_ref IN ({placeholders}) ORDER BY project_name",
            [integration_id, *refs],
        ).fetchall()
    LOGGER.info("Saved %s projects for user %s", len(rows), user_id)
    return [dict(row) for row in rows]


def get_project(db_path: str, project_id: str, user_id: str) -> dict[str, Any] | None:
    with transaction(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM projects WHERE id = ? AND user_id = ?",
            (project_id, user_id),
        ).fetchone()
    return dict(row) if row else None


def list_pending_projects(db_path: str, user_id: str) -> list[dict[str, Any]]:
    with transaction(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM projects WHERE user_id = ? AND scan_status = 'pending' ORDER BY created_at ASC",
            (user_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def _decode_scan_row(row: sqlite3.Row) -> dict[str, Any]:
    scan = dict(row)
    scan["success"] = bool(scan["success"])
    scan["summary"] = json.loads(scan.pop("summary_json") or "{}")
    scan["vulnerabilities"] = json.loads(scan.pop("vulnerabilities_json") or "[]")
    return scan


def latest_scan(db_path: str, project_id: str) -> dict[str, Any] | None:
    with transaction(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM scan_results WHERE project_id = ? ORDER BY scan_date DESC, rowid DESC LIMIT 1",
            (project_id,),
        ).fetchone()
    return _decode_scan_row(row) if row else None


def list_projects(db_path: str, user_id: str) -> list[dict[str, Any]]:
    with transaction(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
    projects = [dict(row) for row in rows]
    for project in projects:
        project["latest_scan"] = latest_scan(db_path, project["id"])
    return projects


def update_project_status(
    db_path: str,
    project_id: str,
    status: str,
    error: str | None = None,
    scanned: bool = False,
) -> None:
    if status not in SCAN_STATUSES:
        raise ValueError(f"Unsupported scan status: {status}")
    with transaction(db_path) as conn:
        if scanned:
            conn.execute(
                "UPDATE projects SET scan_status = ?, scan_error = ?, last_scanned_at = ? WHERE id = ?",
                (status, error, utc_now_iso(), project_id),
            )
        else:
            conn.execute(
                "UPDATE projects SET scan_status = ?, scan_error = ? WHERE id = ?",
                (status, error, project_id),
            )


def save_scan_result(
    db_path: str,
    project_id: str,
    user_id: str,
    result: ScanResult,
    ai_insights: str | None = None,
) -> str:
    scan_id = str(uuid.uuid4())
    with transaction(db_path) as conn:
        conn.execute(
            """
            INSERT INTO scan_results (
                id, project_id, user_id, scan_date, success, vulnerabilities_found,
                summary_json, vulnerabilities_json, ai_insights, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                scan_id,
                project_id,
                user_id,
                result.finished_at,
                1 if result.success else 0,
                len(result.vulnerabilities),
                json.dumps(result.summary.to_dict(), ensure_ascii=False),
                json.dumps([finding.to_dict() for finding in result.vulnerabilities], ensure_ascii=False, default=str),
                ai_insights,
                result.error,
            ),
        )
    LOGGER.info("Persisted scan %s for project %s with %s findings", scan_id, project_id, len(result.vulnerabilities))
    return scan_id


def write_json_file(path: str | Path, payload: dict | list) -> None:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False, default=str)
