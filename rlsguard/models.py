from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

PROVIDER_SUPABASE = "supabase"
SEVERITY_CRITICAL = "critical"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().replace(microsecond=0).isoformat()


def parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str | None
    expires_in: int
    token_type: str = "bearer"

    @classmethod
    def from_dict(cls, data: Any) -> "TokenResponse":
        if not isinstance(data, dict):
            raise ValueError("token response is not a JSON object")
        access_token = data.get("access_token")
        expires_in = data.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("token response is missing access_token")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise ValueError("token response is missing expires_in")
        refresh_token = data.get("refresh_token")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_in=int(expires_in),
            token_type=str(data.get("token_type") or "bearer"),
        )


@dataclass
class CredentialRecord:
    """Sealed OAuth tokens for one (user, provider) pair.

    ``access_token`` and ``refresh_token`` always hold vault blobs, never
    plaintext.
    """

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    provider: str = PROVIDER_SUPABASE
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def expires_within(self, seconds: int, now: datetime | None = None) -> bool:
        current = now or utc_now()
        return (self.expires_at - current).total_seconds() <= seconds

    @classmethod
    def from_row(cls, row: Any) -> "CredentialRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=parse_timestamp(row["token_expires_at"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class TableDescriptor:
    name: str
    rls_enabled: bool


class ProbeOutcome(str, Enum):
    EXPOSED = "exposed"
    SECURE = "secure"
    INCONCLUSIVE = "inconclusive"


@dataclass
class ProbeResult:
    table: str
    outcome: ProbeOutcome
    row: dict[str, Any] | None = None
    error: str | None = None

    @property
    def exposed(self) -> bool:
        return self.outcome is ProbeOutcome.EXPOSED

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"table": self.table, "outcome": self.outcome.value}
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class AIAnalysis:
    risk_assessment: str
    sensitive_data_found: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    auto_fix_sql: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Finding:
    table: str
    issue: str
    details: str
    leaked_fields: list[str]
    sample_data: dict[str, Any]
    severity: str = SEVERITY_CRITICAL
    ai_analysis: AIAnalysis | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "table": self.table,
            "issue": self.issue,
            "severity": self.severity,
            "details": self.details,
            "leaked_fields": list(self.leaked_fields),
            "sample_data": self.sample_data,
        }
        if self.ai_analysis is not None:
            payload["ai_analysis"] = self.ai_analysis.to_dict()
        return payload


@dataclass
class ScanSummary:
    total_tables: int = 0
    vulnerable_tables: int = 0
    secure_tables: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class ScanResult:
    success: bool
    vulnerabilities: list[Finding]
    summary: ScanSummary
    error: str | None = None
    probes: list[ProbeResult] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "vulnerabilities": [finding.to_dict() for finding in self.vulnerabilities],
            "summary": self.summary.to_dict(),
            "tables": [probe.to_dict() for probe in self.probes],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class ScanTarget:
    project_ref: str
    project_url: str
    anon_key: str


@dataclass
class ProjectApiKeys:
    anon: str
    service_role: str
