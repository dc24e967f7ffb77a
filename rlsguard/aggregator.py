from __future__ import annotations

from rlsguard.models import Finding, ProbeResult, ScanResult, ScanSummary, utc_now_iso


def build_summary(total: int, vulnerable: int) -> ScanSummary:
    if vulnerable > total:
        raise ValueError("vulnerable table count exceeds total")
    return ScanSummary(total_tables=total, vulnerable_tables=vulnerable, secure_tables=total - vulnerable)


def aggregate(
    probes: list[ProbeResult],
    findings: list[Finding],
    started_at: str | None = None,
) -> ScanResult:
    # inconclusive probes count as secure
    summary = build_summary(len(probes), len(findings))
    result = ScanResult(success=True, vulnerabilities=list(findings), summary=summary, probes=list(probes))
    if started_at:
        result.started_at = started_at
    return result


def failed_result(error: str, started_at: str | None = None) -> ScanResult:
    result = ScanResult(
        success=False,
        vulnerabilities=[],
        summary=ScanSummary(),
        error=error or "Scan failed",
    )
    if started_at:
        result.started_at = started_at
    result.finished_at = utc_now_iso()
    return result


def insights_text(result: ScanResult) -> str | None:
    if not result.success:
        return None
    summary = result.summary
    if summary.vulnerable_tables:
        return (
            f"Found {len(result.vulnerabilities)} security issue(s) across {summary.vulnerable_tables} table(s). "
            f"{summary.secure_tables} table(s) are properly secured with RLS."
        )
    return f"All {summary.total_tables} tables are properly secured with Row Level Security."
