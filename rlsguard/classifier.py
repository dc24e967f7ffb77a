"""
Optional LLM risk assessment for exposed tables.

The classifier only annotates findings. Any failure leaves the finding as it
was and returns None.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from anthropic import AsyncAnthropic
from pydantic import BaseModel, Field, ValidationError

from rlsguard.config import ClassifierConfig
from rlsguard.models import AIAnalysis

LOGGER = logging.getLogger(__name__)

RLS_ENABLED_CONTEXT = "RLS is ENABLED but the policy is too permissive (allows public access)."
RLS_DISABLED_CONTEXT = "RLS is DISABLED completely."

RLS_ENABLED_GUIDANCE = (
    "IMPORTANT: RLS is already enabled. Focus recommendations on fixing the specific policy "
    "(e.g. remove 'true' condition), not enabling RLS."
)
RLS_DISABLED_GUIDANCE = "IMPORTANT: Recommend enabling RLS first."

PROMPT_TEMPLATE = """You are a database security expert analyzing a vulnerability in a Supabase database.

TABLE: {table}
EXPOSED FIELDS: {fields}
SAMPLE DATA: {sample}
RLS STATUS: {context}

This table is PUBLICLY ACCESSIBLE without authentication.

Analyze this vulnerability and provide:

1. **Risk Assessment**: A concise explanation of the security impact (2-3 sentences)
2. **Sensitive Data Found**: List any sensitive data types you detect (PII, credentials, financial data, etc.)
3. **Recommendations**: 3-5 specific, actionable steps to fix this vulnerability.
   {guidance}
4. **Auto-Fix SQL**: A complete SQL script to fix the vulnerability.

Format your response as JSON:
{{
  "risk_assessment": "...",
  "sensitive_data_found": ["type1", "type2"],
  "recommendations": ["step1", "step2", "step3"],
  "auto_fix_sql": "-- SQL commands here"
}}"""


class AIAnalysisPayload(BaseModel):
    risk_assessment: str = Field(min_length=1)
    sensitive_data_found: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    auto_fix_sql: str | None = None


def extract_json_object(text: str) -> Any | None:
    """Pull the first JSON object out of free-form model output.

    Fenced ```json blocks win; otherwise the first balanced ``{...}`` is tried,
    with trailing commas removed.
    """
    if not isinstance(text, str):
        return None

    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", text, re.IGNORECASE)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except ValueError:
            pass

    start = text.find("{")
    if start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index, char in enumerate(text[start:], start):
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = re.sub(r",\s*([}\]])", r"\1", text[start : index + 1])
                    try:
                        return json.loads(candidate)
                    except ValueError:
                        break

    try:
        return json.loads(text)
    except ValueError:
        return None


def build_prompt(table: str, fields: list[str], sample: dict[str, Any], rls_enabled: bool) -> str:
    return PROMPT_TEMPLATE.format(
        table=table,
        fields=", ".join(fields),
        sample=json.dumps(sample, indent=2, ensure_ascii=False, default=str),
        context=RLS_ENABLED_CONTEXT if rls_enabled else RLS_DISABLED_CONTEXT,
        guidance=RLS_ENABLED_GUIDANCE if rls_enabled else RLS_DISABLED_GUIDANCE,
    )


def _response_text(message: Any) -> str:
    parts = []
    for block in getattr(message, "content", None) or []:
        if getattr(block, "type", None) == "text":
            parts.append(block.text)
    return "".join(parts)


class RiskClassifier:
    def __init__(self, config: ClassifierConfig, client: Any | None = None):
        self.config = config
        self.client = client or AsyncAnthropic(api_key=config.api_key)

    async def classify(
        self,
        table: str,
        fields: list[str],
        sample: dict[str, Any],
        rls_enabled: bool,
    ) -> AIAnalysis | None:
        prompt = build_prompt(table, fields, sample, rls_enabled)
        LOGGER.info("Analyzing %s with %s", table, self.config.model)
        try:
            message = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.config.model,
                    max_tokens=self.config.max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Risk analysis timed out for %s after %ss", table, self.config.timeout_seconds)
            return None
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Risk analysis failed for %s: %s", table, exc)
            return None

        data = extract_json_object(_response_text(message))
        if not isinstance(data, dict):
            LOGGER.warning("Risk analysis for %s returned no JSON object", table)
            return None
        try:
            payload = AIAnalysisPayload.model_validate(data)
        except ValidationError as exc:
            LOGGER.warning("Risk analysis for %s did not match the expected shape: %s", table, exc.errors())
            return None

        LOGGER.info("Risk analysis complete for %s", table)
        return AIAnalysis(
            risk_assessment=payload.risk_assessment,
            sensitive_data_found=list(payload.sensitive_data_found),
            recommendations=list(payload.recommendations),
            auto_fix_sql=payload.auto_fix_sql,
        )


def build_classifier(config: ClassifierConfig) -> RiskClassifier | None:
    if not config.active:
        LOGGER.info("Risk classifier disabled; findings will carry no AI analysis")
        return None
    return RiskClassifier(config)
