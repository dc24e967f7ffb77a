from __future__ import annotations

from pydantic import BaseModel, Field


class UserRequest(BaseModel):
    user_id: str = Field(min_length=1)


class SaveProjectsRequest(BaseModel):
    user_id: str = Field(min_length=1)
    project_refs: list[str] = Field(min_length=1)


class ScanRequest(BaseModel):
    user_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)


class ScanTriggerResult(BaseModel):
    project_id: str
    triggered: bool
    error: str | None = None


class ScanAllResponse(BaseModel):
    success: bool
    message: str
    scans_triggered: int
    total_projects: int = 0
    results: list[ScanTriggerResult] = Field(default_factory=list)
