from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


COURSE_ID_PATTERN = r"^crs_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    reclaimed_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class StartCourseRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)
    owner_id: str = Field(min_length=1, max_length=128)
    topic: str = Field(min_length=1, max_length=512)
    document_ids: list[str] = Field(default_factory=list, max_length=200)


class StartCourseResponse(BaseModel):
    course_id: str = Field(pattern=COURSE_ID_PATTERN)
    stage_state: str


class StageProgressResponse(BaseModel):
    stage: int
    total: int
    pending: int
    active: int
    completed: int
    error: int
    needs_human_review: int


class CourseStatusResponse(BaseModel):
    course_id: str = Field(pattern=COURSE_ID_PATTERN)
    stage_state: str
    failure_reason: str | None = None
    stages: list[StageProgressResponse] = Field(default_factory=list)
    updated_at: datetime | None = None


class TransitionResponse(BaseModel):
    course_id: str = Field(pattern=COURSE_ID_PATTERN)
    from_state: str
    to_state: str
    applied: bool
    current_state: str
    detail: str = ""
