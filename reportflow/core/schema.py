from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class DispatchPayload(BaseModel):
    """Body sent to the external worker when a job is dispatched."""

    action: str
    job: str
    callback_url: str
    project_id: str
    user_id: str
    report_id: str | None = None
    file_ids: list[str] = Field(default_factory=list)
    is_test: bool = False
    timestamp: datetime
    context: dict[str, Any] = Field(default_factory=dict)

    def as_query(self) -> dict[str, str]:
        """Flatten the payload into query parameters for the GET fallback."""

        params: dict[str, str] = {}
        for key, value in self.model_dump(mode="json", exclude={"context"}).items():
            if value is None:
                continue
            if isinstance(value, list):
                params[key] = ",".join(str(item) for item in value)
            elif isinstance(value, bool):
                params[key] = "true" if value else "false"
            else:
                params[key] = str(value)
        for key, value in self.context.items():
            params.setdefault(key, str(value))
        return params


class ProgressCallback(BaseModel):
    """Progress update posted back by the worker."""

    status: Literal["idle", "generating", "completed", "error"] = "generating"
    message: str = "Processing..."
    progress: int = 0
    content: str | None = None
    report_id: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _map_status(cls, value: Any) -> str:
        raw = str(value or "").strip().lower()
        if raw in {"completed", "error"}:
            return raw
        return "generating"

    @field_validator("progress", mode="before")
    @classmethod
    def _coerce_progress(cls, value: Any) -> int:
        if value in (None, ""):
            return 0
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    @field_validator("message", mode="before")
    @classmethod
    def _default_message(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text or "Processing..."


class ProgressRecordModel(BaseModel):
    record_id: str | None = None
    job_id: str
    status: str
    message: str
    progress: int
    created_at: datetime
    report_id: str | None = None


class WorkflowStepUpdate(BaseModel):
    step: int = Field(ge=0, le=6)


class JobRequest(BaseModel):
    kind: Literal["file_analysis", "image_analysis", "report_generation"]
    report_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
